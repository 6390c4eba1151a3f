# Overview: Flask CLI command groups for integrity checks, repair, supplier resync and stock inspection.

# backend/invsync/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Integrity:
# - python -m flask integrity check [--json]
#   Print the integrity report summary and suggestions.
# - python -m flask integrity repair [--orphan-policy mark|delete]
#   Run auto-repair, then print what is left.
# - python -m flask integrity suppliers [--fix] [--json]
#   Check supplier documents (totals, lines, unit ids); --fix recalculates
#   zero totals and removes documents without lines first.
#
# Suppliers:
# - python -m flask suppliers sync-all
#   Resynchronize every completed purchase (already applied items are no-ops).
#
# Stock:
# - python -m flask stock show [--product-id 1 --product-id 2]
#   Recorded counter vs available units per product.

import json

import click
from flask import current_app
from flask.cli import with_appcontext

from .channel import CHANGE_FEED_EXTENSION
from .extensions import db
from .services.integrity_service import run_integrity_check
from .services.repair_service import ORPHAN_POLICIES, auto_repair
from .services.supplier_integrity import check_supplier_transactions, fix_supplier_transactions
from .services.stock_query import stock_snapshot
from .services.supplier_sync import synchronizer_from_config


def _deliver_pending():
    # row events committed by a command reach subscribers like after a request
    feed = current_app.extensions.get(CHANGE_FEED_EXTENSION)
    if feed is not None:
        feed.deliver_pending()


@click.group('system')
def system_group():
    """System maintenance commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('integrity')
def integrity_group():
    """Consistency checks between stock, units and sales."""


def _echo_report(report):
    click.echo("\n" + "=" * 80)
    click.echo(f"{'Stock mismatches':<28} {len(report.stock_mismatches)}")
    click.echo(f"{'Orphaned units':<28} {len(report.orphaned_units)}")
    click.echo(f"{'Invalid serial sales':<28} {len(report.invalid_serial_sales)}")
    click.echo(f"{'Inconsistent statuses':<28} {len(report.inconsistent_statuses)}")
    click.echo("=" * 80)

    for m in report.stock_mismatches:
        click.echo(f"  product {m.product_id:<6} {m.brand} {m.model}: recorded {m.recorded}, actual {m.actual} ({m.difference:+d})")
    for o in report.orphaned_units:
        click.echo(f"  unit {o.unit_id:<6} {o.serial_number}: {o.reason}")
    for i in report.invalid_serial_sales:
        click.echo(f"  sale {i.sale_number} {i.serial_number}: {i.issue}")
    for s in report.inconsistent_statuses:
        click.echo(f"  unit {s.unit_id:<6} {s.serial_number}: {s.issue}")

    for suggestion in report.suggestions:
        click.echo(f"- {suggestion}")
    click.echo("")


@integrity_group.command('check')
@click.option('--json', 'as_json', is_flag=True, help='Print the full report as JSON')
@with_appcontext
def integrity_check(as_json):
    """Run the integrity checker (read-only)."""
    report = run_integrity_check()
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _echo_report(report)

    if not report.is_consistent:
        raise SystemExit(1)


@integrity_group.command('repair')
@click.option('--orphan-policy', type=click.Choice(ORPHAN_POLICIES), default=None,
              help='Override the configured orphan policy')
@with_appcontext
def integrity_repair(orphan_policy):
    """Repair every finding that can be repaired automatically."""
    result = auto_repair(orphan_policy=orphan_policy)
    _deliver_pending()

    for kind, count in result.counts.items():
        click.echo(f"{kind:<28} {count}")

    for error in result.errors:
        click.echo(f"FAIL {error}")

    if result.remaining is not None:
        click.echo(f"Remaining issues: {result.remaining.issue_count}")

    if result.success:
        click.echo(f"PASS Repaired {result.repaired} findings")
    else:
        raise SystemExit(1)


@integrity_group.command('suppliers')
@click.option('--fix', is_flag=True, help='Recalculate zero totals and remove empty documents first')
@click.option('--json', 'as_json', is_flag=True, help='Print the full report as JSON')
@with_appcontext
def integrity_suppliers(fix, as_json):
    """Check supplier acquisition documents."""
    if fix:
        result = fix_supplier_transactions()
        report = result.remaining
        if not as_json:
            click.echo(f"{'Totals recalculated':<28} {result.totals_recalculated}")
            click.echo(f"{'Empty documents removed':<28} {result.empty_removed}")
    else:
        report = check_supplier_transactions()

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        for issue in report.issues:
            click.echo(f"{issue.severity.upper():<8} {issue.message}")
        click.echo(f"Checked {report.total_transactions} transactions: "
                   f"{len(report.errors)} errors, {len(report.warnings)} warnings")

    if not report.is_valid:
        raise SystemExit(1)


@click.group('suppliers')
def suppliers_group():
    """Supplier acquisition synchronization."""


@suppliers_group.command('sync-all')
@with_appcontext
def sync_all():
    """Resynchronize every completed purchase into inventory."""
    batches = synchronizer_from_config().sync_all_completed()
    _deliver_pending()
    failed = 0
    for batch in batches:
        status = "PASS" if batch.success else "FAIL"
        delta = sum(r.stock_delta for r in batch.results)
        click.echo(f"{status} transaction {batch.transaction_id}: {len(batch.results)} items, stock {delta:+d}")
        for error in batch.all_errors:
            click.echo(f"     {error}")
        failed += 0 if batch.success else 1

    click.echo(f"Synchronized {len(batches)} transactions ({failed} with errors)")
    if failed:
        raise SystemExit(1)


@click.group('stock')
def stock_group():
    """Stock inspection."""


@stock_group.command('show')
@click.option('--product-id', 'product_ids', type=int, multiple=True, help='Limit to these products')
@with_appcontext
def show_stock(product_ids):
    """Recorded stock next to available units."""
    rows = stock_snapshot(db.session, list(product_ids) or None)
    if not rows:
        click.echo("No products found.")
        return

    click.echo(f"{'ID':<6} {'Serial':<8} {'Recorded':<10} {'Available units'}")
    for row in rows:
        serial = "yes" if row["has_serial"] else "no"
        click.echo(f"{row['product_id']:<6} {serial:<8} {row['recorded']:<10} {row['available_units']}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(integrity_group)
    app.cli.add_command(suppliers_group)
    app.cli.add_command(stock_group)
