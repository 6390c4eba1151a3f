# Overview: Flask API routes for integrity reports and auto-repair.

from flask import Blueprint, current_app, jsonify, request

from ..services.integrity_service import run_integrity_check
from ..services.repair_service import ORPHAN_POLICIES, auto_repair
from ..services.supplier_integrity import check_supplier_transactions, fix_supplier_transactions


integrity_bp = Blueprint("integrity", __name__, url_prefix="/api/integrity")


@integrity_bp.get("/report")
def integrity_report_route():
    try:
        report = run_integrity_check()
        return jsonify({"report": report.to_dict()}), 200
    except Exception:
        current_app.logger.exception("Failed to run integrity check")
        return jsonify({"error": "Internal server error"}), 500


@integrity_bp.post("/repair")
def integrity_repair_route():
    """
    Run auto-repair against a fresh report.

    Body (optional): {"orphan_policy": "mark" | "delete"}
    Per-finding failures are reported in errors[] with a 200; a failed run
    as a whole answers 500 with the same shape.
    """
    data = request.get_json(silent=True) or {}
    orphan_policy = data.get("orphan_policy")
    if orphan_policy is not None and orphan_policy not in ORPHAN_POLICIES:
        return jsonify({"error": f"orphan_policy must be one of: {', '.join(ORPHAN_POLICIES)}"}), 400

    result = auto_repair(orphan_policy=orphan_policy)
    status = 500 if result.remaining is None else 200
    return jsonify({"result": result.to_dict()}), status


@integrity_bp.get("/suppliers")
def supplier_integrity_route():
    try:
        report = check_supplier_transactions()
        return jsonify({"report": report.to_dict()}), 200
    except Exception:
        current_app.logger.exception("Failed to check supplier transactions")
        return jsonify({"error": "Internal server error"}), 500


@integrity_bp.post("/suppliers/fix")
def supplier_integrity_fix_route():
    """Recalculate zero totals and drop empty supplier documents, then check again."""
    try:
        result = fix_supplier_transactions()
        return jsonify({"result": result.to_dict()}), 200
    except Exception:
        current_app.logger.exception("Failed to fix supplier transactions")
        return jsonify({"error": "Internal server error"}), 500
