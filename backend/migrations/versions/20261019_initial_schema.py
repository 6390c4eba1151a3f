"""Initial schema: catalog, units, stock ledger, sales, supplier acquisitions

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19

This migration adds:
1. products and product_units (units keep a nullable product_id, ON DELETE SET NULL)
2. stock_movements (append-only stock ledger)
3. sales, sale_items, sold_product_units
4. supplier_transactions, supplier_transaction_items
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_initial'
down_revision = None
branch_labels = None
depends_on = None


def _money(name, nullable=True, **kwargs):
    return sa.Column(name, sa.Numeric(precision=12, scale=2), nullable=nullable, **kwargs)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade():
    # ==========================================================================
    # 1. CATALOG AND UNITS
    # ==========================================================================
    op.create_table('products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('brand', sa.String(length=128), nullable=False),
        sa.Column('model', sa.String(length=255), nullable=False),
        sa.Column('has_serial', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('stock', sa.Integer(), nullable=False, server_default='0'),
        _money('price'),
        _money('min_price'),
        _money('max_price'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_products_brand_model', 'products', ['brand', 'model'])
    op.create_index('ix_products_has_serial', 'products', ['has_serial'])

    op.create_table('product_units',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('serial_number', sa.String(length=128), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='available'),
        _money('purchase_price'),
        _money('price'),
        _money('min_price'),
        _money('max_price'),
        sa.Column('color', sa.String(length=64), nullable=True),
        sa.Column('storage', sa.Integer(), nullable=True),
        sa.Column('ram', sa.Integer(), nullable=True),
        sa.Column('battery_level', sa.Integer(), nullable=True),
        sa.Column('purchase_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id', 'serial_number', name='uq_product_units_product_serial'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_product_units_product_id', 'product_units', ['product_id'])
    op.create_index('ix_product_units_status', 'product_units', ['status'])
    op.create_index('ix_product_units_product_status', 'product_units', ['product_id', 'status'])
    op.create_index('ix_product_units_serial', 'product_units', ['serial_number'])

    # ==========================================================================
    # 2. STOCK LEDGER
    # ==========================================================================
    op.create_table('stock_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('source_type', sa.String(length=32), nullable=False),
        sa.Column('source_id', sa.Integer(), nullable=True),
        sa.Column('quantity_delta', sa.Integer(), nullable=False),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_stock_movements_product_id', 'stock_movements', ['product_id'])
    op.create_index('ix_stock_movements_source', 'stock_movements', ['source_type', 'source_id'])
    op.create_index('ix_stock_movements_product_created', 'stock_movements', ['product_id', 'created_at'])

    # ==========================================================================
    # 3. SALES
    # ==========================================================================
    op.create_table('sales',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_number', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='completed'),
        sa.Column('client_id', sa.Integer(), nullable=True),
        sa.Column('payment_method', sa.String(length=32), nullable=False, server_default='cash'),
        sa.Column('payment_type', sa.String(length=16), nullable=False, server_default='single'),
        _money('cash_amount', nullable=False, server_default='0'),
        _money('card_amount', nullable=False, server_default='0'),
        _money('bank_transfer_amount', nullable=False, server_default='0'),
        sa.Column('discount_type', sa.String(length=16), nullable=True),
        _money('discount_value', nullable=False, server_default='0'),
        sa.Column('vat_included', sa.Boolean(), nullable=False, server_default='1'),
        _money('subtotal', nullable=False, server_default='0'),
        _money('discount_amount', nullable=False, server_default='0'),
        _money('tax_amount', nullable=False, server_default='0'),
        _money('total_amount', nullable=False, server_default='0'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sale_number', name='uq_sales_sale_number'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_sales_status', 'sales', ['status'])
    op.create_index('ix_sales_client_id', 'sales', ['client_id'])
    op.create_index('ix_sales_status_created', 'sales', ['status', 'created_at'])

    op.create_table('sale_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('product_unit_id', sa.Integer(), nullable=True),
        sa.Column('serial_number', sa.String(length=128), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        _money('unit_price', nullable=False),
        _money('total_price', nullable=False),
        sa.Column('needs_review', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('review_reason', sa.String(length=255), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.ForeignKeyConstraint(['product_unit_id'], ['product_units.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_sale_items_sale_id', 'sale_items', ['sale_id'])
    op.create_index('ix_sale_items_product_id', 'sale_items', ['product_id'])
    op.create_index('ix_sale_items_product_unit_id', 'sale_items', ['product_unit_id'])
    op.create_index('ix_sale_items_needs_review', 'sale_items', ['needs_review'])
    op.create_index('ix_sale_items_product_serial', 'sale_items', ['product_id', 'serial_number'])

    op.create_table('sold_product_units',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('sale_item_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('product_unit_id', sa.Integer(), nullable=True),
        sa.Column('serial_number', sa.String(length=128), nullable=False),
        _money('sold_price', nullable=False),
        sa.Column('sold_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id']),
        sa.ForeignKeyConstraint(['sale_item_id'], ['sale_items.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.ForeignKeyConstraint(['product_unit_id'], ['product_units.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sale_item_id', name='uq_sold_product_units_sale_item'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_sold_product_units_sale_id', 'sold_product_units', ['sale_id'])
    op.create_index('ix_sold_product_units_product_id', 'sold_product_units', ['product_id'])
    op.create_index('ix_sold_product_units_product_unit_id', 'sold_product_units', ['product_unit_id'])
    op.create_index('ix_sold_product_units_serial', 'sold_product_units', ['serial_number'])

    # ==========================================================================
    # 4. SUPPLIER ACQUISITIONS
    # ==========================================================================
    op.create_table('supplier_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('transaction_number', sa.String(length=64), nullable=False),
        sa.Column('supplier_name', sa.String(length=255), nullable=True),
        sa.Column('type', sa.String(length=16), nullable=False, server_default='purchase'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        _money('total_amount', nullable=False, server_default='0'),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transaction_number', name='uq_supplier_tx_number'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_supplier_transactions_status', 'supplier_transactions', ['status'])
    op.create_index('ix_supplier_tx_type_status', 'supplier_transactions', ['type', 'status'])

    op.create_table('supplier_transaction_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('transaction_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        _money('unit_cost', nullable=False),
        sa.Column('unit_entries', sa.JSON(), nullable=True),
        sa.Column('product_unit_ids', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['transaction_id'], ['supplier_transactions.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_supplier_transaction_items_transaction_id', 'supplier_transaction_items', ['transaction_id'])
    op.create_index('ix_supplier_transaction_items_product_id', 'supplier_transaction_items', ['product_id'])


def downgrade():
    op.drop_table('supplier_transaction_items')
    op.drop_table('supplier_transactions')
    op.drop_table('sold_product_units')
    op.drop_table('sale_items')
    op.drop_table('sales')
    op.drop_table('stock_movements')
    op.drop_table('product_units')
    op.drop_table('products')
