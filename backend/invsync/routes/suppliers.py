# Overview: Flask API routes for supplier acquisitions and their inventory synchronization.

from flask import Blueprint, current_app, jsonify, request

from ..services.supplier_service import (
    SupplierTransactionError,
    complete_transaction,
    create_transaction,
)
from ..services.supplier_sync import synchronizer_from_config


suppliers_bp = Blueprint("suppliers", __name__, url_prefix="/api/suppliers")


@suppliers_bp.post("/transactions")
def create_transaction_route():
    """
    Create a pending acquisition.

    Body: {"transaction_number", "supplier_name", "type", "notes",
           "items": [{"product_id", "quantity", "unit_cost", "unit_entries": [...]}]}
    """
    data = request.get_json(silent=True) or {}
    try:
        tx = create_transaction(
            transaction_number=data.get("transaction_number"),
            supplier_name=data.get("supplier_name"),
            type=data.get("type", "purchase"),
            notes=data.get("notes"),
            items=data.get("items") or [],
        )
        return jsonify({
            "transaction": tx.to_dict(),
            "items": [item.to_dict() for item in tx.items],
        }), 201
    except SupplierTransactionError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to create supplier transaction")
        return jsonify({"error": "Internal server error"}), 500


@suppliers_bp.post("/transactions/<int:transaction_id>/complete")
def complete_transaction_route(transaction_id: int):
    """Complete an acquisition and propagate it into inventory."""
    try:
        tx = complete_transaction(transaction_id)
    except SupplierTransactionError as e:
        status = 404 if str(e) == "Supplier transaction not found" else 400
        return jsonify({"error": str(e), "details": e.details}), status

    result = synchronizer_from_config().synchronize_transaction(tx.id)
    return jsonify({"transaction": tx.to_dict(), "sync": result.to_dict()}), 200


@suppliers_bp.post("/transactions/<int:transaction_id>/sync")
def sync_transaction_route(transaction_id: int):
    result = synchronizer_from_config().synchronize_transaction(transaction_id)
    return jsonify({"sync": result.to_dict()}), 200 if result.success else 400


@suppliers_bp.post("/items/<int:item_id>/sync")
def sync_item_route(item_id: int):
    result = synchronizer_from_config().synchronize_item(item_id)
    return jsonify({"sync": result.to_dict()}), 200 if result.success else 400


@suppliers_bp.delete("/items/<int:item_id>")
def delete_item_route(item_id: int):
    """Remove an acquisition line; its stock comes back out and its units go to pending."""
    result = synchronizer_from_config().delete_item(item_id)
    return jsonify({"sync": result.to_dict()}), 200 if result.success else 404
