# backend/invsync/routes/inventory.py
"""
Stock read and manual adjustment routes.

- GET  /api/stock?product_id=1&product_id=2  effective stock map (one query)
- POST /api/inventory/products              create a catalog entry
- POST /api/inventory/products/<id>/adjust   non-serialized stock correction
"""
from flask import Blueprint, current_app, jsonify, request

from ..extensions import db
from ..models import Product, StockMovement
from ..services.inventory_service import StockAdjustmentError, adjust_stock, create_product
from ..services.stock_query import get_effective_stock
from ..validation import (
    ModelValidationPolicy,
    ValidationError,
    enforce_rules_stock_adjust,
    validate_payload,
)


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api")

PRODUCT_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={"brand", "model", "has_serial", "price", "min_price", "max_price"},
    required_on_create={"brand", "model"},
)

STOCK_ADJUST_POLICY = ModelValidationPolicy(
    writable_fields={"quantity_delta", "note"},
    required_on_create={"quantity_delta"},
)


@inventory_bp.get("/stock")
def effective_stock_route():
    """
    Effective stock for the requested products.

    Unknown ids are absent from the response map.
    """
    raw_ids = request.args.getlist("product_id")
    try:
        product_ids = [int(v) for v in raw_ids]
    except ValueError:
        return jsonify({"error": "product_id must be an integer"}), 400

    stock = get_effective_stock(db.session, product_ids)
    return jsonify({"stock": {str(pid): qty for pid, qty in stock.items()}}), 200


@inventory_bp.post("/inventory/products/<int:product_id>/adjust")
def adjust_stock_route(product_id: int):
    """
    Adjust a non-serialized product's counter (corrections, shrink, etc.).

    Serialized products are rejected: their stock follows unit statuses.
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(
            model=StockMovement,
            payload=payload,
            policy=STOCK_ADJUST_POLICY,
            partial=False,
        )
        enforce_rules_stock_adjust(patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        product = adjust_stock(
            product_id=product_id,
            quantity_delta=patch["quantity_delta"],
            note=patch.get("note"),
            attempts=current_app.config.get("RETRY_ATTEMPTS", 3),
            backoff_base=current_app.config.get("RETRY_BACKOFF", 0.1),
        )
    except StockAdjustmentError as e:
        status = 404 if str(e) == "Product not found" else 400
        return jsonify({"error": str(e), "details": e.details}), status
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"product": product.to_dict()}), 200


@inventory_bp.post("/inventory/products")
def create_product_route():
    """
    Create a product. Body may carry opening_stock for non-serialized
    products; it is journaled as an adjustment.
    """
    payload = request.get_json(silent=True) or {}
    opening_stock = payload.pop("opening_stock", 0) if isinstance(payload, dict) else 0

    try:
        patch = validate_payload(
            model=Product,
            payload=payload,
            policy=PRODUCT_CREATE_POLICY,
            partial=False,
        )
        if not isinstance(opening_stock, int) or isinstance(opening_stock, bool):
            raise ValidationError("opening_stock must be an integer")
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        product = create_product(opening_stock=opening_stock, **patch)
    except StockAdjustmentError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"product": product.to_dict()}), 201
