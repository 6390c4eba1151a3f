# Overview: Flask API routes for sale composition and committed sales; parses input and returns JSON responses.

"""Sales API routes"""

from flask import Blueprint, current_app, jsonify, request

from ..extensions import db
from ..models import SaleItem
from ..services import sale_service
from ..services.sale_composition import compose_sale, parse_action
from ..services.sale_service import SaleCommitError, SaleNotFoundError
from ..services.stock_query import get_effective_stock
from ..validation import (
    ModelValidationPolicy,
    ValidationError,
    enforce_rules_sale_item_update,
    validate_payload,
)


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")

SALE_ITEM_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={"serial_number", "unit_price"},
)


def _compose_from_request(data: dict):
    actions = data.get("actions")
    if not isinstance(actions, list):
        raise ValidationError("actions must be a list")
    try:
        parsed = [parse_action(a) for a in actions]
    except ValueError as e:
        raise ValidationError(str(e))

    return compose_sale(
        parsed,
        stock_lookup=lambda ids: get_effective_stock(db.session, ids),
        vat_rate=current_app.config.get("VAT_RATE", 0.22),
        observer=lambda name, details: current_app.logger.debug("sale action %s %s", name, details),
    )


@sales_bp.post("/compose")
def compose_sale_route():
    """
    Run a list of composition actions and return the resulting sale.

    Body: {"actions": [{"type": "add_item", "item": {...}}, ...]}
    Nothing is written.
    """
    data = request.get_json(silent=True) or {}
    try:
        state = _compose_from_request(data)
        return jsonify({"sale": state.to_dict()}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to compose sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("")
def commit_sale_route():
    """
    Compose and commit a sale in one call.

    Body: {"actions": [...], "sale_number": optional, "status": "completed"|"pending"}
    """
    data = request.get_json(silent=True) or {}
    try:
        state = _compose_from_request(data)
        sale = sale_service.commit_sale(
            state,
            sale_number=data.get("sale_number"),
            status=data.get("status", "completed"),
            attempts=current_app.config.get("RETRY_ATTEMPTS", 3),
            backoff_base=current_app.config.get("RETRY_BACKOFF", 0.1),
        )
        return jsonify({
            "sale": sale.to_dict(),
            "items": [item.to_dict() for item in sale.items],
        }), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except SaleCommitError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to commit sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.delete("/<int:sale_id>")
def delete_sale_route(sale_id: int):
    """Delete a sale; units go back to available and stock is restored."""
    try:
        sale_service.delete_sale(sale_id)
        return jsonify({"deleted": True, "sale_id": sale_id}), 200
    except SaleNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except SaleCommitError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to delete sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.patch("/items/<int:item_id>")
def update_sale_item_route(item_id: int):
    """Change the serial and/or unit price of a committed sale item."""
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(
            model=SaleItem,
            payload=payload,
            policy=SALE_ITEM_UPDATE_POLICY,
            partial=True,
        )
        enforce_rules_sale_item_update(patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        item = sale_service.update_sale_item(item_id, **patch)
        return jsonify({"item": item.to_dict()}), 200
    except SaleNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except SaleCommitError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to update sale item")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.delete("/items/<int:item_id>")
def delete_sale_item_route(item_id: int):
    try:
        sale_service.delete_sale_item(item_id)
        return jsonify({"deleted": True, "item_id": item_id}), 200
    except SaleNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to delete sale item")
        return jsonify({"error": "Internal server error"}), 500
