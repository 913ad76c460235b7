# Overview: Product Catalog API routes; parses input and returns JSON responses.

from flask import Blueprint, current_app, jsonify, request

from stockroute.decorators import require_actor
from stockroute.errors import NotFoundError, TransferWorkflowError, error_response
from stockroute.extensions import db
from stockroute.services import product_service
from stockroute.services.concurrency import commit_with_retry


products_bp = Blueprint("transfer_products", __name__, url_prefix="/api/transfers/products")


@products_bp.get("")
@require_actor
def list_products():
    active = request.args.get("active")
    products, stats, categories = product_service.list_products(
        project_id=request.args.get("project_id", type=int),
        category=request.args.get("category") or None,
        search=request.args.get("search") or None,
        active=None if active in (None, "") else active.lower() in ("1", "true", "yes"),
    )
    return jsonify({
        "products": [p.to_dict() for p in products],
        "stats": stats,
        "categories": categories,
    }), 200


@products_bp.post("")
@require_actor
def create_product():
    try:
        product = product_service.create_product(request.get_json(silent=True))
        commit_with_retry()
        return jsonify({"product": product.to_dict()}), 201
    except TransferWorkflowError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/<int:product_id>")
@require_actor
def get_product(product_id: int):
    product = product_service.get_product(product_id)
    if not product:
        return error_response(NotFoundError("Product not found"))
    return jsonify({"product": product.to_dict()}), 200


@products_bp.patch("/<int:product_id>")
@require_actor
def update_product(product_id: int):
    try:
        product = product_service.update_product(product_id, request.get_json(silent=True))
        commit_with_retry()
        return jsonify({"product": product.to_dict()}), 200
    except TransferWorkflowError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update product")
        return jsonify({"error": "Internal server error"}), 500
