from __future__ import annotations

from sqlalchemy import func, or_

from stockroute.errors import NotFoundError
from stockroute.extensions import db
from stockroute.models import Product
from stockroute.services.concurrency import lock_for_update, run_with_retry
from stockroute.validation import ModelValidationPolicy, enforce_rules_product, validate_payload

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "product_name", "product_code", "product_category", "brand",
        "unit", "notes", "is_active", "project_id",
    },
    required_on_create={"product_name"},
)


def get_product(product_id) -> Product | None:
    try:
        product_id = int(product_id)
    except (TypeError, ValueError):
        return None
    return db.session.get(Product, product_id)


def list_products(
    *,
    project_id: int | None = None,
    category: str | None = None,
    search: str | None = None,
    active: bool | None = None,
) -> tuple[list[Product], dict, list[str]]:
    """Products plus {total, active, categories} stats and the distinct category list."""
    query = db.session.query(Product)
    if project_id is not None:
        query = query.filter(Product.project_id == project_id)
    if category:
        query = query.filter(Product.product_category == category)
    if active is not None:
        query = query.filter(Product.is_active.is_(active))
    if search:
        like = f"%{search.strip().lower()}%"
        query = query.filter(or_(
            func.lower(Product.product_name).like(like),
            func.lower(Product.product_code).like(like),
        ))

    products = query.order_by(Product.product_name.asc(), Product.id.asc()).all()
    categories = sorted({p.product_category for p in products if p.product_category})
    stats = {
        "total": len(products),
        "active": sum(1 for p in products if p.is_active),
        "categories": len(categories),
    }
    return products, stats, categories


def create_product(payload: dict) -> Product:
    def _op():
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
        enforce_rules_product(patch)
        product = Product(**patch)
        db.session.add(product)
        db.session.flush()
        return product

    return run_with_retry(_op)


def update_product(product_id: int, payload: dict) -> Product:
    def _op():
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if not product:
            raise NotFoundError("Product not found")
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
        enforce_rules_product(patch)
        for k, v in patch.items():
            setattr(product, k, v)
        db.session.flush()
        return product

    return run_with_retry(_op)
