"""
Product repository: create, list, fetch, search and update the catalog.
"""

import logging
from typing import Iterable, List, Optional

from pydantic import ValidationError

from database import get_store
from errors import NotFound, ValidationFailure
from schemas import Product, ProductCreate, new_id, utcnow

logger = logging.getLogger(__name__)


def _validate(model, data):
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ValidationFailure(f"Invalid product data: {exc.errors()[0]['msg']}") from exc


def _record(product: Product) -> dict:
    return product.model_dump(exclude={"discount_percent"})


def add_product(data) -> Product:
    """Store a new product with a generated id and creation time."""
    payload = data.model_dump() if isinstance(data, ProductCreate) else dict(data)
    payload.pop("discount_percent", None)
    fields = _validate(ProductCreate, payload)
    if fields.sale_price > fields.mrp:
        logger.warning("Product %r sells above its list price (%s > %s)", fields.name, fields.sale_price, fields.mrp)
    product = Product(id=new_id(), created_at=utcnow(), **fields.model_dump(exclude={"discount_percent"}))
    get_store().insert_product(_record(product))
    logger.info("Added product %s (%s)", product.id, product.name)
    return product


def add_products(rows: Iterable[dict]) -> List[Product]:
    """Bulk add, as done by the admin CSV import; rows without a name or image are skipped."""
    added = []
    for row in rows:
        if not row.get("name") or not row.get("image_url"):
            continue
        added.append(add_product(row))
    logger.info("Imported %d products", len(added))
    return added


def get_products() -> List[Product]:
    return [Product.model_validate(p) for p in get_store().list_products()]


def get_product_by_id(product_id: str) -> Optional[Product]:
    doc = get_store().find_product(product_id)
    return Product.model_validate(doc) if doc else None


def search_products(query: str) -> List[Product]:
    """Case-insensitive substring match over name, details and category."""
    return [Product.model_validate(p) for p in get_store().search_products(query)]


def filter_products(query: Optional[str] = None, category: Optional[str] = None) -> List[Product]:
    """Catalog listing as the storefront shows it: blank query means everything."""
    if query and query.strip():
        products = search_products(query.strip())
    else:
        products = get_products()
    if category:
        products = [p for p in products if p.category == category]
    return products


def update_product(product) -> Product:
    """Replace every mutable field of an existing product."""
    payload = product.model_dump() if isinstance(product, Product) else dict(product)
    payload.pop("discount_percent", None)
    if not payload.get("id"):
        raise ValidationFailure("Product id is required")
    store = get_store()
    current = store.find_product(payload["id"])
    if current is None:
        raise NotFound(f"Product {payload['id']} not found")
    payload["created_at"] = current["created_at"]
    updated = _validate(Product, payload)
    if not store.replace_product(_record(updated)):
        raise NotFound(f"Product {updated.id} not found")
    logger.info("Updated product %s", updated.id)
    return updated
