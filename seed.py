"""
Idempotent bootstrap: the administrator account and a starter catalog.
"""

import logging

import config
from auth import hash_password
from database import get_store
from products import add_product
from users import ensure_admin

logger = logging.getLogger(__name__)

STARTER_CATALOG = [
    {
        "name": "Ceramic Coffee Mug",
        "image_url": "https://images.unsplash.com/photo-1514228742587-6b1558fcca3d",
        "mrp": 500.0,
        "sale_price": 400.0,
        "details": "350ml glazed stoneware mug, dishwasher safe",
        "category": "Home & Kitchen",
        "in_stock": True,
    },
    {
        "name": "Wireless Headphones",
        "image_url": "https://images.unsplash.com/photo-1512314889357-e157c22f938d",
        "mrp": 179.99,
        "sale_price": 129.99,
        "details": "Noise-cancelling over-ear headphones",
        "category": "Electronics",
        "in_stock": True,
    },
    {
        "name": "Organic Face Serum",
        "image_url": "https://images.unsplash.com/photo-1611930022073-b7a4ba5fcccd",
        "mrp": 30.0,
        "sale_price": 24.5,
        "details": "Vitamin C brightening serum, 30ml",
        "category": "Beauty",
        "in_stock": True,
    },
]


def seed_admin():
    return ensure_admin(config.ADMIN_EMAIL, hash_password(config.ADMIN_PASSWORD))


def seed_catalog() -> int:
    """Add the starter products when the catalog is empty; returns how many were added."""
    if get_store().count_products() > 0:
        return 0
    for product in STARTER_CATALOG:
        add_product(product)
    logger.info("Seeded %d starter products", len(STARTER_CATALOG))
    return len(STARTER_CATALOG)


def bootstrap(with_catalog: bool = config.SEED_CATALOG):
    seed_admin()
    if with_catalog:
        seed_catalog()
