# Overview: Read-only store/product lookups consumed from the catalog collaborator.

from __future__ import annotations

from ..errors import ValidationError
from ..models import Product, Store


class CatalogDirectory:
    """Validates catalog ids before the core mutates anything keyed on them."""

    def __init__(self, db):
        self.db = db

    def require_store(self, store_id: int) -> Store:
        store = self.db.session.get(Store, store_id)
        if store is None:
            raise ValidationError(f"Store {store_id} not found", details={"store_id": store_id})
        if not store.is_active:
            raise ValidationError(f"Store {store_id} is inactive", details={"store_id": store_id})
        return store

    def require_product(self, product_id: int) -> Product:
        product = self.db.session.get(Product, product_id)
        if product is None:
            raise ValidationError(f"Product {product_id} not found", details={"product_id": product_id})
        if not product.is_active:
            raise ValidationError(f"Product {product_id} is inactive", details={"product_id": product_id})
        return product

    def require_products(self, product_ids) -> dict[int, Product]:
        return {pid: self.require_product(pid) for pid in dict.fromkeys(product_ids)}
