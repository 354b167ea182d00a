# in-memory product table, one per node
import uuid
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .models import Product, ProductIn, utcnow


class StoreError(Exception):
    """Raised when the store cannot carry out a write."""


class ProductStore:
    def __init__(self):
        # products[id] = Product
        self.products: Dict[str, Product] = {}

    def __len__(self) -> int:
        return len(self.products)

    def __contains__(self, product_id: str) -> bool:
        return product_id in self.products

    # ----------- local writes (CRUD routes) -----------

    def create(self, data: ProductIn) -> Product:
        product = Product(id=str(uuid.uuid4()), created_at=utcnow(), **data.model_dump())
        self.products[product.id] = product
        return product

    def get(self, product_id: str) -> Optional[Product]:
        return self.products.get(product_id)

    def list(self) -> List[Product]:
        return sorted(self.products.values(), key=lambda p: p.created_at, reverse=True)

    def replace(self, product_id: str, data: ProductIn) -> Optional[Product]:
        current = self.products.get(product_id)
        if current is None:
            return None
        product = current.model_copy(update=data.model_dump())
        self.products[product_id] = product
        return product

    def remove(self, product_id: str) -> Optional[Product]:
        return self.products.pop(product_id, None)

    # ----------- replicated writes (idempotent) -----------

    def insert(self, record: Dict[str, Any]) -> bool:
        """
        Insert a replicated product. Returns False (no-op) if the id is
        already present, so duplicate deliveries never create a second row.
        """
        product = self._parse(record)
        if product.id in self.products:
            return False
        self.products[product.id] = product
        return True

    def update(self, record: Dict[str, Any]) -> bool:
        """Overwrite the product with the record's id; zero matching rows is not an error."""
        product = self._parse(record)
        current = self.products.get(product.id)
        if current is None:
            return False
        # created_at stays the one the row was inserted with
        self.products[product.id] = product.model_copy(update={"created_at": current.created_at})
        return True

    def delete(self, record: Dict[str, Any]) -> bool:
        return self.products.pop(self._record_id(record), None) is not None

    @staticmethod
    def _record_id(record: Dict[str, Any]) -> str:
        product_id = record.get("id")
        if not product_id:
            raise KeyError("replicated record has no id")
        return str(product_id)

    @classmethod
    def _parse(cls, record: Dict[str, Any]) -> Product:
        cls._record_id(record)
        data = dict(record)
        if "created_at" not in data and "createdAt" not in data:
            data["created_at"] = utcnow()
        try:
            return Product.model_validate(data)
        except ValidationError as exc:
            raise StoreError(f"product {data['id']} rejected: {exc.error_count()} invalid field(s)") from exc
