# shopguard/models/cart_models.py
"""Cart, line item and catalog models"""

import hashlib
import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class Product(BaseModel):
    """Catalog entry; max_stock is the per-cart quantity ceiling"""
    id: str
    name: str
    price: Decimal
    max_stock: int = Field(gt=0)
    image: Optional[str] = None
    category: Optional[str] = None


class CartItem(BaseModel):
    id: str
    product_id: str
    name: str
    price: Decimal
    quantity: int
    max_quantity: int
    image: Optional[str] = None
    category: Optional[str] = None
    added_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def check_quantity(self) -> "CartItem":
        if not 0 < self.quantity <= self.max_quantity:
            raise ValueError(
                f"quantity {self.quantity} outside 1..{self.max_quantity} for {self.product_id}"
            )
        return self

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


class SecureCart(BaseModel):
    """
    Cart bound to a session (or a guest fingerprint).

    checksum must equal compute_checksum() after every mutation; a mismatch
    means the stored cart was corrupted and gets recreated.
    """
    id: str
    user_id: Optional[str] = None
    session_id: str
    items: List[CartItem] = Field(default_factory=list)
    total: Decimal = Decimal("0.00")
    item_count: int = 0
    currency: str = "USD"
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None
    checksum: str = ""

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    def compute_checksum(self) -> str:
        payload = {
            "items": [
                {
                    "id": item.id,
                    "product_id": item.product_id,
                    "price": str(item.price),
                    "quantity": item.quantity,
                }
                for item in self.items
            ],
            "total": str(self.total),
            "item_count": self.item_count,
        }
        data = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]

    def recalculate(self) -> None:
        """Recompute total, item_count and checksum from the items"""
        self.total = sum((item.line_total for item in self.items), Decimal("0.00"))
        self.item_count = sum(item.quantity for item in self.items)
        self.checksum = self.compute_checksum()

    def verify_integrity(self) -> bool:
        return bool(self.checksum) and self.checksum == self.compute_checksum()

    def find_item(self, item_id: str) -> Optional[CartItem]:
        return next((item for item in self.items if item.id == item_id), None)

    def find_product(self, product_id: str) -> Optional[CartItem]:
        return next((item for item in self.items if item.product_id == product_id), None)


class CartOperationType(str, Enum):
    ADD = "add"
    UPDATE = "update"
    REMOVE = "remove"
    CLEAR = "clear"
    TRANSFER = "transfer"


class CartOperation(BaseModel):
    type: CartOperationType
    product_id: Optional[str] = None
    quantity: Optional[int] = None
    timestamp: datetime
