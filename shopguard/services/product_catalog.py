# shopguard/services/product_catalog.py
"""Static product lookup used for cart pricing and stock ceilings"""

from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from shopguard.models.cart_models import Product

DEFAULT_PRODUCTS: List[Product] = [
    Product(id="1", name="Premium Wireless Headphones", price=Decimal("299.99"), max_stock=15,
            image="https://picsum.photos/300/300?random=1", category="electronics"),
    Product(id="2", name="Smart Fitness Watch", price=Decimal("199.99"), max_stock=8,
            image="https://picsum.photos/300/300?random=2", category="electronics"),
    Product(id="3", name="Bluetooth Speaker", price=Decimal("89.99"), max_stock=15,
            image="https://picsum.photos/300/300?random=3", category="electronics"),
    Product(id="4", name="Wireless Mouse", price=Decimal("49.99"), max_stock=20,
            image="https://picsum.photos/300/300?random=4", category="electronics"),
]


class ProductCatalog:

    def __init__(self, products: Optional[Iterable[Product]] = None):
        source = DEFAULT_PRODUCTS if products is None else products
        self._products: Dict[str, Product] = {p.id: p for p in source}

    def get(self, product_id: str) -> Optional[Product]:
        return self._products.get(product_id)

    def list(self) -> List[Product]:
        return list(self._products.values())
