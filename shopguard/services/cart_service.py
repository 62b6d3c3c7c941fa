# shopguard/services/cart_service.py
"""
Secure cart store.

Cart ids are never taken from the client: an authenticated cart id comes from
the session (see derive_cart_id), a guest cart id from a hash of the user
agent and forwarded IP. Every mutation re-reads the stored cart under the
store lock, applies the change, recomputes total/item_count/checksum and
writes it back, so the integrity triple is never half-updated.
"""

import hashlib
import logging
import uuid
from collections import deque
from datetime import timedelta
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional, Union

from shopguard.core.clock import SystemClock
from shopguard.core.config import Settings, settings
from shopguard.core.exceptions import ServiceError, cart_error
from shopguard.core.security.audit import AuditLog
from shopguard.core.security.session_security import SessionStore
from shopguard.core.service_base import BaseStore
from shopguard.models.auth_models import AuditEventType, Session
from shopguard.models.cart_models import (
    CartItem,
    CartOperation,
    CartOperationType,
    SecureCart,
)
from shopguard.models.request_context import RequestContext
from shopguard.services.product_catalog import ProductCatalog

logger = logging.getLogger(__name__)

CartRef = Union[SecureCart, str]

MAX_OPERATIONS_PER_CART = 50
GUEST_SESSION_ID = "anonymous"


def _cart_id(cart: CartRef) -> str:
    return cart if isinstance(cart, str) else cart.id


class SecureCartStore(BaseStore):

    def __init__(
        self,
        session_store: SessionStore,
        catalog: Optional[ProductCatalog] = None,
        config: Optional[Settings] = None,
        audit_log: Optional[AuditLog] = None,
        clock: Optional[SystemClock] = None,
    ):
        super().__init__(clock=clock or session_store.clock)
        self.session_store = session_store
        self.catalog = catalog or ProductCatalog()
        self.config = config or settings
        self.audit_log = audit_log or session_store.audit_log

        self._carts: Dict[str, SecureCart] = {}
        self._operations: Dict[str, Deque[CartOperation]] = {}
        self._integrity_failures = 0

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def guest_cart_id(self, ctx: RequestContext) -> str:
        """Stable id for an anonymous client, derived from UA and forwarded IP"""
        raw = ctx.header("user-agent") + ctx.header("x-forwarded-for")
        return f"guest-{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:8]}"

    def _new_cart(self, cart_id: str, user_id: Optional[str], session_id: str) -> SecureCart:
        now = self.clock.now()
        cart = SecureCart(
            id=cart_id,
            user_id=user_id,
            session_id=session_id,
            currency=self.config.CART_CURRENCY,
            created_at=now,
            updated_at=now,
            expires_at=None if user_id else now + timedelta(days=self.config.GUEST_CART_TTL_DAYS),
        )
        cart.recalculate()
        return cart

    def _resolve(
        self,
        cart_id: str,
        user_id: Optional[str],
        session_id: str,
        ctx: Optional[RequestContext] = None,
    ) -> SecureCart:
        """Stored cart for cart_id, recreated if missing, expired or corrupted"""
        now = self.clock.now()
        corrupted = False

        with self._lock:
            cart = self._carts.get(cart_id)
            if cart is not None and cart.expires_at and cart.expires_at <= now:
                logger.info(f"🛒 Guest cart {cart_id} expired, starting fresh")
                cart = None
            elif cart is not None and not cart.verify_integrity():
                self._integrity_failures += 1
                corrupted = True
                cart = None

            if cart is None:
                cart = self._new_cart(cart_id, user_id, session_id)
                self._carts[cart_id] = cart
                self._operations.pop(cart_id, None)
                logger.info(f"🛒 Created {'guest' if user_id is None else 'authenticated'} cart: {cart_id}")
            snapshot = cart.model_copy(deep=True)

        if corrupted:
            logger.error(f"🚨 Cart integrity check failed for cart: {cart_id}")
            self.audit_log.record(
                AuditEventType.SUSPICIOUS_ACTIVITY,
                ctx,
                user_id=user_id,
                session_id=session_id,
                success=False,
                error="cart_integrity_failure",
                metadata={"cart_id": cart_id},
            )
        return snapshot

    def get_or_create(self, ctx: RequestContext) -> SecureCart:
        validation = self.session_store.validate(ctx)
        if validation.is_valid and validation.session:
            return self.get_for_session(validation.session, ctx)
        return self._resolve(self.guest_cart_id(ctx), None, GUEST_SESSION_ID, ctx)

    def get_for_session(self, session: Session, ctx: Optional[RequestContext] = None) -> SecureCart:
        return self._resolve(session.cart_id, session.user_id, session.session_id, ctx)

    def get(self, cart: CartRef) -> Optional[SecureCart]:
        with self._lock:
            stored = self._carts.get(_cart_id(cart))
            return stored.model_copy(deep=True) if stored else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _stored(self, cart_id: str) -> SecureCart:
        """Stored cart for a mutation; caller holds the lock"""
        cart = self._carts.get(cart_id)
        if cart is None:
            raise cart_error("Cart not found", cart_id=cart_id)
        if not cart.verify_integrity():
            self._integrity_failures += 1
            logger.error(f"🚨 Cart integrity check failed for cart: {cart_id}")
            cart = self._new_cart(cart_id, cart.user_id, cart.session_id)
            self._carts[cart_id] = cart
        return cart

    def _commit(self, cart: SecureCart, operation: CartOperation) -> SecureCart:
        """Recompute integrity fields and log the operation; caller holds the lock"""
        cart.updated_at = self.clock.now()
        cart.recalculate()
        ops = self._operations.setdefault(cart.id, deque(maxlen=MAX_OPERATIONS_PER_CART))
        ops.append(operation)
        return cart.model_copy(deep=True)

    def _audit(self, cart: SecureCart, operation: CartOperation) -> None:
        self.audit_log.record(
            AuditEventType.CART_MODIFIED,
            user_id=cart.user_id,
            session_id=None if cart.is_guest else cart.session_id,
            metadata={
                "cart_id": cart.id,
                "operation": operation.type.value,
                "product_id": operation.product_id,
                "quantity": operation.quantity,
            },
        )

    def _check_request_quantity(self, quantity: int, cart_id: str, product_id: Optional[str] = None) -> None:
        cap = self.config.CART_MAX_QUANTITY_PER_REQUEST
        if quantity > cap:
            raise cart_error(f"Quantity per request is limited to {cap}", cart_id=cart_id, product_id=product_id)

    def add_item(self, cart: CartRef, product_id: str, quantity: int = 1) -> SecureCart:
        """
        Add a product, or raise its quantity if it is already in the cart.

        Raises:
            CartError: Unknown product, invalid quantity, or the new quantity
                would exceed the product's stock ceiling. Nothing changes.
        """
        cart_id = _cart_id(cart)
        if not product_id or quantity <= 0:
            raise cart_error("Invalid product or quantity", cart_id=cart_id, product_id=product_id)
        self._check_request_quantity(quantity, cart_id, product_id)

        product = self.catalog.get(product_id)
        if product is None:
            raise cart_error("Product not found", cart_id=cart_id, product_id=product_id)

        now = self.clock.now()
        with self._lock:
            stored = self._stored(cart_id)
            existing = stored.find_product(product_id)

            if existing is not None:
                new_quantity = existing.quantity + quantity
                if new_quantity > existing.max_quantity:
                    raise cart_error(
                        f"Cannot add {quantity} more: exceeds available stock "
                        f"(maximum {existing.max_quantity}, in cart {existing.quantity})",
                        cart_id=cart_id,
                        product_id=product_id,
                    )
                existing.quantity = new_quantity
                existing.updated_at = now
            else:
                if quantity > product.max_stock:
                    raise cart_error(
                        f"Cannot add {quantity}: exceeds available stock (maximum {product.max_stock})",
                        cart_id=cart_id,
                        product_id=product_id,
                    )
                stored.items.append(CartItem(
                    id=str(uuid.uuid4()),
                    product_id=product.id,
                    name=product.name,
                    price=product.price,
                    quantity=quantity,
                    max_quantity=product.max_stock,
                    image=product.image,
                    category=product.category,
                    added_at=now,
                    updated_at=now,
                ))

            operation = CartOperation(
                type=CartOperationType.ADD, product_id=product_id, quantity=quantity, timestamp=now
            )
            result = self._commit(stored, operation)

        self._audit(result, operation)
        logger.info(f"✅ Added to cart {cart_id}: {product.name} x{quantity}")
        return result

    def update_quantity(self, cart: CartRef, item_id: str, quantity: int) -> SecureCart:
        """Set an item's quantity; 0 removes the item"""
        cart_id = _cart_id(cart)
        if quantity < 0:
            raise cart_error("Invalid quantity", cart_id=cart_id)
        self._check_request_quantity(quantity, cart_id)

        now = self.clock.now()
        with self._lock:
            stored = self._stored(cart_id)
            item = stored.find_item(item_id)
            if item is None:
                raise cart_error("Item not found in cart", cart_id=cart_id)

            if quantity == 0:
                stored.items.remove(item)
                op_type = CartOperationType.REMOVE
            else:
                if quantity > item.max_quantity:
                    raise cart_error(
                        f"Quantity {quantity} exceeds available stock (maximum {item.max_quantity})",
                        cart_id=cart_id,
                        product_id=item.product_id,
                    )
                item.quantity = quantity
                item.updated_at = now
                op_type = CartOperationType.UPDATE

            operation = CartOperation(
                type=op_type, product_id=item.product_id,
                quantity=quantity if quantity else None, timestamp=now,
            )
            result = self._commit(stored, operation)

        self._audit(result, operation)
        return result

    def remove_item(self, cart: CartRef, item_id: str) -> SecureCart:
        cart_id = _cart_id(cart)
        now = self.clock.now()
        with self._lock:
            stored = self._stored(cart_id)
            item = stored.find_item(item_id)
            if item is None:
                raise cart_error("Item not found in cart", cart_id=cart_id)
            stored.items.remove(item)
            operation = CartOperation(type=CartOperationType.REMOVE, product_id=item.product_id, timestamp=now)
            result = self._commit(stored, operation)

        self._audit(result, operation)
        return result

    def clear(self, cart: CartRef) -> SecureCart:
        cart_id = _cart_id(cart)
        now = self.clock.now()
        with self._lock:
            stored = self._stored(cart_id)
            stored.items = []
            operation = CartOperation(type=CartOperationType.CLEAR, timestamp=now)
            result = self._commit(stored, operation)

        self._audit(result, operation)
        logger.info(f"🛒 Cleared cart {cart_id}")
        return result

    def transfer_guest_cart(self, guest_cart: CartRef, authenticated_cart: CartRef) -> bool:
        """
        Merge a guest cart into a user's cart after login.

        Quantities are summed and clamped to each item's ceiling, merged items
        get fresh ids, and the guest cart is deleted. Returns False (and
        changes nothing) if the guest cart is missing or empty, so calling it
        twice has the same effect as calling it once. An expired or corrupted
        guest cart counts as missing: it is dropped and nothing is merged.
        """
        guest_id = _cart_id(guest_cart)
        user_cart_id = _cart_id(authenticated_cart)
        if guest_id == user_cart_id:
            return False

        now = self.clock.now()
        corrupted = False
        result = operation = None
        with self._lock:
            guest = self._carts.get(guest_id)
            if guest is not None and guest.expires_at and guest.expires_at <= now:
                logger.info(f"🛒 Guest cart {guest_id} expired, nothing to transfer")
                guest = None
            elif guest is not None and not guest.verify_integrity():
                self._integrity_failures += 1
                corrupted = True
                guest = None

            if guest is None:
                self._carts.pop(guest_id, None)
                self._operations.pop(guest_id, None)
            elif guest.items:
                if user_cart_id not in self._carts:
                    raise cart_error("Cart not found", cart_id=user_cart_id)
                target = self._stored(user_cart_id)

                moved = 0
                for guest_item in guest.items:
                    existing = target.find_product(guest_item.product_id)
                    if existing is not None:
                        existing.quantity = min(existing.quantity + guest_item.quantity, existing.max_quantity)
                        existing.updated_at = now
                    else:
                        target.items.append(guest_item.model_copy(update={
                            "id": str(uuid.uuid4()),
                            "quantity": min(guest_item.quantity, guest_item.max_quantity),
                            "updated_at": now,
                        }))
                    moved += 1

                operation = CartOperation(type=CartOperationType.TRANSFER, quantity=moved, timestamp=now)
                result = self._commit(target, operation)
                del self._carts[guest_id]
                self._operations.pop(guest_id, None)

        if corrupted:
            logger.error(f"🚨 Cart integrity check failed for guest cart: {guest_id}")
            self.audit_log.record(
                AuditEventType.SUSPICIOUS_ACTIVITY,
                success=False,
                error="cart_integrity_failure",
                metadata={"cart_id": guest_id, "operation": CartOperationType.TRANSFER.value},
            )
        if result is None:
            return False

        self._audit(result, operation)
        logger.info(f"✅ Transferred {operation.quantity} items from guest cart {guest_id} to {user_cart_id}")
        return True

    # ------------------------------------------------------------------
    # Maintenance & monitoring
    # ------------------------------------------------------------------

    def sweep_expired(self) -> int:
        """Drop expired guest carts and carts whose session is gone"""
        now = self.clock.now()
        with self._lock:
            doomed = []
            for cart_id, cart in self._carts.items():
                if cart.is_guest:
                    if cart.expires_at and cart.expires_at <= now:
                        doomed.append(cart_id)
                elif self.session_store.get(cart.session_id) is None:
                    doomed.append(cart_id)
            for cart_id in doomed:
                del self._carts[cart_id]
                self._operations.pop(cart_id, None)

        if doomed:
            logger.info(f"🧹 Cleaned up {len(doomed)} stale carts")
        return len(doomed)

    def get_operations(self, cart: CartRef) -> List[CartOperation]:
        with self._lock:
            return list(self._operations.get(_cart_id(cart), ()))

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            carts = list(self._carts.values())
            total_value = sum((c.total for c in carts), Decimal("0.00"))
            return {
                "total_carts": len(carts),
                "guest_carts": sum(1 for c in carts if c.is_guest),
                "user_carts": sum(1 for c in carts if not c.is_guest),
                "total_items": sum(c.item_count for c in carts),
                "total_value": str(total_value),
                "average_cart_value": str(
                    (total_value / len(carts)).quantize(Decimal("0.01")) if carts else Decimal("0.00")
                ),
                "integrity_failures": self._integrity_failures,
            }


# Global instance - initialized in main.py
cart_store: Optional[SecureCartStore] = None


def get_cart_store() -> SecureCartStore:
    """
    Get the global cart store instance.

    Follows FastAPI dependency injection pattern.
    """
    if cart_store is None:
        raise ServiceError("SecureCartStore not initialized", service_name="SecureCartStore")
    return cart_store


def init_cart_store(
    session_store: SessionStore,
    catalog: Optional[ProductCatalog] = None,
    config: Optional[Settings] = None,
) -> SecureCartStore:
    """Initialize the global cart store"""
    global cart_store
    cart_store = SecureCartStore(session_store, catalog=catalog, config=config)
    logger.info("🛒 Initialized SecureCartStore")
    return cart_store
