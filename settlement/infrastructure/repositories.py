"""In-memory repositories for the settlement aggregates.

The service keeps its working state in process. Each repository records
which keys were saved or deleted since the last ``take_changes`` call so
that ``settlement.infrastructure.persistence.SettlementStore`` can write
them through to the database when persistence is enabled.
"""

from datetime import datetime
from typing import Generic, TypeVar

from settlement.domain.entities import CartOrderMapping, Order, PendingPayment
from settlement.domain.state_machines import PaymentStatus

T = TypeVar("T")


class _ChangeTracking(Generic[T]):
    """Bookkeeping of saved and deleted keys."""

    def __init__(self) -> None:
        self._saved: set[str] = set()
        self._deleted: set[str] = set()

    def _mark_saved(self, key: str) -> None:
        self._deleted.discard(key)
        self._saved.add(key)

    def _mark_deleted(self, key: str) -> None:
        self._saved.discard(key)
        self._deleted.add(key)

    def _lookup(self, key: str) -> T | None:
        raise NotImplementedError

    def take_changes(self) -> tuple[list[T], list[str]]:
        """Drain the pending changes.

        Returns:
            Entities saved and keys deleted since the previous call.
        """
        saved = [e for e in (self._lookup(k) for k in sorted(self._saved)) if e is not None]
        deleted = sorted(self._deleted)
        self._saved.clear()
        self._deleted.clear()
        return saved, deleted

    def requeue(self, saved: list[str], deleted: list[str]) -> None:
        """Put back changes whose write failed, unless newer ones replaced them."""
        for key in saved:
            if key not in self._deleted:
                self._saved.add(key)
        for key in deleted:
            if key not in self._saved:
                self._deleted.add(key)

    @property
    def has_changes(self) -> bool:
        return bool(self._saved or self._deleted)


# ============================================================================
# Pending Payments
# ============================================================================


class PendingPaymentRepository(_ChangeTracking[PendingPayment]):
    """In-memory store of pending payments keyed by PaymentIntent id."""

    def __init__(self) -> None:
        super().__init__()
        self._payments: dict[str, PendingPayment] = {}

    def save(self, payment: PendingPayment) -> None:
        self._payments[payment.payment_intent_id] = payment
        self._mark_saved(payment.payment_intent_id)

    def load(self, payment: PendingPayment) -> None:
        """Add a stored payment without marking it changed."""
        self._payments[payment.payment_intent_id] = payment

    def get(self, payment_intent_id: str) -> PendingPayment | None:
        return self._payments.get(payment_intent_id)

    def delete(self, payment_intent_id: str) -> bool:
        removed = self._payments.pop(payment_intent_id, None) is not None
        if removed:
            self._mark_deleted(payment_intent_id)
        return removed

    def _lookup(self, key: str) -> PendingPayment | None:
        return self._payments.get(key)

    def list_all(self) -> list[PendingPayment]:
        """All payments, newest first."""
        return sorted(self._payments.values(), key=lambda p: p.created_at, reverse=True)

    def list_by_status(self, status: PaymentStatus) -> list[PendingPayment]:
        return [p for p in self.list_all() if p.status == status]

    def list_by_order_code(self, order_code: str) -> list[PendingPayment]:
        return [p for p in self.list_all() if p.order_code == order_code]

    def created_between(self, start: datetime, end: datetime) -> list[PendingPayment]:
        return [p for p in self.list_all() if start <= p.created_at <= end]

    def count(self) -> int:
        return len(self._payments)


# ============================================================================
# Cart Order Mappings
# ============================================================================


class CartMappingRepository(_ChangeTracking[CartOrderMapping]):
    """In-memory store of cart mappings keyed by cart UUID."""

    def __init__(self) -> None:
        super().__init__()
        self._mappings: dict[str, CartOrderMapping] = {}

    def save(self, mapping: CartOrderMapping) -> None:
        self._mappings[mapping.cart_uuid] = mapping
        self._mark_saved(mapping.cart_uuid)

    def load(self, mapping: CartOrderMapping) -> None:
        self._mappings[mapping.cart_uuid] = mapping

    def get(self, cart_uuid: str) -> CartOrderMapping | None:
        return self._mappings.get(cart_uuid)

    def _lookup(self, key: str) -> CartOrderMapping | None:
        return self._mappings.get(key)

    def get_by_order_code(self, order_code: str) -> CartOrderMapping | None:
        """Most recent mapping for an order code."""
        matches = [m for m in self._mappings.values() if m.order_code == order_code]
        if not matches:
            return None
        return max(matches, key=lambda m: m.created_at)


# ============================================================================
# Orders
# ============================================================================


class OrderRepository(_ChangeTracking[Order]):
    """In-memory order book indexed by id and by code."""

    def __init__(self) -> None:
        super().__init__()
        self._orders: dict[str, Order] = {}
        self._by_code: dict[str, str] = {}

    def save(self, order: Order) -> None:
        self.load(order)
        self._mark_saved(order.id)

    def load(self, order: Order) -> None:
        self._orders[order.id] = order
        self._by_code[order.code] = order.id

    def get(self, order_id: str) -> Order | None:
        return self._orders.get(order_id)

    def _lookup(self, key: str) -> Order | None:
        return self._orders.get(key)

    def get_by_code(self, code: str) -> Order | None:
        order_id = self._by_code.get(code)
        if order_id:
            return self._orders.get(order_id)
        return None


# ============================================================================
# Repository Singletons
# ============================================================================


_payment_repo: PendingPaymentRepository | None = None
_mapping_repo: CartMappingRepository | None = None
_order_repo: OrderRepository | None = None


def get_payment_repository() -> PendingPaymentRepository:
    """Get pending payment repository singleton."""
    global _payment_repo
    if _payment_repo is None:
        _payment_repo = PendingPaymentRepository()
    return _payment_repo


def get_cart_mapping_repository() -> CartMappingRepository:
    """Get cart mapping repository singleton."""
    global _mapping_repo
    if _mapping_repo is None:
        _mapping_repo = CartMappingRepository()
    return _mapping_repo


def get_order_repository() -> OrderRepository:
    """Get order repository singleton."""
    global _order_repo
    if _order_repo is None:
        _order_repo = OrderRepository()
    return _order_repo


def reset_repositories() -> None:
    """Reset all repositories (for testing)."""
    global _payment_repo, _mapping_repo, _order_repo
    _payment_repo = PendingPaymentRepository()
    _mapping_repo = CartMappingRepository()
    _order_repo = OrderRepository()
