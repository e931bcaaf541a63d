"""Tests for cart-to-order mappings."""

import pytest

from settlement.application.cart_mapping_service import CartMappingService
from settlement.domain.exceptions import CartMappingExistsError


@pytest.fixture
def service() -> CartMappingService:
    return CartMappingService()


class TestCartMappingService:
    """Tests for CartMappingService."""

    def test_create_and_find(self, service) -> None:
        mapping = service.create_mapping("cart-1", "order-1", "ORD-1")

        assert service.find_by_cart_uuid("cart-1") is mapping
        assert service.find_by_order_code("ORD-1") is mapping
        assert mapping.collect_events() == []

    def test_duplicate_cart_rejected(self, service) -> None:
        service.create_mapping("cart-1", "order-1", "ORD-1")

        with pytest.raises(CartMappingExistsError):
            service.create_mapping("cart-1", "order-2", "ORD-2")

    def test_latest_mapping_for_order_code(self, service) -> None:
        service.create_mapping("cart-1", "order-1", "ORD-1")
        latest = service.create_mapping("cart-2", "order-1", "ORD-1")

        assert service.find_by_order_code("ORD-1") is latest

    def test_update_with_payment_intent(self, service) -> None:
        service.create_mapping("cart-1", "order-1", "ORD-1")

        updated = service.update_with_payment_intent("cart-1", "pi_123")

        assert updated.payment_intent_id == "pi_123"
        assert service.update_with_payment_intent("cart-unknown", "pi_123") is None

    def test_mark_completed(self, service) -> None:
        service.create_mapping("cart-1", "order-1", "ORD-1")

        completed = service.mark_completed("cart-1")

        assert completed.is_completed
        assert service.mark_completed("cart-unknown") is None
