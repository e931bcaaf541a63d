"""Cart-to-order mapping service.

Keeps the link between a storefront cart UUID and the order created for
it, so the storefront can find its order again after a payment redirect.
"""

import structlog

from settlement.domain.entities import CartOrderMapping
from settlement.domain.exceptions import CartMappingExistsError
from settlement.infrastructure.repositories import (
    CartMappingRepository,
    get_cart_mapping_repository,
)

logger = structlog.get_logger()


class CartMappingService:
    """Creates, finds and completes cart mappings."""

    def __init__(self, mapping_repo: CartMappingRepository | None = None) -> None:
        self.mapping_repo = mapping_repo or get_cart_mapping_repository()

    def create_mapping(
        self,
        cart_uuid: str,
        order_id: str,
        order_code: str,
        payment_intent_id: str | None = None,
    ) -> CartOrderMapping:
        """Map a cart to an order.

        Raises:
            CartMappingExistsError: If the cart is already mapped.
        """
        if self.mapping_repo.get(cart_uuid):
            raise CartMappingExistsError(cart_uuid)
        mapping = CartOrderMapping.create(
            cart_uuid=cart_uuid,
            order_id=order_id,
            order_code=order_code,
            payment_intent_id=payment_intent_id,
        )
        mapping.collect_events()
        self.mapping_repo.save(mapping)
        logger.info(
            "Cart mapping created",
            cart_uuid=cart_uuid,
            order_code=order_code,
            payment_intent_id=payment_intent_id,
        )
        return mapping

    def find_by_cart_uuid(self, cart_uuid: str) -> CartOrderMapping | None:
        return self.mapping_repo.get(cart_uuid)

    def find_by_order_code(self, order_code: str) -> CartOrderMapping | None:
        return self.mapping_repo.get_by_order_code(order_code)

    def update_with_payment_intent(
        self, cart_uuid: str, payment_intent_id: str
    ) -> CartOrderMapping | None:
        """Record the PaymentIntent for a cart; None if the cart is unknown."""
        mapping = self.mapping_repo.get(cart_uuid)
        if mapping is None:
            return None
        mapping.attach_payment_intent(payment_intent_id)
        self.mapping_repo.save(mapping)
        logger.info("Cart mapping linked to payment", cart_uuid=cart_uuid, payment_intent_id=payment_intent_id)
        return mapping

    def mark_completed(self, cart_uuid: str) -> CartOrderMapping | None:
        """Stamp the mapping as completed; None if the cart is unknown."""
        mapping = self.mapping_repo.get(cart_uuid)
        if mapping is None:
            return None
        mapping.mark_completed()
        mapping.collect_events()
        self.mapping_repo.save(mapping)
        logger.info("Cart mapping completed", cart_uuid=cart_uuid, order_code=mapping.order_code)
        return mapping


def get_cart_mapping_service() -> CartMappingService:
    """Get cart mapping service instance."""
    return CartMappingService()
