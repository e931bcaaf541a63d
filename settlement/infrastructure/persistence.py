"""Write-through persistence for the in-memory repositories.

When persistence is enabled the repositories are hydrated from the
database at startup and their changes are flushed after every request,
so pending payments, cart mappings and orders survive a restart.
"""

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.infrastructure.database import get_session_factory
from settlement.infrastructure.models import (
    CartOrderMappingModel,
    OrderModel,
    PendingStripePaymentModel,
)
from settlement.infrastructure.repositories import (
    CartMappingRepository,
    OrderRepository,
    PendingPaymentRepository,
    get_cart_mapping_repository,
    get_order_repository,
    get_payment_repository,
)

logger = structlog.get_logger()


class SettlementStore:
    """Synchronizes the repositories with the settlement tables.

    Example usage:
        store = SettlementStore()
        await store.load()
        ...
        await store.flush()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        payment_repo: PendingPaymentRepository | None = None,
        mapping_repo: CartMappingRepository | None = None,
        order_repo: OrderRepository | None = None,
    ) -> None:
        """Initialize store.

        Args:
            session_factory: Async session factory; the shared one by default.
            payment_repo: Pending payment repository.
            mapping_repo: Cart mapping repository.
            order_repo: Order repository.
        """
        self.session_factory = session_factory or get_session_factory()
        self.payment_repo = payment_repo or get_payment_repository()
        self.mapping_repo = mapping_repo or get_cart_mapping_repository()
        self.order_repo = order_repo or get_order_repository()

    async def load(self) -> dict[str, int]:
        """Read every stored record into the repositories.

        Returns:
            Number of records loaded per table.
        """
        async with self.session_factory() as session:
            payments = (await session.execute(select(PendingStripePaymentModel))).scalars().all()
            mappings = (await session.execute(select(CartOrderMappingModel))).scalars().all()
            orders = (await session.execute(select(OrderModel))).scalars().all()

        for row in payments:
            self.payment_repo.load(row.to_entity())
        for row in mappings:
            self.mapping_repo.load(row.to_entity())
        for row in orders:
            self.order_repo.load(row.to_entity())

        counts = {"payments": len(payments), "cart_mappings": len(mappings), "orders": len(orders)}
        logger.info("Loaded settlement state from database", **counts)
        return counts

    async def flush(self) -> int:
        """Write pending repository changes in one transaction.

        Changes are put back on failure so the next flush retries them.

        Returns:
            Number of rows written or deleted.

        Raises:
            SQLAlchemyError: If the transaction fails.
        """
        payments, deleted_payments = self.payment_repo.take_changes()
        mappings, _ = self.mapping_repo.take_changes()
        orders, _ = self.order_repo.take_changes()
        total = len(payments) + len(deleted_payments) + len(mappings) + len(orders)
        if total == 0:
            return 0

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for payment in payments:
                        await session.merge(PendingStripePaymentModel.from_entity(payment))
                    if deleted_payments:
                        await session.execute(
                            delete(PendingStripePaymentModel).where(
                                PendingStripePaymentModel.payment_intent_id.in_(deleted_payments)
                            )
                        )
                    for mapping in mappings:
                        await session.merge(CartOrderMappingModel.from_entity(mapping))
                    for order in orders:
                        await session.merge(OrderModel.from_entity(order))
        except Exception:
            logger.exception("Failed to persist settlement state", pending=total)
            self.payment_repo.requeue([p.payment_intent_id for p in payments], deleted_payments)
            self.mapping_repo.requeue([m.cart_uuid for m in mappings], [])
            self.order_repo.requeue([o.id for o in orders], [])
            raise

        logger.debug(
            "Persisted settlement state",
            payments=len(payments),
            deleted_payments=len(deleted_payments),
            cart_mappings=len(mappings),
            orders=len(orders),
        )
        return total


def get_settlement_store() -> SettlementStore:
    """Get a store bound to the repository singletons."""
    return SettlementStore()
