"""Tests for the local order book."""

import pytest

from settlement.application.order_service import OrderService
from settlement.domain.state_machines import OrderPaymentState, OrderState


class TestCreateOrder:
    """Tests for OrderService.create_order."""

    @pytest.mark.asyncio
    async def test_create(self) -> None:
        service = OrderService()

        result = await service.create_order("ORD-1", 11000, currency="EUR", customer_email="a@b.c")

        assert result.success
        assert result.order.currency == "eur"
        assert service.get_by_code("ORD-1") is result.order
        assert service.get_by_id(result.order.id) is result.order

    @pytest.mark.asyncio
    async def test_create_arranging_payment(self) -> None:
        result = await OrderService().create_order(
            "ORD-1", 11000, state=OrderState.ARRANGING_PAYMENT
        )
        assert result.order.state == OrderState.ARRANGING_PAYMENT

    @pytest.mark.asyncio
    async def test_duplicate_code(self) -> None:
        service = OrderService()
        await service.create_order("ORD-1", 11000)

        result = await service.create_order("ORD-1", 5000)

        assert not result.success
        assert result.error_code == "ORDER_EXISTS"

    @pytest.mark.asyncio
    async def test_invalid_initial_state(self) -> None:
        result = await OrderService().create_order("ORD-1", 11000, state=OrderState.PAYMENT_SETTLED)

        assert not result.success
        assert result.error_code == "INVALID_ORDER"
        assert OrderService().get_by_code("ORD-1") is None

    @pytest.mark.asyncio
    async def test_negative_total(self) -> None:
        result = await OrderService().create_order("ORD-1", -1)
        assert result.error_code == "INVALID_ORDER"


class TestTransitions:
    """Tests for OrderService.transition_to_state."""

    @pytest.mark.asyncio
    async def test_valid_transition(self) -> None:
        service = OrderService()
        order = (await service.create_order("ORD-1", 11000)).order

        result = await service.transition_to_state(order, OrderState.ARRANGING_PAYMENT)

        assert result.success
        assert result.from_state == OrderState.ADDING_ITEMS
        assert order.state == OrderState.ARRANGING_PAYMENT

    @pytest.mark.asyncio
    async def test_same_state_is_a_no_op(self) -> None:
        service = OrderService()
        order = (await service.create_order("ORD-1", 11000)).order

        result = await service.transition_to_state(order, OrderState.ADDING_ITEMS)

        assert result.success

    @pytest.mark.asyncio
    async def test_invalid_transition(self) -> None:
        service = OrderService()
        order = (await service.create_order("ORD-1", 11000)).order

        result = await service.transition_to_state(order, OrderState.PAYMENT_SETTLED)

        assert not result.success
        assert result.error_code == "INVALID_TRANSITION"
        assert order.state == OrderState.ADDING_ITEMS


class TestAddPayment:
    """Tests for OrderService.add_payment."""

    @pytest.mark.asyncio
    async def test_add_payment(self) -> None:
        service = OrderService()
        order = (await service.create_order("ORD-1", 11000, state=OrderState.ARRANGING_PAYMENT)).order

        result = await service.add_payment(
            order, "stripe", 11000, OrderPaymentState.AUTHORIZED, transaction_id="pi_1"
        )

        assert result.success
        assert order.payments == [result.payment]

    @pytest.mark.asyncio
    async def test_order_not_accepting_payments(self) -> None:
        service = OrderService()
        order = (await service.create_order("ORD-1", 11000)).order

        result = await service.add_payment(order, "stripe", 11000, OrderPaymentState.SETTLED)

        assert not result.success
        assert result.error_code == "ORDER_STATE_INVALID"
        assert result.error == "Order ORD-1 cannot accept payments in state AddingItems"
        assert order.payments == []
