import pytest

from app import commands, queries
from app.adapters import DeliveryServiceMock
from app.aggregate import OrderStatus
from app.exceptions import (
    OrderAlreadyExists,
    OrderNotFound,
    QuoteInUse,
    QuoteNotFound,
)
from app.ports import DeliveryRequest

from conftest import build_basket, build_pricing


class TestCreateQuote:
    async def test_quote_is_stored(self, quotes):
        quote = await commands.create_quote(
            quotes, "user-1", build_basket(), build_pricing(), business_partner_id="bp-1"
        )

        stored = await quotes.find_by_id(quote.quote_id)
        assert stored == quote
        assert stored.total_price == build_pricing().total
        assert stored.business_partner_id == "bp-1"


class TestCreateOrderFromQuote:
    async def test_creates_initialized_order(self, orders, quotes, quote):
        order = await commands.create_order_from_quote(orders, quotes, quote.quote_id)

        assert order.status is OrderStatus.INITIALIZED
        assert order.quote_id == quote.quote_id
        assert order.user_id == quote.user_id
        assert await orders.find_by_id(order.order_id) is not None

    async def test_unknown_quote(self, orders, quotes):
        with pytest.raises(QuoteNotFound):
            await commands.create_order_from_quote(orders, quotes, "missing")

    async def test_one_order_per_quote(self, orders, quotes, quote):
        await commands.create_order_from_quote(orders, quotes, quote.quote_id)

        with pytest.raises(OrderAlreadyExists):
            await commands.create_order_from_quote(orders, quotes, quote.quote_id)


class TestDeleteQuote:
    async def test_unused_quote_is_deleted(self, orders, quotes, quote):
        await commands.delete_quote(orders, quotes, quote.quote_id)
        assert await quotes.find_by_id(quote.quote_id) is None

    async def test_quote_in_use_is_kept(self, orders, quotes, quote):
        await commands.create_order_from_quote(orders, quotes, quote.quote_id)

        with pytest.raises(QuoteInUse):
            await commands.delete_quote(orders, quotes, quote.quote_id)
        assert await quotes.find_by_id(quote.quote_id) is not None

    async def test_unknown_quote(self, orders, quotes):
        with pytest.raises(QuoteNotFound):
            await commands.delete_quote(orders, quotes, "missing")


class TestQueries:
    async def test_get_order(self, orders, order):
        view = await queries.get_order(orders, order.order_id)
        assert view.order_id == order.order_id
        assert view.status is OrderStatus.INITIALIZED

    async def test_get_missing_order(self, orders):
        with pytest.raises(OrderNotFound, match="Order missing not found"):
            await queries.get_order(orders, "missing")

    async def test_get_order_by_quote_id(self, orders, order):
        view = await queries.get_order_by_quote_id(orders, order.quote_id)
        assert view.order_id == order.order_id
        assert await queries.get_order_by_quote_id(orders, "missing") is None

    async def test_list_orders(self, orders, order):
        assert [v.order_id for v in await queries.list_orders_for_user(orders, "user-1")] == [
            order.order_id
        ]
        assert await queries.list_orders_for_user(orders, "user-2") == []
        assert len(await queries.list_orders_by_status(orders, OrderStatus.INITIALIZED)) == 1
        assert await queries.list_orders_by_status(orders, OrderStatus.DELIVERED) == []

    async def test_get_quote(self, quotes, quote):
        assert await queries.get_quote(quotes, quote.quote_id) == quote
        with pytest.raises(QuoteNotFound):
            await queries.get_quote(quotes, "missing")

    async def test_list_quotes_for_user(self, quotes, quote):
        assert await queries.list_quotes_for_user(quotes, "user-1") == [quote]


class TestDeliveryStatus:
    async def test_not_started(self, orders, order):
        status = await queries.get_delivery_status(
            orders, DeliveryServiceMock(), order.order_id
        )
        assert status.status == "NOT_STARTED"
        assert not status.delivered

    async def test_asks_delivery_service(self, orders, order):
        delivery = DeliveryServiceMock()
        order.initiate_payment("PAY-1")
        result = await delivery.initiate_delivery(
            DeliveryRequest(order_id=order.order_id, user_id="user-1", items=[], bundles=[])
        )
        order.initiate_delivery(result.delivery_reference)
        await orders.save(order)

        status = await queries.get_delivery_status(orders, delivery, order.order_id)

        assert status.status == "DELIVERED"
        assert status.delivered

    async def test_unknown_order(self, orders):
        with pytest.raises(OrderNotFound):
            await queries.get_delivery_status(orders, DeliveryServiceMock(), "missing")
