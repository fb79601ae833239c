"""
Order Service — クエリハンドラ (CQRS の Read 側)

注文は OrderView に投影して返す。
"""

from .aggregate import OrderStatus
from .exceptions import OrderNotFound, QuoteNotFound
from .ports import DeliveryServicePort, DeliveryStatus
from .quote import Quote
from .repository import OrderRepository, QuoteRepository
from .saga import OrderView


async def get_order(orders: OrderRepository, order_id: str) -> OrderView:
    order = await orders.find_by_id(order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return OrderView.from_order(order)


async def get_order_by_quote_id(
    orders: OrderRepository, quote_id: str
) -> OrderView | None:
    order = await orders.find_by_quote_id(quote_id)
    return OrderView.from_order(order) if order else None


async def list_orders_for_user(orders: OrderRepository, user_id: str) -> list[OrderView]:
    return [OrderView.from_order(o) for o in await orders.find_by_user_id(user_id)]


async def list_orders_by_status(
    orders: OrderRepository, status: OrderStatus
) -> list[OrderView]:
    return [OrderView.from_order(o) for o in await orders.find_by_status(status)]


async def get_quote(quotes: QuoteRepository, quote_id: str) -> Quote:
    quote = await quotes.find_by_id(quote_id)
    if quote is None:
        raise QuoteNotFound(quote_id)
    return quote


async def list_quotes_for_user(quotes: QuoteRepository, user_id: str) -> list[Quote]:
    return await quotes.find_by_user_id(user_id)


async def get_delivery_status(
    orders: OrderRepository,
    delivery: DeliveryServicePort,
    order_id: str,
) -> DeliveryStatus:
    """配送がまだ開始されていない注文は NOT_STARTED を返す。"""
    order = await orders.find_by_id(order_id)
    if order is None:
        raise OrderNotFound(order_id)
    if not order.delivery_reference:
        return DeliveryStatus(status="NOT_STARTED", delivered=False)
    return await delivery.check_delivery_status(order.delivery_reference)
