"""
Order Service — コマンドハンドラ (CQRS の Write 側)

見積もりの登録と、見積もりからの注文作成。
注文の状態遷移そのものは Saga (saga.py) だけが行う。
"""

import logging

from .aggregate import Order
from .exceptions import OrderAlreadyExists, QuoteInUse, QuoteNotFound
from .quote import BasketSnapshot, PricingSnapshot, Quote
from .repository import OrderRepository, QuoteRepository

logger = logging.getLogger(__name__)


async def create_quote(
    quotes: QuoteRepository,
    user_id: str,
    basket_snapshot: BasketSnapshot,
    pricing_snapshot: PricingSnapshot,
    business_partner_id: str | None = None,
) -> Quote:
    """
    見積もり作成コマンド（価格計算を終えたチェックアウトから呼ばれる）

    合計金額と通貨は価格スナップショットの値をそのまま使う。
    """
    quote = Quote.create(
        user_id,
        basket_snapshot,
        pricing_snapshot,
        business_partner_id=business_partner_id,
    )
    quote = await quotes.save(quote)
    logger.info(
        "Quote %s created for user %s: %s %s",
        quote.quote_id,
        user_id,
        quote.total_price,
        quote.currency_code,
    )
    return quote


async def create_order_from_quote(
    orders: OrderRepository,
    quotes: QuoteRepository,
    quote_id: str,
) -> Order:
    """
    注文作成コマンド

    1. 見積もりが存在することを確認
    2. 同じ見積もりから作られた注文が無いことを確認（見積もりと注文は 1:1）
    3. INITIALIZED の注文を保存
    """
    quote = await quotes.find_by_id(quote_id)
    if quote is None:
        raise QuoteNotFound(quote_id)

    if await orders.find_by_quote_id(quote_id) is not None:
        raise OrderAlreadyExists(quote_id)

    order = Order.create_from_quote(
        quote.quote_id, quote.user_id, quote.business_partner_id
    )
    order = await orders.save(order)
    logger.info("Order %s created from quote %s", order.order_id, quote_id)
    return order


async def delete_quote(
    orders: OrderRepository,
    quotes: QuoteRepository,
    quote_id: str,
) -> None:
    """注文から参照されている見積もりは削除できない。"""
    if await quotes.find_by_id(quote_id) is None:
        raise QuoteNotFound(quote_id)
    if await orders.find_by_quote_id(quote_id) is not None:
        raise QuoteInUse(quote_id)
    await quotes.delete(quote_id)
    logger.info("Quote %s deleted", quote_id)
