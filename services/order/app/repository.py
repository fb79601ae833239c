"""
Order Service — リポジトリ

注文と見積もりの永続化。Saga は契約 (OrderRepository / QuoteRepository) だけを知っていて、
実装は PostgreSQL 版 (Sql*) とテスト用のインメモリ版 (InMemory*) がある。

save は毎回コミットする。Saga の各ステップはここで永続化されてから次へ進むので、
プロセスが途中で落ちても永続化された注文から再開できる。
"""

import copy
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from sqlalchemy import DateTime, Numeric, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Order, OrderStatus
from .quote import BasketSnapshot, PricingSnapshot, Quote

TIMESTAMP = DateTime(timezone=True)
MONEY = Numeric(10, 2)


# ── 契約 ─────────────────────────────────────────


class OrderRepository(ABC):
    @abstractmethod
    async def find_by_id(self, order_id: str) -> Order | None: ...

    @abstractmethod
    async def find_by_quote_id(self, quote_id: str) -> Order | None: ...

    @abstractmethod
    async def find_by_user_id(self, user_id: str) -> list[Order]: ...

    @abstractmethod
    async def find_by_status(self, status: OrderStatus) -> list[Order]: ...

    @abstractmethod
    async def save(self, order: Order) -> Order: ...

    @abstractmethod
    async def delete(self, order_id: str) -> None: ...


class QuoteRepository(ABC):
    @abstractmethod
    async def find_by_id(self, quote_id: str) -> Quote | None: ...

    @abstractmethod
    async def find_by_user_id(self, user_id: str) -> list[Quote]: ...

    @abstractmethod
    async def save(self, quote: Quote) -> Quote: ...

    @abstractmethod
    async def delete(self, quote_id: str) -> None: ...


# ── インメモリ実装 ────────────────────────────────


class InMemoryOrderRepository(OrderRepository):
    """
    保存時・読み出し時にコピーを取るので、呼び出し側が手元の Order を
    いじっても save するまで「永続化された状態」は変わらない。
    """

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}

    async def find_by_id(self, order_id: str) -> Order | None:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def find_by_quote_id(self, quote_id: str) -> Order | None:
        for order in self._orders.values():
            if order.quote_id == quote_id:
                return copy.deepcopy(order)
        return None

    async def find_by_user_id(self, user_id: str) -> list[Order]:
        return [
            copy.deepcopy(o)
            for o in sorted(self._orders.values(), key=lambda o: o.created_at)
            if o.user_id == user_id
        ]

    async def find_by_status(self, status: OrderStatus) -> list[Order]:
        return [
            copy.deepcopy(o)
            for o in sorted(self._orders.values(), key=lambda o: o.created_at)
            if o.status is status
        ]

    async def save(self, order: Order) -> Order:
        self._orders[order.order_id] = copy.deepcopy(order)
        return copy.deepcopy(order)

    async def delete(self, order_id: str) -> None:
        self._orders.pop(order_id, None)


class InMemoryQuoteRepository(QuoteRepository):
    def __init__(self) -> None:
        self._quotes: dict[str, Quote] = {}

    async def find_by_id(self, quote_id: str) -> Quote | None:
        return self._quotes.get(quote_id)

    async def find_by_user_id(self, user_id: str) -> list[Quote]:
        return sorted(
            (q for q in self._quotes.values() if q.user_id == user_id),
            key=lambda q: q.created_at,
        )

    async def save(self, quote: Quote) -> Quote:
        # Quote は不変なので上書きしない
        return self._quotes.setdefault(quote.quote_id, quote)

    async def delete(self, quote_id: str) -> None:
        self._quotes.pop(quote_id, None)


# ── SQL 実装 ─────────────────────────────────────


def _utc(value: datetime | str) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def _write(session: AsyncSession, statement, params: dict) -> None:
    """書き込んでコミットする。失敗したらロールバックしてセッションを使える状態に戻す。"""
    try:
        await session.execute(statement, params)
        await session.commit()
    except Exception:
        await session.rollback()
        raise


SELECT_ORDERS = """
    SELECT order_id, user_id, quote_id, business_partner_id, status,
           payment_reference, delivery_reference, failure_reason,
           created_at, updated_at
    FROM orders
"""


def _select_orders(where: str):
    return text(f"{SELECT_ORDERS} {where}").columns(
        created_at=TIMESTAMP, updated_at=TIMESTAMP
    )


def _row_to_order(row) -> Order:
    return Order(
        order_id=row.order_id,
        user_id=row.user_id,
        quote_id=row.quote_id,
        business_partner_id=row.business_partner_id,
        status=OrderStatus(row.status),
        payment_reference=row.payment_reference,
        delivery_reference=row.delivery_reference,
        failure_reason=row.failure_reason,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


class SqlOrderRepository(OrderRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_by_id(self, order_id: str) -> Order | None:
        result = await self.session.execute(
            _select_orders("WHERE order_id = :order_id"), {"order_id": order_id}
        )
        row = result.fetchone()
        return _row_to_order(row) if row else None

    async def find_by_quote_id(self, quote_id: str) -> Order | None:
        result = await self.session.execute(
            _select_orders("WHERE quote_id = :quote_id"), {"quote_id": quote_id}
        )
        row = result.fetchone()
        return _row_to_order(row) if row else None

    async def find_by_user_id(self, user_id: str) -> list[Order]:
        result = await self.session.execute(
            _select_orders("WHERE user_id = :user_id ORDER BY created_at ASC"),
            {"user_id": user_id},
        )
        return [_row_to_order(row) for row in result.fetchall()]

    async def find_by_status(self, status: OrderStatus) -> list[Order]:
        result = await self.session.execute(
            _select_orders("WHERE status = :status ORDER BY created_at ASC"),
            {"status": OrderStatus(status).value},
        )
        return [_row_to_order(row) for row in result.fetchall()]

    async def save(self, order: Order) -> Order:
        """order_id で UPSERT してコミットする。"""
        await _write(
            self.session,
            text("""
                INSERT INTO orders
                    (order_id, user_id, quote_id, business_partner_id, status,
                     payment_reference, delivery_reference, failure_reason,
                     created_at, updated_at)
                VALUES
                    (:order_id, :user_id, :quote_id, :business_partner_id, :status,
                     :payment_reference, :delivery_reference, :failure_reason,
                     :created_at, :updated_at)
                ON CONFLICT (order_id) DO UPDATE SET
                    status = excluded.status,
                    payment_reference = excluded.payment_reference,
                    delivery_reference = excluded.delivery_reference,
                    failure_reason = excluded.failure_reason,
                    updated_at = excluded.updated_at
            """).bindparams(
                bindparam("created_at", type_=TIMESTAMP),
                bindparam("updated_at", type_=TIMESTAMP),
            ),
            {
                "order_id": order.order_id,
                "user_id": order.user_id,
                "quote_id": order.quote_id,
                "business_partner_id": order.business_partner_id,
                "status": order.status.value,
                "payment_reference": order.payment_reference,
                "delivery_reference": order.delivery_reference,
                "failure_reason": order.failure_reason,
                "created_at": order.created_at,
                "updated_at": order.updated_at,
            },
        )
        return order

    async def delete(self, order_id: str) -> None:
        await _write(
            self.session,
            text("DELETE FROM orders WHERE order_id = :order_id"),
            {"order_id": order_id},
        )


SELECT_QUOTES = """
    SELECT quote_id, user_id, business_partner_id, total_price, currency_code,
           basket_snapshot, pricing_snapshot, created_at
    FROM quotes
"""


def _select_quotes(where: str):
    return text(f"{SELECT_QUOTES} {where}").columns(
        total_price=MONEY, created_at=TIMESTAMP
    )


def _row_to_quote(row) -> Quote:
    return Quote(
        quote_id=row.quote_id,
        user_id=row.user_id,
        business_partner_id=row.business_partner_id,
        total_price=row.total_price,
        currency_code=row.currency_code,
        basket_snapshot=BasketSnapshot.model_validate_json(row.basket_snapshot),
        pricing_snapshot=PricingSnapshot.model_validate_json(row.pricing_snapshot),
        created_at=_utc(row.created_at),
    )


class SqlQuoteRepository(QuoteRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_by_id(self, quote_id: str) -> Quote | None:
        result = await self.session.execute(
            _select_quotes("WHERE quote_id = :quote_id"), {"quote_id": quote_id}
        )
        row = result.fetchone()
        return _row_to_quote(row) if row else None

    async def find_by_user_id(self, user_id: str) -> list[Quote]:
        result = await self.session.execute(
            _select_quotes("WHERE user_id = :user_id ORDER BY created_at ASC"),
            {"user_id": user_id},
        )
        return [_row_to_quote(row) for row in result.fetchall()]

    async def save(self, quote: Quote) -> Quote:
        """Quote は不変なので INSERT のみ。既存なら何もしない。"""
        await _write(
            self.session,
            text("""
                INSERT INTO quotes
                    (quote_id, user_id, business_partner_id, total_price,
                     currency_code, basket_snapshot, pricing_snapshot, created_at)
                VALUES
                    (:quote_id, :user_id, :business_partner_id, :total_price,
                     :currency_code, :basket_snapshot, :pricing_snapshot, :created_at)
                ON CONFLICT (quote_id) DO NOTHING
            """).bindparams(
                bindparam("total_price", type_=MONEY),
                bindparam("created_at", type_=TIMESTAMP),
            ),
            {
                "quote_id": quote.quote_id,
                "user_id": quote.user_id,
                "business_partner_id": quote.business_partner_id,
                "total_price": quote.total_price,
                "currency_code": quote.currency_code,
                "basket_snapshot": quote.basket_snapshot.model_dump_json(),
                "pricing_snapshot": quote.pricing_snapshot.model_dump_json(),
                "created_at": quote.created_at,
            },
        )
        return quote

    async def delete(self, quote_id: str) -> None:
        await _write(
            self.session,
            text("DELETE FROM quotes WHERE quote_id = :quote_id"),
            {"quote_id": quote_id},
        )
