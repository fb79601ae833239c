import os

# app.main はインポート時にエンジンを作るので、先にテスト用の接続先を入れておく
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")

from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from app.aggregate import Order, OrderStatus
from app.ports import (
    CancelDeliveryRequest,
    CancelDeliveryResult,
    DeliveryRequest,
    DeliveryResult,
    DeliveryServicePort,
    DeliveryStatus,
    PaymentRequest,
    PaymentResult,
    PaymentServicePort,
    RefundRequest,
    RefundResult,
)
from app.publisher import InMemoryEventPublisher
from app.quote import (
    BasketSnapshot,
    BundleLine,
    ItemLine,
    PricedBundle,
    PricedItem,
    PricingSnapshot,
    Quote,
)
from app.repository import (
    InMemoryOrderRepository,
    InMemoryQuoteRepository,
    SqlOrderRepository,
)
from app.saga import OrderSagaOrchestrator
from app.schema import create_tables


def build_basket(user_id: str = "user-1") -> BasketSnapshot:
    return BasketSnapshot(
        basket_id="basket-1",
        user_id=user_id,
        items=(ItemLine(item_id="item-1", amount=2),),
        bundles=(BundleLine(bundle_id="bundle-1", amount=1),),
    )


def build_pricing(total: str = "135.00", currency: str = "EUR") -> PricingSnapshot:
    return PricingSnapshot(
        items=(
            PricedItem(
                item_id="item-1",
                amount=2,
                unit_price=Decimal("40.00"),
                total_price=Decimal("80.00"),
            ),
        ),
        bundles=(
            PricedBundle(
                bundle_id="bundle-1",
                amount=1,
                unit_price=Decimal("60.00"),
                discount=Decimal("5.00"),
                total_price=Decimal("55.00"),
            ),
        ),
        subtotal=Decimal("140.00"),
        total_discount=Decimal("5.00"),
        total=Decimal(total),
        currency=currency,
        checks_performed=("max_items", "bundle_availability"),
    )


def build_quote(
    user_id: str = "user-1",
    total: str = "135.00",
    business_partner_id: str | None = None,
) -> Quote:
    return Quote.create(
        user_id,
        build_basket(user_id),
        build_pricing(total),
        business_partner_id=business_partner_id,
    )


class FakePaymentService(PaymentServicePort):
    """結果を台本どおりに返し、呼び出しを journal に記録する"""

    def __init__(
        self,
        reference: str = "PAY-1",
        error: str | None = None,
        refund_success: bool = True,
        pay_exception: Exception | None = None,
        refund_exception: Exception | None = None,
        journal: list | None = None,
    ):
        self.reference = reference
        self.error = error
        self.refund_success = refund_success
        self.pay_exception = pay_exception
        self.refund_exception = refund_exception
        self.journal = journal if journal is not None else []
        self.payments: list[PaymentRequest] = []
        self.refunds: list[RefundRequest] = []

    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        self.journal.append("process_payment")
        self.payments.append(request)
        if self.pay_exception:
            raise self.pay_exception
        if self.error:
            return PaymentResult(success=False, error=self.error)
        return PaymentResult(success=True, payment_reference=self.reference)

    async def refund_payment(self, request: RefundRequest) -> RefundResult:
        self.journal.append("refund_payment")
        self.refunds.append(request)
        if self.refund_exception:
            raise self.refund_exception
        if not self.refund_success:
            return RefundResult(success=False, error="refund window closed")
        return RefundResult(success=True)


class FakeDeliveryService(DeliveryServicePort):
    def __init__(
        self,
        reference: str = "DEL-1",
        error: str | None = None,
        cancel_success: bool = True,
        deliver_exception: Exception | None = None,
        journal: list | None = None,
    ):
        self.reference = reference
        self.error = error
        self.cancel_success = cancel_success
        self.deliver_exception = deliver_exception
        self.journal = journal if journal is not None else []
        self.deliveries: list[DeliveryRequest] = []
        self.cancellations: list[CancelDeliveryRequest] = []

    async def initiate_delivery(self, request: DeliveryRequest) -> DeliveryResult:
        self.journal.append("initiate_delivery")
        self.deliveries.append(request)
        if self.deliver_exception:
            raise self.deliver_exception
        if self.error:
            return DeliveryResult(success=False, error=self.error)
        return DeliveryResult(success=True, delivery_reference=self.reference)

    async def cancel_delivery(
        self, request: CancelDeliveryRequest
    ) -> CancelDeliveryResult:
        self.journal.append("cancel_delivery")
        self.cancellations.append(request)
        if not self.cancel_success:
            return CancelDeliveryResult(success=False, error="already shipped")
        return CancelDeliveryResult(success=True)

    async def check_delivery_status(self, delivery_reference: str) -> DeliveryStatus:
        return DeliveryStatus(status="DELIVERED", delivered=True)


@pytest.fixture
def orders() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture
def quotes() -> InMemoryQuoteRepository:
    return InMemoryQuoteRepository()


@pytest.fixture
def journal() -> list:
    return []


@pytest.fixture
def payment(journal) -> FakePaymentService:
    return FakePaymentService(journal=journal)


@pytest.fixture
def delivery(journal) -> FakeDeliveryService:
    return FakeDeliveryService(journal=journal)


@pytest.fixture
def publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture
def orchestrator(orders, quotes, payment, delivery, publisher) -> OrderSagaOrchestrator:
    return OrderSagaOrchestrator(orders, quotes, payment, delivery, publisher)


@pytest.fixture
async def quote(quotes) -> Quote:
    return await quotes.save(build_quote())


@pytest.fixture
async def order(orders, quote) -> Order:
    return await orders.save(Order.create_from_quote(quote.quote_id, quote.user_id))


class DroppingSqlOrderRepository(SqlOrderRepository):
    """指定した状態の save の直前に DB 接続を一度だけ無効化する"""

    def __init__(self, session: AsyncSession, drop_on: OrderStatus):
        super().__init__(session)
        self.drop_on = drop_on
        self.dropped = False

    async def save(self, order: Order) -> Order:
        if order.status is self.drop_on and not self.dropped:
            self.dropped = True
            connection = await self.session.connection()
            await connection.invalidate()
        return await super().save(order)


@pytest.fixture
async def file_session(tmp_path):
    """接続を作り直してもデータが残るファイル DB のセッション"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    async with engine.begin() as conn:
        await create_tables(conn)
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session
    await engine.dispose()
