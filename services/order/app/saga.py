"""
Order Service — 注文フルフィルメント Saga

Saga パターン（オーケストレーション型）:
  オーケストレーターが決済サービスと配送サービスを順番に呼び出し、
  後続ステップが失敗した場合は補償トランザクションで巻き戻す。

  フロー:
  ┌─────────────────────────────────────────────────────────┐
  │  1. 注文と見積もりを読み込む                               │
  │  2. Payment Service で決済 → PAYMENT_INITIATED            │
  │     └─ 失敗 → FAILED (補償不要: まだ何も起きていない)      │
  │  3. Delivery Service で配送開始 → DELIVERY_INITIATED      │
  │     └─ 失敗 → 返金 (補償トランザクション) → FAILED        │
  │  4. DELIVERED                                            │
  │  想定外の例外 → 参照が残っている分だけ補償 → FAILED        │
  │     └─ FAILED の保存に失敗 → 補償はせず保存だけ再試行       │
  └─────────────────────────────────────────────────────────┘

決済を配送より先に行うのは、配送失敗時には必ず返金できる決済が存在し、
決済失敗時には配送の補償が一切いらないようにするため。

オーケストレーター自体は状態を持たない。状態はすべて永続化された Order にあり、
各遷移のたびに save してから次のステップへ進む。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel

from .aggregate import Order, OrderStatus
from .events import CompensationFailed, SagaCompleted, SagaFailed, SagaLogEntry
from .exceptions import InvalidStatusTransition
from .ports import (
    CancelDeliveryRequest,
    DeliveryRequest,
    DeliveryServicePort,
    PaymentRequest,
    PaymentServicePort,
    RefundRequest,
)
from .publisher import EventPublisher, publish_safely
from .quote import Quote
from .repository import OrderRepository, QuoteRepository

logger = logging.getLogger(__name__)

QUOTE_NOT_FOUND = "Quote not found"
SAGA_EXECUTION_FAILED = "Saga execution failed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── 結果型 ───────────────────────────────────────


class OrderView(BaseModel):
    """Order の読み取り用プロジェクション"""

    order_id: str
    user_id: str
    quote_id: str
    business_partner_id: str | None = None
    status: OrderStatus
    payment_reference: str | None = None
    delivery_reference: str | None = None
    failure_reason: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderView":
        return cls(
            order_id=order.order_id,
            user_id=order.user_id,
            quote_id=order.quote_id,
            business_partner_id=order.business_partner_id,
            status=order.status,
            payment_reference=order.payment_reference,
            delivery_reference=order.delivery_reference,
            failure_reason=order.failure_reason,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class SagaResult(BaseModel):
    """
    Saga の入口すべてが返す結果。

    order が None なら「注文が見つからなかった（何も変更していない）」、
    order があって success=False なら「注文は FAILED で永続化された」。
    """

    success: bool
    order: OrderView | None = None
    error: str | None = None
    saga_log: list[SagaLogEntry] = []


class SagaLog:
    """ステップごとに EXECUTING → COMPLETED / FAILED を記録する"""

    def __init__(self) -> None:
        self.entries: list[SagaLogEntry] = []

    def start(self, action: str) -> None:
        self.entries.append(
            SagaLogEntry(
                step=len(self.entries) + 1,
                action=action,
                status="EXECUTING",
                timestamp=_now(),
            )
        )

    def complete(self) -> None:
        self.entries[-1].status = "COMPLETED"

    def fail(self, error: str) -> None:
        if self.entries and self.entries[-1].status == "EXECUTING":
            self.entries[-1].status = "FAILED"
            self.entries[-1].error = error


@dataclass
class StepOutcome:
    order: Order
    failure: SagaResult | None = None


# ── オーケストレーター ───────────────────────────


class OrderSagaOrchestrator:
    """注文フルフィルメント Saga のオーケストレーター"""

    def __init__(
        self,
        orders: OrderRepository,
        quotes: QuoteRepository,
        payment: PaymentServicePort,
        delivery: DeliveryServicePort,
        publisher: EventPublisher | None = None,
    ):
        self.orders = orders
        self.quotes = quotes
        self.payment = payment
        self.delivery = delivery
        self.publisher = publisher

    async def execute_order_saga(self, order_id: str) -> SagaResult:
        """
        Saga 全体を実行する。

        永続化された状態から再開する:
          INITIALIZED        → 決済から
          PAYMENT_INITIATED  → 配送から
          DELIVERY_INITIATED → 完了処理のみ
          DELIVERED / FAILED → 何もせず現在の状態を返す
        """
        log = SagaLog()

        order = await self.orders.find_by_id(order_id)
        if order is None:
            logger.warning("Order %s not found", order_id)
            return SagaResult(success=False, error=f"Order {order_id} not found")

        if order.is_terminal():
            logger.info(
                "Order %s is already %s; saga not executed",
                order_id,
                order.status.value,
            )
            return self._result(order, log, success=order.is_completed())

        quote = await self.quotes.find_by_id(order.quote_id)
        if quote is None:
            logger.warning("Quote %s for order %s not found", order.quote_id, order_id)
            compensated = await self._compensate_all(order, QUOTE_NOT_FOUND, log)
            return await self._fail(order, QUOTE_NOT_FOUND, log, compensated)

        logger.info(
            "Executing saga for order %s from %s", order_id, order.status.value
        )
        try:
            if order.status is OrderStatus.INITIALIZED:
                outcome = await self._payment_step(order, quote, log)
                order = outcome.order
                if outcome.failure:
                    return outcome.failure

            if order.status is OrderStatus.PAYMENT_INITIATED:
                outcome = await self._delivery_step(order, quote, log)
                order = outcome.order
                if outcome.failure:
                    return outcome.failure

            # 配送開始 = 配送完了として扱う（配送完了イベントの受信は行わない）
            log.start("MarkDelivered")
            order.mark_delivered()
            order = await self.orders.save(order)
            log.complete()
        except InvalidStatusTransition:
            raise
        except Exception as e:
            logger.exception("Saga execution failed for order %s", order_id)
            log.fail(str(e))
            return await self._abort(order, str(e) or SAGA_EXECUTION_FAILED, log)

        logger.info("Saga completed for order %s", order_id)
        await publish_safely(
            self.publisher,
            SagaCompleted(
                order_id=order.order_id,
                payment_reference=order.payment_reference,
                delivery_reference=order.delivery_reference,
                saga_log=log.entries,
                timestamp=_now(),
            ),
        )
        return self._result(order, log, success=True)

    async def execute_payment_step(self, order_id: str) -> SagaResult:
        """決済ステップだけを実行する（オペレーターによる再試行・デバッグ用）。"""
        log = SagaLog()

        order = await self.orders.find_by_id(order_id)
        if order is None:
            return SagaResult(success=False, error=f"Order {order_id} not found")

        # ポートを呼ぶ前に弾く: 不正な再試行で二重に決済しないように
        if not order.can_transition_to(OrderStatus.PAYMENT_INITIATED):
            raise InvalidStatusTransition(order.status, OrderStatus.PAYMENT_INITIATED)

        quote = await self.quotes.find_by_id(order.quote_id)
        if quote is None:
            return self._result(order, log, success=False, error=QUOTE_NOT_FOUND)

        outcome = await self._payment_step(order, quote, log)
        if outcome.failure:
            return outcome.failure
        return self._result(outcome.order, log, success=True)

    async def execute_delivery_step(self, order_id: str) -> SagaResult:
        """配送ステップだけを実行する。失敗時は決済を返金する。"""
        log = SagaLog()

        order = await self.orders.find_by_id(order_id)
        if order is None:
            return SagaResult(success=False, error=f"Order {order_id} not found")

        if not order.can_transition_to(OrderStatus.DELIVERY_INITIATED):
            raise InvalidStatusTransition(order.status, OrderStatus.DELIVERY_INITIATED)

        quote = await self.quotes.find_by_id(order.quote_id)
        if quote is None:
            return self._result(order, log, success=False, error=QUOTE_NOT_FOUND)

        outcome = await self._delivery_step(order, quote, log)
        if outcome.failure:
            return outcome.failure
        return self._result(outcome.order, log, success=True)

    # ── ステップ ─────────────────────────────────

    async def _payment_step(
        self, order: Order, quote: Quote, log: SagaLog
    ) -> StepOutcome:
        log.start("ProcessPayment")
        result = await self.payment.process_payment(
            PaymentRequest(
                order_id=order.order_id,
                user_id=order.user_id,
                amount=quote.total_price,
                currency=quote.currency_code,
            )
        )

        if not result.success or not result.payment_reference:
            error = result.error or "no payment reference returned"
            log.fail(error)
            # まだ取り消すべき副作用がないので補償は不要
            failure = await self._fail(order, f"Payment failed: {error}", log)
            return StepOutcome(order, failure)

        order.initiate_payment(result.payment_reference)
        order = await self.orders.save(order)
        log.complete()
        logger.info(
            "Payment %s captured for order %s",
            result.payment_reference,
            order.order_id,
        )
        return StepOutcome(order)

    async def _delivery_step(
        self, order: Order, quote: Quote, log: SagaLog
    ) -> StepOutcome:
        log.start("InitiateDelivery")
        basket = quote.basket_snapshot
        result = await self.delivery.initiate_delivery(
            DeliveryRequest(
                order_id=order.order_id,
                user_id=order.user_id,
                items=list(basket.items),
                bundles=list(basket.bundles),
            )
        )

        if not result.success or not result.delivery_reference:
            error = result.error or "no delivery reference returned"
            log.fail(error)
            # 返金してから FAILED にする
            await self._compensate_payment(order, "Delivery initiation failed", log)
            failure = await self._fail(
                order, f"Delivery failed: {error}", log, compensated=True
            )
            return StepOutcome(order, failure)

        order.initiate_delivery(result.delivery_reference)
        order = await self.orders.save(order)
        log.complete()
        logger.info(
            "Delivery %s initiated for order %s",
            result.delivery_reference,
            order.order_id,
        )
        return StepOutcome(order)

    # ── 失敗処理 ─────────────────────────────────

    async def _fail(
        self,
        order: Order,
        reason: str,
        log: SagaLog,
        compensated: bool = False,
    ) -> SagaResult:
        order.mark_failed(reason)
        order = await self._save_failed(order)
        logger.warning("Order %s failed: %s", order.order_id, reason)
        await self._publish_failed(order, log, compensated)
        return self._result(order, log, success=False, error=reason)

    async def _save_failed(self, order: Order) -> Order:
        """
        FAILED を一度だけ再試行して保存する。

        補償済みの注文が PAYMENT_INITIATED のまま残ると、再実行で配送まで進んでしまう。
        2 回目も失敗した場合は例外をそのまま送出する。
        """
        try:
            return await self.orders.save(order)
        except Exception:
            logger.exception(
                "Saving FAILED for order %s failed; retrying once", order.order_id
            )
            return await self.orders.save(order)

    async def _publish_failed(
        self, order: Order, log: SagaLog, compensated: bool
    ) -> None:
        await publish_safely(
            self.publisher,
            SagaFailed(
                order_id=order.order_id,
                reason=order.failure_reason or SAGA_EXECUTION_FAILED,
                compensated=compensated,
                saga_log=log.entries,
                timestamp=_now(),
            ),
        )

    async def _abort(self, order: Order, message: str, log: SagaLog) -> SagaResult:
        if order.is_completed():
            # DELIVERED にした直後の save で落ちた場合。配送は実際に行われているので補償しない。
            # 永続化側は DELIVERY_INITIATED のままなので再実行で完了できる。
            logger.error(
                "Order %s was delivered before the fault; not compensating",
                order.order_id,
            )
            return self._result(order, log, success=False, error=message)

        if order.is_failed():
            # _fail の保存が失敗した場合。補償は済んでいるので、FAILED の永続化だけやり直す。
            # ここでも保存できなければ例外を送出し、保存されていない FAILED は返さない。
            order = await self._save_failed(order)
            logger.warning(
                "Order %s failed: %s", order.order_id, order.failure_reason
            )
            await self._publish_failed(
                order,
                log,
                compensated=bool(order.payment_reference or order.delivery_reference),
            )
            return self._result(order, log, success=False)

        compensated = await self._compensate_all(order, SAGA_EXECUTION_FAILED, log)
        return await self._fail(order, message, log, compensated)

    async def _compensate_all(self, order: Order, reason: str, log: SagaLog) -> bool:
        """参照が残っている副作用を新しいものから順に取り消す。"""
        compensated = False
        if order.delivery_reference:
            await self._compensate_delivery(order, reason, log)
            compensated = True
        if order.payment_reference:
            await self._compensate_payment(order, reason, log)
            compensated = True
        return compensated

    # ── 補償トランザクション（ベストエフォート） ─────

    async def _compensate_payment(self, order: Order, reason: str, log: SagaLog) -> None:
        """返金する。失敗してもログと CompensationFailed イベントを残すだけで再送出しない。"""
        if not order.payment_reference:
            return

        log.start("RefundPayment (COMPENSATING)")
        amount: Decimal | None = None
        try:
            quote = await self.quotes.find_by_id(order.quote_id)
            if quote is None:
                error = f"Quote {order.quote_id} not found; refund amount unknown"
                logger.error(
                    "Cannot refund payment %s: %s", order.payment_reference, error
                )
                log.fail(error)
                await self._report_compensation_failure(
                    order, "RefundPayment", order.payment_reference, amount, reason, error
                )
                return

            amount = quote.total_price
            result = await self.payment.refund_payment(
                RefundRequest(
                    payment_reference=order.payment_reference,
                    amount=amount,
                    reason=reason,
                )
            )
        except Exception as e:
            logger.exception("Refund failed for payment %s", order.payment_reference)
            log.fail(str(e))
            await self._report_compensation_failure(
                order, "RefundPayment", order.payment_reference, amount, reason, str(e)
            )
            return

        if not result.success:
            error = result.error or "refund rejected"
            logger.warning(
                "Refund rejected for payment %s: %s", order.payment_reference, error
            )
            log.fail(error)
            await self._report_compensation_failure(
                order, "RefundPayment", order.payment_reference, amount, reason, error
            )
            return

        log.complete()
        logger.info(
            "Refunded payment %s (%s) for order %s",
            order.payment_reference,
            amount,
            order.order_id,
        )

    async def _compensate_delivery(
        self, order: Order, reason: str, log: SagaLog
    ) -> None:
        """配送をキャンセルする。失敗しても再送出しない。"""
        if not order.delivery_reference:
            return

        log.start("CancelDelivery (COMPENSATING)")
        try:
            result = await self.delivery.cancel_delivery(
                CancelDeliveryRequest(
                    delivery_reference=order.delivery_reference, reason=reason
                )
            )
        except Exception as e:
            logger.exception("Cancel failed for delivery %s", order.delivery_reference)
            log.fail(str(e))
            await self._report_compensation_failure(
                order, "CancelDelivery", order.delivery_reference, None, reason, str(e)
            )
            return

        if not result.success:
            error = result.error or "cancellation rejected"
            logger.warning(
                "Cancel rejected for delivery %s: %s", order.delivery_reference, error
            )
            log.fail(error)
            await self._report_compensation_failure(
                order, "CancelDelivery", order.delivery_reference, None, reason, error
            )
            return

        log.complete()
        logger.info(
            "Cancelled delivery %s for order %s",
            order.delivery_reference,
            order.order_id,
        )

    async def _report_compensation_failure(
        self,
        order: Order,
        action: str,
        reference: str,
        amount: Decimal | None,
        reason: str,
        error: str,
    ) -> None:
        await publish_safely(
            self.publisher,
            CompensationFailed(
                order_id=order.order_id,
                action=action,
                reference=reference,
                amount=amount,
                reason=reason,
                error=error,
                timestamp=_now(),
            ),
        )

    @staticmethod
    def _result(
        order: Order,
        log: SagaLog,
        success: bool,
        error: str | None = None,
    ) -> SagaResult:
        return SagaResult(
            success=success,
            order=OrderView.from_order(order),
            error=error if error is not None else order.failure_reason,
            saga_log=list(log.entries),
        )
