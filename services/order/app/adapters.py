"""
Order Service — 外部サービスのアダプタ

ports.py の契約を満たす実装:
  - HttpPaymentService / HttpDeliveryService: httpx で別サービスを呼ぶ
  - PaymentServiceMock / DeliveryServiceMock: ローカル実行・テスト用の擬似サービス

HTTP アダプタはタイムアウトを含む httpx.HTTPError と、読めない応答本文を
success=False の結果に変換する (配送状況の照会は UNKNOWN)。タイムアウトは明示的なエラー応答と同じく
「失敗」として Saga に扱わせる。
"""

import asyncio
import logging
import random
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import httpx

from .ports import (
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

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


def _error_text(exc: Exception) -> str:
    # pydantic の ValidationError も json の JSONDecodeError も ValueError
    if isinstance(exc, ValueError):
        return f"invalid response: {exc}"
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.text or f"HTTP {exc.response.status_code}"
    if isinstance(exc, httpx.TimeoutException):
        return f"timeout: {exc}"
    return str(exc) or type(exc).__name__


def _unknown_delivery() -> DeliveryStatus:
    return DeliveryStatus(status="UNKNOWN", delivered=False)


def _new_reference(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:8].upper()}"


# ── HTTP アダプタ ────────────────────────────────


class HttpPaymentService(PaymentServicePort):
    """Payment Service を HTTP で呼ぶ"""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self.transport
        )

    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        async with self._client() as client:
            try:
                resp = await client.post(
                    "/payments", json=request.model_dump(mode="json")
                )
                resp.raise_for_status()
                return PaymentResult.model_validate(resp.json())
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(
                    "Payment request failed for order %s: %s", request.order_id, e
                )
                return PaymentResult(success=False, error=_error_text(e))

    async def refund_payment(self, request: RefundRequest) -> RefundResult:
        async with self._client() as client:
            try:
                resp = await client.post(
                    f"/payments/{request.payment_reference}/refund",
                    json={"amount": str(request.amount), "reason": request.reason},
                )
                resp.raise_for_status()
                return RefundResult.model_validate(resp.json())
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(
                    "Refund request failed for %s: %s", request.payment_reference, e
                )
                return RefundResult(success=False, error=_error_text(e))


class HttpDeliveryService(DeliveryServicePort):
    """Delivery Service を HTTP で呼ぶ"""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self.transport
        )

    async def initiate_delivery(self, request: DeliveryRequest) -> DeliveryResult:
        async with self._client() as client:
            try:
                resp = await client.post(
                    "/deliveries", json=request.model_dump(mode="json")
                )
                resp.raise_for_status()
                return DeliveryResult.model_validate(resp.json())
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(
                    "Delivery request failed for order %s: %s", request.order_id, e
                )
                return DeliveryResult(success=False, error=_error_text(e))

    async def cancel_delivery(
        self, request: CancelDeliveryRequest
    ) -> CancelDeliveryResult:
        async with self._client() as client:
            try:
                resp = await client.post(
                    f"/deliveries/{request.delivery_reference}/cancel",
                    json={"reason": request.reason},
                )
                resp.raise_for_status()
                return CancelDeliveryResult.model_validate(resp.json())
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(
                    "Cancel request failed for %s: %s", request.delivery_reference, e
                )
                return CancelDeliveryResult(success=False, error=_error_text(e))

    async def check_delivery_status(self, delivery_reference: str) -> DeliveryStatus:
        async with self._client() as client:
            try:
                resp = await client.get(f"/deliveries/{delivery_reference}")
                if resp.status_code == 404:
                    return _unknown_delivery()
                resp.raise_for_status()
                return DeliveryStatus.model_validate(resp.json())
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(
                    "Delivery status request failed for %s: %s", delivery_reference, e
                )
                return _unknown_delivery()


# ── モック ───────────────────────────────────────


def _clamp(rate: float) -> float:
    return max(0.0, min(1.0, rate))


class PaymentServiceMock(PaymentServicePort):
    """
    擬似決済サービス。failure_rate (0〜1) の確率で失敗する。
    状態はインスタンスごとに持つので、テストを並列に走らせても混ざらない。
    """

    def __init__(
        self,
        failure_rate: float = 0.0,
        delay: float = 0.0,
        rng: random.Random | None = None,
    ):
        self.failure_rate = _clamp(failure_rate)
        self.delay = delay
        self.rng = rng or random.Random()
        self.payments: list[PaymentRequest] = []
        self.refunds: list[RefundRequest] = []

    def set_failure_rate(self, rate: float) -> None:
        self.failure_rate = _clamp(rate)

    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        logger.info(
            "Processing payment for order %s: %s %s",
            request.order_id,
            request.amount,
            request.currency,
        )
        await asyncio.sleep(self.delay)

        if self.rng.random() < self.failure_rate:
            logger.warning("Payment failed for order %s", request.order_id)
            return PaymentResult(
                success=False, error="Payment processing failed (simulated)"
            )

        self.payments.append(request)
        payment_reference = _new_reference("PAY")
        logger.info(
            "Payment successful: %s for order %s", payment_reference, request.order_id
        )
        return PaymentResult(success=True, payment_reference=payment_reference)

    async def refund_payment(self, request: RefundRequest) -> RefundResult:
        logger.info(
            "Refunding payment %s: %s - Reason: %s",
            request.payment_reference,
            request.amount,
            request.reason,
        )
        await asyncio.sleep(self.delay)
        self.refunds.append(request)
        return RefundResult(success=True)


class DeliveryServiceMock(DeliveryServicePort):
    """擬似配送サービス。開始した配送は即座に DELIVERED 扱いになる。"""

    def __init__(
        self,
        failure_rate: float = 0.0,
        delay: float = 0.0,
        rng: random.Random | None = None,
        delivery_days: int = 3,
    ):
        self.failure_rate = _clamp(failure_rate)
        self.delay = delay
        self.rng = rng or random.Random()
        self.delivery_days = delivery_days
        self.cancellations: list[CancelDeliveryRequest] = []
        self._statuses: dict[str, DeliveryStatus] = {}

    def set_failure_rate(self, rate: float) -> None:
        self.failure_rate = _clamp(rate)

    async def initiate_delivery(self, request: DeliveryRequest) -> DeliveryResult:
        logger.info(
            "Initiating delivery for order %s: %d items, %d bundles",
            request.order_id,
            len(request.items),
            len(request.bundles),
        )
        await asyncio.sleep(self.delay)

        if self.rng.random() < self.failure_rate:
            logger.warning("Delivery initiation failed for order %s", request.order_id)
            return DeliveryResult(
                success=False, error="Delivery service unavailable (simulated)"
            )

        delivery_reference = _new_reference("DEL")
        self._statuses[delivery_reference] = DeliveryStatus(
            status="DELIVERED", delivered=True
        )
        logger.info(
            "Delivery initiated: %s for order %s", delivery_reference, request.order_id
        )
        return DeliveryResult(
            success=True,
            delivery_reference=delivery_reference,
            estimated_delivery_date=datetime.now(timezone.utc)
            + timedelta(days=self.delivery_days),
        )

    async def cancel_delivery(
        self, request: CancelDeliveryRequest
    ) -> CancelDeliveryResult:
        logger.info(
            "Cancelling delivery %s: %s", request.delivery_reference, request.reason
        )
        await asyncio.sleep(self.delay)
        self._statuses.pop(request.delivery_reference, None)
        self.cancellations.append(request)
        return CancelDeliveryResult(success=True)

    async def check_delivery_status(self, delivery_reference: str) -> DeliveryStatus:
        return self._statuses.get(
            delivery_reference, _unknown_delivery()
        )
