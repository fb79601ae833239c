"""
Order Service — 外部サービスのポート (Payment / Delivery)

Saga は決済サービス・配送サービスをこの契約越しにしか呼ばない。
実装（モック・HTTP クライアント・本物の決済ゲートウェイ）は
オーケストレーター生成時に注入する。

失敗は例外ではなく success=False の結果として返すこと。
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from .quote import BundleLine, ItemLine


# ── Payment ─────────────────────────────────────


class PaymentRequest(BaseModel):
    order_id: str
    user_id: str
    amount: Decimal
    currency: str


class PaymentResult(BaseModel):
    success: bool
    payment_reference: str | None = None
    error: str | None = None


class RefundRequest(BaseModel):
    payment_reference: str
    amount: Decimal
    reason: str


class RefundResult(BaseModel):
    success: bool
    error: str | None = None


class PaymentServicePort(ABC):
    @abstractmethod
    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        """決済を実行する。"""

    @abstractmethod
    async def refund_payment(self, request: RefundRequest) -> RefundResult:
        """返金する（補償トランザクション）。"""


# ── Delivery ────────────────────────────────────


class DeliveryRequest(BaseModel):
    order_id: str
    user_id: str
    items: list[ItemLine]
    bundles: list[BundleLine]


class DeliveryResult(BaseModel):
    success: bool
    delivery_reference: str | None = None
    estimated_delivery_date: datetime | None = None
    error: str | None = None


class CancelDeliveryRequest(BaseModel):
    delivery_reference: str
    reason: str


class CancelDeliveryResult(BaseModel):
    success: bool
    error: str | None = None


class DeliveryStatus(BaseModel):
    status: str
    delivered: bool


class DeliveryServicePort(ABC):
    @abstractmethod
    async def initiate_delivery(self, request: DeliveryRequest) -> DeliveryResult:
        """配送を開始する。"""

    @abstractmethod
    async def cancel_delivery(
        self, request: CancelDeliveryRequest
    ) -> CancelDeliveryResult:
        """配送をキャンセルする（補償トランザクション）。"""

    @abstractmethod
    async def check_delivery_status(self, delivery_reference: str) -> DeliveryStatus:
        """配送状況を確認する。"""
