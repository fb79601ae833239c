"""
Order Service — Saga イベント定義

Saga の結末を Redis Pub/Sub (saga_events チャネル) に発行するためのイベント。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class SagaLogEntry(BaseModel):
    """Saga の 1 ステップの実行記録"""
    step: int
    action: str
    status: str
    timestamp: datetime
    error: str | None = None


class SagaCompleted(BaseModel):
    """Saga が完了した（注文が DELIVERED になった）"""
    order_id: str
    payment_reference: str | None
    delivery_reference: str | None
    saga_log: list[SagaLogEntry]
    timestamp: datetime


class SagaFailed(BaseModel):
    """Saga が失敗した（注文が FAILED になった）"""
    order_id: str
    reason: str
    compensated: bool
    saga_log: list[SagaLogEntry]
    timestamp: datetime


class CompensationFailed(BaseModel):
    """補償トランザクション（返金・配送キャンセル）が失敗した。手動での照合が必要。"""
    order_id: str
    action: str
    reference: str
    amount: Decimal | None = None
    reason: str
    error: str
    timestamp: datetime
