"""
Order Service — 注文集約 (Order Aggregate)

注文のライフサイクルを状態機械として表現する。
状態を変更できるのは initiate_xxx / mark_xxx メソッドだけで、
遷移表にない遷移は InvalidStatusTransition で拒否される。

状態遷移:
    INITIALIZED        → PAYMENT_INITIATED, FAILED
    PAYMENT_INITIATED  → DELIVERY_INITIATED, FAILED
    DELIVERY_INITIATED → DELIVERED, FAILED
    DELIVERED          (終端)
    FAILED             (終端)
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from .exceptions import InvalidStatusTransition


class OrderStatus(str, Enum):
    INITIALIZED = "INITIALIZED"
    PAYMENT_INITIATED = "PAYMENT_INITIATED"
    DELIVERY_INITIATED = "DELIVERY_INITIATED"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


ORDER_STATUS_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.INITIALIZED: frozenset(
        {OrderStatus.PAYMENT_INITIATED, OrderStatus.FAILED}
    ),
    OrderStatus.PAYMENT_INITIATED: frozenset(
        {OrderStatus.DELIVERY_INITIATED, OrderStatus.FAILED}
    ),
    OrderStatus.DELIVERY_INITIATED: frozenset(
        {OrderStatus.DELIVERED, OrderStatus.FAILED}
    ),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.FAILED})


def is_valid_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """遷移表を引くだけの純粋関数。"""
    return target in ORDER_STATUS_TRANSITIONS[current]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Order:
    """
    注文集約。Saga が操作する唯一の可変エンティティ。

    payment_reference は PAYMENT_INITIATED を通過した場合のみ、
    delivery_reference は DELIVERY_INITIATED を通過した場合のみ、
    failure_reason は FAILED の場合のみセットされる。
    """

    def __init__(
        self,
        order_id: str,
        user_id: str,
        quote_id: str,
        business_partner_id: str | None = None,
        status: OrderStatus = OrderStatus.INITIALIZED,
        payment_reference: str | None = None,
        delivery_reference: str | None = None,
        failure_reason: str | None = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> None:
        now = _now()
        self.order_id = order_id
        self.user_id = user_id
        self.quote_id = quote_id
        self.business_partner_id = business_partner_id
        self.status = OrderStatus(status)
        self.payment_reference = payment_reference
        self.delivery_reference = delivery_reference
        self.failure_reason = failure_reason
        self.created_at = created_at or now
        self.updated_at = updated_at or self.created_at

    @classmethod
    def create_from_quote(
        cls,
        quote_id: str,
        user_id: str,
        business_partner_id: str | None = None,
    ) -> "Order":
        """見積もりから INITIALIZED 状態の注文を作る。"""
        return cls(
            order_id=str(uuid4()),
            user_id=user_id,
            quote_id=quote_id,
            business_partner_id=business_partner_id,
        )

    def __repr__(self) -> str:
        return f"Order(order_id={self.order_id!r}, status={self.status.value})"

    # ── 状態遷移 ──────────────────────────────────

    def can_transition_to(self, target: OrderStatus) -> bool:
        return is_valid_transition(self.status, target)

    def _transition_to(self, target: OrderStatus) -> None:
        # 拒否された場合は status を一切変更しない
        if not self.can_transition_to(target):
            raise InvalidStatusTransition(self.status, target)
        self.status = target
        self.updated_at = _now()

    def initiate_payment(self, payment_reference: str) -> None:
        self._transition_to(OrderStatus.PAYMENT_INITIATED)
        self.payment_reference = payment_reference

    def initiate_delivery(self, delivery_reference: str) -> None:
        self._transition_to(OrderStatus.DELIVERY_INITIATED)
        self.delivery_reference = delivery_reference

    def mark_delivered(self) -> None:
        self._transition_to(OrderStatus.DELIVERED)

    def mark_failed(self, reason: str) -> None:
        """FAILED はすべての非終端状態から到達できる（共通の中断操作）。"""
        self._transition_to(OrderStatus.FAILED)
        self.failure_reason = reason

    # ── クエリ ───────────────────────────────────

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_completed(self) -> bool:
        return self.status is OrderStatus.DELIVERED

    def is_failed(self) -> bool:
        return self.status is OrderStatus.FAILED
