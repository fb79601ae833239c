"""
Order Service — 例外定義

ビジネス上の失敗（決済拒否・配送失敗）は例外ではなく結果型で返す。
ここに定義するのは「見つからない」「重複」「不正な状態遷移」のように
呼び出し側の誤りを表すものだけ。API 層が HTTP ステータスに変換する。
"""


class OrderError(Exception):
    """注文ドメインの例外の基底クラス"""


class OrderNotFound(OrderError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class QuoteNotFound(OrderError):
    def __init__(self, quote_id: str) -> None:
        super().__init__(f"Quote {quote_id} not found")
        self.quote_id = quote_id


class OrderAlreadyExists(OrderError):
    """見積もり 1 件につき注文は 1 件まで"""

    def __init__(self, quote_id: str) -> None:
        super().__init__(f"Order already exists for quote {quote_id}")
        self.quote_id = quote_id


class QuoteInUse(OrderError):
    """注文から参照されている見積もりは削除できない"""

    def __init__(self, quote_id: str) -> None:
        super().__init__(f"Quote {quote_id} is referenced by an order")
        self.quote_id = quote_id


class InvalidStatusTransition(OrderError):
    """遷移表にない状態遷移（プログラム・順序の誤り）"""

    def __init__(self, current, target) -> None:
        super().__init__(
            f"Invalid status transition from {current.value} to {target.value}"
        )
        self.current = current
        self.target = target
