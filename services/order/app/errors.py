"""
Order Service — エラー定義

コマンドが失敗したときに呼び出し側へ返す型付きの例外。
HTTP ステータスへの対応付けは main.py で行う。
"""

from uuid import UUID


class OrderError(Exception):
    """注文ドメインの例外の基底クラス"""


class NotFound(OrderError):
    """注文、またはカタログ品目が存在しない"""

    def __init__(self, kind: str, ref: UUID | str, reason: str = "not found") -> None:
        self.kind = kind
        self.ref = str(ref)
        super().__init__(f"{kind} {ref} {reason}")


class InvalidTransition(OrderError):
    """現在のステータスから要求されたステータスへは遷移できない"""

    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid transition from {current} to {requested}")


class ConcurrentModification(OrderError):
    """楽観的ロック失敗: 読み込み後に他のリクエストが注文を更新した"""

    def __init__(self, order_id: UUID | str, expected_version: int) -> None:
        self.order_id = str(order_id)
        self.expected_version = expected_version
        super().__init__(
            f"Order {order_id} was modified concurrently (expected version {expected_version})"
        )


class PersistenceFailure(OrderError):
    """ストレージ I/O の失敗。トランザクションはロールバック済み。"""


class CallerTimestampNotAllowed(OrderError):
    """設定で許可されていないのに監査ログの時刻が指定された"""


class PaymentStatusInconsistent(OrderError):
    """
    PAID が記録されたが PAYMENT_CLEARED へ進めない状態だった。

    警告扱い: raise せず PaymentUpdateResult.warning として返す。
    """

    def __init__(self, order_id: UUID | str, order_status: str) -> None:
        self.order_id = str(order_id)
        self.order_status = order_status
        super().__init__(
            f"Order {order_id} marked as PAID but cannot move from {order_status} to PAYMENT_CLEARED"
        )
