"""
Order Service — 遷移表

ステータス遷移の唯一のルール表。対話的な管理操作も
与信スイープも、同じ apply_transition() を通る。
"""

from .aggregate import OrderAggregate
from .audit_log import AuditEntry
from .errors import InvalidTransition
from .states import AuditAction, OrderStatus

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.NEW_INQUIRY: frozenset({
        OrderStatus.PENDING_PRICING,
        OrderStatus.WAITING_CLIENT_APPROVAL,  # 直接価格設定
        OrderStatus.CLOSED,
    }),
    OrderStatus.PENDING_PRICING: frozenset({
        OrderStatus.WAITING_CLIENT_APPROVAL,
        OrderStatus.CLOSED,
    }),
    OrderStatus.WAITING_CLIENT_APPROVAL: frozenset({
        OrderStatus.WAITING_CLIENT_APPROVAL,  # 再価格設定の自己ループ
        OrderStatus.PAYMENT_CLEARED,
        OrderStatus.CLOSED,
    }),
    OrderStatus.PAYMENT_CLEARED: frozenset({
        OrderStatus.IN_TRANSIT,
        OrderStatus.CLOSED,
    }),
    OrderStatus.IN_TRANSIT: frozenset({
        OrderStatus.DELIVERED,
        OrderStatus.CLOSED,
    }),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CLOSED: frozenset(),
}


def is_valid_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return OrderStatus(target) in ALLOWED_TRANSITIONS[OrderStatus(current)]


def validate_transition(current: OrderStatus, target: OrderStatus) -> None:
    """遷移できなければ InvalidTransition を送出する。"""
    if not is_valid_transition(current, target):
        raise InvalidTransition(OrderStatus(current).value, OrderStatus(target).value)


def apply_transition(
    order: OrderAggregate,
    target: OrderStatus,
    actor: str,
    detail: str,
) -> AuditEntry:
    """
    ステータスを変更し、STATUS_CHANGE の監査エントリを 1 件追記する。

    検証に失敗した場合は注文に一切触れない。
    """
    target = OrderStatus(target)
    old_status = order.order_status
    validate_transition(old_status, target)
    order._set_status(target)
    return order.audit_logs.append(
        AuditAction.STATUS_CHANGE.value,
        actor,
        detail,
        from_status=old_status,
        to_status=target,
    )
