"""
Order Service — ステータス定義

注文ステータスと支払いステータスの閉じた集合。
"""

from enum import Enum


class OrderStatus(str, Enum):
    NEW_INQUIRY = "NEW_INQUIRY"
    PENDING_PRICING = "PENDING_PRICING"
    WAITING_CLIENT_APPROVAL = "WAITING_CLIENT_APPROVAL"
    PAYMENT_CLEARED = "PAYMENT_CLEARED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    CLOSED = "CLOSED"


class PaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"


class AuditAction(str, Enum):
    CREATED = "CREATED"
    STATUS_CHANGE = "STATUS_CHANGE"
    PAYMENT_UPDATE = "PAYMENT_UPDATE"
    UPDATED = "UPDATED"


INITIAL_STATUS = OrderStatus.NEW_INQUIRY

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CLOSED})

# 価格設定 (再設定含む) が許される状態
PRICING_STATUSES = frozenset({
    OrderStatus.NEW_INQUIRY,
    OrderStatus.PENDING_PRICING,
    OrderStatus.WAITING_CLIENT_APPROVAL,
})

# 支払い待ち: 与信期限切れスイープの対象
CREDIT_PENDING_STATUSES = PRICING_STATUSES

# PAYMENT_CLEARED 以降 (PAID と矛盾しない)
SETTLED_STATUSES = frozenset({
    OrderStatus.PAYMENT_CLEARED,
    OrderStatus.IN_TRANSIT,
    OrderStatus.DELIVERED,
})

SYSTEM_ACTOR = "SYSTEM"
