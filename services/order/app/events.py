"""
Order Service — イベント定義

コミット後に Redis の order_events チャネルへ発行するイベント。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel


class OrderCreated(BaseModel):
    """問い合わせとして注文が作成された"""
    order_id: UUID
    client_id: str
    item_count: int
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが遷移した"""
    order_id: UUID
    from_status: str
    to_status: str
    changed_by: str
    detail: str
    version: int
    timestamp: datetime


class OrderPriced(BaseModel):
    """単価が設定され合計が再計算された"""
    order_id: UUID
    total: Decimal
    changed_by: str
    timestamp: datetime


class PaymentStatusUpdated(BaseModel):
    """支払いステータスが記録された"""
    order_id: UUID
    payment_status: str
    changed_by: str
    timestamp: datetime


class CreditDueDateExtended(BaseModel):
    """与信期限が延長された"""
    order_id: UUID
    credit_due_date: datetime
    changed_by: str
    timestamp: datetime


class PaymentStatusInconsistentDetected(BaseModel):
    """PAID が記録されたが PAYMENT_CLEARED へ遷移できなかった"""
    order_id: UUID
    order_status: str
    changed_by: str
    timestamp: datetime
