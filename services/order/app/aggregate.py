"""
Order Service — 注文集約 (Order Aggregate)

注文 1 件分の状態: 明細、ステータス、日付、監査ログ、バージョン。

- total は明細から導出され、直接代入できない
- order_status は transitions.apply_transition() からのみ変更される
- version は楽観的ロックのためにリポジトリが管理する
"""

import json
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from . import pricing
from .audit_log import AuditLog, from_db_timestamp, to_db_timestamp
from .states import INITIAL_STATUS, OrderStatus, PaymentStatus


class LineItem(BaseModel):
    item_id: str
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)
    line_total: Decimal = Decimal("0")


class OrderAggregate:
    """
    注文集約。

    状態遷移:
        NEW_INQUIRY → PENDING_PRICING → WAITING_CLIENT_APPROVAL
            → PAYMENT_CLEARED → IN_TRANSIT → DELIVERED
        非終端状態 → CLOSED (キャンセル)
    """

    def __init__(
        self,
        id: UUID,
        client_id: str,
        items: list[LineItem],
        *,
        order_status: OrderStatus = INITIAL_STATUS,
        payment_status: PaymentStatus = PaymentStatus.UNPAID,
        credit_due_date: datetime | None = None,
        audit_logs: AuditLog | None = None,
        version: int = 0,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> None:
        self.id = id
        self.client_id = client_id
        self._items = list(items)
        self._order_status = OrderStatus(order_status)
        self.payment_status = PaymentStatus(payment_status)
        self.credit_due_date = credit_due_date
        self.audit_logs = audit_logs if audit_logs is not None else AuditLog()
        self.version = version
        self.created_at = created_at
        self.updated_at = updated_at
        self._total = Decimal("0")
        self.recalculate_total()

    # ── 導出値・読み取り専用 ────────────────────────

    @property
    def items(self) -> list[LineItem]:
        return self._items

    @property
    def order_status(self) -> OrderStatus:
        return self._order_status

    @property
    def total(self) -> Decimal:
        return self._total

    def _set_status(self, status: OrderStatus) -> None:
        # transitions.apply_transition 専用
        self._order_status = OrderStatus(status)

    def recalculate_total(self) -> Decimal:
        self._total = pricing.recalculate_totals(self._items)
        return self._total

    def replace_items(self, items: list[LineItem]) -> None:
        self._items = list(items)
        self.recalculate_total()

    # ── 直列化 ──────────────────────────────────────

    def items_json(self) -> str:
        return json.dumps([item.model_dump(mode="json") for item in self._items])

    @classmethod
    def from_row(cls, row, audit_logs: AuditLog) -> "OrderAggregate":
        """orders テーブルの 1 行と監査ログから集約を再構築する。"""
        data = row._mapping
        items = [LineItem.model_validate(i) for i in json.loads(data["items"])]
        return cls(
            id=UUID(str(data["id"])),
            client_id=data["client_id"],
            items=items,
            order_status=data["order_status"],
            payment_status=data["payment_status"],
            credit_due_date=from_db_timestamp(data["credit_due_date"]),
            audit_logs=audit_logs,
            version=data["version"],
            created_at=from_db_timestamp(data["created_at"]),
            updated_at=from_db_timestamp(data["updated_at"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "client_id": self.client_id,
            "items": [item.model_dump(mode="json") for item in self._items],
            "order_status": self._order_status.value,
            "payment_status": self.payment_status.value,
            "total": str(self._total),
            "credit_due_date": to_db_timestamp(self.credit_due_date) if self.credit_due_date else None,
            "version": self.version,
            "created_at": to_db_timestamp(self.created_at) if self.created_at else None,
            "updated_at": to_db_timestamp(self.updated_at) if self.updated_at else None,
            "audit_logs": [entry.model_dump(mode="json") for entry in self.audit_logs],
        }
