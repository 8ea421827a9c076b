"""
Order Service — リポジトリ

注文集約の読み書き。version 列による楽観的ロックで同時書き込みを防ぐ:

    UPDATE orders SET ..., version = version + 1
    WHERE id = :id AND version = :expected_version

更新行数が 0 なら、読み込み後に他のリクエストが書き込んだということ。
監査ログの INSERT も同じトランザクションで行い、一緒に commit する。
"""

from datetime import datetime
from typing import Iterable
from uuid import UUID

from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import audit_log
from .aggregate import OrderAggregate
from .audit_log import AuditLog, to_db_timestamp, utcnow
from .errors import ConcurrentModification, NotFound
from .states import OrderStatus, PaymentStatus


class OrderRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_order(self, order_id: UUID) -> OrderAggregate:
        result = await self.session.execute(
            text("SELECT * FROM orders WHERE id = :id"),
            {"id": str(order_id)},
        )
        row = result.fetchone()
        if not row:
            raise NotFound("Order", order_id)
        entries = await audit_log.load_entries(self.session, order_id)
        return OrderAggregate.from_row(row, AuditLog(entries))

    async def find_orders(
        self,
        statuses: Iterable[OrderStatus] | None = None,
        payment_status: PaymentStatus | None = None,
        credit_due_before: datetime | None = None,
    ) -> list[OrderAggregate]:
        """ステータス・支払い・与信期限で絞り込む。条件は AND で結合する。"""
        clauses = []
        params: dict = {}
        bind = []
        if statuses is not None:
            clauses.append("order_status IN :statuses")
            params["statuses"] = [OrderStatus(s).value for s in statuses]
            bind.append(bindparam("statuses", expanding=True))
        if payment_status is not None:
            clauses.append("payment_status = :payment_status")
            params["payment_status"] = PaymentStatus(payment_status).value
        if credit_due_before is not None:
            clauses.append("credit_due_date IS NOT NULL AND credit_due_date < :due_before")
            params["due_before"] = to_db_timestamp(credit_due_before)

        sql = "SELECT * FROM orders"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at ASC"

        stmt = text(sql)
        if bind:
            stmt = stmt.bindparams(*bind)
        result = await self.session.execute(stmt, params)
        orders = []
        for row in result.fetchall():
            entries = await audit_log.load_entries(self.session, row.id)
            orders.append(OrderAggregate.from_row(row, AuditLog(entries)))
        return orders

    async def insert_order(self, order: OrderAggregate) -> OrderAggregate:
        """新規注文と初期の監査エントリを保存して commit する。"""
        now = utcnow()
        await self.session.execute(
            text("""
                INSERT INTO orders
                    (id, client_id, order_status, payment_status, items, total,
                     credit_due_date, version, created_at, updated_at)
                VALUES
                    (:id, :client_id, :order_status, :payment_status, :items, :total,
                     :credit_due_date, 1, :now, :now)
            """),
            {
                **self._order_params(order),
                "now": to_db_timestamp(now),
            },
        )
        await audit_log.insert_entries(
            self.session, order.id, order.audit_logs.pending(), start_seq=1
        )
        await self.session.commit()
        order.version = 1
        order.created_at = order.updated_at = now
        order.audit_logs.mark_persisted()
        return order

    async def save_order(self, order: OrderAggregate, expected_version: int) -> OrderAggregate:
        """
        楽観的ロック付きで注文を保存して commit する。

        保存済みの version が expected_version から進んでいれば
        ConcurrentModification を送出する (commit 前なので何も確定しない)。
        """
        now = utcnow()
        result = await self.session.execute(
            text("""
                UPDATE orders
                SET client_id = :client_id,
                    order_status = :order_status,
                    payment_status = :payment_status,
                    items = :items,
                    total = :total,
                    credit_due_date = :credit_due_date,
                    version = :new_version,
                    updated_at = :now
                WHERE id = :id AND version = :expected_version
            """),
            {
                **self._order_params(order),
                "new_version": expected_version + 1,
                "expected_version": expected_version,
                "now": to_db_timestamp(now),
            },
        )
        if result.rowcount != 1:
            raise ConcurrentModification(order.id, expected_version)

        try:
            await audit_log.insert_entries(
                self.session,
                order.id,
                order.audit_logs.pending(),
                start_seq=order.audit_logs.persisted_count + 1,
            )
        except IntegrityError as e:
            raise ConcurrentModification(order.id, expected_version) from e

        await self.session.commit()
        order.version = expected_version + 1
        order.updated_at = now
        order.audit_logs.mark_persisted()
        return order

    @staticmethod
    def _order_params(order: OrderAggregate) -> dict:
        return {
            "id": str(order.id),
            "client_id": order.client_id,
            "order_status": order.order_status.value,
            "payment_status": order.payment_status.value,
            "items": order.items_json(),
            "total": str(order.recalculate_total()),
            "credit_due_date": (
                to_db_timestamp(order.credit_due_date) if order.credit_due_date else None
            ),
        }
