"""
Order Service — 監査ログ

注文ごとの追記専用ログ。削除・並べ替え・更新の操作は持たない。
エントリは不変 (frozen) で、時刻は追記時にシステムが付与する。

永続化は order_audit_logs テーブルへの INSERT のみ。
(order_id, seq) の主キーにより、同じ位置への同時追記は
UNIQUE 制約違反となり競合として検知できる。
"""

from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import CallerTimestampNotAllowed
from .states import OrderStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """固定幅の UTC ISO-8601 文字列。文字列比較が時刻順と一致する。"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromisoformat(value)


class AuditEntry(BaseModel):
    """監査ログの 1 エントリ"""
    model_config = ConfigDict(frozen=True)

    action: str
    changed_by: str
    detail: str
    timestamp: datetime
    from_status: OrderStatus | None = None
    to_status: OrderStatus | None = None


class AuditLog:
    """
    追記専用の監査ログ。

    読み込み済み (永続化済み) のエントリ数を覚えておき、
    pending() で未保存分だけを取り出せる。
    """

    def __init__(
        self,
        entries: Iterable[AuditEntry] = (),
        *,
        allow_caller_timestamps: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._entries: list[AuditEntry] = list(entries)
        self._persisted = len(self._entries)
        self._allow_caller_timestamps = allow_caller_timestamps
        self._clock = clock

    def append(
        self,
        action: str,
        changed_by: str,
        detail: str,
        *,
        from_status: OrderStatus | None = None,
        to_status: OrderStatus | None = None,
        timestamp: datetime | None = None,
    ) -> AuditEntry:
        if timestamp is not None and not self._allow_caller_timestamps:
            raise CallerTimestampNotAllowed(
                "Audit timestamps are assigned by the system; "
                "enable AUDIT_ALLOW_CALLER_TIMESTAMPS to import historical entries"
            )
        entry = AuditEntry(
            action=action,
            changed_by=changed_by,
            detail=detail,
            timestamp=timestamp if timestamp is not None else self._clock(),
            from_status=from_status,
            to_status=to_status,
        )
        self._entries.append(entry)
        return entry

    def pending(self) -> list[AuditEntry]:
        return self._entries[self._persisted:]

    @property
    def persisted_count(self) -> int:
        return self._persisted

    def mark_persisted(self) -> None:
        self._persisted = len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[AuditEntry]:
        return iter(tuple(self._entries))

    def __getitem__(self, index: int) -> AuditEntry:
        return self._entries[index]


# ── 永続化 ─────────────────────────────────────────


async def insert_entries(
    session: AsyncSession,
    order_id: UUID,
    entries: list[AuditEntry],
    start_seq: int,
) -> None:
    """
    エントリを seq 順に INSERT する。commit は呼び出し側の責務。

    注文本体の UPDATE と同じトランザクションで実行することで、
    ステータス変更と監査エントリが必ず一緒に確定する。
    """
    for offset, entry in enumerate(entries):
        await session.execute(
            text("""
                INSERT INTO order_audit_logs
                    (order_id, seq, action, changed_by, detail, from_status, to_status, recorded_at)
                VALUES
                    (:order_id, :seq, :action, :changed_by, :detail, :from_status, :to_status, :recorded_at)
            """),
            {
                "order_id": str(order_id),
                "seq": start_seq + offset,
                "action": entry.action,
                "changed_by": entry.changed_by,
                "detail": entry.detail,
                "from_status": entry.from_status.value if entry.from_status else None,
                "to_status": entry.to_status.value if entry.to_status else None,
                "recorded_at": to_db_timestamp(entry.timestamp),
            },
        )


async def load_entries(session: AsyncSession, order_id: UUID) -> list[AuditEntry]:
    """指定注文の監査ログを追記順 (seq 昇順) に読み出す。"""
    result = await session.execute(
        text("""
            SELECT action, changed_by, detail, from_status, to_status, recorded_at
            FROM order_audit_logs
            WHERE order_id = :order_id
            ORDER BY seq ASC
        """),
        {"order_id": str(order_id)},
    )
    return [
        AuditEntry(
            action=row.action,
            changed_by=row.changed_by,
            detail=row.detail,
            from_status=row.from_status,
            to_status=row.to_status,
            timestamp=from_db_timestamp(row.recorded_at),
        )
        for row in result.fetchall()
    ]
