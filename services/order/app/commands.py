"""
Order Service — コマンドハンドラ (CQRS の Write 側)

注文を変更する操作はすべてここを通る。各コマンドは

    1. 注文を version 付きで読み込む
    2. メモリ上で変更し、監査エントリを 1 件追記する
    3. version を条件に保存し、監査エントリと一緒に commit する
    4. Redis Pub/Sub でイベントを発行する

という流れで動く。3 で競合 (ConcurrentModification) した場合は
1 からやり直す。やり直しは settings.max_retries 回まで。
各試行には settings.persistence_timeout の期限があり、超えた場合は
ロールバックして PersistenceFailure とする。
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, TypeVar
from uuid import UUID, uuid4

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, pricing
from .aggregate import LineItem, OrderAggregate
from .audit_log import AuditEntry, AuditLog, utcnow
from .config import Settings, get_settings
from .errors import ConcurrentModification, OrderError, PaymentStatusInconsistent, PersistenceFailure
from .events import (
    CreditDueDateExtended,
    OrderCreated,
    OrderPriced,
    OrderStatusChanged,
    PaymentStatusInconsistentDetected,
    PaymentStatusUpdated,
)
from .pricing import PriceUpdate
from .repository import OrderRepository
from .states import SETTLED_STATUSES, AuditAction, OrderStatus, PaymentStatus
from .transitions import apply_transition, is_valid_transition, validate_transition

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"

T = TypeVar("T")

# 変更関数: 読み込んだ注文を書き換え、発行するイベントを返す。
# None を返した場合は何も書かずに終える。
Mutation = Callable[[OrderAggregate], list[BaseModel] | None]


@dataclass
class PaymentUpdateResult:
    order: OrderAggregate
    warning: PaymentStatusInconsistent | None = None


# ── 共通処理 ─────────────────────────────────────


async def _guarded(session: AsyncSession, operation: Awaitable[T], settings: Settings) -> T:
    """期限付きで実行し、失敗したらロールバックする。"""
    try:
        return await asyncio.wait_for(operation, timeout=settings.persistence_timeout)
    except OrderError:
        await session.rollback()
        raise
    except asyncio.TimeoutError as e:
        await session.rollback()
        raise PersistenceFailure(
            f"Persistence did not complete within {settings.persistence_timeout}s"
        ) from e
    except SQLAlchemyError as e:
        await session.rollback()
        raise PersistenceFailure(str(e)) from e
    except Exception:
        await session.rollback()
        raise


async def _read_modify_write(
    repo: OrderRepository,
    order_id: UUID,
    mutate: Mutation,
) -> tuple[OrderAggregate, list[BaseModel] | None]:
    order = await repo.find_order(order_id)
    expected_version = order.version
    events = mutate(order)
    if events is None:
        await repo.session.rollback()
        return order, None
    await repo.save_order(order, expected_version)
    return order, events


async def _execute(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    mutate: Mutation,
    settings: Settings | None,
) -> OrderAggregate | None:
    settings = settings or get_settings()
    repo = OrderRepository(session)
    attempt = 1
    while True:
        try:
            order, events = await _guarded(
                session, _read_modify_write(repo, order_id, mutate), settings
            )
            break
        except ConcurrentModification:
            if attempt >= settings.max_retries:
                logger.warning(
                    "Giving up on order %s after %d conflicting attempts", order_id, attempt
                )
                raise
            logger.warning(
                "Concurrent modification on order %s (attempt %d/%d), retrying",
                order_id, attempt, settings.max_retries,
            )
            attempt += 1

    if events is None:
        return None
    await _publish(redis, events)
    return order


async def _publish(redis: aioredis.Redis | None, events: Iterable[BaseModel]) -> None:
    """コミット済みの変更をイベントとして発行する。失敗しても書き込みは取り消さない。"""
    if redis is None:
        return
    for event in events:
        event_type = type(event).__name__
        try:
            await redis.publish(ORDER_EVENTS_CHANNEL, json.dumps({
                "event_type": event_type,
                "data": event.model_dump(mode="json"),
            }, default=str))
        except RedisError:
            logger.exception("Failed to publish %s", event_type)


def _status_changed(order: OrderAggregate, entry: AuditEntry) -> OrderStatusChanged:
    return OrderStatusChanged(
        order_id=order.id,
        from_status=entry.from_status.value,
        to_status=entry.to_status.value,
        changed_by=entry.changed_by,
        detail=entry.detail,
        version=order.version + 1,
        timestamp=entry.timestamp,
    )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ── コマンド ─────────────────────────────────────


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    client_id: str,
    items: list[LineItem],
    actor: str,
    *,
    credit_due_date: datetime | None = None,
    audit_history: list[AuditEntry] | None = None,
    settings: Settings | None = None,
) -> OrderAggregate:
    """
    注文作成コマンド (クライアントからの問い合わせ受付)

    1. カタログ品目が存在し有効であることを確認
    2. NEW_INQUIRY で注文を作り CREATED を監査ログに記録
    3. 保存して OrderCreated を発行

    audit_history は移行データ用。AUDIT_ALLOW_CALLER_TIMESTAMPS が
    無効なら CallerTimestampNotAllowed になる。
    """
    settings = settings or get_settings()
    order = OrderAggregate(
        id=uuid4(),
        client_id=client_id,
        items=[item.model_copy() for item in items],
        credit_due_date=_as_utc(credit_due_date) if credit_due_date else None,
        audit_logs=AuditLog(allow_caller_timestamps=settings.audit_allow_caller_timestamps),
    )
    for entry in audit_history or []:
        order.audit_logs.append(
            entry.action,
            entry.changed_by,
            entry.detail,
            from_status=entry.from_status,
            to_status=entry.to_status,
            timestamp=entry.timestamp,
        )
    created = order.audit_logs.append(
        AuditAction.CREATED.value,
        actor,
        f"Inquiry submitted with {len(order.items)} item(s)",
    )

    async def insert() -> OrderAggregate:
        await catalog.require_active_items(session, [item.item_id for item in order.items])
        return await OrderRepository(session).insert_order(order)

    await _guarded(session, insert(), settings)
    logger.info("Order %s created for client %s", order.id, client_id)
    await _publish(redis, [OrderCreated(
        order_id=order.id,
        client_id=client_id,
        item_count=len(order.items),
        timestamp=created.timestamp,
    )])
    return order


async def transition(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    target: OrderStatus,
    actor: str,
    detail: str,
    *,
    precondition: Callable[[OrderAggregate], bool] | None = None,
    settings: Settings | None = None,
) -> OrderAggregate | None:
    """
    ステータス遷移コマンド。order_status を変更する唯一の入口。

    precondition を渡した場合は、読み込んだ注文に対して毎回評価し、
    偽なら何も書かずに None を返す (スイープの再確認用)。
    """
    target = OrderStatus(target)

    def mutate(order: OrderAggregate) -> list[BaseModel] | None:
        if precondition is not None and not precondition(order):
            return None
        entry = apply_transition(order, target, actor, detail)
        return [_status_changed(order, entry)]

    order = await _execute(session, redis, order_id, mutate, settings)
    if order is not None:
        logger.info("Order %s moved to %s by %s", order_id, target.value, actor)
    return order


async def apply_pricing(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    price_updates: list[PriceUpdate],
    actor: str,
    detail: str = "Prices updated.",
    *,
    settings: Settings | None = None,
) -> OrderAggregate:
    """
    価格設定コマンド

    単価を更新して合計を再計算し、WAITING_CLIENT_APPROVAL へ遷移する。
    既に WAITING_CLIENT_APPROVAL なら自己ループとして同じ状態へ遷移する。
    """
    target = OrderStatus.WAITING_CLIENT_APPROVAL

    def mutate(order: OrderAggregate) -> list[BaseModel]:
        validate_transition(order.order_status, target)
        pricing.apply_pricing(order, price_updates)
        entry = apply_transition(order, target, actor, detail)
        return [
            OrderPriced(
                order_id=order.id,
                total=order.total,
                changed_by=actor,
                timestamp=entry.timestamp,
            ),
            _status_changed(order, entry),
        ]

    order = await _execute(session, redis, order_id, mutate, settings)
    logger.info("Order %s priced at %s by %s", order_id, order.total, actor)
    return order


async def update_payment_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    status: PaymentStatus,
    actor: str,
    *,
    settings: Settings | None = None,
) -> PaymentUpdateResult:
    """
    支払いステータス更新コマンド

    PAID は PAYMENT_CLEARED への遷移を引き起こす。遷移できない状態では
    支払いフラグだけを記録し、PaymentStatusInconsistent を警告として返す。
    """
    status = PaymentStatus(status)
    warning: PaymentStatusInconsistent | None = None

    def mutate(order: OrderAggregate) -> list[BaseModel]:
        nonlocal warning
        warning = None
        order.payment_status = status
        now = utcnow()
        events: list[BaseModel] = [PaymentStatusUpdated(
            order_id=order.id,
            payment_status=status.value,
            changed_by=actor,
            timestamp=now,
        )]

        if status is PaymentStatus.PAID:
            if is_valid_transition(order.order_status, OrderStatus.PAYMENT_CLEARED):
                entry = apply_transition(
                    order, OrderStatus.PAYMENT_CLEARED, actor, "Payment marked as PAID"
                )
                events.append(_status_changed(order, entry))
                return events
            if order.order_status not in SETTLED_STATUSES:
                warning = PaymentStatusInconsistent(order.id, order.order_status.value)
                events.append(PaymentStatusInconsistentDetected(
                    order_id=order.id,
                    order_status=order.order_status.value,
                    changed_by=actor,
                    timestamp=now,
                ))

        detail = f"Payment status set to {status.value}"
        if warning is not None:
            detail += f"; order cannot move from {order.order_status.value} to PAYMENT_CLEARED"
        order.audit_logs.append(AuditAction.PAYMENT_UPDATE.value, actor, detail)
        return events

    order = await _execute(session, redis, order_id, mutate, settings)
    if warning is not None:
        logger.warning("%s", warning)
    return PaymentUpdateResult(order=order, warning=warning)


async def extend_credit_due_date(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    due_date: datetime,
    actor: str,
    *,
    settings: Settings | None = None,
) -> OrderAggregate:
    """与信期限の延長コマンド"""
    due_date = _as_utc(due_date)

    def mutate(order: OrderAggregate) -> list[BaseModel]:
        order.credit_due_date = due_date
        entry = order.audit_logs.append(
            AuditAction.UPDATED.value,
            actor,
            f"Credit due date extended to {due_date.isoformat()}",
        )
        return [CreditDueDateExtended(
            order_id=order.id,
            credit_due_date=due_date,
            changed_by=actor,
            timestamp=entry.timestamp,
        )]

    order = await _execute(session, redis, order_id, mutate, settings)
    logger.info("Order %s credit due date extended to %s", order_id, due_date.isoformat())
    return order


# ── 名前付きの遷移 ───────────────────────────────


async def request_pricing(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    actor: str,
    *,
    settings: Settings | None = None,
) -> OrderAggregate | None:
    return await transition(
        session, redis, order_id, OrderStatus.PENDING_PRICING, actor,
        "Inquiry queued for pricing", settings=settings,
    )


async def dispatch_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    actor: str,
    *,
    settings: Settings | None = None,
) -> OrderAggregate | None:
    return await transition(
        session, redis, order_id, OrderStatus.IN_TRANSIT, actor,
        "Order dispatched", settings=settings,
    )


async def deliver_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    actor: str,
    *,
    settings: Settings | None = None,
) -> OrderAggregate | None:
    return await transition(
        session, redis, order_id, OrderStatus.DELIVERED, actor,
        "Order marked as delivered by Admin", settings=settings,
    )


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    actor: str,
    *,
    settings: Settings | None = None,
) -> OrderAggregate | None:
    return await transition(
        session, redis, order_id, OrderStatus.CLOSED, actor,
        "Order cancelled by Admin", settings=settings,
    )
