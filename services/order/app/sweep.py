"""
Order Service — 与信期限スイープ

与信期限 (credit_due_date) を過ぎても未払いの注文を CLOSED にする。
スケジューラ (ここでは run_credit_sweeper) から定期的に呼ばれる。

状態の変更は必ず commands.transition() を通す。対象条件は
読み込み直後に毎回再評価するので、2 回続けて実行しても、
管理者の操作と競合しても、同じ注文を二重に遷移させない。
"""

import asyncio
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import commands
from .aggregate import OrderAggregate
from .config import Settings, get_settings
from .repository import OrderRepository
from .states import CREDIT_PENDING_STATUSES, SYSTEM_ACTOR, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

SWEEP_TARGET_STATUS = OrderStatus.CLOSED
SWEEP_DETAIL = "Credit due date elapsed without payment"


def is_credit_overdue(order: OrderAggregate, now: datetime) -> bool:
    return (
        order.credit_due_date is not None
        and order.credit_due_date < now
        and order.payment_status is PaymentStatus.UNPAID
        and order.order_status in CREDIT_PENDING_STATUSES
    )


async def sweep_overdue_credit(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    now: datetime,
    *,
    settings: Settings | None = None,
) -> list[OrderAggregate]:
    """
    期限切れの注文を遷移させ、実際に遷移させた注文を返す。

    1 件の失敗でスイープ全体を止めず、ログに残して次の注文へ進む。
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    candidates = await OrderRepository(session).find_orders(
        statuses=CREDIT_PENDING_STATUSES,
        payment_status=PaymentStatus.UNPAID,
        credit_due_before=now,
    )
    await session.rollback()

    acted: list[OrderAggregate] = []
    for candidate in candidates:
        try:
            order = await commands.transition(
                session,
                redis,
                candidate.id,
                SWEEP_TARGET_STATUS,
                SYSTEM_ACTOR,
                SWEEP_DETAIL,
                precondition=lambda o: is_credit_overdue(o, now),
                settings=settings,
            )
        except Exception:
            logger.exception("Credit sweep failed for order %s", candidate.id)
            continue
        if order is not None:
            acted.append(order)

    logger.info(
        "Credit sweep at %s: %d candidate(s), %d transitioned",
        now.isoformat(), len(candidates), len(acted),
    )
    return acted


async def run_credit_sweeper(
    async_session_factory: sessionmaker,
    redis: aioredis.Redis | None,
    shutdown_event: asyncio.Event,
    settings: Settings | None = None,
) -> None:
    """
    shutdown_event がセットされるまで、一定間隔でスイープを実行する。
    """
    settings = settings or get_settings()
    logger.info("Credit sweeper started (interval %ss)", settings.sweep_interval_seconds)
    while not shutdown_event.is_set():
        try:
            async with async_session_factory() as session:
                await sweep_overdue_credit(
                    session, redis, datetime.now(timezone.utc), settings=settings
                )
        except Exception:
            logger.exception("Credit sweep tick failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=settings.sweep_interval_seconds)
        except asyncio.TimeoutError:
            pass
