"""
Order Service — FastAPI エントリーポイント

CQRS パターンに従い、Command (POST) と Query (GET) のエンドポイントを分離。
状態を変更するエンドポイントは commands モジュールを薄く包むだけで、
遷移ルールや楽観的ロックはすべてコマンド側にある。

操作者 (actor) は X-Actor ヘッダで受け取る。認証はこのサービスの範囲外。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, queries, schema, sweep
from .aggregate import LineItem
from .config import get_settings
from .errors import (
    CallerTimestampNotAllowed,
    ConcurrentModification,
    InvalidTransition,
    NotFound,
    OrderError,
    PersistenceFailure,
)
from .pricing import PriceUpdate
from .states import OrderStatus, PaymentStatus

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時に Redis 接続と与信スイープのバックグラウンドタスクを開始する。"""
    global redis_pool
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    if settings.create_schema:
        await schema.create_schema(engine)

    shutdown_event = asyncio.Event()
    sweeper_task = None
    if settings.sweep_interval_seconds > 0:
        sweeper_task = asyncio.create_task(
            sweep.run_credit_sweeper(async_session, redis_pool, shutdown_event, settings)
        )
    yield
    shutdown_event.set()
    if sweeper_task is not None:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass
    await redis_pool.aclose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── 依存関係 ─────────────────────────────────────


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


def get_redis() -> aioredis.Redis | None:
    return redis_pool


def get_actor(x_actor: str = Header(default="ADMIN")) -> str:
    return x_actor


# ── エラー変換 ───────────────────────────────────

_STATUS_CODES = {
    NotFound: 404,
    InvalidTransition: 409,
    ConcurrentModification: 409,
    CallerTimestampNotAllowed: 422,
    PersistenceFailure: 503,
}


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    status_code = next(
        (code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 400
    )
    body = {"error": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, InvalidTransition):
        body.update(current=exc.current, requested=exc.requested)
    return JSONResponse(status_code=status_code, content=body)


# ── Request / Response Models ────────────────────


class OrderItemRequest(BaseModel):
    item_id: str
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)


class CreateOrderRequest(BaseModel):
    client_id: str
    items: list[OrderItemRequest] = Field(min_length=1)
    credit_due_date: datetime | None = None


class PricingRequest(BaseModel):
    items: list[PriceUpdate]


class PaymentRequest(BaseModel):
    status: PaymentStatus


class TransitionRequest(BaseModel):
    status: OrderStatus
    detail: str = ""


class ExtendDueDateRequest(BaseModel):
    date: datetime


class SweepRequest(BaseModel):
    now: datetime | None = None


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/orders", status_code=201)
async def cmd_create_order(
    req: CreateOrderRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
    actor: str = Depends(get_actor),
):
    """問い合わせとして注文を作成する"""
    order = await commands.create_order(
        session, redis, req.client_id,
        [LineItem(**item.model_dump()) for item in req.items],
        actor,
        credit_due_date=req.credit_due_date,
    )
    return order.to_dict()


@app.post("/commands/orders/{order_id}/pricing")
async def cmd_set_pricing(
    order_id: UUID,
    req: PricingRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
    actor: str = Depends(get_actor),
):
    """単価を設定し、クライアント承認待ちにする"""
    order = await commands.apply_pricing(session, redis, order_id, req.items, actor)
    return order.to_dict()


@app.post("/commands/orders/{order_id}/payment")
async def cmd_update_payment(
    order_id: UUID,
    req: PaymentRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
    actor: str = Depends(get_actor),
):
    """支払いステータスを記録する (PAID なら PAYMENT_CLEARED へ)"""
    result = await commands.update_payment_status(session, redis, order_id, req.status, actor)
    body = result.order.to_dict()
    body["warnings"] = [str(result.warning)] if result.warning else []
    return body


@app.post("/commands/orders/{order_id}/transition")
async def cmd_transition(
    order_id: UUID,
    req: TransitionRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
    actor: str = Depends(get_actor),
):
    order = await commands.transition(session, redis, order_id, req.status, actor, req.detail)
    return order.to_dict()


@app.post("/commands/orders/{order_id}/request-pricing")
async def cmd_request_pricing(
    order_id: UUID,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
    actor: str = Depends(get_actor),
):
    order = await commands.request_pricing(session, redis, order_id, actor)
    return order.to_dict()


@app.post("/commands/orders/{order_id}/dispatch")
async def cmd_dispatch(
    order_id: UUID,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
    actor: str = Depends(get_actor),
):
    order = await commands.dispatch_order(session, redis, order_id, actor)
    return order.to_dict()


@app.post("/commands/orders/{order_id}/deliver")
async def cmd_deliver(
    order_id: UUID,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
    actor: str = Depends(get_actor),
):
    order = await commands.deliver_order(session, redis, order_id, actor)
    return order.to_dict()


@app.post("/commands/orders/{order_id}/cancel")
async def cmd_cancel(
    order_id: UUID,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
    actor: str = Depends(get_actor),
):
    order = await commands.cancel_order(session, redis, order_id, actor)
    return order.to_dict()


@app.post("/commands/orders/{order_id}/credit-due-date")
async def cmd_extend_due_date(
    order_id: UUID,
    req: ExtendDueDateRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
    actor: str = Depends(get_actor),
):
    order = await commands.extend_credit_due_date(session, redis, order_id, req.date, actor)
    return order.to_dict()


@app.post("/commands/sweeps/credit")
async def cmd_sweep_credit(
    req: SweepRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """与信期限スイープを手動で 1 回実行する"""
    now = req.now or datetime.now(timezone.utc)
    orders = await sweep.sweep_overdue_credit(session, redis, now)
    return {"transitioned": [str(order.id) for order in orders]}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/orders")
async def query_list_orders(
    status: OrderStatus | None = None,
    session: AsyncSession = Depends(get_session),
):
    return await queries.list_orders(session, status)


@app.get("/queries/inquiries")
async def query_list_inquiries(session: AsyncSession = Depends(get_session)):
    return await queries.list_inquiries(session)


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: UUID, session: AsyncSession = Depends(get_session)):
    return await queries.get_order(session, order_id)


@app.get("/queries/orders/{order_id}/audit-log")
async def query_audit_log(order_id: UUID, session: AsyncSession = Depends(get_session)):
    return await queries.get_audit_log(session, order_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
