"""
Order Service — クエリハンドラ (CQRS の Read 側)

読み取り専用の操作。明細のカタログ品目は resolve-or-null で解決し、
論理削除済みの品目もそのまま返す。
"""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog
from .aggregate import OrderAggregate
from .repository import OrderRepository
from .states import OrderStatus


async def _with_catalog(session: AsyncSession, orders: list[OrderAggregate]) -> list[dict]:
    item_ids = [item.item_id for order in orders for item in order.items]
    resolved = await catalog.resolve_items(session, item_ids)
    results = []
    for order in orders:
        data = order.to_dict()
        for item in data["items"]:
            found = resolved.get(item["item_id"])
            item["catalog_item"] = found.model_dump() if found else None
        results.append(data)
    return results


async def get_order(session: AsyncSession, order_id: UUID) -> dict:
    """注文を 1 件取得する。存在しなければ NotFound。"""
    order = await OrderRepository(session).find_order(order_id)
    return (await _with_catalog(session, [order]))[0]


async def list_orders(session: AsyncSession, status: OrderStatus | None = None) -> list[dict]:
    """注文一覧。status を指定するとそのステータスのみ。"""
    statuses = [status] if status is not None else None
    orders = await OrderRepository(session).find_orders(statuses=statuses)
    return await _with_catalog(session, orders)


async def list_inquiries(session: AsyncSession) -> list[dict]:
    """未対応の問い合わせ (NEW_INQUIRY) 一覧"""
    return await list_orders(session, OrderStatus.NEW_INQUIRY)


async def get_audit_log(session: AsyncSession, order_id: UUID) -> list[dict]:
    """注文の監査ログを追記順に返す。"""
    order = await OrderRepository(session).find_order(order_id)
    return [entry.model_dump(mode="json") for entry in order.audit_logs]
