"""
Order Service — カタログ参照

カタログ品目は外部の参照データ。論理削除 (is_active = false) された
品目でも過去の注文からは解決できなければならないため、
参照は「見つかればその品目、なければ None」として扱う。
"""

from pydantic import BaseModel
from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFound


class CatalogItem(BaseModel):
    id: str
    item_name: str
    description: str = ""
    unit: str = ""
    is_active: bool = True


async def resolve_items(session: AsyncSession, item_ids: list[str]) -> dict[str, CatalogItem | None]:
    """item_id ごとに品目を解決する。存在しなければ None。"""
    ids = sorted(set(item_ids))
    resolved: dict[str, CatalogItem | None] = {item_id: None for item_id in ids}
    if not ids:
        return resolved
    result = await session.execute(
        text("""
            SELECT id, item_name, description, unit, is_active
            FROM catalog_items
            WHERE id IN :ids
        """).bindparams(bindparam("ids", expanding=True)),
        {"ids": ids},
    )
    for row in result.fetchall():
        resolved[row.id] = CatalogItem(
            id=row.id,
            item_name=row.item_name,
            description=row.description,
            unit=row.unit,
            is_active=bool(row.is_active),
        )
    return resolved


async def require_active_items(session: AsyncSession, item_ids: list[str]) -> None:
    """新規注文の受付用: すべての品目が存在し、有効であることを確認する。"""
    resolved = await resolve_items(session, item_ids)
    for item_id, item in resolved.items():
        if item is None:
            raise NotFound("CatalogItem", item_id)
        if not item.is_active:
            raise NotFound("CatalogItem", item_id, "is no longer available")
