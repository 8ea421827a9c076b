"""
Order Service — 価格計算

明細の単価更新と合計の再計算。金額はすべて Decimal で扱う。
合計を手で設定する手段はなく、明細か単価が変わるたびに
recalculate_totals() を通して再計算する。
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Iterable

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .aggregate import LineItem, OrderAggregate


class PriceUpdate(BaseModel):
    item_id: str
    unit_price: Decimal = Field(ge=0)


def recalculate_totals(items: Iterable[LineItem]) -> Decimal:
    """各明細の line_total を更新し、その合計を返す。"""
    total = Decimal("0")
    for item in items:
        item.line_total = item.quantity * item.unit_price
        total += item.line_total
    return total


def apply_pricing(order: OrderAggregate, price_updates: Iterable[PriceUpdate]) -> OrderAggregate:
    """
    単価を上書きして合計を再計算する。

    - item_id が一致する最初の明細の単価を上書き
    - 存在しない item_id の更新は無視する
    """
    for update in price_updates:
        item = next((i for i in order.items if i.item_id == update.item_id), None)
        if item is not None:
            item.unit_price = update.unit_price
    order.recalculate_total()
    return order
