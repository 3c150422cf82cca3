"""
Order Service: 在庫の引き当て (Reserve) と解放 (Release)

注文作成時に明細ごとの在庫を減らし、キャンセル時に戻す。
引き当ては「全明細の在庫確認 → 全明細の減算」の順で行い、
途中で不足が見つかった場合は1件も減らさない。
減算そのものはストア側で不可分に行われる (同時注文対策)。
"""

import logging
from datetime import datetime
from uuid import UUID

from .aggregate import OrderAggregate, OrderItem
from .errors import InsufficientStock, ProductInactive, ProductNotFound, ValidationError
from .events import InventoryReleased, InventoryReserved
from .models import Product
from .stores import ProductStore

logger = logging.getLogger(__name__)


async def check_availability(
    products: ProductStore,
    requested: list[tuple[UUID, int]],
) -> list[tuple[Product, int]]:
    """
    要求された (product_id, quantity) をすべて検証し、商品と数量の組を返す。
    同じ商品が複数行にある場合は合計数量で在庫を確認する。
    """
    resolved: list[tuple[Product, int]] = []
    totals: dict[UUID, int] = {}

    for product_id, quantity in requested:
        if quantity is None or quantity < 1:
            raise ValidationError(f"Quantity must be at least 1 (product {product_id})")

        product = await products.by_id(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        if not product.is_active:
            raise ProductInactive(product.name)

        totals[product_id] = totals.get(product_id, 0) + quantity
        if not product.has_stock(totals[product_id]):
            raise InsufficientStock(product.name, product.stock_quantity, totals[product_id])
        resolved.append((product, quantity))

    return resolved


async def reserve_inventory(
    products: ProductStore,
    order: OrderAggregate,
    now: datetime,
) -> list[InventoryReserved]:
    """注文の全明細について在庫を減らす。"""
    events = []
    for item in order.items:
        await products.decrease_stock(item.product_id, item.quantity)
        logger.info(
            "Reserved %s x %s for order %s", item.quantity, item.product_name, order.order_number
        )
        events.append(_event(InventoryReserved, order, item, now))
    return events


async def release_inventory(
    products: ProductStore,
    order: OrderAggregate,
    now: datetime,
) -> list[InventoryReleased]:
    """キャンセルされた注文の全明細について在庫を戻す（補償）。"""
    events = []
    for item in order.items:
        await products.increase_stock(item.product_id, item.quantity)
        logger.info(
            "Released %s x %s from order %s", item.quantity, item.product_name, order.order_number
        )
        events.append(_event(InventoryReleased, order, item, now))
    return events


def _event(event_cls, order: OrderAggregate, item: OrderItem, now: datetime):
    return event_cls(
        order_id=order.id,
        order_number=order.order_number,
        timestamp=now,
        product_id=item.product_id,
        quantity=item.quantity,
    )
