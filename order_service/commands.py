"""
Order Service: コマンドハンドラ (Write 側)

注文の作成・状態遷移・追加サービスの付け替えを行う。
各コマンドは1つのユニットオブワークの中で

  1. 必要なデータ (利用者・住所・商品・ルール・追加サービス) を先に読み込む
  2. 配送料の選択と追加サービスの計算を行う (純粋な計算で I/O なし)
  3. 注文を保存し、在庫を増減する
  4. コミットする

の順に処理し、コミットが成功した後でだけイベントを Redis Pub/Sub に発行する。
途中で例外が起きた場合は在庫を含めて何も変更されない。
"""

import json
import logging
from datetime import datetime, timezone
from uuid import UUID

import redis.asyncio as aioredis

from . import config
from .aggregate import OrderAggregate, OrderExtra, OrderItem, generate_order_number
from .errors import (
    AddressNotFound,
    AddressOwnershipMismatch,
    DuplicateOrderNumber,
    OrderNotFound,
    OrderNotModifiable,
    OrderServiceError,
    UserNotAllowed,
    UserNotFound,
    ValidationError,
)
from .events import DomainEvent, InventoryReleased, InventoryReserved, OrderExtrasRecalculated
from .extras import BaseOrderView, ExtraChainBuilder
from .inventory import check_availability, release_inventory, reserve_inventory
from .models import UserRole
from .money import ZERO, round2
from .selector import ShippingCalculationResult, ShippingRuleSelector
from .stores import UnitOfWork
from .strategies import OrderSnapshot

logger = logging.getLogger(__name__)

_INVENTORY_EVENTS = (InventoryReserved, InventoryReleased)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _publish(redis: aioredis.Redis, events: list[DomainEvent]) -> None:
    """コミット済みのイベントを発行する。在庫イベントは inventory_events へ。"""
    for event in events:
        channel = (
            config.INVENTORY_EVENTS_CHANNEL
            if isinstance(event, _INVENTORY_EVENTS)
            else config.ORDER_EVENTS_CHANNEL
        )
        await redis.publish(channel, json.dumps({
            "event_type": event.event_type,
            "data": event.model_dump(mode="json"),
        }, default=str))


async def _load_order(
    uow: UnitOfWork, order_id: UUID, user_id: UUID | None = None
) -> OrderAggregate:
    order = await uow.orders.by_id(order_id)
    if order is None:
        raise OrderNotFound(order_id)
    order.ensure_owned_by(user_id)
    return order


async def _snapshot(uow: UnitOfWork, order: OrderAggregate, now: datetime) -> OrderSnapshot:
    """保存済みの注文から配送料計算用のスナップショットを作る。"""
    address = await uow.addresses.by_id(order.address_id)
    if address is None:
        raise AddressNotFound(order.address_id)
    # 保存済みの注文自身は過去の注文に数えない
    prior_orders = max(await uow.orders.count_by_user(order.user_id) - 1, 0)
    return OrderSnapshot.of(order, address.zone, prior_orders, now)


async def _apply_extras(
    uow: UnitOfWork,
    order: OrderAggregate,
    extra_codes: list[str],
    builder: ExtraChainBuilder,
) -> None:
    """
    追加サービスのチェーンを組み、注文の追加サービスを置き換える。
    価格はこの時点のカタログ値で固定する。
    """
    if not extra_codes:
        order.replace_extras([])
        return

    catalogue = await uow.extras.active_by_codes(extra_codes)
    chain = builder.build(BaseOrderView.from_order(order), extra_codes, catalogue)

    extras = [
        OrderExtra(extra_code=extra.code, extra_name=extra.name, applied_price=price)
        for extra, price in chain.priced_extras()
    ]

    # 保存する価格の合計はチェーンが加算した額と一致する
    extras_cost = round2(chain.cost() - (order.subtotal + order.shipping_cost))
    applied_total = round2(sum((extra.applied_price for extra in extras), ZERO))
    if applied_total != extras_cost:
        logger.error(
            "Extras cost mismatch for order %s: chain=%s, applied=%s",
            order.order_number, extras_cost, applied_total,
        )
        raise OrderServiceError(
            f"Extras cost mismatch for order {order.order_number}: "
            f"chain={extras_cost}, applied={applied_total}"
        )

    order.replace_extras(extras)
    logger.debug(
        "Extras applied to order %s: %s. Total extras cost: %s",
        order.order_number, chain.applied_extra_codes(), extras_cost,
    )


# ── 注文作成 ───────────────────────────────────


async def create_order(
    uow: UnitOfWork,
    redis: aioredis.Redis,
    user_id: UUID,
    address_id: UUID,
    items: list[tuple[UUID, int]],
    extra_codes: list[str] | None = None,
    now: datetime | None = None,
    selector: ShippingRuleSelector | None = None,
    builder: ExtraChainBuilder | None = None,
) -> OrderAggregate:
    """
    注文作成コマンド

    1. 利用者と配送先住所を検証
    2. 全明細の商品と在庫を検証 (1件でも不足なら何も変更しない)
    3. 明細のスナップショットから小計・重量を計算
    4. 配送ルールを選択して送料を設定
    5. 追加サービスのチェーンから追加料金を計算
    6. 税と合計を確定
    7. 注文を保存して在庫を減らし、コミット後にイベントを発行
    """
    now = now or _utcnow()
    selector = selector or ShippingRuleSelector()
    builder = builder or ExtraChainBuilder()
    extra_codes = list(extra_codes or [])

    if not items:
        raise ValidationError("Order must contain at least one item")

    logger.info("Creating order for user %s with %s items", user_id, len(items))

    # 注文番号が既存と衝突した場合は番号を引き直してトランザクションごとやり直す
    for attempt in range(1, config.ORDER_NUMBER_ATTEMPTS + 1):
        try:
            order, reserved = await _place_order(
                uow, user_id, address_id, items, extra_codes, now, selector, builder
            )
            break
        except DuplicateOrderNumber as e:
            if attempt == config.ORDER_NUMBER_ATTEMPTS:
                raise
            logger.warning(
                "Order number %s already taken, retrying (%s/%s)",
                e.order_number, attempt, config.ORDER_NUMBER_ATTEMPTS,
            )

    await _publish(redis, [*order.pull_events(), *reserved])
    logger.info("Order %s created. Total: %s", order.order_number, order.total_amount)
    return order


async def _place_order(
    uow: UnitOfWork,
    user_id: UUID,
    address_id: UUID,
    items: list[tuple[UUID, int]],
    extra_codes: list[str],
    now: datetime,
    selector: ShippingRuleSelector,
    builder: ExtraChainBuilder,
) -> tuple[OrderAggregate, list[DomainEvent]]:
    async with uow:
        user = await uow.users.by_id(user_id)
        if user is None:
            raise UserNotFound(user_id)
        if not user.is_active:
            raise UserNotAllowed(user_id, "user is not active")
        if user.role is not UserRole.CUSTOMER:
            raise UserNotAllowed(user_id, f"role {user.role.value} cannot place orders")

        address = await uow.addresses.by_id(address_id)
        if address is None:
            raise AddressNotFound(address_id)
        if address.user_id != user_id:
            raise AddressOwnershipMismatch(address_id, user_id)

        resolved = await check_availability(uow.products, items)

        order = OrderAggregate(
            order_number=generate_order_number(now),
            user_id=user_id,
            address_id=address_id,
            created_at=now,
        )
        for product, quantity in resolved:
            order.add_item(OrderItem.snapshot(product, quantity))
        order.calculate_totals()
        logger.debug(
            "Order base created: subtotal=%s, weight=%skg", order.subtotal, order.total_weight_kg
        )

        # 配送料
        prior_orders = await uow.orders.count_by_user(user_id)
        rules = await uow.rules.active_valid_rules(now)
        shipping = selector.select_shipping(
            OrderSnapshot.of(order, address.zone, prior_orders, now), rules
        )
        order.set_shipping(shipping.cost, shipping.applied_rule_code)
        logger.info(
            "Shipping calculated: %s using rule: %s", shipping.cost, shipping.applied_rule_code
        )

        # 追加サービス
        await _apply_extras(uow, order, extra_codes, builder)

        order.calculate_totals()
        order.place(now)
        logger.info(
            "Order totals: subtotal=%s, shipping=%s, extras=%s, tax=%s, total=%s",
            order.subtotal, order.shipping_cost, order.extras_cost,
            order.tax_amount, order.total_amount,
        )

        await uow.orders.save(order)
        reserved = await reserve_inventory(uow.products, order, now)
        await uow.commit()

    return order, reserved


# ── 状態遷移 ───────────────────────────────────


async def confirm_order(
    uow: UnitOfWork,
    redis: aioredis.Redis,
    order_id: UUID,
    now: datetime | None = None,
    user_id: UUID | None = None,
) -> OrderAggregate:
    """注文確定コマンド (PENDING → CONFIRMED)。user_id を渡すと所有者を確認する。"""
    now = now or _utcnow()
    async with uow:
        order = await _load_order(uow, order_id, user_id)
        order.confirm(now)
        await uow.orders.save(order)
        await uow.commit()

    await _publish(redis, order.pull_events())
    logger.info("Order %s confirmed", order.order_number)
    return order


async def cancel_order(
    uow: UnitOfWork,
    redis: aioredis.Redis,
    order_id: UUID,
    reason: str = "",
    now: datetime | None = None,
    user_id: UUID | None = None,
) -> OrderAggregate:
    """
    注文キャンセルコマンド

    状態を CANCELLED にしてから全明細の在庫を戻す。
    両方が同じトランザクションでコミットされる。
    """
    now = now or _utcnow()
    async with uow:
        order = await _load_order(uow, order_id, user_id)
        order.cancel(now, reason)
        await uow.orders.save(order)
        released = await release_inventory(uow.products, order, now)
        await uow.commit()

    await _publish(redis, [*order.pull_events(), *released])
    logger.info("Order %s cancelled and stock restored", order.order_number)
    return order


async def mark_in_transit(
    uow: UnitOfWork,
    redis: aioredis.Redis,
    order_id: UUID,
    now: datetime | None = None,
) -> OrderAggregate:
    """発送コマンド (CONFIRMED → IN_TRANSIT)"""
    now = now or _utcnow()
    async with uow:
        order = await _load_order(uow, order_id)
        order.mark_in_transit(now)
        await uow.orders.save(order)
        await uow.commit()

    await _publish(redis, order.pull_events())
    logger.info("Order %s is in transit", order.order_number)
    return order


async def mark_delivered(
    uow: UnitOfWork,
    redis: aioredis.Redis,
    order_id: UUID,
    now: datetime | None = None,
) -> OrderAggregate:
    """配達完了コマンド (IN_TRANSIT → DELIVERED)"""
    now = now or _utcnow()
    async with uow:
        order = await _load_order(uow, order_id)
        order.mark_delivered(now)
        await uow.orders.save(order)
        await uow.commit()

    await _publish(redis, order.pull_events())
    logger.info("Order %s delivered", order.order_number)
    return order


# ── 追加サービスの付け替え ─────────────────────────


async def recalculate_extras(
    uow: UnitOfWork,
    redis: aioredis.Redis,
    order_id: UUID,
    extra_codes: list[str] | None,
    now: datetime | None = None,
    builder: ExtraChainBuilder | None = None,
    user_id: UUID | None = None,
) -> OrderAggregate:
    """
    追加サービス再計算コマンド

    キャンセル可能な状態 (PENDING / CONFIRMED) の注文だけが対象。
    既存の追加サービスを外し、新しいコードでチェーンを組み直して合計を再計算する。
    送料は作成時の値のまま変えない。
    """
    now = now or _utcnow()
    builder = builder or ExtraChainBuilder()

    async with uow:
        order = await _load_order(uow, order_id, user_id)
        if not order.is_modifiable:
            raise OrderNotModifiable(order.order_number, order.status.value)

        await _apply_extras(uow, order, list(extra_codes or []), builder)
        order.calculate_totals()
        order.updated_at = now
        order.pending_events.append(
            OrderExtrasRecalculated(
                order_id=order.id,
                order_number=order.order_number,
                timestamp=now,
                extra_codes=order.extra_codes,
                extras_cost=order.extras_cost,
                total_amount=order.total_amount,
            )
        )
        await uow.orders.save(order)
        await uow.commit()

    await _publish(redis, order.pull_events())
    logger.info("Order %s recalculated. New total: %s", order.order_number, order.total_amount)
    return order


# ── 配送料の見積もり (状態は変更しない) ───────────────


async def select_shipping(
    uow: UnitOfWork,
    order_id: UUID,
    now: datetime | None = None,
    selector: ShippingRuleSelector | None = None,
) -> ShippingCalculationResult:
    """保存済みの注文に対して、現在のルールで自動選択した送料を返す。"""
    now = now or _utcnow()
    selector = selector or ShippingRuleSelector()
    async with uow:
        order = await _load_order(uow, order_id)
        snapshot = await _snapshot(uow, order, now)
        rules = await uow.rules.active_valid_rules(now)
    return selector.select_shipping(snapshot, rules)


async def select_with_forced_rule(
    uow: UnitOfWork,
    order_id: UUID,
    rule_code: str,
    now: datetime | None = None,
    selector: ShippingRuleSelector | None = None,
) -> ShippingCalculationResult:
    """指定ルールだけで送料を計算する。適用できなければ例外。"""
    now = now or _utcnow()
    selector = selector or ShippingRuleSelector()
    async with uow:
        order = await _load_order(uow, order_id)
        snapshot = await _snapshot(uow, order, now)
        rule = await uow.rules.by_code(rule_code)
    return selector.select_with_forced_rule(snapshot, rule_code, rule)


async def is_rule_applicable(
    uow: UnitOfWork,
    order_id: UUID,
    rule_code: str,
    now: datetime | None = None,
    selector: ShippingRuleSelector | None = None,
) -> bool:
    now = now or _utcnow()
    selector = selector or ShippingRuleSelector()
    async with uow:
        order = await _load_order(uow, order_id)
        snapshot = await _snapshot(uow, order, now)
        rule = await uow.rules.by_code(rule_code)
    return selector.is_rule_applicable(snapshot, rule_code, rule)
