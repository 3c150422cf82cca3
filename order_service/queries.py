"""
Order Service: クエリハンドラ (Read 側)

注文・配送ルール・追加サービスを JSON にそのまま渡せる dict で返す。
金額は誤差が出ないよう文字列 ("36000.00") で表す。
"""

from datetime import datetime
from uuid import UUID

from .aggregate import OrderAggregate, OrderStatus
from .errors import ExtraNotFound, RuleNotFound, ValidationError
from .extras import ExtraChainBuilder
from .models import ShippingExtra, ShippingRule
from .selector import ShippingRuleSelector
from .stores import UnitOfWork


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def order_to_dict(order: OrderAggregate) -> dict:
    return {
        "id": str(order.id),
        "order_number": order.order_number,
        "user_id": str(order.user_id),
        "address_id": str(order.address_id),
        "status": order.status.value,
        "status_display": order.status.display_name,
        "payment_status": order.payment_status.value,
        "items": [
            {
                "product_id": str(item.product_id),
                "product_name": item.product_name,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "weight_kg": str(item.weight_kg),
                "subtotal": str(item.subtotal),
            }
            for item in order.items
        ],
        "extras": [
            {
                "extra_code": extra.extra_code,
                "extra_name": extra.extra_name,
                "applied_price": str(extra.applied_price),
            }
            for extra in order.extras
        ],
        "subtotal": str(order.subtotal),
        "shipping_cost": str(order.shipping_cost),
        "extras_cost": str(order.extras_cost),
        "tax_rate": str(order.tax_rate),
        "tax_amount": str(order.tax_amount),
        "total_amount": str(order.total_amount),
        "total_weight_kg": str(order.total_weight_kg),
        "applied_shipping_rule_code": order.applied_shipping_rule_code,
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
        "confirmed_at": _iso(order.confirmed_at),
        "delivered_at": _iso(order.delivered_at),
        "cancelled_at": _iso(order.cancelled_at),
        "version": order.version,
    }


def order_summary(order: OrderAggregate) -> dict:
    """一覧表示用の要約"""
    return {
        "id": str(order.id),
        "order_number": order.order_number,
        "status": order.status.value,
        "total_amount": str(order.total_amount),
        "item_count": len(order.items),
        "created_at": _iso(order.created_at),
    }


def rule_to_dict(rule: ShippingRule) -> dict:
    return {
        "code": rule.code,
        "name": rule.name,
        "rule_type": rule.rule_type,
        "priority": rule.priority,
        "configuration": rule.configuration,
        "is_active": rule.is_active,
        "valid_from": _iso(rule.valid_from),
        "valid_until": _iso(rule.valid_until),
        "description": rule.description,
    }


def extra_to_dict(extra: ShippingExtra) -> dict:
    return {
        "code": extra.code,
        "name": extra.name,
        "price_type": extra.price_type.value,
        "base_price": str(extra.base_price),
        "percentage_value": (
            str(extra.percentage_value) if extra.percentage_value is not None else None
        ),
        "is_active": extra.is_active,
        "display_order": extra.display_order,
        "description": extra.description,
    }


async def get_order(uow: UnitOfWork, order_id: UUID, user_id: UUID | None = None) -> dict | None:
    """user_id を渡すと、他の利用者の注文なら OrderOwnershipMismatch。"""
    async with uow:
        order = await uow.orders.by_id(order_id)
    if not order:
        return None
    order.ensure_owned_by(user_id)
    return order_to_dict(order)


async def get_order_by_number(uow: UnitOfWork, order_number: str) -> dict | None:
    async with uow:
        order = await uow.orders.by_number(order_number)
    return order_to_dict(order) if order else None


async def list_user_orders(uow: UnitOfWork, user_id: UUID) -> list[dict]:
    """利用者の注文を新しい順に返す。"""
    async with uow:
        orders = await uow.orders.list_by_user(user_id)
    return [order_summary(order) for order in orders]


async def list_orders_by_status(uow: UnitOfWork, status: str) -> list[dict]:
    try:
        order_status = OrderStatus(status.upper())
    except ValueError as e:
        raise ValidationError(f"Unknown order status: {status}") from e
    async with uow:
        orders = await uow.orders.list_by_status(order_status)
    return [order_summary(order) for order in orders]


async def list_active_rules(uow: UnitOfWork) -> list[dict]:
    """有効な配送ルールを評価順 (priority 昇順) に返す。"""
    async with uow:
        rules = await uow.rules.list_active()
    return [rule_to_dict(rule) for rule in rules]


async def list_active_extras(uow: UnitOfWork) -> list[dict]:
    """有効な追加サービスを表示順に返す。"""
    async with uow:
        extras = await uow.extras.list_active()
    return [extra_to_dict(extra) for extra in extras]


async def get_rule(uow: UnitOfWork, code: str) -> dict:
    async with uow:
        rule = await uow.rules.by_code(code)
    if rule is None:
        raise RuleNotFound(code)
    return rule_to_dict(rule)


async def get_extra(uow: UnitOfWork, code: str) -> dict:
    async with uow:
        extra = await uow.extras.by_code(code)
    if extra is None:
        raise ExtraNotFound(code)
    return extra_to_dict(extra)


def list_strategy_types(selector: ShippingRuleSelector) -> list[str]:
    return selector.strategy_types


def list_supported_extra_codes(builder: ExtraChainBuilder) -> list[str]:
    return builder.supported_codes
