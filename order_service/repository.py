"""
Order Service: SQLAlchemy によるストア実装

stores.py のプロトコルを AsyncSession 上に実装する。
SqlUnitOfWork は1つのセッションを1トランザクションとして使い、
commit() されずにブロックを抜けた場合はロールバックする。

在庫の減算は「WHERE stock_quantity >= :qty」付きの UPDATE で行うため、
確認と減算の間に他のトランザクションが割り込むことはない。
"""

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderAggregate, OrderExtra, OrderItem, OrderStatus, PaymentStatus
from .errors import (
    ConcurrentModification,
    DuplicateOrderNumber,
    InsufficientStock,
    InvalidRuleConfiguration,
    ProductNotFound,
)
from .models import Address, PriceType, Product, ShippingExtra, ShippingRule, User, UserRole
from .schema import (
    addresses,
    order_extras,
    order_items,
    orders,
    products,
    shipping_extras,
    shipping_rules,
    users,
)

logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite はタイムゾーンを保存しないので UTC として読み戻す
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── 行 → エンティティ ───────────────────────────


def _user(row: Any) -> User:
    return User(email=row.email, role=UserRole(row.role), is_active=row.is_active, id=row.id)


def _address(row: Any) -> Address:
    return Address(
        user_id=row.user_id,
        address_line=row.address_line,
        city=row.city,
        zone=row.zone,
        id=row.id,
    )


def _product(row: Any) -> Product:
    return Product(
        sku=row.sku,
        name=row.name,
        price=row.price,
        weight_kg=row.weight_kg,
        stock_quantity=row.stock_quantity,
        is_active=row.is_active,
        id=row.id,
    )


def _rule(row: Any) -> ShippingRule:
    return ShippingRule(
        code=row.code,
        name=row.name,
        rule_type=row.rule_type,
        priority=row.priority,
        configuration=dict(row.configuration or {}),
        is_active=row.is_active,
        valid_from=_as_utc(row.valid_from),
        valid_until=_as_utc(row.valid_until),
        description=row.description,
        id=row.id,
    )


def _extra(row: Any) -> ShippingExtra:
    return ShippingExtra(
        code=row.code,
        name=row.name,
        price_type=PriceType(row.price_type),
        base_price=row.base_price,
        percentage_value=row.percentage_value,
        is_active=row.is_active,
        display_order=row.display_order,
        description=row.description,
        id=row.id,
    )


# ── ストア ──────────────────────────────────────


class SqlUserStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def by_id(self, user_id: UUID) -> User | None:
        row = (await self._session.execute(select(users).where(users.c.id == user_id))).first()
        return _user(row) if row else None

    async def add(self, user: User) -> None:
        await self._session.execute(
            insert(users).values(
                id=user.id, email=user.email, role=user.role.value, is_active=user.is_active
            )
        )


class SqlAddressStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def by_id(self, address_id: UUID) -> Address | None:
        row = (
            await self._session.execute(select(addresses).where(addresses.c.id == address_id))
        ).first()
        return _address(row) if row else None

    async def add(self, address: Address) -> None:
        await self._session.execute(
            insert(addresses).values(
                id=address.id,
                user_id=address.user_id,
                address_line=address.address_line,
                city=address.city,
                zone=address.zone,
            )
        )


class SqlProductStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def by_id(self, product_id: UUID) -> Product | None:
        row = (
            await self._session.execute(select(products).where(products.c.id == product_id))
        ).first()
        return _product(row) if row else None

    async def save(self, product: Product) -> None:
        values = {
            "sku": product.sku,
            "name": product.name,
            "price": product.price,
            "weight_kg": product.weight_kg,
            "stock_quantity": product.stock_quantity,
            "is_active": product.is_active,
        }
        exists = await self._session.scalar(select(products.c.id).where(products.c.id == product.id))
        if exists is None:
            await self._session.execute(insert(products).values(id=product.id, **values))
        else:
            await self._session.execute(
                update(products).where(products.c.id == product.id).values(**values)
            )

    async def decrease_stock(self, product_id: UUID, quantity: int) -> None:
        result = await self._session.execute(
            update(products)
            .where(products.c.id == product_id, products.c.stock_quantity >= quantity)
            .values(stock_quantity=products.c.stock_quantity - quantity)
        )
        if result.rowcount == 0:
            product = await self.by_id(product_id)
            if product is None:
                raise ProductNotFound(product_id)
            raise InsufficientStock(product.name, product.stock_quantity, quantity)

    async def increase_stock(self, product_id: UUID, quantity: int) -> None:
        result = await self._session.execute(
            update(products)
            .where(products.c.id == product_id)
            .values(stock_quantity=products.c.stock_quantity + quantity)
        )
        if result.rowcount == 0:
            raise ProductNotFound(product_id)


class SqlRuleStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_active(self) -> list[ShippingRule]:
        result = await self._session.execute(
            select(shipping_rules)
            .where(shipping_rules.c.is_active.is_(True))
            .order_by(shipping_rules.c.priority, shipping_rules.c.id)
        )
        rules = []
        for row in result.fetchall():
            try:
                rules.append(_rule(row))
            except InvalidRuleConfiguration as e:
                # 一覧からは除く。by_code では例外のまま
                logger.warning("Skipping shipping rule %s: %s", row.code, e.reason)
        return rules

    async def active_valid_rules(self, now: datetime) -> list[ShippingRule]:
        # 有効期間の判定は ShippingRule.is_valid_at に揃える
        return [rule for rule in await self.list_active() if rule.is_valid_at(now)]

    async def by_code(self, code: str) -> ShippingRule | None:
        row = (
            await self._session.execute(select(shipping_rules).where(shipping_rules.c.code == code))
        ).first()
        return _rule(row) if row else None

    async def add(self, rule: ShippingRule) -> None:
        result = await self._session.execute(
            insert(shipping_rules).values(
                code=rule.code,
                name=rule.name,
                rule_type=rule.rule_type,
                priority=rule.priority,
                configuration=rule.configuration,
                is_active=rule.is_active,
                valid_from=rule.valid_from,
                valid_until=rule.valid_until,
                description=rule.description,
            )
        )
        rule.id = result.inserted_primary_key[0]


class SqlExtraStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def active_by_codes(self, codes: list[str]) -> list[ShippingExtra]:
        if not codes:
            return []
        result = await self._session.execute(
            select(shipping_extras).where(
                shipping_extras.c.code.in_(codes), shipping_extras.c.is_active.is_(True)
            )
        )
        return [_extra(row) for row in result.fetchall()]

    async def by_code(self, code: str) -> ShippingExtra | None:
        row = (
            await self._session.execute(
                select(shipping_extras).where(shipping_extras.c.code == code)
            )
        ).first()
        return _extra(row) if row else None

    async def list_active(self) -> list[ShippingExtra]:
        result = await self._session.execute(
            select(shipping_extras)
            .where(shipping_extras.c.is_active.is_(True))
            .order_by(shipping_extras.c.display_order, shipping_extras.c.name)
        )
        return [_extra(row) for row in result.fetchall()]

    async def add(self, extra: ShippingExtra) -> None:
        result = await self._session.execute(
            insert(shipping_extras).values(
                code=extra.code,
                name=extra.name,
                price_type=extra.price_type.value,
                base_price=extra.base_price,
                percentage_value=extra.percentage_value,
                is_active=extra.is_active,
                display_order=extra.display_order,
                description=extra.description,
            )
        )
        extra.id = result.inserted_primary_key[0]


class SqlOrderStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def _values(order: OrderAggregate) -> dict:
        return {
            "order_number": order.order_number,
            "user_id": order.user_id,
            "address_id": order.address_id,
            "subtotal": order.subtotal,
            "shipping_cost": order.shipping_cost,
            "extras_cost": order.extras_cost,
            "tax_rate": order.tax_rate,
            "tax_amount": order.tax_amount,
            "total_amount": order.total_amount,
            "total_weight_kg": order.total_weight_kg,
            "status": order.status.value,
            "payment_status": order.payment_status.value,
            "applied_shipping_rule_code": order.applied_shipping_rule_code,
            "created_at": order.created_at,
            "updated_at": order.updated_at,
            "confirmed_at": order.confirmed_at,
            "delivered_at": order.delivered_at,
            "cancelled_at": order.cancelled_at,
        }

    async def save(self, order: OrderAggregate) -> None:
        """
        version 0 の注文は明細ごと挿入し、それ以外は version を条件に更新する。
        明細は作成後に変わらないので、更新時は追加サービスだけを入れ替える。
        """
        values = self._values(order)
        if order.version == 0:
            taken = await self._session.scalar(
                select(orders.c.id).where(orders.c.order_number == order.order_number)
            )
            if taken is not None:
                raise DuplicateOrderNumber(order.order_number)
            try:
                await self._session.execute(insert(orders).values(id=order.id, version=1, **values))
            except IntegrityError as e:
                # 確認と挿入の間に同じ番号が使われた
                raise DuplicateOrderNumber(order.order_number) from e
            if order.items:
                await self._session.execute(
                    insert(order_items),
                    [
                        {
                            "order_id": order.id,
                            "line_no": line_no,
                            "product_id": item.product_id,
                            "product_name": item.product_name,
                            "quantity": item.quantity,
                            "unit_price": item.unit_price,
                            "weight_kg": item.weight_kg,
                        }
                        for line_no, item in enumerate(order.items)
                    ],
                )
        else:
            result = await self._session.execute(
                update(orders)
                .where(orders.c.id == order.id, orders.c.version == order.version)
                .values(version=order.version + 1, **values)
            )
            if result.rowcount == 0:
                logger.warning(
                    "Optimistic lock failed for order %s at version %s", order.order_number, order.version
                )
                raise ConcurrentModification(order.id, order.version)
            await self._session.execute(delete(order_extras).where(order_extras.c.order_id == order.id))

        if order.extras:
            await self._session.execute(
                insert(order_extras),
                [
                    {
                        "order_id": order.id,
                        "position": position,
                        "extra_code": extra.extra_code,
                        "extra_name": extra.extra_name,
                        "applied_price": extra.applied_price,
                    }
                    for position, extra in enumerate(order.extras)
                ],
            )
        order.version += 1

    async def _load(self, row: Any) -> OrderAggregate:
        order = OrderAggregate(
            order_number=row.order_number,
            user_id=row.user_id,
            address_id=row.address_id,
            created_at=_as_utc(row.created_at),
            tax_rate=row.tax_rate,
            id=row.id,
        )
        item_rows = await self._session.execute(
            select(order_items).where(order_items.c.order_id == row.id).order_by(order_items.c.line_no)
        )
        order.items = [
            OrderItem(
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                weight_kg=item.weight_kg,
            )
            for item in item_rows.fetchall()
        ]
        extra_rows = await self._session.execute(
            select(order_extras)
            .where(order_extras.c.order_id == row.id)
            .order_by(order_extras.c.position)
        )
        order.extras = [
            OrderExtra(
                extra_code=extra.extra_code,
                extra_name=extra.extra_name,
                applied_price=extra.applied_price,
            )
            for extra in extra_rows.fetchall()
        ]

        order.subtotal = row.subtotal
        order.shipping_cost = row.shipping_cost
        order.extras_cost = row.extras_cost
        order.tax_amount = row.tax_amount
        order.total_amount = row.total_amount
        order.total_weight_kg = row.total_weight_kg
        order.status = OrderStatus(row.status)
        order.payment_status = PaymentStatus(row.payment_status)
        order.applied_shipping_rule_code = row.applied_shipping_rule_code
        order.updated_at = _as_utc(row.updated_at)
        order.confirmed_at = _as_utc(row.confirmed_at)
        order.delivered_at = _as_utc(row.delivered_at)
        order.cancelled_at = _as_utc(row.cancelled_at)
        order.version = row.version
        return order

    async def by_id(self, order_id: UUID) -> OrderAggregate | None:
        row = (await self._session.execute(select(orders).where(orders.c.id == order_id))).first()
        return await self._load(row) if row else None

    async def by_number(self, order_number: str) -> OrderAggregate | None:
        row = (
            await self._session.execute(select(orders).where(orders.c.order_number == order_number))
        ).first()
        return await self._load(row) if row else None

    async def count_by_user(self, user_id: UUID) -> int:
        return await self._session.scalar(
            select(func.count()).select_from(orders).where(orders.c.user_id == user_id)
        )

    async def list_by_user(self, user_id: UUID) -> list[OrderAggregate]:
        result = await self._session.execute(
            select(orders).where(orders.c.user_id == user_id).order_by(orders.c.created_at.desc())
        )
        return [await self._load(row) for row in result.fetchall()]

    async def list_by_status(self, status: OrderStatus) -> list[OrderAggregate]:
        result = await self._session.execute(
            select(orders)
            .where(orders.c.status == status.value)
            .order_by(orders.c.created_at.desc())
        )
        return [await self._load(row) for row in result.fetchall()]


class SqlUnitOfWork:
    """
    SQLAlchemy のセッション1つ分のユニットオブワーク

        async with SqlUnitOfWork(async_session) as uow:
            ...
            await uow.commit()
    """

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory
        self.session: AsyncSession | None = None

    async def __aenter__(self) -> "SqlUnitOfWork":
        self.session = self._session_factory()
        self.users = SqlUserStore(self.session)
        self.addresses = SqlAddressStore(self.session)
        self.products = SqlProductStore(self.session)
        self.rules = SqlRuleStore(self.session)
        self.extras = SqlExtraStore(self.session)
        self.orders = SqlOrderStore(self.session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        # コミットされていない変更は捨てる
        try:
            await self.session.rollback()
        finally:
            await self.session.close()
            self.session = None

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()
