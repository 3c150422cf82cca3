"""
Order Service: 永続化の境界 (ストアとユニットオブワーク)

エンジンが必要とする読み書きだけをプロトコルとして定義する。
UnitOfWork は `async with uow:` の1ブロックを1トランザクションとして扱い、
例外で抜けた場合はすべての変更を取り消す（在庫の一部だけが減ることはない）。

インメモリ実装はテストと単体起動用。asyncio.Lock でトランザクションを直列化し、
ロールバック時にはスナップショットを書き戻す。
"""

import asyncio
import copy
from datetime import datetime
from typing import Protocol
from uuid import UUID

from .aggregate import OrderAggregate, OrderStatus
from .errors import (
    ConcurrentModification,
    DuplicateOrderNumber,
    InsufficientStock,
    ProductNotFound,
)
from .models import Address, Product, ShippingExtra, ShippingRule, User


class UserStore(Protocol):
    async def by_id(self, user_id: UUID) -> User | None: ...


class AddressStore(Protocol):
    async def by_id(self, address_id: UUID) -> Address | None: ...


class ProductStore(Protocol):
    async def by_id(self, product_id: UUID) -> Product | None: ...

    async def save(self, product: Product) -> None: ...

    async def decrease_stock(self, product_id: UUID, quantity: int) -> None:
        """在庫確認と減算を不可分に行う。不足なら InsufficientStock。"""
        ...

    async def increase_stock(self, product_id: UUID, quantity: int) -> None: ...


class RuleStore(Protocol):
    async def active_valid_rules(self, now: datetime) -> list[ShippingRule]:
        """
        有効かつ有効期間内のルールを priority 昇順（同順位は登録順）で返す。
        設定を解釈できないルールは警告を出して除く (by_code は例外を送出する)。
        """
        ...

    async def by_code(self, code: str) -> ShippingRule | None: ...

    async def list_active(self) -> list[ShippingRule]:
        """有効期間にかかわらず is_active のルールを priority 昇順で返す。"""
        ...


class ExtraStore(Protocol):
    async def active_by_codes(self, codes: list[str]) -> list[ShippingExtra]: ...

    async def by_code(self, code: str) -> ShippingExtra | None: ...

    async def list_active(self) -> list[ShippingExtra]:
        """有効な追加サービスを display_order, name の順で返す。"""
        ...


class OrderStore(Protocol):
    async def save(self, order: OrderAggregate) -> None:
        """
        新規なら挿入、既存なら version を条件に更新する。
        競合した場合は ConcurrentModification、注文番号が使用済みなら DuplicateOrderNumber。
        保存後 order.version は1増える。
        """
        ...

    async def by_id(self, order_id: UUID) -> OrderAggregate | None: ...

    async def by_number(self, order_number: str) -> OrderAggregate | None: ...

    async def count_by_user(self, user_id: UUID) -> int: ...

    async def list_by_user(self, user_id: UUID) -> list[OrderAggregate]: ...

    async def list_by_status(self, status: OrderStatus) -> list[OrderAggregate]:
        """指定した状態の注文を新しい順に返す。"""
        ...


class UnitOfWork(Protocol):
    users: UserStore
    addresses: AddressStore
    products: ProductStore
    rules: RuleStore
    extras: ExtraStore
    orders: OrderStore

    async def __aenter__(self) -> "UnitOfWork": ...

    async def __aexit__(self, exc_type, exc, tb) -> None: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


# ── インメモリ実装 ───────────────────────────────


class InMemoryDatabase:
    """全テーブルを dict / list で保持する。rules は登録順を保つ。"""

    def __init__(self) -> None:
        self.users: dict[UUID, User] = {}
        self.addresses: dict[UUID, Address] = {}
        self.products: dict[UUID, Product] = {}
        self.rules: list[ShippingRule] = []
        self.extras: list[ShippingExtra] = []
        self.orders: dict[UUID, OrderAggregate] = {}
        self.lock = asyncio.Lock()

    def add(self, *entities: object) -> None:
        for entity in entities:
            if isinstance(entity, User):
                self.users[entity.id] = entity
            elif isinstance(entity, Address):
                self.addresses[entity.id] = entity
            elif isinstance(entity, Product):
                self.products[entity.id] = entity
            elif isinstance(entity, ShippingRule):
                self.rules.append(entity)
            elif isinstance(entity, ShippingExtra):
                self.extras.append(entity)
            else:
                raise TypeError(f"Unsupported entity: {type(entity).__name__}")


class _InMemoryUserStore:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    async def by_id(self, user_id: UUID) -> User | None:
        return self._db.users.get(user_id)


class _InMemoryAddressStore:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    async def by_id(self, address_id: UUID) -> Address | None:
        return self._db.addresses.get(address_id)


class _InMemoryProductStore:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    async def by_id(self, product_id: UUID) -> Product | None:
        return self._db.products.get(product_id)

    async def save(self, product: Product) -> None:
        self._db.products[product.id] = product

    async def decrease_stock(self, product_id: UUID, quantity: int) -> None:
        product = self._db.products.get(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        if not product.has_stock(quantity):
            raise InsufficientStock(product.name, product.stock_quantity, quantity)
        product.decrease_stock(quantity)

    async def increase_stock(self, product_id: UUID, quantity: int) -> None:
        product = self._db.products.get(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        product.increase_stock(quantity)


class _InMemoryRuleStore:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    async def active_valid_rules(self, now: datetime) -> list[ShippingRule]:
        return sorted(
            (rule for rule in self._db.rules if rule.is_valid_at(now)),
            key=lambda rule: rule.priority,
        )

    async def by_code(self, code: str) -> ShippingRule | None:
        return next((rule for rule in self._db.rules if rule.code == code), None)

    async def list_active(self) -> list[ShippingRule]:
        return sorted(
            (rule for rule in self._db.rules if rule.is_active),
            key=lambda rule: rule.priority,
        )


class _InMemoryExtraStore:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    async def active_by_codes(self, codes: list[str]) -> list[ShippingExtra]:
        wanted = set(codes)
        return [extra for extra in self._db.extras if extra.code in wanted and extra.is_active]

    async def by_code(self, code: str) -> ShippingExtra | None:
        return next((extra for extra in self._db.extras if extra.code == code), None)

    async def list_active(self) -> list[ShippingExtra]:
        return sorted(
            (extra for extra in self._db.extras if extra.is_active),
            key=lambda extra: (extra.display_order, extra.name),
        )


class _InMemoryOrderStore:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    async def save(self, order: OrderAggregate) -> None:
        stored = self._db.orders.get(order.id)
        current_version = stored.version if stored else 0
        if current_version != order.version:
            raise ConcurrentModification(order.id, order.version)
        if stored is None and any(
            other.order_number == order.order_number for other in self._db.orders.values()
        ):
            raise DuplicateOrderNumber(order.order_number)
        order.version += 1
        snapshot = copy.deepcopy(order)
        snapshot.pending_events = []
        self._db.orders[order.id] = snapshot

    async def by_id(self, order_id: UUID) -> OrderAggregate | None:
        stored = self._db.orders.get(order_id)
        return copy.deepcopy(stored) if stored else None

    async def by_number(self, order_number: str) -> OrderAggregate | None:
        for stored in self._db.orders.values():
            if stored.order_number == order_number:
                return copy.deepcopy(stored)
        return None

    async def count_by_user(self, user_id: UUID) -> int:
        return sum(1 for order in self._db.orders.values() if order.user_id == user_id)

    async def list_by_user(self, user_id: UUID) -> list[OrderAggregate]:
        orders = [order for order in self._db.orders.values() if order.user_id == user_id]
        return [copy.deepcopy(order) for order in sorted(orders, key=lambda o: o.created_at, reverse=True)]

    async def list_by_status(self, status: OrderStatus) -> list[OrderAggregate]:
        orders = [order for order in self._db.orders.values() if order.status is status]
        return [copy.deepcopy(order) for order in sorted(orders, key=lambda o: o.created_at, reverse=True)]


class InMemoryUnitOfWork:
    def __init__(self, db: InMemoryDatabase) -> None:
        self.db = db
        self.users = _InMemoryUserStore(db)
        self.addresses = _InMemoryAddressStore(db)
        self.products = _InMemoryProductStore(db)
        self.rules = _InMemoryRuleStore(db)
        self.extras = _InMemoryExtraStore(db)
        self.orders = _InMemoryOrderStore(db)
        self._snapshot: tuple[dict[UUID, int], dict[UUID, OrderAggregate]] | None = None

    def _take_snapshot(self) -> None:
        stock = {product_id: p.stock_quantity for product_id, p in self.db.products.items()}
        self._snapshot = (stock, dict(self.db.orders))

    async def __aenter__(self) -> "InMemoryUnitOfWork":
        await self.db.lock.acquire()
        self._take_snapshot()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        # コミットされていない変更は捨てる
        try:
            await self.rollback()
        finally:
            self._snapshot = None
            self.db.lock.release()

    async def commit(self) -> None:
        self._take_snapshot()

    async def rollback(self) -> None:
        if self._snapshot is None:
            return
        stock, orders = self._snapshot
        for product_id, quantity in stock.items():
            self.db.products[product_id].stock_quantity = quantity
        self.db.orders = dict(orders)
