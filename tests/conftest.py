"""Shared builders and fixtures."""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from order_service.models import (
    FLAT_RATE_ZONE,
    WEIGHT_BASED,
    Address,
    PriceType,
    Product,
    ShippingExtra,
    ShippingRule,
    User,
)
from order_service.stores import InMemoryDatabase, InMemoryUnitOfWork
from order_service.strategies import OrderSnapshot

# 2026-10-14 は水曜日、2026-10-17 は土曜日
WEDNESDAY = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)
SATURDAY = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


class FakeRedis:
    """publish された (channel, message) を記録する。"""

    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 0

    def event_types(self, channel: str | None = None) -> list[str]:
        return [
            message["event_type"]
            for published_channel, message in self.published
            if channel is None or published_channel == channel
        ]


def make_rule(code: str, rule_type: str, priority: int, **configuration) -> ShippingRule:
    return ShippingRule(
        code=code,
        name=code.replace("_", " ").title(),
        rule_type=rule_type,
        priority=priority,
        configuration=configuration,
    )


def make_extra(
    code: str,
    base_price: str = "0",
    percentage: str | None = None,
    is_active: bool = True,
    display_order: int = 0,
) -> ShippingExtra:
    return ShippingExtra(
        code=code,
        name=code.replace("_", " ").title(),
        price_type=PriceType.PERCENTAGE if percentage is not None else PriceType.FIXED,
        base_price=Decimal(base_price),
        percentage_value=Decimal(percentage) if percentage is not None else None,
        is_active=is_active,
        display_order=display_order,
    )


def make_snapshot(
    weight: str = "2.5",
    subtotal: str = "25000",
    zone: str | None = "Norte",
    prior_order_count: int = 0,
    now: datetime = WEDNESDAY,
    user_id: UUID | None = None,
) -> OrderSnapshot:
    return OrderSnapshot(
        order_number="QC-20261014-120000-001",
        user_id=user_id or uuid4(),
        zone=zone,
        subtotal=Decimal(subtotal),
        total_weight_kg=Decimal(weight),
        prior_order_count=prior_order_count,
        now=now,
    )


@dataclass
class Catalog:
    customer: User
    address: Address
    keyboard: Product
    mouse: Product

    def basket(self) -> list[tuple[UUID, int]]:
        """10000 x 2 (1kg) + 5000 x 1 (0.5kg): 小計 25000, 重量 2.5kg"""
        return [(self.keyboard.id, 2), (self.mouse.id, 1)]


def standard_rules() -> list[ShippingRule]:
    return [
        make_rule("ZONE_NORTE", FLAT_RATE_ZONE, 1, zone="Norte", flat_rate=8000),
        make_rule("WEIGHT_STANDARD", WEIGHT_BASED, 100),
    ]


def standard_extras() -> list[ShippingExtra]:
    return [
        make_extra("EXPRESS", base_price="15000", display_order=1),
        make_extra("FRAGILE", base_price="5000", display_order=2),
        make_extra("INSURANCE", percentage="5", display_order=3),
        make_extra("GIFT_WRAP", base_price="8000", display_order=4),
        make_extra("CARBON_NEUTRAL", base_price="2000", display_order=5),
        make_extra("LEGACY_PACKING", base_price="1000", is_active=False, display_order=6),
    ]


def seed_catalog(db: InMemoryDatabase, zone: str | None = "Norte") -> Catalog:
    customer = User(email="ana@example.com")
    address = Address(user_id=customer.id, address_line="Calle 10 # 5-20", city="Bogota", zone=zone)
    keyboard = Product(
        sku="KB-01", name="Keyboard", price=Decimal("10000"), weight_kg=Decimal("1"), stock_quantity=10
    )
    mouse = Product(
        sku="MS-01", name="Mouse", price=Decimal("5000"), weight_kg=Decimal("0.5"), stock_quantity=5
    )
    db.add(customer, address, keyboard, mouse)
    return Catalog(customer=customer, address=address, keyboard=keyboard, mouse=mouse)


@pytest.fixture
def db() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture
def uow(db: InMemoryDatabase) -> InMemoryUnitOfWork:
    return InMemoryUnitOfWork(db)


@pytest.fixture
def redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def catalog(db: InMemoryDatabase) -> Catalog:
    catalog = seed_catalog(db)
    db.add(*standard_rules(), *standard_extras())
    return catalog
