"""Order creation, lifecycle commands and shipping quotes against the in-memory store."""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import SATURDAY, WEDNESDAY, make_rule, seed_catalog, standard_extras
from order_service import commands
from order_service.aggregate import OrderStatus
from order_service.extras import ExtraChainBuilder, ExtraDecorator
from order_service.errors import (
    AddressOwnershipMismatch,
    DuplicateOrderNumber,
    InsufficientStock,
    InvalidStateTransition,
    OrderNotFound,
    OrderNotModifiable,
    OrderOwnershipMismatch,
    RuleNotApplicable,
    RuleNotFound,
    UserNotAllowed,
    UserNotFound,
    ValidationError,
)
from order_service.models import FIRST_ORDER, WEEKEND_PROMO, WEIGHT_BASED, Address, User, UserRole
from order_service.stores import InMemoryUnitOfWork


async def place(uow, redis, catalog, extra_codes=None, now=WEDNESDAY, items=None):
    return await commands.create_order(
        uow, redis,
        catalog.customer.id, catalog.address.id,
        items if items is not None else catalog.basket(),
        extra_codes,
        now=now,
    )


def assert_totals_consistent(order) -> None:
    base = order.subtotal + order.shipping_cost + order.extras_cost
    assert order.total_amount == base + order.tax_amount


# ============================================================================
# create_order
# ============================================================================

class TestCreateOrder:

    async def test_zone_rule_prices_the_order(self, uow, redis, catalog):
        order = await place(uow, redis, catalog)

        assert order.subtotal == Decimal("25000.00")
        assert order.total_weight_kg == Decimal("2.500")
        assert order.shipping_cost == Decimal("8000.00")
        assert order.applied_shipping_rule_code == "ZONE_NORTE"
        assert order.extras_cost == Decimal("0.00")
        assert order.tax_amount == Decimal("6270.00")
        assert order.total_amount == Decimal("39270.00")
        assert order.status is OrderStatus.PENDING
        assert order.order_number.startswith("QC-20261014-120000-")
        assert order.version == 1

    async def test_stock_is_reserved(self, uow, redis, catalog):
        await place(uow, redis, catalog)
        assert catalog.keyboard.stock_quantity == 8
        assert catalog.mouse.stock_quantity == 4

    async def test_events_are_published_after_commit(self, uow, redis, catalog):
        order = await place(uow, redis, catalog)
        assert redis.event_types("order_events") == ["OrderCreated"]
        assert redis.event_types("inventory_events") == ["InventoryReserved", "InventoryReserved"]
        _, created = redis.published[0]
        assert created["data"]["order_number"] == order.order_number
        assert created["data"]["total_amount"] == "39270.00"

    async def test_order_is_persisted(self, uow, redis, catalog):
        order = await place(uow, redis, catalog)
        async with uow:
            stored = await uow.orders.by_id(order.id)
        assert stored.total_amount == order.total_amount
        assert [item.product_name for item in stored.items] == ["Keyboard", "Mouse"]

    async def test_extras_are_priced_against_subtotal(self, uow, redis, catalog):
        order = await place(uow, redis, catalog, ["GIFT_WRAP", "INSURANCE", "NOPE"])
        assert order.extra_codes == ["GIFT_WRAP", "INSURANCE"]
        # 8000 + 5% of 25000
        assert order.extras_cost == Decimal("9250.00")
        assert [extra.applied_price for extra in order.extras] == [Decimal("8000.00"), Decimal("1250.00")]
        assert order.tax_amount == Decimal("8027.50")
        assert_totals_consistent(order)

    async def test_extras_order_does_not_change_totals(self, db, redis, catalog):
        forward = await place(InMemoryUnitOfWork(db), redis, catalog, ["INSURANCE", "GIFT_WRAP"])
        backward = await place(InMemoryUnitOfWork(db), redis, catalog, ["GIFT_WRAP", "INSURANCE"])
        assert forward.extras_cost == backward.extras_cost
        assert forward.total_amount == backward.total_amount
        assert forward.extra_codes == ["INSURANCE", "GIFT_WRAP"]
        assert backward.extra_codes == ["GIFT_WRAP", "INSURANCE"]

    async def test_default_shipping_when_no_rule_applies(self, db, uow, redis):
        catalog = seed_catalog(db, zone="Sur")
        order = await place(uow, redis, catalog)
        assert order.shipping_cost == Decimal("10000.00")
        assert order.applied_shipping_rule_code == "DEFAULT"

    async def test_weekend_promo(self, db, uow, redis):
        catalog = seed_catalog(db, zone=None)
        db.add(make_rule("WEEKEND", WEEKEND_PROMO, 1), make_rule("WEIGHT", WEIGHT_BASED, 100))
        saturday = await place(uow, redis, catalog, now=SATURDAY)
        wednesday = await place(uow, redis, catalog, now=WEDNESDAY)
        assert (saturday.shipping_cost, saturday.applied_shipping_rule_code) == (Decimal("12000.00"), "WEEKEND")
        assert (wednesday.shipping_cost, wednesday.applied_shipping_rule_code) == (Decimal("10000.00"), "WEIGHT")

    async def test_first_order_is_free_then_weight_based(self, db, uow, redis):
        catalog = seed_catalog(db)
        db.add(
            make_rule("FIRST_ORDER_FREE", FIRST_ORDER, 1, is_first_order=True),
            make_rule("WEIGHT_STANDARD", WEIGHT_BASED, 10),
        )
        first = await place(uow, redis, catalog)
        second = await place(uow, redis, catalog)
        assert (first.shipping_cost, first.applied_shipping_rule_code) == (Decimal("0.00"), "FIRST_ORDER_FREE")
        assert (second.shipping_cost, second.applied_shipping_rule_code) == (Decimal("10000.00"), "WEIGHT_STANDARD")


class TestCreateOrderFailures:

    async def test_insufficient_stock_changes_nothing(self, db, uow, redis, catalog):
        items = [(catalog.keyboard.id, 2), (catalog.mouse.id, 6)]
        with pytest.raises(InsufficientStock) as exc_info:
            await place(uow, redis, catalog, items=items)
        assert (exc_info.value.available, exc_info.value.requested) == (5, 6)
        assert catalog.keyboard.stock_quantity == 10
        assert catalog.mouse.stock_quantity == 5
        assert db.orders == {}
        assert redis.published == []

    async def test_unknown_user(self, uow, redis, catalog):
        with pytest.raises(UserNotFound):
            await commands.create_order(uow, redis, uuid4(), catalog.address.id, catalog.basket())

    async def test_inactive_user(self, uow, redis, catalog):
        catalog.customer.is_active = False
        with pytest.raises(UserNotAllowed):
            await place(uow, redis, catalog)

    async def test_only_customers_can_order(self, db, uow, redis, catalog):
        courier = User(email="rider@example.com", role=UserRole.COURIER)
        address = Address(user_id=courier.id, address_line="Cra 7", city="Bogota", zone="Norte")
        db.add(courier, address)
        with pytest.raises(UserNotAllowed):
            await commands.create_order(uow, redis, courier.id, address.id, catalog.basket())

    async def test_address_must_belong_to_user(self, db, uow, redis, catalog):
        other = User(email="other@example.com")
        db.add(other)
        with pytest.raises(AddressOwnershipMismatch):
            await commands.create_order(uow, redis, other.id, catalog.address.id, catalog.basket())

    async def test_empty_basket(self, uow, redis, catalog):
        with pytest.raises(ValidationError):
            await place(uow, redis, catalog, items=[])


# ============================================================================
# Lifecycle
# ============================================================================

class TestLifecycle:

    async def test_confirm_ship_deliver(self, uow, redis, catalog):
        order = await place(uow, redis, catalog)
        await commands.confirm_order(uow, redis, order.id, now=WEDNESDAY + timedelta(hours=1))
        await commands.mark_in_transit(uow, redis, order.id, now=WEDNESDAY + timedelta(hours=2))
        delivered = await commands.mark_delivered(uow, redis, order.id, now=WEDNESDAY + timedelta(hours=3))

        assert delivered.status is OrderStatus.DELIVERED
        assert delivered.confirmed_at == WEDNESDAY + timedelta(hours=1)
        assert delivered.delivered_at == WEDNESDAY + timedelta(hours=3)
        assert delivered.version == 4
        assert redis.event_types("order_events") == [
            "OrderCreated", "OrderConfirmed", "OrderShipped", "OrderDelivered",
        ]

    async def test_cancel_restores_stock(self, uow, redis, catalog):
        order = await place(uow, redis, catalog)
        await commands.confirm_order(uow, redis, order.id)
        cancelled = await commands.cancel_order(uow, redis, order.id, "customer request")

        assert cancelled.status is OrderStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        assert catalog.keyboard.stock_quantity == 10
        assert catalog.mouse.stock_quantity == 5
        assert redis.event_types("inventory_events")[-2:] == ["InventoryReleased", "InventoryReleased"]

    async def test_cancel_delivered_order_fails_without_touching_stock(self, uow, redis, catalog):
        order = await place(uow, redis, catalog)
        await commands.confirm_order(uow, redis, order.id)
        await commands.mark_in_transit(uow, redis, order.id)
        await commands.mark_delivered(uow, redis, order.id)

        with pytest.raises(InvalidStateTransition):
            await commands.cancel_order(uow, redis, order.id)
        assert catalog.keyboard.stock_quantity == 8

    async def test_confirm_twice_fails(self, uow, redis, catalog):
        order = await place(uow, redis, catalog)
        await commands.confirm_order(uow, redis, order.id)
        with pytest.raises(InvalidStateTransition):
            await commands.confirm_order(uow, redis, order.id)

    async def test_unknown_order(self, uow, redis, catalog):
        with pytest.raises(OrderNotFound):
            await commands.confirm_order(uow, redis, uuid4())


# ============================================================================
# recalculate_extras
# ============================================================================

class TestRecalculateExtras:

    async def test_replaces_extras_and_totals(self, uow, redis, catalog):
        order = await place(uow, redis, catalog, ["GIFT_WRAP"])
        updated = await commands.recalculate_extras(uow, redis, order.id, ["INSURANCE", "EXPRESS"])

        assert updated.extra_codes == ["INSURANCE", "EXPRESS"]
        assert updated.extras_cost == Decimal("16250.00")
        assert updated.shipping_cost == order.shipping_cost
        assert_totals_consistent(updated)
        assert redis.event_types("order_events")[-1] == "OrderExtrasRecalculated"

    async def test_clearing_extras(self, uow, redis, catalog):
        order = await place(uow, redis, catalog, ["GIFT_WRAP"])
        updated = await commands.recalculate_extras(uow, redis, order.id, [])
        assert updated.extras == []
        assert updated.total_amount == Decimal("39270.00")

    async def test_allowed_while_confirmed(self, uow, redis, catalog):
        order = await place(uow, redis, catalog)
        await commands.confirm_order(uow, redis, order.id)
        updated = await commands.recalculate_extras(uow, redis, order.id, ["FRAGILE"])
        assert updated.extras_cost == Decimal("5000.00")

    async def test_rejected_once_shipped(self, uow, redis, catalog):
        order = await place(uow, redis, catalog)
        await commands.confirm_order(uow, redis, order.id)
        await commands.mark_in_transit(uow, redis, order.id)
        with pytest.raises(OrderNotModifiable):
            await commands.recalculate_extras(uow, redis, order.id, ["FRAGILE"])


# ============================================================================
# Shipping quotes
# ============================================================================

class TestShippingQuotes:

    async def test_automatic_selection(self, uow, redis, catalog):
        order = await place(uow, redis, catalog)
        result = await commands.select_shipping(uow, order.id, now=WEDNESDAY)
        assert (result.cost, result.applied_rule_code) == (Decimal("8000.00"), "ZONE_NORTE")

    async def test_forced_rule(self, uow, redis, catalog):
        order = await place(uow, redis, catalog)
        result = await commands.select_with_forced_rule(uow, order.id, "WEIGHT_STANDARD", now=WEDNESDAY)
        assert (result.cost, result.applied_rule_code) == (Decimal("10000.00"), "WEIGHT_STANDARD")

    async def test_forced_rule_failures(self, db, uow, redis, catalog):
        db.add(make_rule("ZONE_SUR", "FLAT_RATE_ZONE", 5, zone="Sur"))
        order = await place(uow, redis, catalog)
        with pytest.raises(RuleNotFound):
            await commands.select_with_forced_rule(uow, order.id, "NOPE")
        with pytest.raises(RuleNotApplicable):
            await commands.select_with_forced_rule(uow, order.id, "ZONE_SUR")

    async def test_is_rule_applicable(self, db, uow, redis, catalog):
        db.add(make_rule("ZONE_SUR", "FLAT_RATE_ZONE", 5, zone="Sur"))
        order = await place(uow, redis, catalog)
        assert await commands.is_rule_applicable(uow, order.id, "ZONE_NORTE")
        assert not await commands.is_rule_applicable(uow, order.id, "ZONE_SUR")

    async def test_existing_order_still_counts_as_first(self, db, uow, redis):
        catalog = seed_catalog(db)
        db.add(
            make_rule("FIRST_ORDER_FREE", FIRST_ORDER, 1, is_first_order=True),
            make_rule("WEIGHT_STANDARD", WEIGHT_BASED, 10),
            *standard_extras(),
        )
        order = await place(uow, redis, catalog)
        result = await commands.select_shipping(uow, order.id)
        assert result.applied_rule_code == "FIRST_ORDER_FREE"


# ============================================================================
# Ownership
# ============================================================================

class TestOwnership:

    async def test_owner_may_act_on_the_order(self, uow, redis, catalog):
        order = await place(uow, redis, catalog)
        confirmed = await commands.confirm_order(uow, redis, order.id, user_id=catalog.customer.id)
        assert confirmed.status is OrderStatus.CONFIRMED

    async def test_other_user_is_rejected(self, uow, redis, catalog):
        order = await place(uow, redis, catalog)
        stranger = uuid4()

        with pytest.raises(OrderOwnershipMismatch) as exc_info:
            await commands.confirm_order(uow, redis, order.id, user_id=stranger)
        assert exc_info.value.user_id == stranger
        with pytest.raises(OrderOwnershipMismatch):
            await commands.cancel_order(uow, redis, order.id, "not mine", user_id=stranger)
        with pytest.raises(OrderOwnershipMismatch):
            await commands.recalculate_extras(uow, redis, order.id, ["FRAGILE"], user_id=stranger)

        async with uow:
            stored = await uow.orders.by_id(order.id)
        assert stored.status is OrderStatus.PENDING
        assert stored.extras == []
        assert catalog.keyboard.stock_quantity == 8


# ============================================================================
# Order numbers
# ============================================================================

class TestOrderNumbers:

    async def test_taken_number_is_drawn_again(self, uow, redis, catalog, monkeypatch):
        numbers = iter([
            "QC-20261014-120000-001",
            "QC-20261014-120000-001",
            "QC-20261014-120000-002",
        ])
        monkeypatch.setattr(commands, "generate_order_number", lambda now: next(numbers))

        first = await place(uow, redis, catalog)
        second = await place(uow, redis, catalog)

        assert first.order_number == "QC-20261014-120000-001"
        assert second.order_number == "QC-20261014-120000-002"
        assert catalog.keyboard.stock_quantity == 6

    async def test_gives_up_after_configured_attempts(self, uow, redis, catalog, monkeypatch):
        monkeypatch.setattr(commands, "generate_order_number", lambda now: "QC-20261014-120000-001")
        await place(uow, redis, catalog)

        with pytest.raises(DuplicateOrderNumber):
            await place(uow, redis, catalog)
        assert catalog.keyboard.stock_quantity == 8
        assert redis.event_types("order_events") == ["OrderCreated"]


# ============================================================================
# Extras priced by the chain
# ============================================================================

@dataclass(frozen=True)
class RushFragileDecorator(ExtraDecorator):
    """Charges twice the catalogue price."""

    @property
    def extra_cost(self):
        return self.extra.calculate_price(self.base_subtotal) * 2


async def test_applied_price_comes_from_the_chain_layer(uow, redis, catalog):
    builder = ExtraChainBuilder()
    builder.register("FRAGILE", RushFragileDecorator)

    order = await commands.create_order(
        uow, redis,
        catalog.customer.id, catalog.address.id,
        catalog.basket(),
        ["FRAGILE", "GIFT_WRAP"],
        now=WEDNESDAY,
        builder=builder,
    )

    assert [(extra.extra_code, extra.applied_price) for extra in order.extras] == [
        ("FRAGILE", Decimal("10000.00")),
        ("GIFT_WRAP", Decimal("8000.00")),
    ]
    assert order.extras_cost == Decimal("18000.00")
    assert_totals_consistent(order)
