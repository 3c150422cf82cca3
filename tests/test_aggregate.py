"""Order aggregate: totals, status machine and emitted events."""

import random
import re
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from uuid import uuid4

import pytest

from conftest import WEDNESDAY
from order_service.aggregate import (
    OrderAggregate,
    OrderExtra,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    generate_order_number,
)
from order_service.errors import (
    InvalidStateTransition,
    NegativeAmount,
    OrderNotModifiable,
    ValidationError,
)
from order_service.models import Product


def make_order(tax_rate: str = "19") -> OrderAggregate:
    order = OrderAggregate(
        order_number="QC-20261014-120000-001",
        user_id=uuid4(),
        address_id=uuid4(),
        created_at=WEDNESDAY,
        tax_rate=Decimal(tax_rate),
    )
    order.add_item(OrderItem(uuid4(), "Keyboard", 2, Decimal("10000"), Decimal("1")))
    order.add_item(OrderItem(uuid4(), "Mouse", 1, Decimal("5000"), Decimal("0.5")))
    order.calculate_totals()
    return order


def assert_totals_consistent(order: OrderAggregate) -> None:
    base = order.subtotal + order.shipping_cost + order.extras_cost
    expected_tax = (base * order.tax_rate / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    assert order.tax_amount == expected_tax
    assert order.total_amount == base + order.tax_amount


# ============================================================================
# Totals
# ============================================================================

class TestTotals:

    def test_items_only(self):
        order = make_order()
        assert order.subtotal == Decimal("25000.00")
        assert order.total_weight_kg == Decimal("2.500")
        assert order.tax_amount == Decimal("4750.00")
        assert order.total_amount == Decimal("29750.00")
        assert_totals_consistent(order)

    def test_with_shipping_and_extras(self):
        order = make_order()
        order.set_shipping(Decimal("8000"), "ZONE_NORTE")
        order.replace_extras([
            OrderExtra("GIFT_WRAP", "Gift wrap", Decimal("8000")),
            OrderExtra("INSURANCE", "Insurance", Decimal("1250")),
        ])
        order.calculate_totals()
        assert order.extras_cost == Decimal("9250.00")
        # (25000 + 8000 + 9250) * 19% = 8027.50
        assert order.tax_amount == Decimal("8027.50")
        assert order.total_amount == Decimal("50277.50")
        assert_totals_consistent(order)

    def test_recalculation_is_idempotent(self):
        order = make_order()
        order.set_shipping(Decimal("7333.33"), "W")
        order.calculate_totals()
        first = (order.subtotal, order.tax_amount, order.total_amount)
        order.calculate_totals()
        assert (order.subtotal, order.tax_amount, order.total_amount) == first
        assert_totals_consistent(order)

    @pytest.mark.parametrize("tax_rate", ["0", "5.5", "19", "33.33"])
    def test_invariant_for_any_tax_rate(self, tax_rate):
        order = make_order(tax_rate)
        order.set_shipping(Decimal("1234.56"), "W")
        order.replace_extras([OrderExtra("FRAGILE", "Fragile", Decimal("999.99"))])
        order.calculate_totals()
        assert_totals_consistent(order)

    def test_negative_shipping_rejected(self):
        with pytest.raises(NegativeAmount):
            make_order().set_shipping(Decimal("-1"), "W")

    def test_duplicate_extras_rejected(self):
        extra = OrderExtra("GIFT_WRAP", "Gift wrap", Decimal("8000"))
        with pytest.raises(ValidationError):
            make_order().replace_extras([extra, extra])


class TestItems:

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValidationError):
            OrderItem(uuid4(), "Keyboard", 0, Decimal("1"), Decimal("1"))

    def test_snapshot_keeps_purchase_price(self):
        product = Product(sku="KB", name="Keyboard", price=Decimal("10000"), weight_kg=Decimal("1"))
        item = OrderItem.snapshot(product, 3)
        product.price = Decimal("99999")
        assert item.unit_price == Decimal("10000.00")
        assert item.subtotal == Decimal("30000.00")
        assert item.total_weight_kg == Decimal("3.000")


# ============================================================================
# Status machine
# ============================================================================

class TestStatusMachine:

    def test_happy_path(self):
        order = make_order()
        order.confirm(WEDNESDAY + timedelta(minutes=1))
        order.mark_in_transit(WEDNESDAY + timedelta(minutes=2))
        order.mark_delivered(WEDNESDAY + timedelta(minutes=3))
        assert order.status is OrderStatus.DELIVERED
        assert order.confirmed_at == WEDNESDAY + timedelta(minutes=1)
        assert order.delivered_at == WEDNESDAY + timedelta(minutes=3)
        assert order.updated_at == WEDNESDAY + timedelta(minutes=3)
        assert order.is_final

    def test_confirm_requires_pending(self):
        order = make_order()
        order.confirm(WEDNESDAY)
        with pytest.raises(InvalidStateTransition) as exc_info:
            order.confirm(WEDNESDAY)
        assert (exc_info.value.current, exc_info.value.target) == ("CONFIRMED", "CONFIRMED")

    def test_cancel_from_pending_and_confirmed(self):
        pending = make_order()
        pending.cancel(WEDNESDAY, "changed mind")
        assert pending.status is OrderStatus.CANCELLED
        assert pending.cancelled_at == WEDNESDAY

        confirmed = make_order()
        confirmed.confirm(WEDNESDAY)
        confirmed.cancel(WEDNESDAY)
        assert confirmed.status is OrderStatus.CANCELLED

    def test_cannot_cancel_in_transit_or_delivered(self):
        order = make_order()
        order.confirm(WEDNESDAY)
        order.mark_in_transit(WEDNESDAY)
        assert not order.can_be_cancelled
        with pytest.raises(InvalidStateTransition):
            order.cancel(WEDNESDAY)

        order.mark_delivered(WEDNESDAY)
        with pytest.raises(InvalidStateTransition):
            order.cancel(WEDNESDAY)

    def test_cannot_skip_states(self):
        order = make_order()
        with pytest.raises(InvalidStateTransition):
            order.mark_delivered(WEDNESDAY)
        with pytest.raises(InvalidStateTransition):
            order.mark_in_transit(WEDNESDAY)
        assert order.status is OrderStatus.PENDING

    def test_terminal_order_is_frozen(self):
        order = make_order()
        order.cancel(WEDNESDAY)
        with pytest.raises(OrderNotModifiable):
            order.replace_extras([])
        with pytest.raises(OrderNotModifiable):
            order.set_shipping(Decimal("0"), None)
        with pytest.raises(OrderNotModifiable):
            order.calculate_totals()

    def test_transition_table(self):
        assert OrderStatus.PENDING.can_transition_to(OrderStatus.CONFIRMED)
        assert not OrderStatus.PENDING.can_transition_to(OrderStatus.IN_TRANSIT)
        assert not OrderStatus.CANCELLED.can_transition_to(OrderStatus.PENDING)
        assert OrderStatus.IN_TRANSIT.display_name == "In transit"

    def test_payment_refund(self):
        assert PaymentStatus.PAID.can_be_refunded
        assert not PaymentStatus.PENDING.can_be_refunded


class TestEvents:

    def test_events_are_drained(self):
        order = make_order()
        order.place(WEDNESDAY)
        order.confirm(WEDNESDAY)
        events = order.pull_events()
        assert [event.event_type for event in events] == ["OrderCreated", "OrderConfirmed"]
        assert events[0].total_amount == order.total_amount
        assert order.pull_events() == []

    def test_cancel_records_previous_status(self):
        order = make_order()
        order.confirm(WEDNESDAY)
        order.pull_events()
        order.cancel(WEDNESDAY, "out of range")
        (event,) = order.pull_events()
        assert event.previous_status == "CONFIRMED"
        assert event.reason == "out of range"


def test_order_number_format():
    number = generate_order_number(WEDNESDAY, rng=random.Random(7))
    assert re.fullmatch(r"QC-20261014-120000-\d{3}", number)
    assert generate_order_number(WEDNESDAY, prefix="XX").startswith("XX-20261014-120000-")
