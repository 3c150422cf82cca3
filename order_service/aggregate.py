"""
Order Service: 注文集約 (Order Aggregate)

注文明細・追加サービス・金額・状態をまとめて管理する。
状態遷移はイベントを生成し、apply_xxx メソッドで状態に反映する。
生成したイベントは pending_events に溜まり、コミット後に発行される。

状態遷移:
    PENDING    → CONFIRMED | CANCELLED
    CONFIRMED  → IN_TRANSIT | CANCELLED
    IN_TRANSIT → DELIVERED
    DELIVERED, CANCELLED は終端 (以後一切変更不可)
"""

import random
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from . import config
from .errors import (
    InvalidStateTransition,
    NegativeAmount,
    OrderNotModifiable,
    OrderOwnershipMismatch,
    ValidationError,
)
from .events import (
    DomainEvent,
    OrderCancelled,
    OrderConfirmed,
    OrderCreated,
    OrderDelivered,
    OrderShipped,
)
from .models import Product
from .money import ZERO, percentage_of, round2, round3


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def is_final(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)

    def can_transition_to(self, target: "OrderStatus") -> bool:
        return target in _TRANSITIONS[self]


_DISPLAY_NAMES = {
    OrderStatus.PENDING: "Pending",
    OrderStatus.CONFIRMED: "Confirmed",
    OrderStatus.IN_TRANSIT: "In transit",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.CANCELLED: "Cancelled",
}

_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.IN_TRANSIT, OrderStatus.CANCELLED},
    OrderStatus.IN_TRANSIT: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

    @property
    def can_be_refunded(self) -> bool:
        return self is PaymentStatus.PAID


@dataclass(frozen=True)
class OrderItem:
    """注文明細。単価と重量は購入時点の値を保持し、以後カタログが変わっても変化しない。"""

    product_id: UUID
    product_name: str
    quantity: int
    unit_price: Decimal
    weight_kg: Decimal

    def __post_init__(self) -> None:
        if self.quantity < 1:
            raise ValidationError(f"Quantity must be at least 1 (got {self.quantity})")
        object.__setattr__(self, "unit_price", round2(self.unit_price))
        object.__setattr__(self, "weight_kg", round3(self.weight_kg))

    @classmethod
    def snapshot(cls, product: Product, quantity: int) -> "OrderItem":
        return cls(
            product_id=product.id,
            product_name=product.name,
            quantity=quantity,
            unit_price=product.price,
            weight_kg=product.weight_kg,
        )

    @property
    def subtotal(self) -> Decimal:
        return round2(self.unit_price * self.quantity)

    @property
    def total_weight_kg(self) -> Decimal:
        return round3(self.weight_kg * self.quantity)


@dataclass(frozen=True)
class OrderExtra:
    """注文に付けた追加サービス。価格は付与した時点の値で固定される。"""

    extra_code: str
    extra_name: str
    applied_price: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "applied_price", round2(self.applied_price))
        if self.applied_price < 0:
            raise NegativeAmount("applied_price", self.applied_price)


def generate_order_number(
    now: datetime,
    prefix: str = config.ORDER_NUMBER_PREFIX,
    rng: random.Random | None = None,
) -> str:
    """PREFIX-YYYYMMDD-HHMMSS-NNN 形式の注文番号を生成する。"""
    suffix = (rng or random).randrange(1000)
    return f"{prefix}-{now:%Y%m%d}-{now:%H%M%S}-{suffix:03d}"


class OrderAggregate:
    """
    注文集約

    金額はすべて小数2桁、重量は小数3桁。calculate_totals() の後は常に
    total_amount == subtotal + shipping_cost + extras_cost + tax_amount が成り立つ。
    """

    def __init__(
        self,
        order_number: str,
        user_id: UUID,
        address_id: UUID,
        created_at: datetime,
        tax_rate: Decimal = config.DEFAULT_TAX_RATE,
        id: UUID | None = None,
    ) -> None:
        self.id: UUID = id or uuid4()
        self.order_number = order_number
        self.user_id = user_id
        self.address_id = address_id
        self.items: list[OrderItem] = []
        self.extras: list[OrderExtra] = []

        self.subtotal: Decimal = ZERO
        self.shipping_cost: Decimal = ZERO
        self.extras_cost: Decimal = ZERO
        self.tax_rate: Decimal = round2(tax_rate)
        self.tax_amount: Decimal = ZERO
        self.total_amount: Decimal = ZERO
        self.total_weight_kg: Decimal = round3(ZERO)

        self.status = OrderStatus.PENDING
        self.payment_status = PaymentStatus.PENDING
        self.applied_shipping_rule_code: str | None = None

        self.created_at = created_at
        self.updated_at = created_at
        self.confirmed_at: datetime | None = None
        self.delivered_at: datetime | None = None
        self.cancelled_at: datetime | None = None

        self.version: int = 0
        self.pending_events: list[DomainEvent] = []

    # ── 状態の問い合わせ ─────────────────────────────

    @property
    def is_final(self) -> bool:
        return self.status.is_final

    @property
    def can_be_cancelled(self) -> bool:
        return self.status in (OrderStatus.PENDING, OrderStatus.CONFIRMED)

    @property
    def is_modifiable(self) -> bool:
        """追加サービスを付け替えられるのはキャンセル可能な状態の間だけ。"""
        return self.can_be_cancelled

    @property
    def extra_codes(self) -> list[str]:
        return [extra.extra_code for extra in self.extras]

    def ensure_owned_by(self, user_id: UUID | None) -> None:
        """user_id を指定した場合だけ、その利用者の注文であることを確認する。"""
        if user_id is not None and user_id != self.user_id:
            raise OrderOwnershipMismatch(self.order_number, user_id)

    def _ensure_modifiable(self) -> None:
        if not self.is_modifiable:
            raise OrderNotModifiable(self.order_number, self.status.value)

    # ── 明細・金額 ─────────────────────────────────

    def add_item(self, item: OrderItem) -> None:
        if self.status is not OrderStatus.PENDING or self.version:
            raise OrderNotModifiable(self.order_number, self.status.value)
        self.items.append(item)

    def set_shipping(self, cost: Decimal, rule_code: str | None) -> None:
        self._ensure_modifiable()
        cost = round2(cost)
        if cost < 0:
            raise NegativeAmount("shipping_cost", cost)
        self.shipping_cost = cost
        self.applied_shipping_rule_code = rule_code

    def replace_extras(self, extras: list[OrderExtra]) -> None:
        self._ensure_modifiable()
        codes = [extra.extra_code for extra in extras]
        if len(codes) != len(set(codes)):
            raise ValidationError(f"Duplicate shipping extras on order {self.order_number}: {codes}")
        self.extras = list(extras)

    def calculate_totals(self) -> None:
        """明細・送料・追加サービス・税から合計を再計算する（冪等）。"""
        if self.is_final:
            raise OrderNotModifiable(self.order_number, self.status.value)

        self.subtotal = round2(sum((item.subtotal for item in self.items), ZERO))
        self.total_weight_kg = round3(sum((item.total_weight_kg for item in self.items), ZERO))
        self.extras_cost = round2(sum((extra.applied_price for extra in self.extras), ZERO))

        base_for_tax = self.subtotal + self.shipping_cost + self.extras_cost
        self.tax_amount = percentage_of(base_for_tax, self.tax_rate)
        self.total_amount = round2(base_for_tax + self.tax_amount)

    # ── 状態遷移コマンド ─────────────────────────────

    def place(self, now: datetime) -> None:
        """注文作成が確定したことを記録する。"""
        self.pending_events.append(
            OrderCreated(
                order_id=self.id,
                order_number=self.order_number,
                timestamp=now,
                user_id=self.user_id,
                subtotal=self.subtotal,
                shipping_cost=self.shipping_cost,
                extras_cost=self.extras_cost,
                tax_amount=self.tax_amount,
                total_amount=self.total_amount,
                applied_shipping_rule_code=self.applied_shipping_rule_code,
                extra_codes=self.extra_codes,
            )
        )

    def confirm(self, now: datetime) -> None:
        self._transition(
            OrderStatus.CONFIRMED,
            OrderConfirmed(order_id=self.id, order_number=self.order_number, timestamp=now),
        )

    def mark_in_transit(self, now: datetime) -> None:
        self._transition(
            OrderStatus.IN_TRANSIT,
            OrderShipped(order_id=self.id, order_number=self.order_number, timestamp=now),
        )

    def mark_delivered(self, now: datetime) -> None:
        self._transition(
            OrderStatus.DELIVERED,
            OrderDelivered(order_id=self.id, order_number=self.order_number, timestamp=now),
        )

    def cancel(self, now: datetime, reason: str = "") -> None:
        """キャンセルする。在庫の戻しは呼び出し側 (commands) が行う。"""
        self._transition(
            OrderStatus.CANCELLED,
            OrderCancelled(
                order_id=self.id,
                order_number=self.order_number,
                timestamp=now,
                previous_status=self.status.value,
                reason=reason,
            ),
        )

    def _transition(self, target: OrderStatus, event: DomainEvent) -> None:
        if not self.status.can_transition_to(target):
            raise InvalidStateTransition(self.status.value, target.value)
        self.apply_event(event)
        self.pending_events.append(event)

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_confirmed(self, event: OrderConfirmed) -> None:
        self.status = OrderStatus.CONFIRMED
        self.confirmed_at = self.confirmed_at or event.timestamp

    def apply_order_shipped(self, _event: OrderShipped) -> None:
        self.status = OrderStatus.IN_TRANSIT

    def apply_order_delivered(self, event: OrderDelivered) -> None:
        self.status = OrderStatus.DELIVERED
        self.delivered_at = self.delivered_at or event.timestamp

    def apply_order_cancelled(self, event: OrderCancelled) -> None:
        self.status = OrderStatus.CANCELLED
        self.cancelled_at = self.cancelled_at or event.timestamp

    def apply_event(self, event: DomainEvent) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "OrderConfirmed": self.apply_order_confirmed,
            "OrderShipped": self.apply_order_shipped,
            "OrderDelivered": self.apply_order_delivered,
            "OrderCancelled": self.apply_order_cancelled,
        }.get(event.event_type)
        if handler:
            handler(event)
            self.updated_at = event.timestamp

    def pull_events(self) -> list[DomainEvent]:
        events, self.pending_events = self.pending_events, []
        return events
