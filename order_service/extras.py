"""
Order Service: 追加サービスのデコレーターチェーン

基本ビュー (小計 + 送料) を、要求された追加サービスごとに1層ずつ包んでいく。
各層は不変で、内側の層と基準小計 (base_subtotal) を保持する。

  BaseOrderView → ExpressDecorator → InsuranceDecorator → ...

パーセンテージ型の追加サービスは常に元の注文小計 (base_subtotal) に対して計算し、
内側の層の累積額には掛けない。そのため適用順を入れ替えても合計額は変わらない。
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from .aggregate import OrderAggregate
from .errors import InvalidExtraDecoration
from .models import ShippingExtra
from .money import ZERO, round2, round3

logger = logging.getLogger(__name__)

EXPRESS = "EXPRESS"
FRAGILE = "FRAGILE"
INSURANCE = "INSURANCE"
GIFT_WRAP = "GIFT_WRAP"
CARBON_NEUTRAL = "CARBON_NEUTRAL"


class OrderView(ABC):
    base_subtotal: Decimal

    @abstractmethod
    def cost(self) -> Decimal:
        ...

    @abstractmethod
    def weight(self) -> Decimal:
        ...

    @abstractmethod
    def description(self) -> str:
        ...

    @abstractmethod
    def applied_extra_codes(self) -> list[str]:
        ...

    @abstractmethod
    def priced_extras(self) -> list[tuple[ShippingExtra, Decimal]]:
        """適用した追加サービスと、その層が加算した金額 (適用順)"""
        ...


@dataclass(frozen=True)
class BaseOrderView(OrderView):
    """追加サービスを含まない注文: cost = 小計 + 送料"""

    order_number: str
    subtotal: Decimal
    shipping_cost: Decimal
    weight_kg: Decimal

    @classmethod
    def from_order(cls, order: OrderAggregate) -> "BaseOrderView":
        return cls(
            order_number=order.order_number,
            subtotal=order.subtotal,
            shipping_cost=order.shipping_cost,
            weight_kg=order.total_weight_kg,
        )

    @property
    def base_subtotal(self) -> Decimal:
        return self.subtotal

    def cost(self) -> Decimal:
        return round2(self.subtotal + self.shipping_cost)

    def weight(self) -> Decimal:
        return round3(self.weight_kg)

    def description(self) -> str:
        return (
            f"Base order {self.order_number} "
            f"(subtotal ${self.subtotal}, shipping ${self.shipping_cost})"
        )

    def applied_extra_codes(self) -> list[str]:
        return []

    def priced_extras(self) -> list[tuple[ShippingExtra, Decimal]]:
        return []


@dataclass(frozen=True)
class ExtraDecorator(OrderView):
    """
    追加サービス1件分の層。

    重量は既定では内側の値をそのまま返す。
    added_weight_kg を持つサービスだけが重量を加える。
    """

    inner: OrderView
    extra: ShippingExtra
    base_subtotal: Decimal = field(init=False, default=ZERO)

    added_weight_kg = ZERO

    def __post_init__(self) -> None:
        if self.inner is None:
            raise InvalidExtraDecoration("wrapped order view cannot be None")
        if self.extra is None:
            raise InvalidExtraDecoration("shipping extra cannot be None")
        if not self.extra.is_active:
            raise InvalidExtraDecoration(f"shipping extra {self.extra.code} is not active")
        object.__setattr__(self, "base_subtotal", self.inner.base_subtotal)

    @property
    def extra_cost(self) -> Decimal:
        return self.extra.calculate_price(self.base_subtotal)

    def cost(self) -> Decimal:
        return round2(self.inner.cost() + self.extra_cost)

    def weight(self) -> Decimal:
        return round3(self.inner.weight() + self.added_weight_kg)

    def description(self) -> str:
        return f"{self.inner.description()} + {self.extra_description()}"

    def extra_description(self) -> str:
        return f"{self.extra.name} +${self.extra_cost}"

    def applied_extra_codes(self) -> list[str]:
        return [*self.inner.applied_extra_codes(), self.extra.code]

    def priced_extras(self) -> list[tuple[ShippingExtra, Decimal]]:
        return [*self.inner.priced_extras(), (self.extra, self.extra_cost)]


@dataclass(frozen=True)
class GenericDecorator(ExtraDecorator):
    """専用の層が登録されていない追加サービス。自身の価格だけを加算する。"""


@dataclass(frozen=True)
class ExpressDecorator(ExtraDecorator):
    def extra_description(self) -> str:
        return f"Express delivery (< 2 hours) +${self.extra_cost}"

    def is_available_at(self, delivery_time: datetime) -> bool:
        # 営業時間 8:00 - 18:00 のみ
        available = 8 <= delivery_time.hour <= 18
        if not available:
            logger.warning("Express delivery not available for time slot: %s", delivery_time)
        return available


@dataclass(frozen=True)
class FragileDecorator(ExtraDecorator):
    requires_special_packaging = True

    def extra_description(self) -> str:
        return f"Fragile handling (special care) +${self.extra_cost}"

    @property
    def handling_instructions(self) -> str:
        return (
            "FRAGILE: handle with extreme care. Do not stack. "
            "Keep upright. Avoid sudden movements in transit."
        )


@dataclass(frozen=True)
class InsuranceDecorator(ExtraDecorator):
    MANDATORY_THRESHOLD = Decimal("500000.00")

    def extra_description(self) -> str:
        percentage = self.extra.percentage_value
        if percentage is None:
            percentage = Decimal("5")
        return f"Insurance ({percentage:.0f}% of subtotal) +${self.extra_cost}"

    @property
    def coverage_amount(self) -> Decimal:
        """保険は注文小計の全額を補償する。"""
        return self.base_subtotal

    @classmethod
    def is_insurance_required(cls, order_value: Decimal) -> bool:
        return order_value > cls.MANDATORY_THRESHOLD


@dataclass(frozen=True)
class GiftWrapDecorator(ExtraDecorator):
    gift_message: str | None = None

    added_weight_kg = Decimal("0.2")
    MAX_MESSAGE_LENGTH = 200

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.gift_message is not None and len(self.gift_message) > self.MAX_MESSAGE_LENGTH:
            raise InvalidExtraDecoration(
                f"gift message cannot exceed {self.MAX_MESSAGE_LENGTH} characters"
            )

    def extra_description(self) -> str:
        return f"Gift wrap (special wrapping + card) +${self.extra_cost}"


@dataclass(frozen=True)
class CarbonNeutralDecorator(ExtraDecorator):
    CO2_KG_PER_KM = Decimal("0.12")
    AVERAGE_DISTANCE_KM = Decimal("15")
    CO2_KG_PER_TREE_YEAR = Decimal("20")

    def extra_description(self) -> str:
        return f"Carbon neutral delivery (offsets {self.co2_offset_kg:.2f} kg CO2) +${self.extra_cost}"

    @property
    def co2_offset_kg(self) -> Decimal:
        return round2(self.AVERAGE_DISTANCE_KM * self.CO2_KG_PER_KM)

    @property
    def equivalent_trees(self) -> int:
        return max(1, int(self.co2_offset_kg / self.CO2_KG_PER_TREE_YEAR))


DEFAULT_DECORATORS: dict[str, type[ExtraDecorator]] = {
    EXPRESS: ExpressDecorator,
    FRAGILE: FragileDecorator,
    INSURANCE: InsuranceDecorator,
    GIFT_WRAP: GiftWrapDecorator,
    CARBON_NEUTRAL: CarbonNeutralDecorator,
}


class ExtraChainBuilder:
    """追加サービスのコードから層のクラスを引き、要求順に包んでいく。"""

    def __init__(self, decorators: dict[str, type[ExtraDecorator]] | None = None) -> None:
        self._decorators = dict(DEFAULT_DECORATORS if decorators is None else decorators)

    @property
    def supported_codes(self) -> list[str]:
        return sorted(self._decorators)

    def register(self, extra_code: str, decorator: type[ExtraDecorator]) -> None:
        self._decorators[extra_code] = decorator
        logger.info("Registered decorator %s for extra code %s", decorator.__name__, extra_code)

    def decorate(self, view: OrderView, extra: ShippingExtra) -> ExtraDecorator:
        decorator = self._decorators.get(extra.code)
        if decorator is None:
            logger.warning("No decorator for extra code %s, using generic decorator", extra.code)
            decorator = GenericDecorator
        return decorator(view, extra)

    def build(
        self,
        base: BaseOrderView,
        extra_codes: list[str],
        extras: list[ShippingExtra],
    ) -> OrderView:
        """
        extra_codes の順に層を重ねる。

        extras は事前に取得したカタログ定義。見つからない・無効なコードは
        警告を出してスキップする（呼び出し側は applied_extra_codes() で確認できる）。
        同じコードは最初の1回だけ適用する。
        """
        if not extra_codes:
            logger.debug("No extras to apply for order %s", base.order_number)
            return base

        available = {extra.code: extra for extra in extras if extra.is_active}
        view: OrderView = base
        requested: list[str] = []

        for code in extra_codes:
            if code in requested:
                logger.warning("Extra %s requested more than once for order %s", code, base.order_number)
                continue
            requested.append(code)

            extra = available.get(code)
            if extra is None:
                logger.warning("Extra %s not found or inactive, skipping", code)
                continue
            view = self.decorate(view, extra)
            logger.debug("Applied %s for extra %s", type(view).__name__, code)

        applied = view.applied_extra_codes()
        if len(applied) != len(requested):
            logger.warning(
                "Some extras not found or inactive. Requested: %s, applied: %s", requested, applied
            )
        logger.info(
            "Order %s decorated with %s extras. Final cost: %s",
            base.order_number, len(applied), view.cost(),
        )
        return view
