"""
Order Service: 配送料ストラテジー

ルールの rule_type ごとに交換可能な計算アルゴリズムを用意する。
各ストラテジーは注文スナップショットとルール設定だけから結果を決める純粋関数で、
I/O は行わない (過去の注文数や現在時刻はスナップショットに含めて渡す)。
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from .aggregate import OrderAggregate
from .models import (
    FIRST_ORDER,
    FLAT_RATE_ZONE,
    WEEKDAYS,
    WEEKEND_PROMO,
    WEIGHT_BASED,
    FirstOrderConfig,
    FlatRateZoneConfig,
    RuleConfig,
    ShippingRule,
    WeekendPromoConfig,
    WeightBasedConfig,
)
from .money import ZERO, percentage_of, round2

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderSnapshot:
    """配送料計算に必要な注文の値。now は計算時点の時刻。"""

    order_number: str
    user_id: UUID
    zone: str | None
    subtotal: Decimal
    total_weight_kg: Decimal
    prior_order_count: int
    now: datetime

    @classmethod
    def of(
        cls,
        order: OrderAggregate,
        zone: str | None,
        prior_order_count: int,
        now: datetime,
    ) -> "OrderSnapshot":
        return cls(
            order_number=order.order_number,
            user_id=order.user_id,
            zone=zone,
            subtotal=order.subtotal,
            total_weight_kg=order.total_weight_kg,
            prior_order_count=prior_order_count,
            now=now,
        )


class ShippingStrategy(ABC):
    strategy_type: str = ""
    config_model: type[RuleConfig] = RuleConfig

    @abstractmethod
    def calculate_cost(self, order: OrderSnapshot, rule: ShippingRule) -> Decimal:
        ...

    @abstractmethod
    def is_applicable(self, order: OrderSnapshot, rule: ShippingRule) -> bool:
        ...

    def describe(self, order: OrderSnapshot, rule: ShippingRule) -> str:
        return f"Shipping calculated with rule: {rule.name}"

    def settings(self, rule: ShippingRule):
        if isinstance(rule.settings, self.config_model):
            return rule.settings
        return self.config_model.model_validate(rule.configuration or {})

    def _rule_is_valid(self, order: OrderSnapshot, rule: ShippingRule) -> bool:
        if not rule.is_valid_at(order.now):
            logger.debug("Rule %s is not currently valid", rule.code)
            return False
        return True


class WeightBasedStrategy(ShippingStrategy):
    """
    重量ベース: base_rate + rate_per_kg × 重量。
    重量が free_shipping_threshold_kg 以上なら送料無料（境界を含む）。
    有効なら常に適用可能なので、最も低い優先度で最後の受け皿として登録する。
    """

    strategy_type = WEIGHT_BASED
    config_model = WeightBasedConfig

    def calculate_cost(self, order: OrderSnapshot, rule: ShippingRule) -> Decimal:
        settings: WeightBasedConfig = self.settings(rule)
        weight = order.total_weight_kg

        if weight >= settings.free_shipping_threshold_kg:
            logger.info(
                "Weight %s kg reaches free shipping threshold %s kg",
                weight, settings.free_shipping_threshold_kg,
            )
            return ZERO

        cost = round2(settings.base_rate + weight * settings.rate_per_kg)
        logger.debug(
            "Weight-based calculation: base=%s, weight=%skg, rate_per_kg=%s, total=%s",
            settings.base_rate, weight, settings.rate_per_kg, cost,
        )
        return cost

    def is_applicable(self, order: OrderSnapshot, rule: ShippingRule) -> bool:
        return self._rule_is_valid(order, rule)

    def describe(self, order: OrderSnapshot, rule: ShippingRule) -> str:
        settings: WeightBasedConfig = self.settings(rule)
        if order.total_weight_kg >= settings.free_shipping_threshold_kg:
            return f"Free shipping: weight reaches {settings.free_shipping_threshold_kg:.2f} kg"
        return (
            f"Weight-based: base ${settings.base_rate:.0f} + ${settings.rate_per_kg:.0f} per kg "
            f"(total {order.total_weight_kg:.2f} kg)"
        )


class WeekendPromoStrategy(ShippingStrategy):
    """
    週末割引: 計算時点の曜日が applicable_days に含まれるときだけ適用。
    重量から求めた基本料金から discount_percentage% を引く（0 未満にはならない）。
    """

    strategy_type = WEEKEND_PROMO
    config_model = WeekendPromoConfig

    def calculate_cost(self, order: OrderSnapshot, rule: ShippingRule) -> Decimal:
        settings: WeekendPromoConfig = self.settings(rule)
        base_cost = settings.base_rate + order.total_weight_kg * settings.rate_per_kg
        discount = percentage_of(base_cost, settings.discount_percentage)
        final_cost = max(round2(base_cost - discount), ZERO)

        logger.debug(
            "Weekend promo applied: base=%s, discount=%s%%, final=%s",
            base_cost, settings.discount_percentage, final_cost,
        )
        return final_cost

    def is_applicable(self, order: OrderSnapshot, rule: ShippingRule) -> bool:
        if not self._rule_is_valid(order, rule):
            return False

        settings: WeekendPromoConfig = self.settings(rule)
        today = WEEKDAYS[order.now.weekday()]
        applicable = today in settings.applicable_days
        logger.debug(
            "Weekend promo %s for day %s", "applicable" if applicable else "not applicable", today
        )
        return applicable

    def describe(self, order: OrderSnapshot, rule: ShippingRule) -> str:
        settings: WeekendPromoConfig = self.settings(rule)
        return f"Weekend promo: {int(settings.discount_percentage)}% discount applied"


class FlatRateZoneStrategy(ShippingStrategy):
    """ゾーン別定額: 配送先ゾーンが設定ゾーンと一致（大文字小文字無視）すれば flat_rate。"""

    strategy_type = FLAT_RATE_ZONE
    config_model = FlatRateZoneConfig

    def calculate_cost(self, order: OrderSnapshot, rule: ShippingRule) -> Decimal:
        settings: FlatRateZoneConfig = self.settings(rule)
        logger.debug("Flat rate for zone %s: %s", order.zone, settings.flat_rate)
        return round2(settings.flat_rate)

    def is_applicable(self, order: OrderSnapshot, rule: ShippingRule) -> bool:
        if not self._rule_is_valid(order, rule):
            return False

        settings: FlatRateZoneConfig = self.settings(rule)
        if not settings.zone or not settings.zone.strip():
            logger.warning("No zone configured in rule %s", rule.code)
            return False
        if order.zone is None:
            return False

        matches = settings.zone.casefold() == order.zone.casefold()
        logger.debug(
            "Flat rate zone %s: configured=%s, order=%s",
            "matches" if matches else "does not match", settings.zone, order.zone,
        )
        return matches

    def describe(self, order: OrderSnapshot, rule: ShippingRule) -> str:
        settings: FlatRateZoneConfig = self.settings(rule)
        return f"Flat rate for zone {settings.zone or 'N/A'}: ${settings.flat_rate}"


class FirstOrderStrategy(ShippingStrategy):
    """初回注文: 設定で有効化され、かつ利用者の過去の注文が0件なら送料無料。"""

    strategy_type = FIRST_ORDER
    config_model = FirstOrderConfig

    def calculate_cost(self, order: OrderSnapshot, rule: ShippingRule) -> Decimal:
        logger.info("First order shipping is free for user %s", order.user_id)
        return ZERO

    def is_applicable(self, order: OrderSnapshot, rule: ShippingRule) -> bool:
        if not self._rule_is_valid(order, rule):
            return False

        settings: FirstOrderConfig = self.settings(rule)
        if not settings.is_first_order:
            logger.debug("First order condition not enabled in rule %s", rule.code)
            return False

        # 計算中の注文はまだ保存されていないので、0件なら初回
        if order.prior_order_count == 0:
            logger.info("First order detected for user %s", order.user_id)
            return True

        logger.debug("User %s already has %s orders", order.user_id, order.prior_order_count)
        return False

    def describe(self, order: OrderSnapshot, rule: ShippingRule) -> str:
        return "Free shipping on your first order"


def default_strategies() -> list[ShippingStrategy]:
    return [
        WeightBasedStrategy(),
        WeekendPromoStrategy(),
        FlatRateZoneStrategy(),
        FirstOrderStrategy(),
    ]
