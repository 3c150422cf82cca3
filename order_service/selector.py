"""
Order Service: 配送ルールセレクター

選択の流れ:
  1. 有効かつ有効期間内のルールを priority 昇順に並べる（同じ priority は登録順）
  2. 各ルールの rule_type に対応するストラテジーを引く（無ければ警告してスキップ）
  3. 最初に適用可能と判定されたルールで計算して返す（以降のルールは評価しない）
  4. どれも適用できなければ既定料金を返す
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from . import config
from .errors import NegativeAmount, RuleInactive, RuleNotApplicable, RuleNotFound, StrategyMissing
from .models import ShippingRule
from .money import round2
from .strategies import OrderSnapshot, ShippingStrategy, default_strategies

logger = logging.getLogger(__name__)

DEFAULT_RULE_CODE = "DEFAULT"


@dataclass(frozen=True)
class ShippingCalculationResult:
    cost: Decimal
    applied_rule_code: str
    applied_rule_name: str
    description: str
    rule_applied: bool

    def __post_init__(self) -> None:
        object.__setattr__(self, "cost", round2(self.cost))
        if self.cost < 0:
            raise NegativeAmount("shipping_cost", self.cost)

    def to_dict(self) -> dict:
        return {
            "cost": str(self.cost),
            "applied_rule_code": self.applied_rule_code,
            "applied_rule_name": self.applied_rule_name,
            "description": self.description,
            "rule_applied": self.rule_applied,
        }


class ShippingRuleSelector:
    """rule_type をキーにしたストラテジーの登録簿を持ち、ルールを順に評価する。"""

    def __init__(
        self,
        strategies: list[ShippingStrategy] | None = None,
        default_cost: Decimal = config.DEFAULT_SHIPPING_COST,
    ) -> None:
        self._strategies: dict[str, ShippingStrategy] = {}
        for strategy in strategies if strategies is not None else default_strategies():
            if strategy.strategy_type in self._strategies:
                raise ValueError(f"Duplicate shipping strategy type: {strategy.strategy_type}")
            self._strategies[strategy.strategy_type] = strategy
        self.default_cost = round2(default_cost)

        logger.info(
            "Shipping rule selector initialized with %s strategies: %s",
            len(self._strategies), sorted(self._strategies),
        )

    @property
    def strategy_types(self) -> list[str]:
        return sorted(self._strategies)

    def strategy_for(self, rule_type: str) -> ShippingStrategy | None:
        return self._strategies.get(rule_type)

    def select_shipping(
        self, order: OrderSnapshot, rules: list[ShippingRule]
    ) -> ShippingCalculationResult:
        """先頭から評価し、最初に適用可能なルールの結果を返す。"""
        candidates = sorted(
            (rule for rule in rules if rule.is_valid_at(order.now)),
            key=lambda rule: rule.priority,
        )
        logger.debug(
            "Found %s active shipping rules for order %s", len(candidates), order.order_number
        )

        for rule in candidates:
            strategy = self._strategies.get(rule.rule_type)
            if strategy is None:
                logger.warning(
                    "No strategy found for rule type: %s (rule: %s)", rule.rule_type, rule.code
                )
                continue

            logger.debug("Checking strategy %s with rule %s", strategy.strategy_type, rule.code)
            if strategy.is_applicable(order, rule):
                result = self._calculate(strategy, order, rule)
                logger.info(
                    "Applied shipping rule %s (type: %s) to order %s. Cost: %s",
                    rule.code, rule.rule_type, order.order_number, result.cost,
                )
                return result

        logger.warning(
            "No applicable shipping rule for order %s. Using default cost: %s",
            order.order_number, self.default_cost,
        )
        return self.default_result()

    def select_with_forced_rule(
        self, order: OrderSnapshot, rule_code: str, rule: ShippingRule | None
    ) -> ShippingCalculationResult:
        """
        指定ルールだけで計算する（管理者による上書き・検証用）。
        既定料金へのフォールバックはせず、適用できなければ例外を送出する。
        """
        if rule is None:
            logger.error("Shipping rule not found: %s", rule_code)
            raise RuleNotFound(rule_code)

        if not rule.is_valid_at(order.now):
            logger.error("Shipping rule is not active or valid: %s", rule_code)
            raise RuleInactive(rule_code)

        strategy = self._strategies.get(rule.rule_type)
        if strategy is None:
            logger.error("No strategy found for rule type: %s (rule: %s)", rule.rule_type, rule_code)
            raise StrategyMissing(rule.rule_type, rule_code)

        if not strategy.is_applicable(order, rule):
            logger.error(
                "Strategy %s is not applicable for order %s with rule %s",
                strategy.strategy_type, order.order_number, rule_code,
            )
            raise RuleNotApplicable(rule_code, order.order_number)

        result = self._calculate(strategy, order, rule)
        logger.info(
            "Applied forced rule %s to order %s. Cost: %s", rule_code, order.order_number, result.cost
        )
        return result

    def is_rule_applicable(
        self, order: OrderSnapshot, rule_code: str, rule: ShippingRule | None
    ) -> bool:
        """指定ルールで計算できるかを返す。存在しないルールだけは例外のまま送出する。"""
        try:
            self.select_with_forced_rule(order, rule_code, rule)
        except (RuleInactive, StrategyMissing, RuleNotApplicable) as e:
            logger.debug("Rule %s is not applicable: %s", rule_code, e)
            return False
        return True

    def default_result(self) -> ShippingCalculationResult:
        return ShippingCalculationResult(
            cost=self.default_cost,
            applied_rule_code=DEFAULT_RULE_CODE,
            applied_rule_name="Standard rate",
            description="Standard shipping cost: no special rule applies",
            rule_applied=False,
        )

    @staticmethod
    def _calculate(
        strategy: ShippingStrategy, order: OrderSnapshot, rule: ShippingRule
    ) -> ShippingCalculationResult:
        return ShippingCalculationResult(
            cost=strategy.calculate_cost(order, rule),
            applied_rule_code=rule.code,
            applied_rule_name=rule.name,
            description=strategy.describe(order, rule),
            rule_applied=True,
        )
