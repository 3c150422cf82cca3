"""
Order Service: カタログ・設定エンティティ

エンジンからは読み取り専用。配送ルールの自由形式設定 (configuration) は
読み込み時にストラテジーごとの型付き設定へ変換し、不正な設定はその時点で拒否する。
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import InsufficientStock, InvalidRuleConfiguration, NegativeAmount
from .money import ZERO, percentage_of, round2, round3, to_decimal

WEIGHT_BASED = "WEIGHT_BASED"
WEEKEND_PROMO = "WEEKEND_PROMO"
FLAT_RATE_ZONE = "FLAT_RATE_ZONE"
FIRST_ORDER = "FIRST_ORDER"

WEEKDAYS = ("MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY", "SUNDAY")


class UserRole(str, Enum):
    CUSTOMER = "CUSTOMER"
    COURIER = "COURIER"
    ADMIN = "ADMIN"


class PriceType(str, Enum):
    FIXED = "FIXED"
    PERCENTAGE = "PERCENTAGE"


@dataclass
class User:
    email: str
    role: UserRole = UserRole.CUSTOMER
    is_active: bool = True
    id: UUID = field(default_factory=uuid4)


@dataclass
class Address:
    user_id: UUID
    address_line: str
    city: str
    zone: str | None = None
    id: UUID = field(default_factory=uuid4)


@dataclass
class Product:
    """商品。available な在庫数は stock_quantity そのもの。"""

    sku: str
    name: str
    price: Decimal
    weight_kg: Decimal
    stock_quantity: int = 0
    is_active: bool = True
    id: UUID = field(default_factory=uuid4)

    def __post_init__(self) -> None:
        self.price = round2(self.price)
        self.weight_kg = round3(self.weight_kg)
        if self.price < 0:
            raise NegativeAmount("price", self.price)
        if self.weight_kg < 0:
            raise NegativeAmount("weight_kg", self.weight_kg)

    def has_stock(self, quantity: int) -> bool:
        return self.stock_quantity >= quantity

    def decrease_stock(self, quantity: int) -> None:
        if not self.has_stock(quantity):
            raise InsufficientStock(self.name, self.stock_quantity, quantity)
        self.stock_quantity -= quantity

    def increase_stock(self, quantity: int) -> None:
        self.stock_quantity += quantity


# ── 配送ルールの型付き設定 ─────────────────────────


class RuleConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")


class WeightBasedConfig(RuleConfig):
    base_rate: Decimal = Field(default=Decimal("5000.00"), ge=0)
    rate_per_kg: Decimal = Field(default=Decimal("2000.00"), ge=0)
    free_shipping_threshold_kg: Decimal = Field(default=Decimal("10.0"), ge=0)


class WeekendPromoConfig(RuleConfig):
    discount_percentage: Decimal = Field(default=Decimal("20"), ge=0, le=100)
    applicable_days: list[str] = Field(default_factory=lambda: ["SATURDAY", "SUNDAY"])
    base_rate: Decimal = Field(default=Decimal("10000.00"), ge=0)
    rate_per_kg: Decimal = Field(default=Decimal("2000.00"), ge=0)

    @field_validator("applicable_days", mode="before")
    @classmethod
    def _normalize_days(cls, value: Any) -> list[str]:
        if not value:
            return ["SATURDAY", "SUNDAY"]
        days = [str(day).strip().upper() for day in value]
        unknown = [day for day in days if day not in WEEKDAYS]
        if unknown:
            raise ValueError(f"unknown day names: {unknown}")
        return days


class FlatRateZoneConfig(RuleConfig):
    zone: str | None = None
    flat_rate: Decimal = Field(default=Decimal("8000.00"), ge=0)


class FirstOrderConfig(RuleConfig):
    is_first_order: bool = False

    @model_validator(mode="before")
    @classmethod
    def _lift_conditions(cls, data: Any) -> Any:
        # {"conditions": {"is_first_order": true}} の形でも保存されている
        if isinstance(data, dict) and "is_first_order" not in data:
            conditions = data.get("conditions")
            if isinstance(conditions, dict) and "is_first_order" in conditions:
                return {**data, "is_first_order": conditions["is_first_order"]}
        return data


RULE_CONFIG_MODELS: dict[str, type[RuleConfig]] = {
    WEIGHT_BASED: WeightBasedConfig,
    WEEKEND_PROMO: WeekendPromoConfig,
    FLAT_RATE_ZONE: FlatRateZoneConfig,
    FIRST_ORDER: FirstOrderConfig,
}


def decode_rule_configuration(
    rule_code: str, rule_type: str, configuration: dict[str, Any] | None
) -> RuleConfig | None:
    """ルール種別に対応する型付き設定へ変換する。未知の種別は None。"""
    model = RULE_CONFIG_MODELS.get(rule_type)
    if model is None:
        return None
    try:
        return model.model_validate(configuration or {})
    except PydanticValidationError as e:
        raise InvalidRuleConfiguration(rule_code, str(e)) from e


@dataclass
class ShippingRule:
    """
    配送ルール

    priority は小さいほど先に評価される。
    有効期間 [valid_from, valid_until] は両端を含む。
    """

    code: str
    name: str
    rule_type: str
    priority: int
    configuration: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    description: str | None = None
    id: int | None = None
    settings: RuleConfig | None = field(init=False, default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.settings = decode_rule_configuration(self.code, self.rule_type, self.configuration)

    def is_valid_at(self, moment: datetime) -> bool:
        if self.valid_from is not None and moment < self.valid_from:
            return False
        if self.valid_until is not None and moment > self.valid_until:
            return False
        return self.is_active


@dataclass
class ShippingExtra:
    """追加サービス (FIXED: base_price / PERCENTAGE: 基準小計の percentage_value%)"""

    code: str
    name: str
    price_type: PriceType = PriceType.FIXED
    base_price: Decimal = ZERO
    percentage_value: Decimal | None = None
    is_active: bool = True
    display_order: int = 0
    description: str | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        self.price_type = PriceType(self.price_type)
        self.base_price = round2(self.base_price)
        if self.base_price < 0:
            raise NegativeAmount("base_price", self.base_price)
        if self.percentage_value is not None:
            self.percentage_value = to_decimal(self.percentage_value)
            if self.percentage_value < 0:
                raise NegativeAmount("percentage_value", self.percentage_value)

    def calculate_price(self, base_subtotal: Decimal) -> Decimal:
        if self.price_type is PriceType.FIXED:
            return self.base_price
        if self.percentage_value is None:
            return ZERO
        return percentage_of(base_subtotal, self.percentage_value)
