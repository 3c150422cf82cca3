"""
Order Service: イベント定義

ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
コミット後に Redis Pub/Sub で他サービスへ通知される。
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: UUID
    order_number: str
    timestamp: datetime

    @property
    def event_type(self) -> str:
        return type(self).__name__


class OrderCreated(DomainEvent):
    """注文が作成された"""
    user_id: UUID
    subtotal: Decimal
    shipping_cost: Decimal
    extras_cost: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    applied_shipping_rule_code: str | None
    extra_codes: list[str]


class OrderConfirmed(DomainEvent):
    """注文が確定された"""


class OrderShipped(DomainEvent):
    """注文が配送中になった"""


class OrderDelivered(DomainEvent):
    """注文が配達された"""


class OrderCancelled(DomainEvent):
    """注文がキャンセルされた（在庫は戻される）"""
    previous_status: str
    reason: str


class OrderExtrasRecalculated(DomainEvent):
    """追加サービスが付け替えられ、合計が再計算された"""
    extra_codes: list[str]
    extras_cost: Decimal
    total_amount: Decimal


class InventoryReserved(DomainEvent):
    """注文作成時に在庫が引き当てられた"""
    product_id: UUID
    quantity: int


class InventoryReleased(DomainEvent):
    """キャンセル時に在庫が戻された"""
    product_id: UUID
    quantity: int
