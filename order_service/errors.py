"""
Order Service: 例外定義

業務ルール違反は検出した時点で型付きの例外として送出する。
http_status は FastAPI 層でレスポンスに変換するときに使う。
"""

from decimal import Decimal


class OrderServiceError(Exception):
    """すべての業務エラーの基底クラス"""

    http_status = 500


# ── 入力エラー (422) ───────────────────────────────


class ValidationError(OrderServiceError):
    """入力が不正・不足している（呼び出し側の誤り）"""

    http_status = 422


class InvalidRuleConfiguration(ValidationError):
    def __init__(self, rule_code: str, reason: str):
        self.rule_code = rule_code
        self.reason = reason
        super().__init__(f"Invalid configuration for shipping rule {rule_code}: {reason}")


class InvalidExtraDecoration(ValidationError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Cannot apply shipping extra: {reason}")


# ── 存在しない (404) ──────────────────────────────


class NotFoundError(OrderServiceError):
    http_status = 404

    def __init__(self, kind: str, key: object):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class UserNotFound(NotFoundError):
    def __init__(self, user_id: object):
        super().__init__("User", user_id)


class AddressNotFound(NotFoundError):
    def __init__(self, address_id: object):
        super().__init__("Address", address_id)


class ProductNotFound(NotFoundError):
    def __init__(self, product_id: object):
        super().__init__("Product", product_id)


class OrderNotFound(NotFoundError):
    def __init__(self, order_id: object):
        super().__init__("Order", order_id)


class RuleNotFound(NotFoundError):
    def __init__(self, rule_code: str):
        super().__init__("Shipping rule", rule_code)


class ExtraNotFound(NotFoundError):
    def __init__(self, extra_code: str):
        super().__init__("Shipping extra", extra_code)


# ── 業務上の前提条件違反 (409) ─────────────────────


class ConflictError(OrderServiceError):
    http_status = 409


class InsufficientStock(ConflictError):
    def __init__(self, product_name: str, available: int, requested: int):
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {product_name}: "
            f"available={available}, requested={requested}"
        )


class ProductInactive(ConflictError):
    def __init__(self, product_name: str):
        self.product_name = product_name
        super().__init__(f"Product is not active: {product_name}")


class UserNotAllowed(ConflictError):
    def __init__(self, user_id: object, reason: str):
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"User {user_id} cannot place orders: {reason}")


class AddressOwnershipMismatch(ConflictError):
    def __init__(self, address_id: object, user_id: object):
        self.address_id = address_id
        self.user_id = user_id
        super().__init__(f"Address {address_id} does not belong to user {user_id}")


class OrderNotModifiable(ConflictError):
    def __init__(self, order_number: str, status: str):
        self.order_number = order_number
        self.status = status
        super().__init__(f"Order {order_number} cannot be modified in status {status}")


class ConcurrentModification(ConflictError):
    def __init__(self, order_id: object, expected_version: int):
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(
            f"Order {order_id} was modified concurrently (expected version {expected_version})"
        )


class RuleInactive(ConflictError):
    def __init__(self, rule_code: str):
        self.rule_code = rule_code
        super().__init__(f"Shipping rule is not active: {rule_code}")


class InvalidStateTransition(ConflictError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid order status transition: {current} -> {target}")


class StrategyMissing(ConflictError):
    def __init__(self, rule_type: str, rule_code: str):
        self.rule_type = rule_type
        self.rule_code = rule_code
        super().__init__(f"No shipping strategy for type {rule_type} (rule: {rule_code})")


class RuleNotApplicable(ConflictError):
    def __init__(self, rule_code: str, order_number: str):
        self.rule_code = rule_code
        self.order_number = order_number
        super().__init__(f"Shipping rule {rule_code} is not applicable to order {order_number}")


class NegativeAmount(ValidationError):
    def __init__(self, field: str, value: Decimal):
        self.field = field
        self.value = value
        super().__init__(f"{field} cannot be negative: {value}")


class OrderOwnershipMismatch(ConflictError):
    def __init__(self, order_number: str, user_id: object):
        self.order_number = order_number
        self.user_id = user_id
        super().__init__(f"Order {order_number} does not belong to user {user_id}")


class DuplicateOrderNumber(ConflictError):
    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(f"Order number already in use: {order_number}")
