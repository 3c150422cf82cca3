"""
Order Service: テーブル定義

PostgreSQL (asyncpg) で運用し、テストでは SQLite (aiosqlite) を使う。
orders.version は楽観的ロック用: 更新は読み込んだ version を条件に行い、
他のトランザクションが先に更新していれば0行更新となって競合を検知できる。
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

MONEY = Numeric(12, 2)
WEIGHT = Numeric(10, 3)
PERCENT = Numeric(5, 2)

users = Table(
    "users",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("role", String(20), nullable=False),
    Column("is_active", Boolean, nullable=False),
)

addresses = Table(
    "addresses",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("user_id", Uuid, ForeignKey("users.id"), nullable=False),
    Column("address_line", String(255), nullable=False),
    Column("city", String(100), nullable=False),
    Column("zone", String(100)),
)

products = Table(
    "products",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("sku", String(50), nullable=False, unique=True),
    Column("name", String(200), nullable=False),
    Column("price", MONEY, nullable=False),
    Column("weight_kg", WEIGHT, nullable=False),
    Column("stock_quantity", Integer, nullable=False),
    Column("is_active", Boolean, nullable=False),
)

shipping_rules = Table(
    "shipping_rules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(50), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("rule_type", String(50), nullable=False),
    Column("priority", Integer, nullable=False),
    Column("configuration", JSON, nullable=False),
    Column("is_active", Boolean, nullable=False),
    Column("valid_from", DateTime(timezone=True)),
    Column("valid_until", DateTime(timezone=True)),
    Column("description", Text),
)

shipping_extras = Table(
    "shipping_extras",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(50), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("price_type", String(20), nullable=False),
    Column("base_price", MONEY, nullable=False),
    Column("percentage_value", PERCENT),
    Column("is_active", Boolean, nullable=False),
    Column("display_order", Integer, nullable=False),
    Column("description", Text),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("order_number", String(50), nullable=False, unique=True),
    Column("user_id", Uuid, ForeignKey("users.id"), nullable=False, index=True),
    Column("address_id", Uuid, ForeignKey("addresses.id"), nullable=False),
    Column("subtotal", MONEY, nullable=False),
    Column("shipping_cost", MONEY, nullable=False),
    Column("extras_cost", MONEY, nullable=False),
    Column("tax_rate", PERCENT, nullable=False),
    Column("tax_amount", MONEY, nullable=False),
    Column("total_amount", MONEY, nullable=False),
    Column("total_weight_kg", WEIGHT, nullable=False),
    Column("status", String(20), nullable=False),
    Column("payment_status", String(20), nullable=False),
    Column("applied_shipping_rule_code", String(50)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("confirmed_at", DateTime(timezone=True)),
    Column("delivered_at", DateTime(timezone=True)),
    Column("cancelled_at", DateTime(timezone=True)),
    Column("version", Integer, nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
    Column("line_no", Integer, nullable=False),
    Column("product_id", Uuid, ForeignKey("products.id"), nullable=False),
    Column("product_name", String(200), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", MONEY, nullable=False),
    Column("weight_kg", WEIGHT, nullable=False),
)

order_extras = Table(
    "order_extras",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
    Column("position", Integer, nullable=False),
    Column("extra_code", String(50), nullable=False),
    Column("extra_name", String(100), nullable=False),
    Column("applied_price", MONEY, nullable=False),
    UniqueConstraint("order_id", "extra_code"),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
