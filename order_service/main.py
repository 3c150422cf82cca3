"""
Order Service: FastAPI エントリーポイント

Command (POST / PUT) と Query (GET) のエンドポイントを分離する。
業務エラー (OrderServiceError) は http_status に従って
{"error": クラス名, "detail": メッセージ} の JSON に変換する。
"""

import logging
from contextlib import asynccontextmanager
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, config, queries
from .errors import OrderServiceError
from .extras import ExtraChainBuilder
from .repository import SqlUnitOfWork
from .schema import create_schema
from .selector import ShippingRuleSelector
from .stores import UnitOfWork

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

engine = create_async_engine(config.DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None

# ストラテジーと追加サービスの登録簿は起動時に1度だけ作る
shipping_selector = ShippingRuleSelector()
extra_builder = ExtraChainBuilder()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await create_schema(engine)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    logger.info("Order service started")
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Dependencies ─────────────────────────────────

def get_uow() -> UnitOfWork:
    return SqlUnitOfWork(async_session)


def get_redis() -> aioredis.Redis:
    return redis_pool


def get_selector() -> ShippingRuleSelector:
    return shipping_selector


def get_builder() -> ExtraChainBuilder:
    return extra_builder


@app.exception_handler(OrderServiceError)
async def handle_order_service_error(request: Request, exc: OrderServiceError):
    logger.info("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


# ── Request / Response Models ────────────────────

class OrderLineRequest(BaseModel):
    product_id: UUID
    quantity: int = Field(ge=1)


class CreateOrderRequest(BaseModel):
    user_id: UUID
    address_id: UUID
    items: list[OrderLineRequest] = Field(min_length=1)
    extra_codes: list[str] = []


class CancelOrderRequest(BaseModel):
    reason: str = ""


class UpdateExtrasRequest(BaseModel):
    extra_codes: list[str] = []


# ── Command Endpoints (Write 側) ─────────────────

@app.post("/commands/orders")
async def cmd_create_order(
    req: CreateOrderRequest,
    uow: UnitOfWork = Depends(get_uow),
    redis: aioredis.Redis = Depends(get_redis),
    selector: ShippingRuleSelector = Depends(get_selector),
    builder: ExtraChainBuilder = Depends(get_builder),
):
    """注文作成コマンド"""
    order = await commands.create_order(
        uow, redis,
        req.user_id, req.address_id,
        [(line.product_id, line.quantity) for line in req.items],
        req.extra_codes,
        selector=selector,
        builder=builder,
    )
    return queries.order_to_dict(order)


@app.post("/commands/orders/{order_id}/confirm")
async def cmd_confirm_order(
    order_id: UUID,
    user_id: UUID | None = None,
    uow: UnitOfWork = Depends(get_uow),
    redis: aioredis.Redis = Depends(get_redis),
):
    """注文確定コマンド"""
    order = await commands.confirm_order(uow, redis, order_id, user_id=user_id)
    return queries.order_to_dict(order)


@app.post("/commands/orders/{order_id}/cancel")
async def cmd_cancel_order(
    order_id: UUID,
    req: CancelOrderRequest | None = None,
    user_id: UUID | None = None,
    uow: UnitOfWork = Depends(get_uow),
    redis: aioredis.Redis = Depends(get_redis),
):
    """注文キャンセルコマンド（在庫を戻す）"""
    reason = req.reason if req else ""
    order = await commands.cancel_order(uow, redis, order_id, reason, user_id=user_id)
    return queries.order_to_dict(order)


@app.post("/commands/orders/{order_id}/ship")
async def cmd_ship_order(
    order_id: UUID,
    uow: UnitOfWork = Depends(get_uow),
    redis: aioredis.Redis = Depends(get_redis),
):
    """発送コマンド"""
    order = await commands.mark_in_transit(uow, redis, order_id)
    return queries.order_to_dict(order)


@app.post("/commands/orders/{order_id}/deliver")
async def cmd_deliver_order(
    order_id: UUID,
    uow: UnitOfWork = Depends(get_uow),
    redis: aioredis.Redis = Depends(get_redis),
):
    """配達完了コマンド"""
    order = await commands.mark_delivered(uow, redis, order_id)
    return queries.order_to_dict(order)


@app.put("/commands/orders/{order_id}/extras")
async def cmd_update_extras(
    order_id: UUID,
    req: UpdateExtrasRequest,
    user_id: UUID | None = None,
    uow: UnitOfWork = Depends(get_uow),
    redis: aioredis.Redis = Depends(get_redis),
    builder: ExtraChainBuilder = Depends(get_builder),
):
    """追加サービスの付け替えと再計算"""
    order = await commands.recalculate_extras(
        uow, redis, order_id, req.extra_codes, builder=builder, user_id=user_id
    )
    return queries.order_to_dict(order)


# ── Query Endpoints (Read 側) ────────────────────

@app.get("/queries/orders")
async def query_orders_by_status(status: str, uow: UnitOfWork = Depends(get_uow)):
    return await queries.list_orders_by_status(uow, status)


@app.get("/queries/orders/{order_id}")
async def query_get_order(
    order_id: UUID,
    user_id: UUID | None = None,
    uow: UnitOfWork = Depends(get_uow),
):
    """user_id を指定すると所有者を確認する"""
    order = await queries.get_order(uow, order_id, user_id)
    if not order:
        raise HTTPException(404, "Order not found")
    return order


@app.get("/queries/orders/by-number/{order_number}")
async def query_get_order_by_number(order_number: str, uow: UnitOfWork = Depends(get_uow)):
    order = await queries.get_order_by_number(uow, order_number)
    if not order:
        raise HTTPException(404, "Order not found")
    return order


@app.get("/queries/users/{user_id}/orders")
async def query_user_orders(user_id: UUID, uow: UnitOfWork = Depends(get_uow)):
    return await queries.list_user_orders(uow, user_id)


@app.get("/queries/orders/{order_id}/shipping")
async def query_shipping_quote(
    order_id: UUID,
    uow: UnitOfWork = Depends(get_uow),
    selector: ShippingRuleSelector = Depends(get_selector),
):
    """現在のルールで自動選択した場合の送料"""
    result = await commands.select_shipping(uow, order_id, selector=selector)
    return result.to_dict()


@app.get("/queries/orders/{order_id}/shipping/{rule_code}")
async def query_forced_shipping_quote(
    order_id: UUID,
    rule_code: str,
    uow: UnitOfWork = Depends(get_uow),
    selector: ShippingRuleSelector = Depends(get_selector),
):
    """指定ルールで計算した送料（適用できなければエラー）"""
    result = await commands.select_with_forced_rule(uow, order_id, rule_code, selector=selector)
    return result.to_dict()


@app.get("/queries/orders/{order_id}/shipping/{rule_code}/applicable")
async def query_rule_applicable(
    order_id: UUID,
    rule_code: str,
    uow: UnitOfWork = Depends(get_uow),
    selector: ShippingRuleSelector = Depends(get_selector),
):
    applicable = await commands.is_rule_applicable(uow, order_id, rule_code, selector=selector)
    return {"rule_code": rule_code, "applicable": applicable}


@app.get("/queries/shipping/rules")
async def query_active_rules(uow: UnitOfWork = Depends(get_uow)):
    return await queries.list_active_rules(uow)


@app.get("/queries/shipping/rules/{code}")
async def query_rule(code: str, uow: UnitOfWork = Depends(get_uow)):
    return await queries.get_rule(uow, code)


@app.get("/queries/shipping/extras")
async def query_active_extras(uow: UnitOfWork = Depends(get_uow)):
    return await queries.list_active_extras(uow)


@app.get("/queries/shipping/extras/{code}")
async def query_extra(code: str, uow: UnitOfWork = Depends(get_uow)):
    return await queries.get_extra(uow, code)


@app.get("/queries/shipping/strategies")
async def query_strategy_types(selector: ShippingRuleSelector = Depends(get_selector)):
    return queries.list_strategy_types(selector)


@app.get("/queries/shipping/extra-codes")
async def query_supported_extra_codes(builder: ExtraChainBuilder = Depends(get_builder)):
    return queries.list_supported_extra_codes(builder)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
