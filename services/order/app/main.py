"""
Order Service - FastAPI エントリーポイント

CQRS パターンに従い、Command と Query のエンドポイントを分離。
Event Sourcing により、すべての状態変更をイベントとして記録する。

注文作成は Saga として Inventory Service と Payment Service を
オーケストレーションする。

┌──────────────┐  reserve / release  ┌───────────────────┐
│              │ ──────────────────▶ │ Inventory Service │
│ Order Service│                     └───────────────────┘
│  (Saga)      │  process / refund   ┌───────────────────┐
│              │ ──────────────────▶ │ Payment Service   │
└──────┬───────┘                     └───────────────────┘
       │ order_events / saga_events (Redis Pub/Sub)
       ▼
  通知サービスなど
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal
from typing import Literal
from uuid import UUID

import httpx
import redis.asyncio as aioredis
from fastapi import Body, Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, event_store, queries
from .clients import InventoryClient, PaymentClient
from .errors import OrderError
from .schema import metadata
from .sweeper import run_sweeper

DATABASE_URL = os.environ["DATABASE_URL"]
INVENTORY_SERVICE_URL = os.environ["INVENTORY_SERVICE_URL"]
PAYMENT_SERVICE_URL = os.environ["PAYMENT_SERVICE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
SERVICE_TIMEOUT_SECONDS = float(os.environ.get("SERVICE_TIMEOUT_SECONDS", "10"))
ORDER_PENDING_TIMEOUT_SECONDS = float(
    os.environ.get("ORDER_PENDING_TIMEOUT_SECONDS", "900")
)
ORDER_SWEEP_INTERVAL_SECONDS = float(os.environ.get("ORDER_SWEEP_INTERVAL_SECONDS", "60"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
http_client: httpx.AsyncClient | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にテーブル作成、Redis / HTTP クライアント、掃除ジョブを準備する。"""
    global redis_pool, http_client
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    http_client = httpx.AsyncClient(timeout=SERVICE_TIMEOUT_SECONDS)

    shutdown_event = asyncio.Event()
    sweeper_task = asyncio.create_task(
        run_sweeper(
            async_session,
            redis_pool,
            shutdown_event,
            timedelta(seconds=ORDER_PENDING_TIMEOUT_SECONDS),
            ORDER_SWEEP_INTERVAL_SECONDS,
        )
    )
    logger.info("Order service started")
    yield
    shutdown_event.set()
    sweeper_task.cancel()
    try:
        await sweeper_task
    except asyncio.CancelledError:
        pass
    await http_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


async def get_session():
    async with async_session() as session:
        yield session


def get_redis() -> aioredis.Redis:
    return redis_pool


def get_inventory_client() -> InventoryClient:
    return InventoryClient(INVENTORY_SERVICE_URL, http_client)


def get_payment_client() -> PaymentClient:
    return PaymentClient(PAYMENT_SERVICE_URL, http_client)


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Request Models ───────────────────────────────

OrderStatus = Literal[
    "PENDING", "CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED"
]


class OrderItemRequest(BaseModel):
    product_id: str = Field(min_length=1, max_length=36)
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)


class CreateOrderRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    items: list[OrderItemRequest] = Field(min_length=1)
    shipping_address: str = Field(min_length=1)
    currency: str = Field(default="USD", pattern=r"^[A-Z]{3}$")
    payment_method: str = Field(default="CREDIT_CARD", min_length=1, max_length=32)


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


class CancelOrderRequest(BaseModel):
    reason: str = "Cancelled by operator"


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/orders", status_code=201)
async def cmd_create_order(
    req: CreateOrderRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
    inventory: InventoryClient = Depends(get_inventory_client),
    payments: PaymentClient = Depends(get_payment_client),
):
    """注文作成コマンド（Saga を実行する）"""
    return await commands.create_order(
        session,
        redis,
        inventory,
        payments,
        req.user_id,
        [item.model_dump() for item in req.items],
        req.shipping_address,
        req.currency,
        req.payment_method,
    )


@app.put("/commands/orders/{order_id}/status")
async def cmd_update_status(
    order_id: UUID,
    req: UpdateStatusRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
    inventory: InventoryClient = Depends(get_inventory_client),
    payments: PaymentClient = Depends(get_payment_client),
):
    """ステータス更新コマンド"""
    return await commands.update_status(
        session, redis, inventory, payments, order_id, req.status
    )


@app.post("/commands/orders/{order_id}/cancel", status_code=204)
async def cmd_cancel_order(
    order_id: UUID,
    req: CancelOrderRequest | None = Body(default=None),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
    inventory: InventoryClient = Depends(get_inventory_client),
    payments: PaymentClient = Depends(get_payment_client),
):
    """注文キャンセルコマンド（何度呼んでも安全）"""
    req = req or CancelOrderRequest()
    await commands.cancel_order(
        session, redis, inventory, payments, order_id, req.reason
    )
    return Response(status_code=204)


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/orders")
async def query_list_orders(
    user_id: str | None = None,
    status: OrderStatus | None = None,
    session: AsyncSession = Depends(get_session),
):
    """注文一覧をリードモデルから取得"""
    return await queries.list_orders(session, user_id, status)


@app.get("/queries/orders/stale")
async def query_stale_orders(session: AsyncSession = Depends(get_session)):
    """PENDING のまま放置されフラグが立った注文"""
    return await queries.list_stale_orders(session)


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: UUID, session: AsyncSession = Depends(get_session)):
    """指定注文をリードモデルから取得"""
    order = await queries.get_order(session, order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    return order


# ── Event Store (デバッグ用) ─────────────────────


@app.get("/events")
async def get_all_events(session: AsyncSession = Depends(get_session)):
    """イベントストアの全イベントを返す"""
    return await event_store.load_all_events(session)


@app.get("/events/{aggregate_id}")
async def get_aggregate_events(
    aggregate_id: UUID, session: AsyncSession = Depends(get_session)
):
    """指定集約のイベントを返す"""
    return await event_store.load_events(session, aggregate_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
