"""
Inventory Service - FastAPI エントリーポイント

在庫台帳サービス。CQRS + イベントストア。
商品ごとの on_hand / reserved を持ち、引き当て・解放・棚卸し調整を提供する。
"""

import logging
import os
from contextlib import asynccontextmanager
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, event_store, queries
from .errors import InventoryError
from .schema import metadata

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    logger.info("Inventory service started")
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)


async def get_session():
    async with async_session() as session:
        yield session


def get_redis() -> aioredis.Redis:
    return redis_pool


@app.exception_handler(InventoryError)
async def inventory_error_handler(request: Request, exc: InventoryError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Request Models ───────────────────────────────


class AddStockRequest(BaseModel):
    product_id: str = Field(min_length=1, max_length=36)
    on_hand: int = Field(ge=0)
    warehouse: str | None = None


class ReserveRequest(BaseModel):
    quantity: int = Field(gt=0)
    order_id: UUID | None = None


class ReleaseRequest(BaseModel):
    quantity: int = Field(gt=0)
    order_id: UUID | None = None


class AdjustOnHandRequest(BaseModel):
    on_hand: int = Field(ge=0)


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/inventory", status_code=201)
async def cmd_add_stock(
    req: AddStockRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """入荷コマンド"""
    return await commands.add_stock(
        session, redis, req.product_id, req.on_hand, req.warehouse
    )


@app.post("/commands/inventory/{product_id}/reserve")
async def cmd_reserve(
    product_id: str,
    req: ReserveRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """在庫引き当てコマンド"""
    return await commands.reserve_inventory(
        session, redis, product_id, req.quantity, req.order_id
    )


@app.post("/commands/inventory/{product_id}/release")
async def cmd_release(
    product_id: str,
    req: ReleaseRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """在庫解放コマンド（補償トランザクション）"""
    return await commands.release_inventory(
        session, redis, product_id, req.quantity, req.order_id
    )


@app.put("/commands/inventory/{product_id}/on-hand")
async def cmd_adjust_on_hand(
    product_id: str,
    req: AdjustOnHandRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """棚卸し調整コマンド"""
    return await commands.adjust_on_hand(session, redis, product_id, req.on_hand)


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/inventory")
async def query_list_inventory(session: AsyncSession = Depends(get_session)):
    """全商品の在庫をリードモデルから取得"""
    return await queries.list_products(session)


@app.get("/queries/inventory/{product_id}")
async def query_get_inventory(
    product_id: str, session: AsyncSession = Depends(get_session)
):
    """指定商品の在庫をリードモデルから取得"""
    record = await queries.get_product(session, product_id)
    if not record:
        raise HTTPException(404, "Inventory record not found")
    return record


@app.get("/queries/inventory/{product_id}/check")
async def query_check_availability(
    product_id: str,
    quantity: int = Query(gt=0),
    session: AsyncSession = Depends(get_session),
) -> bool:
    """在庫が足りるかどうか（目安。引き当ての保証ではない）"""
    return await queries.check_availability(session, product_id, quantity)


# ── Event Store (デバッグ用) ─────────────────────


@app.get("/events")
async def get_all_events(session: AsyncSession = Depends(get_session)):
    return await event_store.load_all_events(session)


@app.get("/events/{aggregate_id}")
async def get_aggregate_events(
    aggregate_id: str, session: AsyncSession = Depends(get_session)
):
    return await event_store.load_events(session, aggregate_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
