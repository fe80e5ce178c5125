"""
Payment Service - FastAPI エントリーポイント

注文ごとの支払いを管理する。決済は注文 ID 単位で冪等。
"""

import logging
import os
from contextlib import asynccontextmanager
from decimal import Decimal
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, event_store, queries
from .errors import PaymentError
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
    logger.info("Payment service started")
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Payment Service", lifespan=lifespan)


async def get_session():
    async with async_session() as session:
        yield session


def get_redis() -> aioredis.Redis:
    return redis_pool


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Request Models ───────────────────────────────


class ProcessPaymentRequest(BaseModel):
    order_id: UUID
    user_id: str = Field(min_length=1, max_length=64)
    amount: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    currency: str = Field(default="USD", pattern=r"^[A-Z]{3}$")
    method: str = Field(default="CREDIT_CARD", min_length=1, max_length=32)


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/payments/process", status_code=201)
async def cmd_process_payment(
    req: ProcessPaymentRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """決済コマンド（Order Service の Saga から呼ばれる）"""
    return await commands.process_payment(
        session,
        redis,
        str(req.order_id),
        req.user_id,
        req.amount,
        req.currency,
        req.method,
    )


@app.post("/commands/payments/{payment_id}/refund")
async def cmd_refund_payment(
    payment_id: str,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """返金コマンド"""
    return await commands.refund_payment(session, redis, payment_id)


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/payments")
async def query_list_payments(
    user_id: str | None = None, session: AsyncSession = Depends(get_session)
):
    """支払い一覧（user_id で絞り込み可）"""
    return await queries.list_payments(session, user_id)


@app.get("/queries/payments/order/{order_id}")
async def query_payment_by_order(
    order_id: UUID, session: AsyncSession = Depends(get_session)
):
    payment = await queries.get_payment_by_order(session, str(order_id))
    if not payment:
        raise HTTPException(404, "Payment not found")
    return payment


@app.get("/queries/payments/{payment_id}")
async def query_get_payment(
    payment_id: str, session: AsyncSession = Depends(get_session)
):
    payment = await queries.get_payment(session, payment_id)
    if not payment:
        raise HTTPException(404, "Payment not found")
    return payment


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
    return {"status": "ok", "service": "payment-service"}
