"""
テスト共通フィクスチャ

各サービスは本番では PostgreSQL + Redis を使うが、テストでは
サービスごとに別ファイルの SQLite (aiosqlite) と AsyncMock の Redis を使う。
Order Service の HTTP クライアントは ASGITransport で他サービスのアプリに
直接つなぐので、Saga をプロセス内でエンドツーエンドに動かせる。
"""

import os

# main.py は import 時に環境変数を読むので、import より前に設定する
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("INVENTORY_SERVICE_URL", "http://inventory")
os.environ.setdefault("PAYMENT_SERVICE_URL", "http://payment")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from services.inventory.app import main as inventory_main
from services.inventory.app.schema import metadata as inventory_metadata
from services.order.app import main as order_main
from services.order.app.clients import InventoryClient, PaymentClient
from services.order.app.schema import metadata as order_metadata
from services.payment.app import main as payment_main
from services.payment.app.schema import metadata as payment_metadata


async def _database(path, metadata):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    return engine, sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _override_session(factory):
    async def _session():
        async with factory() as session:
            yield session

    return _session


@pytest.fixture
def redis():
    return AsyncMock()


# ── DB ───────────────────────────────────────────


@pytest_asyncio.fixture
async def inventory_db(tmp_path):
    engine, factory = await _database(tmp_path / "inventory.db", inventory_metadata)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def payment_db(tmp_path):
    engine, factory = await _database(tmp_path / "payment.db", payment_metadata)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def order_db(tmp_path):
    engine, factory = await _database(tmp_path / "order.db", order_metadata)
    yield factory
    await engine.dispose()


# ── ASGI アプリ ──────────────────────────────────


@pytest.fixture
def inventory_app(inventory_db, redis):
    app = inventory_main.app
    app.dependency_overrides[inventory_main.get_session] = _override_session(inventory_db)
    app.dependency_overrides[inventory_main.get_redis] = lambda: redis
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def payment_app(payment_db, redis):
    app = payment_main.app
    app.dependency_overrides[payment_main.get_session] = _override_session(payment_db)
    app.dependency_overrides[payment_main.get_redis] = lambda: redis
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def inventory_api(inventory_app):
    transport = httpx.ASGITransport(app=inventory_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://inventory") as client:
        yield client


@pytest_asyncio.fixture
async def payment_api(payment_app):
    transport = httpx.ASGITransport(app=payment_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://payment") as client:
        yield client


@pytest.fixture
def inventory_client(inventory_api):
    return InventoryClient("http://inventory", inventory_api)


@pytest.fixture
def payment_client(payment_api):
    return PaymentClient("http://payment", payment_api)


@pytest_asyncio.fixture
async def order_api(order_db, redis, inventory_client, payment_client):
    app = order_main.app
    app.dependency_overrides[order_main.get_session] = _override_session(order_db)
    app.dependency_overrides[order_main.get_redis] = lambda: redis
    app.dependency_overrides[order_main.get_inventory_client] = lambda: inventory_client
    app.dependency_overrides[order_main.get_payment_client] = lambda: payment_client
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://order") as client:
        yield client
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def stock(inventory_api):
    """商品を入荷するヘルパー"""

    async def _stock(product_id: str, on_hand: int) -> dict:
        resp = await inventory_api.post(
            "/commands/inventory", json={"product_id": product_id, "on_hand": on_hand}
        )
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _stock
