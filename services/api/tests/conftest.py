"""Shared test fixtures."""

import base64

import nacl.utils
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import walletpass.models  # noqa: F401  registers tables on Base.metadata
from walletpass.config import Settings
from walletpass.models.base import Base
from walletpass.services.crypto_service import CryptoService
from walletpass.services.registration_store import RegistrationStore

PASS_TYPE = "pass.com.example.loyalty"
AUTH_TOKEN = "vxwxd7J8AlNNFPS8k0a0FfUFtq0ewzFdc"
DEVICE_ID = "a1b2c3d4e5f6"
PUSH_TOKEN = "f" * 64


@pytest.fixture
def encryption_key() -> str:
    return base64.b64encode(nacl.utils.random(32)).decode()


@pytest.fixture
def settings(encryption_key) -> Settings:
    return Settings(
        app_env="development",
        database_url="sqlite+aiosqlite://",
        redis_url="redis://localhost:6379/0",
        encryption_key=encryption_key,
        pass_type_identifier=PASS_TYPE,
        team_identifier="TEAM123456",
        web_service_url="https://example.com/passes/",
        rate_limit_enabled=False,
        apns_team_id="TEAM123456",
        apns_key_id="KEY1234567",
        push_retry_backoff_seconds=0.01,
        debug=True,
    )


@pytest.fixture
def crypto(settings) -> CryptoService:
    return CryptoService(settings)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def make_pass(session_factory, crypto):
    """Insert an issued pass directly, bypassing template signing."""

    async def _make(
        serial_number: str = "1234",
        token: str = AUTH_TOKEN,
        tag: int = 1_000,
        artifact: bytes | None = b"PK-signed-pass",
    ):
        async with session_factory() as session:
            store = RegistrationStore(session, clock=lambda: tag)
            wallet_pass, _ = await store.record_pass(
                PASS_TYPE,
                serial_number,
                {
                    "authentication_token": crypto.encrypt(token),
                    "web_service_url": "https://example.com/passes/",
                    "template_id": "StoreCard",
                    "properties": {"organizationName": "Hunter Club"},
                    "artifact": artifact,
                },
            )
            await session.commit()
        return wallet_pass

    return _make


@pytest.fixture
def register_device(session_factory):
    """Link a device to an existing pass."""

    async def _register(serial_number: str = "1234", device_id: str = DEVICE_ID, push_token: str = PUSH_TOKEN):
        async with session_factory() as session:
            store = RegistrationStore(session)
            wallet_pass = await store.get_pass(PASS_TYPE, serial_number)
            device, _ = await store.upsert_device(device_id, push_token)
            created = await store.register(device, wallet_pass)
            await session.commit()
        return created

    return _register
