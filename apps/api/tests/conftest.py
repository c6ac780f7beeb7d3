from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from models.social_account import SocialAccount
from models.tenant import Tenant
from services.crypto import encrypt_token
from services.platforms.rate_limiter import set_rate_limiter
from services.platforms.store import MemoryStore, set_shared_store


@pytest.fixture(autouse=True)
def isolated_shared_state():
    """Keep rate-limit windows and PKCE verifiers isolated between tests."""
    store = MemoryStore()
    set_shared_store(store)
    set_rate_limiter(None)
    yield store
    set_shared_store(None)
    set_rate_limiter(None)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "social_sync.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


async def create_tenant(session_maker, tenant_id: str = "tenant-1", name: str = "Acme Bakery") -> Tenant:
    async with session_maker() as db:
        tenant = Tenant(id=tenant_id, name=name)
        db.add(tenant)
        await db.commit()
        return tenant


async def create_account(
    session_maker,
    *,
    account_id: str,
    tenant_id: str = "tenant-1",
    platform: str = "twitter",
    external_account_id: str = None,
    access_token: str = "access-token",
    refresh_token: str = "refresh-token",
    expires_in: timedelta = timedelta(hours=2),
    auth_status: str = "active",
) -> SocialAccount:
    async with session_maker() as db:
        account = SocialAccount(
            id=account_id,
            tenant_id=tenant_id,
            platform=platform,
            external_account_id=external_account_id or f"ext-{account_id}",
            account_name=f"{platform} {account_id}",
            access_token_encrypted=encrypt_token(access_token),
            refresh_token_encrypted=encrypt_token(refresh_token) if refresh_token else None,
            token_expires_at=datetime.now(timezone.utc) + expires_in if expires_in is not None else None,
            auth_status=auth_status,
        )
        db.add(account)
        await db.commit()
        return account
