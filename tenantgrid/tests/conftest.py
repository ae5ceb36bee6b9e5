from __future__ import annotations

import os
import tempfile

# The engine is built at import time, so the database URL must be set before any tenantgrid import.
_DB_PATH = os.path.join(tempfile.gettempdir(), f"tenantgrid-tests-{os.getpid()}.db")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_PATH}")
os.environ.setdefault("AUTH_CACHE_TTL_S", "0")

import pytest

from tenantgrid.apps.api.deps import clear_auth_cache
from tenantgrid.core.config import get_settings
from tenantgrid.domain.models import Base
from tenantgrid.persistence.db import engine
from tenantgrid.services.admin_promotion import reset_admin_promotion_service
from tenantgrid.services.ledger import reset_ledger_service


@pytest.fixture(autouse=True)
async def create_schema() -> None:
    # Idempotent; every test uses its own tenant ids so rows never collide.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_singletons() -> None:
    yield
    get_settings.cache_clear()
    clear_auth_cache()
    reset_ledger_service()
    reset_admin_promotion_service()
