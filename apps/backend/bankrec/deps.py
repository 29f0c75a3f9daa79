"""FastAPI dependency aliases shared by routers.

Usage:
    from bankrec.deps import DbSession, EngineConfig

    async def my_endpoint(db: DbSession, config: EngineConfig):
        ...

Tests swap the engine configuration with
``app.dependency_overrides[get_engine_config]``.
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bankrec.database import get_db
from bankrec.services.engine_config import ReconciliationConfig, load_reconciliation_config


def get_engine_config() -> ReconciliationConfig:
    return load_reconciliation_config()


DbSession = Annotated[AsyncSession, Depends(get_db)]
EngineConfig = Annotated[ReconciliationConfig, Depends(get_engine_config)]

__all__ = ["DbSession", "EngineConfig", "get_engine_config"]
