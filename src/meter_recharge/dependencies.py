"""FastAPI dependency providers for the gateway registry, meter platform and engine.

Each provider builds its collaborator once per process from the environment.
Tests replace them through ``app.dependency_overrides``.
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .database import get_session_factory
from .gateways import GatewayRegistry, build_default_registry
from .meters import AdminTokenProvider, IotClient
from .reconciliation.engine import ReconciliationEngine, build_engine


@lru_cache(maxsize=1)
def get_gateway_registry() -> GatewayRegistry:
    return build_default_registry()


@lru_cache(maxsize=1)
def get_meter_client() -> IotClient:
    return IotClient()


@lru_cache(maxsize=1)
def _token_provider() -> AdminTokenProvider:
    return AdminTokenProvider(get_meter_client())


def get_token_provider() -> AdminTokenProvider:
    # Shared so a refreshed token is reused by every request
    return _token_provider()


def get_engine(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
    meter_client: IotClient = Depends(get_meter_client),
    token_provider: AdminTokenProvider = Depends(get_token_provider),
) -> ReconciliationEngine:
    return build_engine(
        session_factory,
        gateways=gateways,
        meter_client=meter_client,
        token_provider=token_provider,
    )
