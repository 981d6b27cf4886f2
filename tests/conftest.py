"""Shared test fixtures."""

from __future__ import annotations

import pytest
from factories import catalog_prices, catalog_products, seed_catalog
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel

import planshift.models.database  # noqa: F401
from planshift.billing.catalog import DatabasePriceCatalog, InMemoryPriceCatalog
from planshift.config.settings import Settings


@pytest.fixture()
async def async_engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
async def db_catalog(async_engine: AsyncEngine) -> DatabasePriceCatalog:
    """Database catalog seeded with PRO and ENTERPRISE prices for both intervals."""
    await seed_catalog(async_engine)
    return DatabasePriceCatalog(async_engine, overage_amount=10_000)


@pytest.fixture()
def memory_catalog() -> InMemoryPriceCatalog:
    return InMemoryPriceCatalog(catalog_products(), catalog_prices(), overage_amount=10_000)


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        use_database=True,
        stripe_secret_key="sk_test_planshift",
        billing_threshold_overage_amount=10_000,
    )
