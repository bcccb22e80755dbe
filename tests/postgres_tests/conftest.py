# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Fixtures for PostgreSQL integration tests using testcontainers."""

import contextlib

import pytest
import pytest_asyncio

TABLES = ["message_history", "pending_messages", "outbound_jobs"]


@pytest.fixture(scope="session")
def pg_container():
    """Spin up a real PostgreSQL container for the session.

    Returns a ``postgresql://`` URL usable as a DispatchDb connection string.
    Requires Docker and the ``postgresql`` extra.
    """
    pytest.importorskip("psycopg")
    pytest.importorskip("psycopg_pool")
    try:
        from testcontainers.postgres import PostgresContainer
    except ImportError:
        pytest.skip("testcontainers not installed")

    postgres = PostgresContainer("postgres:15")
    try:
        postgres.start()
    except Exception as exc:
        pytest.skip(f"Docker not available: {exc}")
    try:
        # testcontainers returns 'postgresql+psycopg2://' but psycopg expects 'postgresql://'
        url = postgres.get_connection_url()
        yield url.replace("postgresql+psycopg2://", "postgresql://")
    finally:
        postgres.stop()


@pytest_asyncio.fixture
async def pg_stores(pg_container, clock):
    """Factory for DispatchDb instances sharing the container database.

    Each store has its own connection pool, standing in for a separate
    dispatcher process. Tables are dropped after each test.
    """
    from relay_dispatch.dispatch_db import DispatchDb

    opened = []

    async def make(count=1):
        stores = [DispatchDb(pg_container, clock=clock) for _ in range(count)]
        for store in stores:
            await store.init_db()
            opened.append(store)
        return stores

    yield make

    if opened:
        for table_name in TABLES:
            with contextlib.suppress(Exception):
                await opened[0].adapter.execute(f"DROP TABLE IF EXISTS {table_name} CASCADE")
    for store in opened:
        await store.close()


@pytest_asyncio.fixture
async def pg_db(pg_stores):
    """A single connected DispatchDb on PostgreSQL with fresh tables."""
    (store,) = await pg_stores(1)
    return store
