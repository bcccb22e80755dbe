# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Shared fixtures: fake clock and temporary SQLite stores."""

from __future__ import annotations

import pytest
import pytest_asyncio

from relay_dispatch.dispatch_db import DispatchDb

START_MS = 1_700_000_000_000


class FakeClock:
    """Callable clock returning epoch milliseconds that only moves when told."""

    def __init__(self, now_ms: int = START_MS):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> int:
        self.now_ms += ms
        return self.now_ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "dispatch.db")


@pytest_asyncio.fixture
async def db(db_path, clock):
    store = DispatchDb(db_path, clock=clock)
    await store.init_db()
    yield store
    await store.close()
