# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Declarative table base shared by the jobs, pending and history tables."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .column import Columns

if TYPE_CHECKING:
    from .adapters import DbAdapter


class Table:
    """One table of the dispatch store.

    Subclasses set ``name``, fill ``self.columns`` in :meth:`configure` and
    may declare ``indexes`` as ``{index_name: "col_a, col_b"}``. The schema
    is rendered for whichever adapter the table is bound to, so the same
    class creates an ``AUTOINCREMENT`` key on SQLite and ``BIGSERIAL`` on
    PostgreSQL.
    """

    name: str
    indexes: dict[str, str] = {}

    def __init__(self, adapter: DbAdapter) -> None:
        if not getattr(self, "name", None):
            raise ValueError(f"{type(self).__name__} must define 'name'")
        self.adapter = adapter
        self.columns = Columns()
        self.configure()

    def configure(self) -> None:
        pass

    def create_table_sql(self) -> str:
        definitions = [
            self.adapter.pk_column(col.name) if col.primary_key else col.to_sql()
            for col in self.columns.values()
        ]
        body = ",\n    ".join(definitions)
        return f"CREATE TABLE IF NOT EXISTS {self.name} (\n    {body}\n)"

    def create_indexes_sql(self) -> list[str]:
        return [
            f"CREATE INDEX IF NOT EXISTS {index} ON {self.name} ({columns})"
            for index, columns in self.indexes.items()
        ]

    async def create_schema(self) -> None:
        """Create the table and its indexes; existing ones are left alone."""
        for statement in [self.create_table_sql(), *self.create_indexes_sql()]:
            await self.adapter.execute(statement)

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        return await self.adapter.execute(query, params)

    async def count(self, where: dict[str, Any] | None = None) -> int:
        """Rows matching every ``column = value`` pair in ``where``."""
        query = f"SELECT COUNT(*) AS cnt FROM {self.name}"
        if where:
            query += " WHERE " + " AND ".join(f"{key} = :{key}" for key in where)
        row = await self.adapter.fetch_one(query, where or {})
        return int(row["cnt"]) if row else 0
