# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Store backends: SQLite for single-host deployments, PostgreSQL for shared ones."""

from .base import DbAdapter
from .sqlite import SqliteAdapter

_SQLITE_SUFFIXES = (".db", ".sqlite", ".sqlite3")


def _is_sqlite_path(target: str) -> bool:
    if target == ":memory:" or target.startswith(("/", "./", "../")):
        return True
    return ":" not in target and target.endswith(_SQLITE_SUFFIXES)


def get_adapter(connection_string: str) -> DbAdapter:
    """Pick the backend for a ``queue.db_path`` value.

    Accepted forms:
        - a file path (absolute, ``./``/``../`` relative, or a bare name with
          a ``.db``/``.sqlite``/``.sqlite3`` suffix), or ``:memory:``
        - ``sqlite:<path>``
        - ``postgresql://...`` or ``postgres://...``

    The PostgreSQL backend is imported only when asked for, so psycopg is
    needed only with the ``postgresql`` extra.

    Raises:
        ValueError: Empty, malformed or unsupported connection string.
    """
    if not connection_string:
        raise ValueError("Empty connection string")
    if _is_sqlite_path(connection_string):
        return SqliteAdapter(connection_string)

    scheme, sep, rest = connection_string.partition(":")
    if not sep:
        raise ValueError(
            f"Invalid connection string '{connection_string}': expected a database file path "
            "or 'sqlite:'/'postgresql://' prefix"
        )
    scheme = scheme.lower()
    if scheme == "sqlite":
        return SqliteAdapter(rest)
    if scheme in ("postgresql", "postgres"):
        if not rest.startswith("//"):
            raise ValueError(f"Invalid PostgreSQL DSN: '{connection_string}'")
        from .postgresql import PostgresAdapter

        return PostgresAdapter(f"postgresql:{rest}")
    raise ValueError(f"Unsupported database type '{scheme}' (use sqlite or postgresql)")


__all__ = ["DbAdapter", "SqliteAdapter", "get_adapter"]
