# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Column definitions used by table managers to render their schema."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

String = "TEXT"
Integer = "INTEGER"
BigInt = "BIGINT"


@dataclass
class Column:
    """A single column definition.

    Attributes:
        name: Column name.
        type_: SQL type (``String``, ``Integer`` or ``BigInt``).
        nullable: Whether NULL is allowed.
        default: Literal SQL default expression, or None.
        primary_key: Rendered through the adapter's autoincrement key.
    """

    name: str
    type_: str
    nullable: bool = True
    default: Any = None
    primary_key: bool = False

    def to_sql(self) -> str:
        parts = [self.name, self.type_]
        if not self.nullable:
            parts.append("NOT NULL")
        if self.default is not None:
            default = f"'{self.default}'" if isinstance(self.default, str) else str(self.default)
            parts.append(f"DEFAULT {default}")
        return " ".join(parts)


class Columns(dict[str, Column]):
    """Ordered collection of columns for one table."""

    def column(self, name: str, type_: str, **kwargs: Any) -> Column:
        col = Column(name, type_, **kwargs)
        self[name] = col
        return col


__all__ = ["BigInt", "Column", "Columns", "Integer", "String"]
