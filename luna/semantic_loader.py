from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from luna.config import DEFAULT_SCHEMA_PATH


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    data_type: str
    nullable: bool = True


@dataclass(frozen=True)
class TableSpec:
    name: str
    description: str
    columns: tuple[ColumnSpec, ...]


@dataclass(frozen=True)
class JoinRule:
    tables: tuple[str, ...]
    rule: str


@dataclass(frozen=True)
class ExampleQuery:
    question: str
    sql: str
    note: str = ""


@dataclass(frozen=True)
class SchemaDescriptor:
    """Static description of the analytical store handed to every prompt."""

    dialect: str
    domain_context: str
    tables: tuple[TableSpec, ...]
    join_rules: tuple[JoinRule, ...]
    guidance: tuple[str, ...]
    examples: tuple[ExampleQuery, ...]

    @property
    def table_names(self) -> tuple[str, ...]:
        return tuple(t.name for t in self.tables)

    def table(self, name: str) -> TableSpec | None:
        for spec in self.tables:
            if spec.name == name:
                return spec
        return None


def _as_str(value: object) -> str:
    return str(value or "").strip()


def _parse_columns(raw_columns: list[Any], table_name: str) -> tuple[ColumnSpec, ...]:
    columns: list[ColumnSpec] = []
    for item in raw_columns or []:
        if not isinstance(item, dict) or not _as_str(item.get("name")):
            raise ValueError(f"Table '{table_name}' has a column without a name.")
        columns.append(
            ColumnSpec(
                name=_as_str(item.get("name")),
                data_type=_as_str(item.get("type")) or "text",
                nullable=bool(item.get("nullable", True)),
            )
        )
    return tuple(columns)


def parse_schema_descriptor(data: dict[str, Any]) -> SchemaDescriptor:
    schema = data.get("schema", data) or {}

    tables: list[TableSpec] = []
    for name, table in (schema.get("tables", {}) or {}).items():
        table = table or {}
        tables.append(
            TableSpec(
                name=str(name),
                description=_as_str(table.get("description")),
                columns=_parse_columns(table.get("columns", []), str(name)),
            )
        )
    if not tables:
        raise ValueError("Schema descriptor must describe at least one table.")

    join_rules = tuple(
        JoinRule(
            tables=tuple(str(t) for t in (item.get("tables", []) or [])),
            rule=_as_str(item.get("rule")),
        )
        for item in (schema.get("join_rules", []) or [])
        if isinstance(item, dict) and _as_str(item.get("rule"))
    )
    examples = tuple(
        ExampleQuery(
            question=_as_str(item.get("question")),
            sql=str(item.get("sql", "") or "").strip("\n"),
            note=_as_str(item.get("note")),
        )
        for item in (schema.get("examples", []) or [])
        if isinstance(item, dict) and _as_str(item.get("sql"))
    )
    guidance = tuple(_as_str(g) for g in (schema.get("guidance", []) or []) if _as_str(g))

    return SchemaDescriptor(
        dialect=_as_str(schema.get("dialect")) or "postgres",
        domain_context=_as_str(schema.get("domain_context")),
        tables=tuple(tables),
        join_rules=join_rules,
        guidance=guidance,
        examples=examples,
    )


def load_schema_descriptor(path: str | Path = DEFAULT_SCHEMA_PATH) -> SchemaDescriptor:
    schema_path = Path(path)
    with schema_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    descriptor = parse_schema_descriptor(data)
    logger.info("Loaded schema descriptor from %s (%d tables)", schema_path, len(descriptor.tables))
    return descriptor


@lru_cache(maxsize=None)
def get_schema_descriptor(path: str = DEFAULT_SCHEMA_PATH) -> SchemaDescriptor:
    """Process-wide descriptor: loaded on first use, shared afterwards."""
    return load_schema_descriptor(path)
