from __future__ import annotations

from enum import StrEnum
from typing import Any


class LunaError(Exception):
    """Base class for pipeline failures that end up in front of a user."""

    kind = "luna_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        payload.update({k: v for k, v in self.details().items() if v is not None})
        return payload


class GenerationError(LunaError):
    """The generation service failed or returned output that does not fit the schema."""

    kind = "generation_error"

    def __init__(self, message: str, schema_name: str | None = None):
        super().__init__(message)
        self.schema_name = schema_name

    def details(self) -> dict[str, Any]:
        return {"schema": self.schema_name}


class UnsafeQueryReason(StrEnum):
    WRONG_STATEMENT_TYPE = "wrong-statement-type"
    DISALLOWED_KEYWORD = "disallowed-keyword"


class UnsafeQueryError(LunaError):
    kind = "unsafe_query"

    def __init__(
        self,
        reason: UnsafeQueryReason,
        query_name: str,
        sql: str,
        keyword: str | None = None,
    ):
        if reason is UnsafeQueryReason.WRONG_STATEMENT_TYPE:
            message = f"Query '{query_name}' rejected: only SELECT and WITH queries are allowed."
        else:
            message = f"Query '{query_name}' rejected: disallowed keyword '{keyword}'."
        super().__init__(message)
        self.reason = reason
        self.query_name = query_name
        self.sql = sql
        self.keyword = keyword

    def details(self) -> dict[str, Any]:
        return {
            "reason": str(self.reason),
            "query_name": self.query_name,
            "sql": self.sql,
            "keyword": self.keyword,
        }


class TableNotFoundError(LunaError):
    """A bootstrap relation is missing: the store has not been seeded yet."""

    kind = "table_not_found"

    def __init__(self, relation: str, query_name: str, sql: str):
        super().__init__(
            f"Table '{relation}' does not exist (query '{query_name}'). Seed the database before querying."
        )
        self.relation = relation
        self.query_name = query_name
        self.sql = sql

    def details(self) -> dict[str, Any]:
        return {"relation": self.relation, "query_name": self.query_name, "sql": self.sql}


class ExecutionError(LunaError):
    kind = "execution_error"

    def __init__(self, query_name: str, sql: str, detail: str):
        super().__init__(f"Query '{query_name}' failed: {detail}")
        self.query_name = query_name
        self.sql = sql
        self.detail = detail

    def details(self) -> dict[str, Any]:
        return {"query_name": self.query_name, "sql": self.sql, "detail": self.detail}


class ExplanationError(LunaError):
    kind = "explanation_error"

    def __init__(self, message: str, query_name: str | None = None):
        super().__init__(message)
        self.query_name = query_name

    def details(self) -> dict[str, Any]:
        return {"query_name": self.query_name}


class VisualizationError(LunaError):
    kind = "visualization_error"

    def __init__(self, message: str, field: str | None = None, missing: tuple[str, ...] = ()):
        super().__init__(message)
        self.field = field
        self.missing = tuple(missing)

    def details(self) -> dict[str, Any]:
        return {"field": self.field, "missing": list(self.missing) or None}


class InsightError(LunaError):
    kind = "insight_error"
