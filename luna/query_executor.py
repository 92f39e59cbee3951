from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Protocol, Sequence

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from luna.errors import ExecutionError, TableNotFoundError
from luna.sql_firewall import ValidatedQuery


logger = logging.getLogger(__name__)

_MISSING_RELATION_RE = re.compile(r'relation "(?P<name>[^"]+)" does not exist', re.IGNORECASE)


@dataclass(frozen=True)
class QueryResult:
    query_name: str
    description: str
    rows: list[dict[str, Any]]

    @property
    def columns(self) -> list[str]:
        return list(self.rows[0].keys()) if self.rows else []


class MissingRelationError(Exception):
    """Store-level signal that the SQL referenced a relation that does not exist."""

    def __init__(self, relation: str, message: str = ""):
        super().__init__(message or f'relation "{relation}" does not exist')
        self.relation = relation


def missing_relation_name(message: str) -> str | None:
    match = _MISSING_RELATION_RE.search(message or "")
    if not match:
        return None
    # drop any schema qualifier: public.costs -> costs
    return match.group("name").split(".")[-1]


class AnalyticalStore(Protocol):
    async def fetch_all(self, sql: str) -> list[dict[str, Any]]: ...


class SQLAlchemyStore:
    """Read-only access to the analytical database through an async SQLAlchemy engine."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: str) -> "SQLAlchemyStore":
        return cls(create_async_engine(url, pool_pre_ping=True))

    async def fetch_all(self, sql: str) -> list[dict[str, Any]]:
        try:
            async with self.engine.connect() as conn:
                result = await conn.exec_driver_sql(sql)
                return [dict(row._mapping) for row in result]
        except DBAPIError as exc:
            relation = missing_relation_name(str(exc.orig) if exc.orig is not None else str(exc))
            if relation:
                raise MissingRelationError(relation, str(exc.orig)) from exc
            raise

    async def dispose(self) -> None:
        await self.engine.dispose()


class QueryExecutor:
    """Run a validated batch, all-or-nothing, keeping results in batch order."""

    def __init__(
        self,
        store: AnalyticalStore,
        bootstrap_relations: Iterable[str] = (),
        concurrent: bool = False,
    ):
        self.store = store
        self.bootstrap_relations = frozenset(r.lower() for r in bootstrap_relations)
        self.concurrent = concurrent

    async def execute(self, queries: Sequence[ValidatedQuery]) -> list[QueryResult]:
        if not queries:
            return []
        logger.info("Executing %d query(ies) %s", len(queries), "concurrently" if self.concurrent else "sequentially")
        if self.concurrent:
            return await self._execute_concurrently(queries)

        results: list[QueryResult] = []
        for query in queries:
            results.append(await self._run_one(query))
        return results

    async def _run_one(self, query: ValidatedQuery) -> QueryResult:
        try:
            rows = await self.store.fetch_all(query.sql)
        except MissingRelationError as exc:
            if exc.relation.lower() in self.bootstrap_relations:
                logger.error("Bootstrap relation %s is missing; the store needs seeding", exc.relation)
                raise TableNotFoundError(exc.relation, query.name, query.sql) from exc
            raise ExecutionError(query.name, query.sql, str(exc)) from exc
        except Exception as exc:
            logger.error("Query %s failed: %s", query.name, exc)
            raise ExecutionError(query.name, query.sql, str(exc)) from exc
        return QueryResult(query_name=query.name, description=query.description, rows=list(rows))

    async def _execute_concurrently(self, queries: Sequence[ValidatedQuery]) -> list[QueryResult]:
        tasks = [asyncio.create_task(self._run_one(q), name=f"query:{q.name}") for q in queries]
        index_of = {task: idx for idx, task in enumerate(tasks)}
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
                failed = sorted(
                    (t for t in done if not t.cancelled() and t.exception() is not None),
                    key=index_of.__getitem__,
                )
                if failed:
                    raise failed[0].exception()
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return [task.result() for task in tasks]
