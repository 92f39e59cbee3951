import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import DBAPIError

from conftest import FakeStore
from luna.errors import ExecutionError, TableNotFoundError
from luna.query_executor import (
    MissingRelationError,
    QueryExecutor,
    QueryResult,
    SQLAlchemyStore,
    missing_relation_name,
)
from luna.sql_firewall import ValidatedQuery


def _q(name: str, sql: str) -> ValidatedQuery:
    return ValidatedQuery(name=name, description=f"{name} description", sql=sql)


class MissingRelationNameTests(unittest.TestCase):
    def test_extracts_plain_relation(self):
        self.assertEqual(
            missing_relation_name('relation "item_selection_details" does not exist'),
            "item_selection_details",
        )

    def test_strips_schema_qualifier(self):
        self.assertEqual(
            missing_relation_name('ERROR: relation "public.costs" does not exist at character 15'),
            "costs",
        )

    def test_other_messages_return_none(self):
        self.assertIsNone(missing_relation_name('column "salez" does not exist'))
        self.assertIsNone(missing_relation_name(""))


@pytest.mark.asyncio
async def test_sequential_results_follow_batch_order():
    store = FakeStore({"SELECT 1": [{"a": 1}], "SELECT 2": [], "SELECT 3": [{"c": 3}, {"c": 4}]})
    executor = QueryExecutor(store)

    results = await executor.execute([_q("one", "SELECT 1"), _q("two", "SELECT 2"), _q("three", "SELECT 3")])

    assert [r.query_name for r in results] == ["one", "two", "three"]
    assert results[0] == QueryResult("one", "one description", [{"a": 1}])
    assert results[1].rows == []
    assert results[1].columns == []
    assert results[2].columns == ["c"]
    assert store.calls == ["SELECT 1", "SELECT 2", "SELECT 3"]


@pytest.mark.asyncio
async def test_empty_batch_returns_empty_list():
    store = FakeStore({})
    assert await QueryExecutor(store).execute([]) == []
    assert store.calls == []


@pytest.mark.asyncio
async def test_missing_bootstrap_relation_is_table_not_found():
    store = FakeStore({"SELECT * FROM item_selection_details": MissingRelationError("item_selection_details")})
    executor = QueryExecutor(store, bootstrap_relations=["Item_Selection_Details", "costs"])

    with pytest.raises(TableNotFoundError) as info:
        await executor.execute([_q("Items", "SELECT * FROM item_selection_details")])

    assert info.value.relation == "item_selection_details"
    assert info.value.to_dict()["kind"] == "table_not_found"
    assert "Seed the database" in str(info.value)


@pytest.mark.asyncio
async def test_missing_non_bootstrap_relation_is_plain_execution_error():
    store = FakeStore({"SELECT * FROM nope": MissingRelationError("nope")})
    executor = QueryExecutor(store, bootstrap_relations=["costs"])

    with pytest.raises(ExecutionError) as info:
        await executor.execute([_q("Nope", "SELECT * FROM nope")])
    assert info.value.query_name == "Nope"


@pytest.mark.asyncio
async def test_sequential_failure_stops_the_batch():
    store = FakeStore({"SELECT 1": [{"a": 1}], "SELECT bad": RuntimeError("syntax error"), "SELECT 3": []})
    executor = QueryExecutor(store)

    with pytest.raises(ExecutionError) as info:
        await executor.execute([_q("one", "SELECT 1"), _q("bad", "SELECT bad"), _q("three", "SELECT 3")])

    assert info.value.detail == "syntax error"
    assert info.value.sql == "SELECT bad"
    assert store.calls == ["SELECT 1", "SELECT bad"]


@pytest.mark.asyncio
async def test_concurrent_results_keep_batch_order_not_completion_order():
    store = FakeStore(
        {"SELECT slow": [{"n": "slow"}], "SELECT fast": [{"n": "fast"}]},
        delays={"SELECT slow": 0.05},
    )
    executor = QueryExecutor(store, concurrent=True)

    results = await executor.execute([_q("slow", "SELECT slow"), _q("fast", "SELECT fast")])

    assert [r.query_name for r in results] == ["slow", "fast"]
    assert store.completed == ["SELECT fast", "SELECT slow"]


@pytest.mark.asyncio
async def test_concurrent_failure_cancels_outstanding_queries():
    store = FakeStore(
        {"SELECT slow": [{"n": 1}], "SELECT bad": RuntimeError("boom"), "SELECT slower": [{"n": 2}]},
        delays={"SELECT slow": 1.0, "SELECT slower": 2.0},
    )
    executor = QueryExecutor(store, concurrent=True)

    with pytest.raises(ExecutionError, match="boom"):
        await executor.execute(
            [_q("slow", "SELECT slow"), _q("bad", "SELECT bad"), _q("slower", "SELECT slower")]
        )

    assert sorted(store.cancelled) == ["SELECT slow", "SELECT slower"]
    assert store.completed == []
    assert not [t for t in asyncio.all_tasks() if t.get_name().startswith("query:")]


@pytest.mark.asyncio
async def test_concurrent_simultaneous_failures_report_the_earliest_query():
    store = FakeStore({"SELECT a": RuntimeError("first"), "SELECT b": RuntimeError("second")})
    executor = QueryExecutor(store, concurrent=True)

    with pytest.raises(ExecutionError) as info:
        await executor.execute([_q("a", "SELECT a"), _q("b", "SELECT b")])
    assert info.value.query_name == "a"


class _Row:
    def __init__(self, mapping):
        self._mapping = mapping


def _mock_engine(error=None, rows=()):
    conn = AsyncMock()
    if error is not None:
        conn.exec_driver_sql.side_effect = error
    else:
        conn.exec_driver_sql.return_value = [_Row(r) for r in rows]
    ctx = MagicMock()
    ctx.__aenter__.return_value = conn
    ctx.__aexit__.return_value = False
    engine = MagicMock()
    engine.connect.return_value = ctx
    engine.dispose = AsyncMock()
    return engine, conn


@pytest.mark.asyncio
async def test_store_returns_rows_as_dicts_and_passes_sql_verbatim():
    engine, conn = _mock_engine(rows=[{"location": "Downtown", "sales": 10}])
    store = SQLAlchemyStore(engine)

    rows = await store.fetch_all("SELECT location, sales FROM costs WHERE note = ':not_a_bind'")

    assert rows == [{"location": "Downtown", "sales": 10}]
    conn.exec_driver_sql.assert_awaited_once_with("SELECT location, sales FROM costs WHERE note = ':not_a_bind'")

    await store.dispose()
    engine.dispose.assert_awaited_once()


@pytest.mark.asyncio
async def test_store_maps_missing_relation_and_strips_schema():
    driver_error = Exception('relation "public.item_selection_details" does not exist')
    engine, _ = _mock_engine(DBAPIError("SELECT * FROM public.item_selection_details", None, driver_error))

    with pytest.raises(MissingRelationError) as info:
        await SQLAlchemyStore(engine).fetch_all("SELECT * FROM public.item_selection_details")

    assert info.value.relation == "item_selection_details"
    assert isinstance(info.value.__cause__, DBAPIError)


@pytest.mark.asyncio
async def test_store_reraises_other_driver_errors_unchanged():
    error = DBAPIError("SELECT salez FROM costs", None, Exception('column "salez" does not exist'))
    engine, _ = _mock_engine(error)

    with pytest.raises(DBAPIError) as info:
        await SQLAlchemyStore(engine).fetch_all("SELECT salez FROM costs")
    assert info.value is error


@pytest.mark.asyncio
async def test_missing_relation_from_store_becomes_table_not_found():
    driver_error = Exception('relation "costs" does not exist')
    engine, _ = _mock_engine(DBAPIError("SELECT * FROM costs", None, driver_error))
    executor = QueryExecutor(SQLAlchemyStore(engine), bootstrap_relations=["costs"])

    with pytest.raises(TableNotFoundError) as info:
        await executor.execute([_q("Costs", "SELECT * FROM costs")])
    assert info.value.relation == "costs"
