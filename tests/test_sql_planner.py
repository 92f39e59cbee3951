import pytest

from conftest import FakeGenerationService
from luna.errors import GenerationError
from luna.query_executor import QueryResult
from luna.schemas import CandidateQuery, QueryPlanBatch
from luna.sql_planner import (
    PriorTurn,
    PromptLimits,
    QueryPlanner,
    build_conversation_context,
    summarize_prior_response,
)


def _batch(*pairs):
    return QueryPlanBatch(
        queries=[CandidateQuery(queryName=name, queryDescription=f"{name} description", sql=sql) for name, sql in pairs]
    )


def test_summary_truncates_prior_sql_and_sample():
    long_sql = "SELECT " + ", ".join(f"col_{i}" for i in range(200)) + " FROM costs"
    rows = [{"location": "Downtown", "note": "x" * 500}] * 250
    turn = PriorTurn(
        user_text="What are costs by location?",
        queries=(CandidateQuery(queryName="Costs", sql=long_sql),),
        results=(QueryResult("Costs", "", rows),),
    )

    summary = summarize_prior_response(turn, PromptLimits())

    sql_line = summary.splitlines()[1]
    assert sql_line == f"SQL: {long_sql[:300]}..."
    assert "Results: 100 rows returned" in summary
    sample = summary.split("Sample: ", 1)[1]
    assert len(sample) == 200


def test_summary_keeps_short_sql_untouched_and_reports_true_row_count():
    turn = PriorTurn(
        user_text="Sales?",
        queries=(CandidateQuery(queryName="Sales", sql="SELECT 1"),),
        results=(QueryResult("Sales", "", [{"a": 1}, {"a": 2}]),),
    )

    summary = summarize_prior_response(turn, PromptLimits())
    assert summary == 'Query: Sales\nSQL: SELECT 1\n\nResults: 2 rows returned\nSample: {"a": 1}'


def test_summary_without_queries_falls_back_to_response_text():
    turn = PriorTurn(user_text="hello", response_text="  Sales grew 4% in March.  ")
    assert summarize_prior_response(turn, PromptLimits()) == "Sales grew 4% in March."


def test_context_replays_turns_in_order_and_drops_the_oldest(descriptor):
    turns = [PriorTurn(user_text=f"question {i}", response_text=f"answer {i}") for i in range(4)]

    context = build_conversation_context(
        "and now?", descriptor, turns, PromptLimits(max_prior_turns=2)
    )

    assert [(t.role, t.content) for t in context.history] == [
        ("user", "question 2"),
        ("assistant", "answer 2"),
        ("user", "question 3"),
        ("assistant", "answer 3"),
    ]
    assert context.current_prompt.endswith("and now?")


def test_context_skips_empty_sides_of_a_turn(descriptor):
    context = build_conversation_context("q", descriptor, [PriorTurn(user_text="   ", response_text="only answer")])
    assert [t.role for t in context.history] == ["assistant"]


def test_system_prompt_carries_schema_descriptor(descriptor):
    context = build_conversation_context("Show me sales", descriptor)

    for table in descriptor.table_names:
        assert table in context.system_prompt
    assert "DATE_TRUNC" in context.system_prompt
    assert context.history == ()


@pytest.mark.asyncio
async def test_planner_returns_candidates_in_service_order(descriptor):
    service = FakeGenerationService(
        {QueryPlanBatch: _batch(("Monthly Sales", "SELECT 1"), ("Monthly Labor", "SELECT 2"))}
    )
    planner = QueryPlanner(service, descriptor)

    candidates = await planner.generate("  Are we getting better or worse?  ")

    assert [c.query_name for c in candidates] == ["Monthly Sales", "Monthly Labor"]
    request = service.requests_for(QueryPlanBatch)[0]
    assert request.current_prompt.endswith("Are we getting better or worse?")


@pytest.mark.asyncio
async def test_planner_passes_prior_turns_as_history(descriptor):
    service = FakeGenerationService({QueryPlanBatch: _batch(("Follow up", "SELECT 1"))})
    prior = PriorTurn(
        user_text="Sales by month",
        queries=(CandidateQuery(queryName="Monthly Sales", sql="SELECT month, sales FROM t"),),
        results=(QueryResult("Monthly Sales", "", [{"month": "2024-01", "sales": 1}]),),
    )

    await QueryPlanner(service, descriptor).generate("Break that down by location", [prior])

    history = service.requests[0].history
    assert history[0].content == "Sales by month"
    assert history[1].role == "assistant"
    assert "Query: Monthly Sales" in history[1].content


@pytest.mark.asyncio
async def test_planner_accepts_dict_output_with_wire_names(descriptor):
    service = FakeGenerationService(
        {QueryPlanBatch: {"queries": [{"queryName": "Top items", "queryDescription": "", "sql": "SELECT 1"}]}}
    )

    candidates = await QueryPlanner(service, descriptor).generate("Top items")
    assert candidates[0].query_name == "Top items"


@pytest.mark.asyncio
async def test_empty_question_never_reaches_the_service(descriptor):
    service = FakeGenerationService()

    with pytest.raises(GenerationError):
        await QueryPlanner(service, descriptor).generate("   ")
    assert service.requests == []


@pytest.mark.asyncio
async def test_empty_batch_is_a_generation_error(descriptor):
    service = FakeGenerationService({QueryPlanBatch: QueryPlanBatch(queries=[])})

    with pytest.raises(GenerationError) as info:
        await QueryPlanner(service, descriptor).generate("Anything")
    assert info.value.schema_name == "QueryPlanBatch"


@pytest.mark.asyncio
async def test_malformed_output_is_a_generation_error(descriptor):
    service = FakeGenerationService({QueryPlanBatch: {"queries": [{"sql": "SELECT 1"}]}})

    with pytest.raises(GenerationError):
        await QueryPlanner(service, descriptor).generate("Anything")


@pytest.mark.asyncio
async def test_service_failure_propagates(descriptor):
    service = FakeGenerationService({QueryPlanBatch: GenerationError("boom", schema_name="QueryPlanBatch")})

    with pytest.raises(GenerationError, match="boom"):
        await QueryPlanner(service, descriptor).generate("Anything")
