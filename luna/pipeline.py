"""Per-turn coordinator.

One user turn moves through Drafting -> Validating -> Executing and then fans
out to the three artifact generators, which run as independent tasks with
their own timeouts. The turn ends Completed (artifacts collected, possibly
partially) or Aborted (drafting, validation or execution failed).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Awaitable, Sequence, TypeVar

from luna.chart_planner import Visualizer
from luna.config import Settings
from luna.errors import (
    ExplanationError,
    InsightError,
    LunaError,
    UnsafeQueryError,
    VisualizationError,
)
from luna.explainer import Explainer
from luna.insights import InsightEngine
from luna.llm_service import StructuredGenerator
from luna.query_executor import AnalyticalStore, QueryExecutor, QueryResult
from luna.schemas import CandidateQuery, ChartConfig, Explanation, InsightsReport
from luna.semantic_loader import SchemaDescriptor
from luna.sql_firewall import ValidatedQuery, validate_batch, validate_query
from luna.sql_planner import PriorTurn, PromptLimits, QueryPlanner


logger = logging.getLogger(__name__)

T = TypeVar("T")


class TurnState(StrEnum):
    DRAFTING = "drafting"
    VALIDATING = "validating"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class TurnOutcome:
    query: str
    state: TurnState = TurnState.DRAFTING
    aborted_at: TurnState | None = None
    error: LunaError | None = None
    candidates: list[CandidateQuery] = field(default_factory=list)
    rejected: list[UnsafeQueryError] = field(default_factory=list)
    results: list[QueryResult] = field(default_factory=list)
    explanations: list[Explanation] | None = None
    chart: ChartConfig | None = None
    insights: InsightsReport | None = None
    artifact_errors: dict[str, LunaError] = field(default_factory=dict)

    def abort(self, stage: TurnState, error: LunaError) -> "TurnOutcome":
        logger.warning("Turn aborted while %s: %s", stage, error)
        self.state = TurnState.ABORTED
        self.aborted_at = stage
        self.error = error
        return self


@dataclass(frozen=True)
class ArtifactTimeouts:
    explain: float = 60.0
    visualize: float = 60.0
    analyze: float = 60.0


async def _bounded(coro: Awaitable[T], timeout: float, error_type: type[LunaError], label: str) -> T:
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except TimeoutError as exc:
        raise error_type(f"{label} timed out after {timeout:g}s") from exc


class AnalyticsPipeline:
    def __init__(
        self,
        service: StructuredGenerator,
        store: AnalyticalStore,
        descriptor: SchemaDescriptor,
        *,
        limits: PromptLimits = PromptLimits(),
        sample_rows: int = 5,
        bootstrap_relations: Sequence[str] | None = None,
        concurrent_execution: bool = False,
        timeouts: ArtifactTimeouts = ArtifactTimeouts(),
    ):
        self.descriptor = descriptor
        self.planner = QueryPlanner(service, descriptor, limits)
        self.executor = QueryExecutor(
            store,
            bootstrap_relations=descriptor.table_names if bootstrap_relations is None else bootstrap_relations,
            concurrent=concurrent_execution,
        )
        self.explainer = Explainer(service, descriptor)
        self.visualizer = Visualizer(service, descriptor, sample_rows=sample_rows)
        self.insight_engine = InsightEngine(service, descriptor, sample_rows=sample_rows)
        self.timeouts = timeouts

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        service: StructuredGenerator,
        store: AnalyticalStore,
        descriptor: SchemaDescriptor,
    ) -> "AnalyticsPipeline":
        return cls(
            service,
            store,
            descriptor,
            limits=PromptLimits.from_settings(settings),
            sample_rows=settings.artifact_sample_rows,
            bootstrap_relations=settings.bootstrap_relations or None,
            concurrent_execution=settings.executor_mode == "concurrent",
            timeouts=ArtifactTimeouts(
                explain=settings.explain_timeout_seconds,
                visualize=settings.visualize_timeout_seconds,
                analyze=settings.analyze_timeout_seconds,
            ),
        )

    async def generate(self, query: str, prior_turns: Sequence[PriorTurn] = ()) -> list[CandidateQuery]:
        return await self.planner.generate(query, tuple(prior_turns))

    async def execute(self, queries: Sequence[CandidateQuery]) -> list[QueryResult]:
        # every candidate is checked before anything reaches the store
        validated = [validate_query(q) for q in queries]
        return await self.executor.execute(validated)

    async def explain(
        self, user_query: str, queries: Sequence[CandidateQuery | ValidatedQuery]
    ) -> list[Explanation]:
        return await self.explainer.explain(user_query, queries)

    async def visualize(self, results: Sequence[QueryResult], user_query: str) -> ChartConfig:
        try:
            return await self.visualizer.visualize(results, user_query)
        except VisualizationError as exc:
            if exc.field not in ("labelFields", "consolidation"):
                raise
            logger.warning("Consolidated chart rejected (%s); retrying without consolidation", exc)
            return await self.visualizer.visualize(results, user_query, consolidate=False)

    async def analyze(self, results: Sequence[QueryResult], user_query: str) -> InsightsReport:
        return await self.insight_engine.analyze(results, user_query)

    async def run_turn(
        self,
        query: str,
        prior_turns: Sequence[PriorTurn] = (),
        require_full_acceptance: bool = True,
    ) -> TurnOutcome:
        outcome = TurnOutcome(query=query)

        try:
            outcome.candidates = await self.generate(query, prior_turns)
        except LunaError as exc:
            return outcome.abort(TurnState.DRAFTING, exc)

        outcome.state = TurnState.VALIDATING
        accepted, outcome.rejected = validate_batch(outcome.candidates)
        if outcome.rejected and require_full_acceptance:
            return outcome.abort(TurnState.VALIDATING, outcome.rejected[0])
        if not accepted:
            return outcome.abort(TurnState.VALIDATING, outcome.rejected[0])

        outcome.state = TurnState.EXECUTING
        try:
            outcome.results = await self.executor.execute(accepted)
        except LunaError as exc:
            return outcome.abort(TurnState.EXECUTING, exc)

        await self._fan_out(outcome, accepted)
        outcome.state = TurnState.COMPLETED
        logger.info(
            "Turn completed: %d result set(s), artifact failures: %s",
            len(outcome.results),
            sorted(outcome.artifact_errors) or "none",
        )
        return outcome

    async def _fan_out(self, outcome: TurnOutcome, queries: Sequence[ValidatedQuery]) -> None:
        branches = {
            "explanations": _bounded(
                self.explain(outcome.query, queries), self.timeouts.explain, ExplanationError, "Explanation"
            ),
            "chart": _bounded(
                self.visualize(outcome.results, outcome.query),
                self.timeouts.visualize,
                VisualizationError,
                "Visualization",
            ),
            "insights": _bounded(
                self.analyze(outcome.results, outcome.query), self.timeouts.analyze, InsightError, "Insights"
            ),
        }
        names = list(branches)
        settled = await asyncio.gather(*branches.values(), return_exceptions=True)
        for name, value in zip(names, settled):
            if isinstance(value, (ExplanationError, VisualizationError, InsightError)):
                logger.warning("%s failed: %s", name, value)
                outcome.artifact_errors[name] = value
            elif isinstance(value, BaseException):
                raise value
            else:
                setattr(outcome, name, value)
