from __future__ import annotations

import logging
from dataclasses import dataclass, field

from luna.config import Settings
from luna.errors import GenerationError
from luna.llm_service import ConversationTurn, GenerationRequest, StructuredGenerator, coerce_output
from luna.prompts import planner_system_prompt, planner_user_prompt, to_json
from luna.query_executor import QueryResult
from luna.schemas import CandidateQuery, QueryPlanBatch
from luna.semantic_loader import SchemaDescriptor


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriorTurn:
    """One earlier exchange, as kept by the caller's conversation history."""

    user_text: str
    response_text: str = ""
    queries: tuple[CandidateQuery, ...] = ()
    results: tuple[QueryResult, ...] = ()


@dataclass(frozen=True)
class PromptLimits:
    sql_max_chars: int = 300
    sample_max_chars: int = 200
    result_row_cap: int = 100
    max_prior_turns: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> "PromptLimits":
        return cls(
            sql_max_chars=settings.prompt_sql_max_chars,
            sample_max_chars=settings.prompt_sample_max_chars,
            result_row_cap=settings.prompt_result_row_cap,
            max_prior_turns=settings.prompt_max_prior_turns,
        )


@dataclass(frozen=True)
class ConversationContext:
    system_prompt: str
    current_prompt: str
    history: tuple[ConversationTurn, ...] = field(default_factory=tuple)


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}..."


def summarize_prior_response(turn: PriorTurn, limits: PromptLimits) -> str:
    if not turn.queries:
        return turn.response_text.strip()

    summary = "\n\n".join(
        f"Query: {q.query_name}\nSQL: {_truncate(q.sql, limits.sql_max_chars)}" for q in turn.queries
    )
    first = turn.results[0] if turn.results else None
    if first is not None and first.rows:
        summary += f"\n\nResults: {min(len(first.rows), limits.result_row_cap)} rows returned"
        summary += f"\nSample: {to_json(first.rows[0])[: limits.sample_max_chars]}"
    return summary


def build_conversation_context(
    query: str,
    descriptor: SchemaDescriptor,
    prior_turns: list[PriorTurn] | tuple[PriorTurn, ...] = (),
    limits: PromptLimits = PromptLimits(),
) -> ConversationContext:
    replayed = list(prior_turns)
    if limits.max_prior_turns >= 0 and len(replayed) > limits.max_prior_turns:
        logger.debug("Dropping %d older turn(s) from context", len(replayed) - limits.max_prior_turns)
        replayed = replayed[len(replayed) - limits.max_prior_turns:]

    history: list[ConversationTurn] = []
    for turn in replayed:
        if turn.user_text.strip():
            history.append(ConversationTurn(role="user", content=turn.user_text.strip()))
        response = summarize_prior_response(turn, limits)
        if response:
            history.append(ConversationTurn(role="assistant", content=response))

    return ConversationContext(
        system_prompt=planner_system_prompt(descriptor),
        current_prompt=planner_user_prompt(query),
        history=tuple(history),
    )


class QueryPlanner:
    def __init__(
        self,
        service: StructuredGenerator,
        descriptor: SchemaDescriptor,
        limits: PromptLimits = PromptLimits(),
    ):
        self.service = service
        self.descriptor = descriptor
        self.limits = limits

    async def generate(
        self,
        query: str,
        prior_turns: list[PriorTurn] | tuple[PriorTurn, ...] = (),
    ) -> list[CandidateQuery]:
        if not query or not query.strip():
            raise GenerationError("Cannot plan queries for an empty question.", schema_name="QueryPlanBatch")

        context = build_conversation_context(query.strip(), self.descriptor, prior_turns, self.limits)
        request = GenerationRequest(
            system_prompt=context.system_prompt,
            current_prompt=context.current_prompt,
            output_schema=QueryPlanBatch,
            history=context.history,
        )
        batch = coerce_output(await self.service.generate(request), QueryPlanBatch)

        candidates = list(batch.queries)
        if not candidates:
            raise GenerationError("Generation service returned no candidate queries.", schema_name="QueryPlanBatch")
        logger.info("Planned %d candidate query(ies): %s", len(candidates), [q.query_name for q in candidates])
        return candidates
