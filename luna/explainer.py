from __future__ import annotations

import asyncio
import logging
import re
from typing import Sequence

from luna.errors import ExplanationError, GenerationError
from luna.llm_service import GenerationRequest, StructuredGenerator, coerce_output
from luna.prompts import explainer_system_prompt, explainer_user_prompt
from luna.schemas import CandidateQuery, Explanation, ExplanationSection
from luna.semantic_loader import SchemaDescriptor
from luna.sql_firewall import ValidatedQuery


logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def _squash(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip().lower()


def _name_and_sql(query: CandidateQuery | ValidatedQuery) -> tuple[str, str]:
    if isinstance(query, ValidatedQuery):
        return query.name, query.sql
    return query.query_name, query.sql


def keep_verbatim_sections(sql: str, sections: Sequence[ExplanationSection]) -> list[ExplanationSection]:
    """Keep sections that quote the SQL, are distinct, and follow each other without overlap."""
    haystack = _squash(sql)
    cursor = 0
    seen: set[str] = set()
    kept: list[ExplanationSection] = []
    for item in sections:
        needle = _squash(item.section)
        if not needle or needle in seen:
            continue
        position = haystack.find(needle, cursor)
        if position < 0:
            logger.warning("Dropping explanation section not found in order in the SQL: %r", item.section[:80])
            continue
        seen.add(needle)
        cursor = position + len(needle)
        kept.append(item)
    return kept


class Explainer:
    def __init__(self, service: StructuredGenerator, descriptor: SchemaDescriptor):
        self.service = service
        self.descriptor = descriptor

    async def explain(
        self,
        user_query: str,
        queries: Sequence[CandidateQuery | ValidatedQuery],
    ) -> list[Explanation]:
        if not queries:
            return []
        try:
            async with asyncio.TaskGroup() as group:
                tasks = [group.create_task(self._explain_one(user_query, *_name_and_sql(q))) for q in queries]
        except ExceptionGroup as eg:
            raise eg.exceptions[0]
        return [task.result() for task in tasks]

    async def _explain_one(self, user_query: str, query_name: str, sql: str) -> Explanation:
        request = GenerationRequest(
            system_prompt=explainer_system_prompt(self.descriptor),
            current_prompt=explainer_user_prompt(user_query, query_name, sql),
            output_schema=Explanation,
        )
        try:
            explanation = coerce_output(await self.service.generate(request), Explanation)
        except GenerationError as exc:
            raise ExplanationError(f"Failed to explain query '{query_name}': {exc}", query_name=query_name) from exc

        sections = keep_verbatim_sections(sql, explanation.sections)
        if not sections:
            raise ExplanationError(
                f"Explanation for query '{query_name}' did not quote any part of the SQL.",
                query_name=query_name,
            )
        return explanation.model_copy(update={"query_name": query_name, "sections": sections})
