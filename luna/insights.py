from __future__ import annotations

import logging
from typing import Sequence

from luna.errors import GenerationError, InsightError
from luna.llm_service import GenerationRequest, StructuredGenerator, coerce_output
from luna.prompts import format_results_for_prompt, insights_system_prompt, insights_user_prompt
from luna.query_executor import QueryResult
from luna.schemas import InsightsReport
from luna.semantic_loader import SchemaDescriptor


logger = logging.getLogger(__name__)


class InsightEngine:
    def __init__(self, service: StructuredGenerator, descriptor: SchemaDescriptor, sample_rows: int = 5):
        self.service = service
        self.descriptor = descriptor
        self.sample_rows = sample_rows

    async def analyze(self, results: Sequence[QueryResult], user_query: str) -> InsightsReport:
        if not results:
            raise InsightError("There are no query results to analyze.")

        request = GenerationRequest(
            system_prompt=insights_system_prompt(self.descriptor),
            current_prompt=insights_user_prompt(
                user_query,
                format_results_for_prompt(results, self.sample_rows),
                result_count=len(results),
            ),
            output_schema=InsightsReport,
        )
        try:
            report = coerce_output(await self.service.generate(request), InsightsReport)
        except GenerationError as exc:
            raise InsightError(f"Failed to generate data insights: {exc}") from exc

        # cross-query claims need at least two result sets to stand on
        if len(results) < 2 and report.cross_query_insights:
            logger.warning(
                "Discarding %d cross-query insight(s) produced from a single result set",
                len(report.cross_query_insights),
            )
            report = report.model_copy(update={"cross_query_insights": []})
        return report
