import asyncio
from typing import Any, Callable

import pytest

from luna.config import DEFAULT_SCHEMA_PATH
from luna.llm_service import GenerationRequest
from luna.query_executor import QueryResult
from luna.semantic_loader import get_schema_descriptor


class FakeGenerationService:
    """Answers generation requests by output schema.

    A response can be a model/dict, a list consumed in order, an exception to
    raise, or a callable taking the request.
    """

    def __init__(self, responses: dict[type, Any] | None = None, delays: dict[type, float] | None = None):
        self.responses = dict(responses or {})
        self.delays = dict(delays or {})
        self.requests: list[GenerationRequest] = []
        self.cancelled: list[type] = []

    def requests_for(self, schema: type) -> list[GenerationRequest]:
        return [r for r in self.requests if r.output_schema is schema]

    async def generate(self, request: GenerationRequest):
        self.requests.append(request)
        try:
            if request.output_schema in self.delays:
                await asyncio.sleep(self.delays[request.output_schema])
        except asyncio.CancelledError:
            self.cancelled.append(request.output_schema)
            raise
        response = self.responses[request.output_schema]
        if isinstance(response, list):
            response = response.pop(0)
        if callable(response) and not isinstance(response, type):
            response = response(request)
        if isinstance(response, BaseException):
            raise response
        return response


class FakeStore:
    def __init__(self, responses: dict[str, Any], delays: dict[str, float] | None = None):
        self.responses = responses
        self.delays = dict(delays or {})
        self.calls: list[str] = []
        self.cancelled: list[str] = []
        self.completed: list[str] = []

    async def fetch_all(self, sql: str) -> list[dict[str, Any]]:
        self.calls.append(sql)
        try:
            if sql in self.delays:
                await asyncio.sleep(self.delays[sql])
        except asyncio.CancelledError:
            self.cancelled.append(sql)
            raise
        response = self.responses[sql]
        if isinstance(response, BaseException):
            raise response
        self.completed.append(sql)
        return [dict(row) for row in response]


@pytest.fixture
def descriptor():
    return get_schema_descriptor(DEFAULT_SCHEMA_PATH)


@pytest.fixture
def monthly_sales_result() -> QueryResult:
    return QueryResult(
        query_name="Monthly Sales",
        description="Net sales per month",
        rows=[
            {"month": "2024-03-01T00:00:00", "total_sales": 15234.5},
            {"month": "2024-01-01T00:00:00", "total_sales": 12000.0},
            {"month": "2024-02-01T00:00:00", "total_sales": 13100.25},
        ],
    )


def make_responder(mapping: dict[str, Any]) -> Callable[[GenerationRequest], Any]:
    """Pick a response by looking for a key inside the current prompt."""

    def _respond(request: GenerationRequest):
        for key, value in mapping.items():
            if key in request.current_prompt:
                return value
        raise AssertionError(f"no canned response for prompt: {request.current_prompt[:120]}")

    return _respond
