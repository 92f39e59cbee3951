from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Protocol, TypeVar

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from luna.config import Settings
from luna.errors import GenerationError


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class ConversationTurn:
    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class GenerationRequest:
    system_prompt: str
    current_prompt: str
    output_schema: type[BaseModel]
    history: tuple[ConversationTurn, ...] = field(default_factory=tuple)


class StructuredGenerator(Protocol):
    async def generate(self, request: GenerationRequest) -> BaseModel: ...


def _to_message(turn: ConversationTurn) -> BaseMessage:
    if turn.role == "system":
        return SystemMessage(content=turn.content)
    if turn.role == "assistant":
        return AIMessage(content=turn.content)
    return HumanMessage(content=turn.content)


def build_messages(request: GenerationRequest) -> list[BaseMessage]:
    return [
        SystemMessage(content=request.system_prompt),
        *(_to_message(turn) for turn in request.history),
        HumanMessage(content=request.current_prompt),
    ]


def coerce_output(raw: object, output_schema: type[ModelT]) -> ModelT:
    """Validate whatever the model returned against the requested schema."""
    schema_name = output_schema.__name__
    if isinstance(raw, output_schema):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(by_alias=True)
    if not isinstance(raw, dict):
        raise GenerationError(f"Structured output for {schema_name} was not an object.", schema_name=schema_name)
    try:
        return output_schema.model_validate(raw)
    except ValidationError as exc:
        raise GenerationError(
            f"Structured output does not match {schema_name}: {exc.error_count()} validation error(s).",
            schema_name=schema_name,
        ) from exc


class StructuredGenerationService:
    """Structured generation over an OpenAI-compatible chat model."""

    def __init__(self, settings: Settings, client: ChatOpenAI | None = None):
        self.settings = settings
        self.client = client or ChatOpenAI(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            timeout=settings.llm_timeout_seconds,
        )

    async def generate(self, request: GenerationRequest) -> BaseModel:
        schema_name = request.output_schema.__name__
        messages = build_messages(request)
        logger.debug("Requesting %s with %d message(s)", schema_name, len(messages))
        try:
            runnable = self.client.with_structured_output(request.output_schema, method="function_calling")
            raw = await runnable.ainvoke(messages)
        except Exception as exc:
            logger.warning("Generation service call for %s failed: %s", schema_name, exc)
            raise GenerationError(f"Generation service call failed: {exc}", schema_name=schema_name) from exc

        if raw is None:
            raise GenerationError(f"Generation service returned no {schema_name}.", schema_name=schema_name)
        return coerce_output(raw, request.output_schema)
