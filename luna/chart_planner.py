from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Sequence

from luna.errors import GenerationError, VisualizationError
from luna.llm_service import GenerationRequest, StructuredGenerator, coerce_output
from luna.prompts import format_results_for_prompt, visualizer_system_prompt, visualizer_user_prompt
from luna.query_executor import QueryResult
from luna.schemas import ChartConfig, ChartPlan, ConsolidationSpec, ValueFormat
from luna.semantic_loader import SchemaDescriptor


logger = logging.getLogger(__name__)

MONETARY_HINTS = frozenset(
    {
        "sales",
        "cost",
        "costs",
        "revenue",
        "price",
        "pay",
        "wage",
        "wages",
        "tip",
        "tips",
        "gratuity",
        "discount",
        "tax",
        "profit",
        "amount",
        "spend",
    }
)
CURRENCY_PREFIX = "$"
STACK_SOURCE_FIELD = "source"

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}(-\d{2})?")
_LABEL_FORMATS = ("%b %Y", "%B %Y", "%d %b %Y", "%d %B %Y", "%Y-%m")
_NAME_TOKEN_RE = re.compile(r"[^a-z0-9]+")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def parse_period(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    if _ISO_DATE_RE.match(text):
        candidate = text if len(text) > 7 else f"{text}-01"
        try:
            return datetime.fromisoformat(candidate.replace("Z", "+00:00")).replace(tzinfo=None)
        except ValueError:
            return None
    for fmt in _LABEL_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def is_monetary_field(field: str) -> bool:
    tokens = _NAME_TOKEN_RE.split(field.lower())
    return any(token in MONETARY_HINTS for token in tokens if token)


def humanize_field(field: str) -> str:
    return " ".join(part for part in field.replace("-", "_").split("_") if part).title() or field


def format_value(value: Any, value_format: ValueFormat) -> str:
    if not _is_number(value):
        return "" if value is None else str(value)
    number = float(value) if isinstance(value, Decimal) else value
    if value_format.decimals is not None:
        body = f"{number:,.{value_format.decimals}f}" if value_format.thousands else f"{number:.{value_format.decimals}f}"
    elif isinstance(number, int):
        body = f"{number:,}" if value_format.thousands else str(number)
    else:
        body = f"{number:,.2f}" if value_format.thousands else f"{number:.2f}"
    if body.startswith("-"):
        return f"-{value_format.prefix}{body[1:]}"
    return f"{value_format.prefix}{body}"


def is_time_series(rows: Sequence[dict[str, Any]], x_key: str | None) -> bool:
    if not x_key:
        return False
    values = [row.get(x_key) for row in rows if row.get(x_key) is not None]
    return bool(values) and all(parse_period(v) is not None for v in values)


def _merge_into(target: dict[str, Any], row: dict[str, Any], skip: str | None = None) -> None:
    for field, value in row.items():
        if field == skip:
            continue
        if value is not None or field not in target:
            target[field] = value


def _is_month_level(periods: Sequence[datetime]) -> bool:
    return all(p.day == 1 and (p.hour, p.minute, p.second, p.microsecond) == (0, 0, 0, 0) for p in periods)


def _bucket(period: datetime, month_level: bool) -> datetime:
    return datetime(period.year, period.month, 1 if month_level else period.day)


def series_fields(
    rows: Sequence[dict[str, Any]],
    x_key: str,
    value_fields: Sequence[str],
    stacked: bool = False,
    multiple_lines: bool = False,
) -> list[str]:
    """Columns that split a time series into several lines.

    The stack tag always does. Otherwise a non-value column counts when it
    takes more than one value within a single period, or, for multi-line
    plans, when it holds text.
    """
    fields = [STACK_SOURCE_FIELD] if stacked else []
    candidates: list[str] = []
    for row in rows:
        for column in row:
            if column not in candidates and column != x_key and column not in value_fields:
                candidates.append(column)

    parsed = [(parse_period(row.get(x_key)), row) for row in rows]
    periods = [p for p, _ in parsed if p is not None]
    month_level = _is_month_level(periods)
    for column in candidates:
        if column in fields:
            continue
        seen: dict[datetime, set[str]] = {}
        for period, row in parsed:
            if period is not None:
                seen.setdefault(_bucket(period, month_level), set()).add(repr(row.get(column)))
        varies = any(len(values) > 1 for values in seen.values())
        textual = multiple_lines and any(isinstance(row.get(column), str) for row in rows)
        if varies or textual:
            fields.append(column)
    return fields


def normalize_time_series(
    rows: Sequence[dict[str, Any]],
    x_key: str,
    series: Sequence[str] = (),
) -> list[dict[str, Any]]:
    """Order rows oldest first with month+year labels, one row per period and series.

    Rows sharing both period and series values are combined; rows of
    different series keep their own entries, in first-seen order within a
    period. Rows without a usable period are dropped and absent periods stay
    absent.
    """
    parsed = [(parse_period(row.get(x_key)), row) for row in rows]
    periods = [p for p, _ in parsed if p is not None]
    if not periods:
        return []
    month_level = _is_month_level(periods)

    by_key: dict[tuple[datetime, tuple[str, ...]], dict[str, Any]] = {}
    dropped = 0
    for period, row in parsed:
        if period is None:
            dropped += 1
            continue
        key = (_bucket(period, month_level), tuple(repr(row.get(f)) for f in series))
        _merge_into(by_key.setdefault(key, {}), row, skip=x_key)
    if dropped:
        logger.warning("Dropped %d row(s) without a usable %s value", dropped, x_key)

    ordered: list[dict[str, Any]] = []
    # sorted() is stable, so series order inside a period is first-seen order
    for key in sorted(by_key, key=lambda k: k[0]):
        period = key[0]
        label = period.strftime("%b %Y") if month_level else f"{period.day} {period.strftime('%b %Y')}"
        ordered.append({x_key: label, **by_key[key]})
    return ordered


def _period_or_text(value: Any) -> Any:
    period = parse_period(value)
    return period if period is not None else str(value)


def _source_results(results: Sequence[QueryResult], spec: ConsolidationSpec) -> list[QueryResult]:
    if not spec.source_queries:
        return list(results)
    wanted = set(spec.source_queries)
    selected = [r for r in results if r.query_name in wanted]
    if not selected:
        logger.warning("Consolidation names unknown source queries %s; using every result", spec.source_queries)
        return list(results)
    return selected


def consolidate_rows(results: Sequence[QueryResult], spec: ConsolidationSpec) -> list[dict[str, Any]]:
    sources = _source_results(results, spec)
    if spec.method == "stack" or not spec.key_field:
        return [{**row, STACK_SOURCE_FIELD: result.query_name} for result in sources for row in result.rows]

    key_field = spec.key_field
    merged: dict[Any, dict[str, Any]] = {}
    seen_in: dict[Any, set[int]] = {}
    for idx, result in enumerate(sources):
        for row in result.rows:
            if row.get(key_field) is None:
                continue
            token = _period_or_text(row[key_field])
            target = merged.setdefault(token, {key_field: row[key_field]})
            _merge_into(target, row, skip=key_field)
            seen_in.setdefault(token, set()).add(idx)

    if spec.method == "join":
        return [row for token, row in merged.items() if len(seen_in[token]) == len(sources)]
    return list(merged.values())


def _plain_values(rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{k: float(v) if isinstance(v, Decimal) else v for k, v in row.items()} for row in rows]


def check_consolidation(plan: ChartPlan) -> None:
    if not plan.is_consolidated:
        return
    spec = plan.consolidation
    if spec is None:
        raise VisualizationError("Consolidated chart is missing its consolidation details.", field="consolidation")
    if not spec.label_fields:
        raise VisualizationError(
            "Consolidated chart must provide non-empty labelFields.",
            field="labelFields",
            missing=tuple(spec.value_fields),
        )
    missing = tuple(f for f in spec.value_fields if f not in spec.label_fields)
    if missing:
        raise VisualizationError(
            f"labelFields does not cover value fields: {', '.join(missing)}",
            field="labelFields",
            missing=missing,
        )


@dataclass(frozen=True)
class _Fields:
    x_key: str | None
    value_fields: list[str]


def _chart_fields(plan: ChartPlan, rows: Sequence[dict[str, Any]]) -> _Fields:
    spec = plan.consolidation if plan.is_consolidated else None
    x_key = plan.x_key or (spec.key_field if spec else None)
    value_fields: list[str] = []
    for field in [*plan.y_keys, *(spec.value_fields if spec else [])]:
        if field and field != x_key and field not in value_fields:
            value_fields.append(field)
    if not value_fields:
        columns = list(rows[0].keys()) if rows else []
        value_fields = [c for c in columns if c != x_key and any(_is_number(r.get(c)) for r in rows)]
    return _Fields(x_key=x_key, value_fields=value_fields)


def build_chart_config(plan: ChartPlan, results: Sequence[QueryResult]) -> ChartConfig:
    check_consolidation(plan)
    spec = plan.consolidation if plan.is_consolidated else None

    rows = consolidate_rows(results, spec) if spec else list(results[0].rows)
    fields = _chart_fields(plan, rows)

    time_series = is_time_series(rows, fields.x_key)
    if time_series:
        stacked = spec is not None and (spec.method == "stack" or not spec.key_field)
        series = series_fields(rows, fields.x_key, fields.value_fields, stacked, plan.multiple_lines)
        rows = normalize_time_series(rows, fields.x_key, series)

    labels: dict[str, str] = dict(spec.label_fields) if spec else {}
    value_formats: dict[str, ValueFormat] = {}
    for field in fields.value_fields:
        label = labels.get(field) or humanize_field(field)
        if is_monetary_field(field):
            if CURRENCY_PREFIX not in label:
                label = f"{label} ({CURRENCY_PREFIX})"
            value_formats[field] = ValueFormat(prefix=CURRENCY_PREFIX, thousands=True, decimals=2)
        elif any(_is_number(r.get(field)) for r in rows):
            value_formats[field] = ValueFormat(thousands=True)
        labels[field] = label
    if fields.x_key and fields.x_key not in labels:
        labels[fields.x_key] = humanize_field(fields.x_key)

    updates: dict[str, Any] = {
        "data": _plain_values(rows),
        "labels": labels,
        "value_formats": value_formats,
        "time_series": time_series,
        "x_key": fields.x_key,
    }
    if spec is not None:
        # the display copy of labelFields carries the currency markers too
        updates["consolidation"] = spec.model_copy(
            update={"label_fields": {**spec.label_fields, **{f: labels[f] for f in spec.value_fields}}}
        )
    return ChartConfig(**plan.model_dump()).model_copy(update=updates)


def formatted_rows(config: ChartConfig) -> list[dict[str, Any]]:
    """Display copy of ``config.data`` with every formatted field rendered as text."""
    return [
        {
            field: format_value(value, config.value_formats[field]) if field in config.value_formats else value
            for field, value in row.items()
        }
        for row in config.data
    ]


class Visualizer:
    def __init__(self, service: StructuredGenerator, descriptor: SchemaDescriptor, sample_rows: int = 5):
        self.service = service
        self.descriptor = descriptor
        self.sample_rows = sample_rows

    async def visualize(
        self,
        results: Sequence[QueryResult],
        user_query: str,
        consolidate: bool = True,
    ) -> ChartConfig:
        if not results:
            raise VisualizationError("There are no query results to visualize.", field="results")

        request = GenerationRequest(
            system_prompt=visualizer_system_prompt(self.descriptor),
            current_prompt=visualizer_user_prompt(
                user_query,
                format_results_for_prompt(results, self.sample_rows),
                consolidate=consolidate,
                result_count=len(results),
            ),
            output_schema=ChartPlan,
        )
        try:
            plan = coerce_output(await self.service.generate(request), ChartPlan)
        except GenerationError as exc:
            raise VisualizationError(f"Failed to generate chart configuration: {exc}") from exc

        if not consolidate and (plan.is_consolidated or plan.consolidation is not None):
            plan = plan.model_copy(update={"is_consolidated": False, "consolidation": None})

        config = build_chart_config(plan, results)
        logger.info(
            "Chart config: type=%s consolidated=%s time_series=%s points=%d",
            config.type,
            config.is_consolidated,
            config.time_series,
            len(config.data),
        )
        return config
