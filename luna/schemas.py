from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CandidateQuery(WireModel):
    query_name: str = Field(..., alias="queryName", description="A short name describing what this query calculates")
    query_description: str = Field(
        "",
        alias="queryDescription",
        description="A brief description of what this query does and what insights it provides",
    )
    sql: str = Field(..., description="The SQL query to execute")


class QueryPlanBatch(WireModel):
    queries: list[CandidateQuery]


class ExplanationSection(WireModel):
    section: str = Field(..., description="A verbatim clause copied from the SQL query")
    explanation: str = Field(..., description="Plain-language explanation of that clause")


class Explanation(WireModel):
    query_name: str | None = Field(None, alias="queryName")
    sections: list[ExplanationSection]
    overall_purpose: str = Field(..., alias="overallPurpose", description="A summary of what this query accomplishes")


class ChartKind(StrEnum):
    LINE = "line"
    BAR = "bar"
    PIE = "pie"
    SCATTER = "scatter"
    AREA = "area"
    RADAR = "radar"
    POLAR = "polar"
    GAUGE = "gauge"
    HEATMAP = "heatmap"
    TREEMAP = "treemap"
    TABLE = "table"


class ConsolidationSpec(WireModel):
    method: Literal["merge", "stack", "join"] = Field(..., description="How to combine data from the queries")
    key_field: str | None = Field(None, alias="keyField", description="Common field to join on, if applicable")
    value_fields: list[str] = Field(
        default_factory=list, alias="valueFields", description="Which fields contain the values to be consolidated"
    )
    label_fields: dict[str, str] = Field(
        default_factory=dict,
        alias="labelFields",
        description="REQUIRED mapping of original field names to display labels, covering every value field",
    )
    source_queries: list[str] = Field(
        default_factory=list, alias="sourceQueries", description="Names of the queries being consolidated"
    )


class ChartPlan(WireModel):
    type: ChartKind = Field(..., description="Chart kind")
    title: str
    description: str = Field("", description="What the chart shows")
    takeaway: str = Field("", description="Main takeaway from the chart")
    x_key: str | None = Field(None, alias="xKey", description="Field used for the x axis or category")
    y_keys: list[str] = Field(default_factory=list, alias="yKeys", description="Fields used as values")
    multiple_lines: bool = Field(False, alias="multipleLines")
    measurement_column: str | None = Field(None, alias="measurementColumn")
    line_categories: list[str] = Field(default_factory=list, alias="lineCategories")
    colors: dict[str, str] = Field(default_factory=dict)
    legend: bool = True
    is_consolidated: bool = Field(False, alias="isConsolidated")
    consolidation: ConsolidationSpec | None = None


class ValueFormat(WireModel):
    prefix: str = ""
    thousands: bool = True
    decimals: int | None = None


class ChartConfig(ChartPlan):
    """ChartPlan plus everything the Visualizer enforces on top of it."""

    data: list[dict[str, Any]] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    value_formats: dict[str, ValueFormat] = Field(default_factory=dict, alias="valueFormats")
    time_series: bool = Field(False, alias="timeSeries")


class KeyFinding(WireModel):
    title: str = Field(..., description="A brief title for the insight")
    description: str = Field(..., description="A detailed explanation of the insight")
    importance: Literal["high", "medium", "low"]


class Anomaly(WireModel):
    description: str
    possible_explanations: list[str] = Field(default_factory=list, alias="possibleExplanations")


class Correlation(WireModel):
    variables: list[str]
    relationship: str
    strength: Literal["strong", "moderate", "weak"]


class Trend(WireModel):
    variable: str
    description: str
    direction: Literal["increasing", "decreasing", "fluctuating", "stable"]


class CrossQueryInsight(WireModel):
    title: str
    description: str = Field(..., description="How the different data sources relate to each other")
    relevance: Literal["primary", "secondary"]


class InsightsReport(WireModel):
    summary: str = Field(..., description="A concise 1-2 sentence summary of the data")
    key_findings: list[KeyFinding] = Field(..., alias="keyFindings", min_length=1)
    recommended_actions: list[str] = Field(default_factory=list, alias="recommendedActions")
    anomalies: list[Anomaly] = Field(default_factory=list)
    correlations: list[Correlation] = Field(default_factory=list)
    trends: list[Trend] = Field(default_factory=list)
    cross_query_insights: list[CrossQueryInsight] = Field(
        default_factory=list,
        alias="crossQueryInsights",
        description="Insights that connect data from multiple queries; leave empty for a single query",
    )
