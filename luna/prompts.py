from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Sequence

from luna.query_executor import QueryResult
from luna.semantic_loader import SchemaDescriptor


PLANNING_PROCEDURE = (
    "First pick the right columns that could be relevant from each table.",
    "Then come up with join keys for these tables.",
    "Then come up with table-wise subqueries that are needed (group bys, aggregates or window functions).",
    "Next put all this together.",
    "Revise the overall query and review/refactor as necessary.",
    "Rewrite the query so that the result is in chart or plottable format, and always truncate timestamps "
    "to day, month, year etc.",
)

CHART_OPTIONS = (
    ("line", "good for time series or continuous data"),
    ("bar", "good for comparing categorical data"),
    ("pie", "good for showing proportions of a whole"),
    ("scatter", "good for showing correlation between two variables"),
    ("area", "good for showing cumulative totals over time"),
    ("radar", "good for comparing multiple variables"),
    ("polar", "good for cyclical or periodic data"),
    ("gauge", "good for showing a single value in a range"),
    ("heatmap", "good for showing patterns in a matrix"),
    ("treemap", "good for hierarchical data"),
    ("table", "when data is better shown as a table than a chart"),
)


def json_fallback(value: object) -> object:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def to_json(data: object, indent: int | None = None) -> str:
    return json.dumps(data, ensure_ascii=False, indent=indent, default=json_fallback)


def render_tables(descriptor: SchemaDescriptor, with_columns: bool = True) -> str:
    blocks: list[str] = []
    for table in descriptor.tables:
        lines = [f"Table: {table.name}: {table.description}"]
        if with_columns:
            lines.append("# column_name  data_type  is_nullable")
            for idx, column in enumerate(table.columns, start=1):
                nullable = "YES" if column.nullable else "NO"
                lines.append(f"{idx}  {column.name}  {column.data_type}  {nullable}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def render_join_rules(descriptor: SchemaDescriptor) -> str:
    return "\n".join(f"- {rule.rule}" for rule in descriptor.join_rules)


def render_examples(descriptor: SchemaDescriptor) -> str:
    blocks: list[str] = []
    for idx, example in enumerate(descriptor.examples, start=1):
        header = f"Example {idx}\n\nuser query: {example.question}"
        if example.note:
            header += f"\nnote: {example.note}"
        blocks.append(f"{header}\n\ngenerated sql:\n{example.sql}")
    return "\n\n".join(blocks)


def render_guidance(descriptor: SchemaDescriptor) -> str:
    return "\n".join(f"- {note}" for note in descriptor.guidance)


def planner_system_prompt(descriptor: SchemaDescriptor) -> str:
    procedure = "\n".join(f"{idx}. {step}" for idx, step in enumerate(PLANNING_PROCEDURE, start=1))
    return (
        f"You are a SQL ({descriptor.dialect}) and data visualization expert. Your job is to help the user "
        "write SQL queries to retrieve the data they need.\n\n"
        f"{descriptor.domain_context}\n\n"
        "The database contains the following tables and schemas:\n\n"
        f"{render_tables(descriptor)}\n\n"
        "The tables can be joined on relevant fields for cross-table analysis:\n"
        f"{render_join_rules(descriptor)}\n\n"
        f"{render_guidance(descriptor)}\n\n"
        f"{render_examples(descriptor)}\n\n"
        "Only write read-only SELECT or WITH queries. Each query gets a short queryName and a "
        "queryDescription. Put the most important query first.\n\n"
        "When you are creating a sql query, first come up with a query plan. Here are the "
        f"step-by-step instructions:\n{procedure}"
    )


def planner_user_prompt(query: str) -> str:
    return f"Generate the SQL query or queries necessary to retrieve the data the user wants: {query}"


def explainer_system_prompt(descriptor: SchemaDescriptor) -> str:
    return (
        f"You are a SQL ({descriptor.dialect}) expert. Your job is to explain to the user the SQL query "
        "you wrote to retrieve the data they asked for. The database contains the following tables:\n\n"
        f"{render_tables(descriptor, with_columns=False)}\n\n"
        f"{render_join_rules(descriptor)}\n\n"
        "When you explain you must take a section of the query, and then explain it. Each section must be "
        "copied verbatim from the query, must be unique, and sections must follow the order of the query "
        'without overlapping. In a query like "SELECT * FROM time_entries LIMIT 20" the sections could be '
        '"SELECT *", "FROM time_entries", "LIMIT 20".\n\n'
        "When explaining JOIN operations, say why the join was needed for the user's question and describe "
        "the join condition in terms a non-technical user understands."
    )


def explainer_user_prompt(user_query: str, query_name: str, sql: str) -> str:
    return (
        "Explain the SQL query you generated to retrieve the data the user wanted. Assume the user is not an "
        "expert in SQL. Break the query down into steps. Be concise.\n\n"
        f"User Query:\n{user_query}\n\n"
        f"Generated SQL Query ({query_name}):\n{sql}"
    )


def format_results_for_prompt(results: Sequence[QueryResult], sample_rows: int) -> str:
    blocks: list[str] = []
    for idx, result in enumerate(results, start=1):
        sample = list(result.rows[: max(1, int(sample_rows))])
        blocks.append(
            f"Query {idx} ({result.query_name}): {result.description}\n"
            f"Sample data ({len(result.rows)} total rows):\n{to_json(sample, indent=2)}"
        )
    return "\n\n".join(blocks)


def visualizer_system_prompt(descriptor: SchemaDescriptor) -> str:
    options = "\n".join(f"- '{kind}' - {hint}" for kind, hint in CHART_OPTIONS)
    return (
        "You are a data visualization expert. Your job is to help users create charts that best represent "
        "their data. First suggest the most suitable chart type for the data returned by the SQL queries, "
        "then provide a complete configuration for the chart.\n\n"
        f"{descriptor.domain_context}\n\n"
        f"{render_tables(descriptor, with_columns=False)}\n\n"
        f"Chart Options:\n{options}\n\n"
        "DATA FORMATTING REQUIREMENTS:\n"
        "1. TIME SERIES: data must move forward in time, oldest first. If a period is missing, skip it; "
        'never reorder. Time labels must include both month and year (e.g. "Jan 2023").\n'
        "2. MONETARY VALUES: labels for costs, revenue, sales and other amounts include \"($)\".\n"
        "3. NUMBER FORMATTING: numbers use commas for thousands (e.g. $1,234.56).\n\n"
        "CONSOLIDATED VIEWS:\n"
        "When there are multiple queries, prefer a consolidated view that combines data from all queries "
        "into a single chart. Set isConsolidated to true and fill the consolidation object:\n"
        "- method: how to combine data ('merge', 'stack', 'join')\n"
        "- keyField: common field to join on, if applicable\n"
        "- valueFields: which fields contain the values to be consolidated\n"
        "- labelFields: REQUIRED non-empty mapping of field names to display labels; include ALL value "
        "fields\n"
        "- sourceQueries: names of the queries being consolidated\n\n"
        "Provide clear titles, axis labels and legends."
    )


def visualizer_user_prompt(user_query: str, formatted_results: str, consolidate: bool, result_count: int) -> str:
    if not consolidate:
        guidance = (
            "Do NOT create a consolidated view: set isConsolidated to false and chart the first query's data."
        )
    elif result_count >= 2:
        guidance = (
            "There are multiple queries: STRONGLY PREFER a consolidated view that combines all the data into "
            "a single visualization, and remember that labelFields must cover every value field."
        )
    else:
        guidance = "There is a single query: chart it directly."
    return (
        "Create a chart configuration that best represents the data returned by these SQL queries.\n\n"
        f"User Query: {user_query}\n\n"
        f"Query Results:\n{formatted_results}\n\n"
        f"{guidance}"
    )


def insights_system_prompt(descriptor: SchemaDescriptor) -> str:
    return (
        "You are a data analyst and business intelligence expert for a restaurant business. Your job is to "
        "analyze SQL query results and provide meaningful insights, patterns and recommendations.\n\n"
        f"{descriptor.domain_context}\n\n"
        f"{render_tables(descriptor, with_columns=False)}\n\n"
        "Provide a concise summary, key findings with their business implications, recommended actions, "
        "and where the data supports them anomalies, correlations and trends. Focus on labor costs, food "
        "costs, sales performance, menu item popularity, profitability and operational efficiency. Be "
        "specific and reference actual values from the data; avoid vague generalizations.\n\n"
        "crossQueryInsights are only for insights that need data from more than one query to discover."
    )


def insights_user_prompt(user_query: str, formatted_results: str, result_count: int) -> str:
    if result_count >= 2:
        cross = "Include cross-query connections between the data sources."
    else:
        cross = "Only one query was run: leave crossQueryInsights empty."
    return (
        "Analyze the following SQL query results and provide meaningful insights, patterns and "
        "recommendations for this restaurant business.\n\n"
        f"User Query: {user_query}\n\n"
        f"Query Results:\n{formatted_results}\n\n"
        f"{cross}"
    )
