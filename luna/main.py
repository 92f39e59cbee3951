import argparse
import asyncio
from datetime import datetime
import json
import logging

from luna.chart_planner import formatted_rows
from luna.config import ConfigError, Settings
from luna.db_init import ensure_database_initialized
from luna.llm_service import StructuredGenerationService
from luna.pipeline import AnalyticsPipeline, TurnOutcome, TurnState
from luna.prompts import json_fallback
from luna.query_executor import SQLAlchemyStore
from luna.semantic_loader import get_schema_descriptor
from luna.sql_planner import PriorTurn


EXIT_WORDS = {"/exit", "exit", "quit", "bye"}


def _date_tag() -> str:
    return datetime.now().strftime("[%Y-%m-%d %H:%M:%S]")


def _pretty(data: object) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2, default=json_fallback)


def outcome_to_dict(outcome: TurnOutcome) -> dict:
    payload: dict = {
        "query": outcome.query,
        "state": str(outcome.state),
        "queries": [q.model_dump(by_alias=True) for q in outcome.candidates],
        "rejected": [r.to_dict() for r in outcome.rejected],
        "results": [
            {"queryName": r.query_name, "queryDescription": r.description, "rows": r.rows}
            for r in outcome.results
        ],
    }
    if outcome.state == TurnState.ABORTED:
        payload["abortedAt"] = str(outcome.aborted_at)
        payload["error"] = outcome.error.to_dict() if outcome.error else None
        return payload

    payload["explanations"] = (
        [e.model_dump(by_alias=True) for e in outcome.explanations] if outcome.explanations is not None else None
    )
    payload["chart"] = None
    if outcome.chart:
        payload["chart"] = outcome.chart.model_dump(by_alias=True, mode="json")
        payload["chart"]["formattedData"] = formatted_rows(outcome.chart)
    payload["insights"] = outcome.insights.model_dump(by_alias=True) if outcome.insights else None
    payload["artifactErrors"] = {name: err.to_dict() for name, err in outcome.artifact_errors.items()}
    return payload


def _remember(history: list[PriorTurn], outcome: TurnOutcome) -> None:
    if outcome.state != TurnState.COMPLETED:
        return
    summary = outcome.insights.summary if outcome.insights else ""
    history.append(
        PriorTurn(
            user_text=outcome.query,
            response_text=summary,
            queries=tuple(outcome.candidates),
            results=tuple(outcome.results),
        )
    )


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Luna natural-language analytics CLI")
    parser.add_argument("--question", "-q", default=None, help="Answer a single question and print JSON")
    parser.add_argument("--seed-sql", default=None, help="Seed an empty database from a SQL script and exit")
    parser.add_argument("--concurrent", action="store_true", help="Run the query batch concurrently")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    return parser.parse_args()


async def _seed(settings: Settings, seed_sql: str) -> None:
    descriptor = get_schema_descriptor(settings.schema_path)
    store = SQLAlchemyStore.from_url(settings.sqlalchemy_url)
    try:
        status = await ensure_database_initialized(
            store.engine,
            seed_sql,
            settings.bootstrap_relations or descriptor.table_names,
        )
        print(f"[Seed] {status['status']} ({status['executed_statements']} statement(s))")
    finally:
        await store.dispose()


async def _run(settings: Settings, question: str | None) -> None:
    descriptor = get_schema_descriptor(settings.schema_path)
    store = SQLAlchemyStore.from_url(settings.sqlalchemy_url)
    pipeline = AnalyticsPipeline.from_settings(settings, StructuredGenerationService(settings), store, descriptor)
    history: list[PriorTurn] = []

    try:
        if question:
            outcome = await pipeline.run_turn(question)
            print(_pretty(outcome_to_dict(outcome)))
            return

        print(f"Luna analytics ({settings.llm_model}). Type 'exit' to quit.")
        while True:
            try:
                user_input = (await asyncio.to_thread(input, f"{_date_tag()}You> ")).strip()
            except EOFError:
                print("\nBye!")
                return

            if not user_input:
                continue
            if user_input.lower() in EXIT_WORDS:
                print("Bye!")
                return

            outcome = await pipeline.run_turn(user_input, history)
            _remember(history, outcome)
            print(f"{_date_tag()}AI>\n{_pretty(outcome_to_dict(outcome))}\n")
    finally:
        await store.dispose()


def main():
    args = _parse_args()
    try:
        settings = Settings.load(args.env_file)
    except ConfigError as exc:
        print(f"[Config Error] {exc}")
        raise SystemExit(2) from exc

    if args.concurrent:
        settings.executor_mode = "concurrent"
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    missing_db_fields = settings.missing_database_fields()
    if missing_db_fields:
        print(f"[Config Error] Missing database settings: {', '.join(missing_db_fields)}")
        raise SystemExit(2)

    try:
        if args.seed_sql:
            asyncio.run(_seed(settings, args.seed_sql))
        else:
            asyncio.run(_run(settings, args.question))
    except KeyboardInterrupt:
        print("\nInterrupted. Exiting.")


if __name__ == "__main__":
    main()
