from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine


logger = logging.getLogger(__name__)


def split_sql_script(raw_sql: str) -> list[str]:
    """Split a seed script on semicolons outside quotes, dropping ``--`` comment lines."""
    statements: list[str] = []
    current: list[str] = []
    in_single = False
    in_double = False

    lines = [line for line in raw_sql.splitlines() if not line.strip().startswith("--")]
    for char in "\n".join(lines):
        if char == "'" and not in_double:
            in_single = not in_single
        elif char == '"' and not in_single:
            in_double = not in_double

        if char == ";" and not in_single and not in_double:
            statement = "".join(current).strip()
            if statement:
                statements.append(statement)
            current = []
            continue

        current.append(char)

    trailing = "".join(current).strip()
    if trailing:
        statements.append(trailing)
    return statements


async def existing_tables(engine: AsyncEngine) -> set[str]:
    async with engine.connect() as conn:
        names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    return {name.lower() for name in names}


async def missing_bootstrap_relations(engine: AsyncEngine, relations: Iterable[str]) -> list[str]:
    present = await existing_tables(engine)
    return [r for r in relations if r.lower() not in present]


async def ensure_database_initialized(
    engine: AsyncEngine,
    seed_sql_path: str | Path,
    relations: Iterable[str],
) -> dict[str, str | int]:
    relations = list(relations)
    missing = await missing_bootstrap_relations(engine, relations)
    if not missing:
        return {"status": "already_initialized", "executed_statements": 0}

    path = Path(seed_sql_path)
    if not path.exists():
        raise FileNotFoundError(f"Seed SQL file not found: {seed_sql_path}")

    statements = split_sql_script(path.read_text(encoding="utf-8"))
    logger.info("Seeding %d missing relation(s) %s with %d statement(s)", len(missing), missing, len(statements))
    async with engine.begin() as conn:
        for stmt in statements:
            await conn.exec_driver_sql(stmt)

    return {"status": "seeded", "executed_statements": len(statements)}
