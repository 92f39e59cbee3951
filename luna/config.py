from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


DEFAULT_SCHEMA_PATH = str(Path(__file__).resolve().parent / "semantics" / "restaurant_schema.yaml")
EXECUTOR_MODES = ("sequential", "concurrent")


class ConfigError(ValueError):
    """Raised when required environment configuration is invalid."""


def _first_env(*keys: str, default: str | None = None) -> str | None:
    for key in keys:
        value = os.getenv(key)
        if value is not None and value != "":
            return value
    return default


def _int_env(keys: tuple[str, ...], default: int) -> int:
    raw = _first_env(*keys)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Environment variable {keys[0]} must be an integer.") from exc


def _float_env(keys: tuple[str, ...], default: float) -> float:
    raw = _first_env(*keys)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Environment variable {keys[0]} must be a number.") from exc


def _csv_env(keys: tuple[str, ...]) -> tuple[str, ...]:
    raw = _first_env(*keys)
    if raw is None:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(slots=True)
class Settings:
    llm_base_url: str | None = None
    llm_api_key: str | None = None
    llm_model: str = "gpt-4o"
    temperature: float = 0.0
    max_tokens: int = 4096
    llm_timeout_seconds: float = 60.0

    database_url: str | None = None
    db_host: str | None = None
    db_port: int = 5432
    db_user: str | None = None
    db_password: str | None = None
    db_name: str | None = None

    schema_path: str = DEFAULT_SCHEMA_PATH
    bootstrap_relations: tuple[str, ...] = field(default_factory=tuple)

    # payload-size controls for prompts, not business rules
    prompt_sql_max_chars: int = 300
    prompt_sample_max_chars: int = 200
    prompt_result_row_cap: int = 100
    prompt_max_prior_turns: int = 10
    artifact_sample_rows: int = 5

    explain_timeout_seconds: float = 60.0
    visualize_timeout_seconds: float = 60.0
    analyze_timeout_seconds: float = 60.0

    executor_mode: str = "sequential"
    log_level: str = "INFO"

    @classmethod
    def load(cls, env_file: str | Path | None = None) -> "Settings":
        if env_file is not None:
            load_dotenv(dotenv_path=env_file)
        else:
            load_dotenv()

        executor_mode = (_first_env("EXECUTOR_MODE", default="sequential") or "sequential").strip().lower()
        if executor_mode not in EXECUTOR_MODES:
            raise ConfigError(
                f"Environment variable EXECUTOR_MODE must be one of: {', '.join(EXECUTOR_MODES)}."
            )

        return cls(
            llm_base_url=_first_env("LLM_BASE_URL", "OPENAI_BASE_URL"),
            llm_api_key=_first_env("LLM_API_KEY", "OPENAI_API_KEY"),
            llm_model=_first_env("LLM_MODEL", "OPENAI_MODEL", default="gpt-4o") or "gpt-4o",
            temperature=_float_env(("LLM_TEMPERATURE",), default=0.0),
            max_tokens=_int_env(("LLM_MAX_TOKENS",), default=4096),
            llm_timeout_seconds=_float_env(("LLM_TIMEOUT_SECONDS",), default=60.0),
            database_url=_first_env("DATABASE_URL"),
            db_host=_first_env("POSTGRES_HOST", "DB_HOST", default="localhost"),
            db_port=_int_env(("POSTGRES_PORT", "DB_PORT"), default=5432),
            db_user=_first_env("POSTGRES_USER", "DB_USER"),
            db_password=_first_env("POSTGRES_PASSWORD", "DB_PASSWORD"),
            db_name=_first_env("POSTGRES_DB", "POSTGRES_DATABASE", "DB_NAME"),
            schema_path=_first_env("SCHEMA_PATH", default=DEFAULT_SCHEMA_PATH) or DEFAULT_SCHEMA_PATH,
            bootstrap_relations=_csv_env(("BOOTSTRAP_RELATIONS",)),
            prompt_sql_max_chars=_int_env(("PROMPT_SQL_MAX_CHARS",), default=300),
            prompt_sample_max_chars=_int_env(("PROMPT_SAMPLE_MAX_CHARS",), default=200),
            prompt_result_row_cap=_int_env(("PROMPT_RESULT_ROW_CAP",), default=100),
            prompt_max_prior_turns=_int_env(("PROMPT_MAX_PRIOR_TURNS",), default=10),
            artifact_sample_rows=_int_env(("ARTIFACT_SAMPLE_ROWS",), default=5),
            explain_timeout_seconds=_float_env(("EXPLAIN_TIMEOUT_SECONDS",), default=60.0),
            visualize_timeout_seconds=_float_env(("VISUALIZE_TIMEOUT_SECONDS",), default=60.0),
            analyze_timeout_seconds=_float_env(("ANALYZE_TIMEOUT_SECONDS",), default=60.0),
            executor_mode=executor_mode,
            log_level=(_first_env("LOG_LEVEL", default="INFO") or "INFO").upper(),
        )

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            url = self.database_url
            # plain postgres URLs are upgraded to the async driver
            if url.startswith("postgres://"):
                url = "postgresql://" + url[len("postgres://"):]
            if url.startswith("postgresql://"):
                url = "postgresql+asyncpg://" + url[len("postgresql://"):]
            return url
        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password or ''}@"
            f"{self.db_host}:{self.db_port}/{self.db_name}"
        )

    def missing_database_fields(self) -> list[str]:
        if self.database_url:
            return []
        return [
            name
            for name, value in (("db_host", self.db_host), ("db_user", self.db_user), ("db_name", self.db_name))
            if not value
        ]
