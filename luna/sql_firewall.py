"""Read-only guard for generated SQL.

Two checks, in order: the statement must start with SELECT or WITH, and it
must not contain a deny-listed keyword as a whole word. Matching runs on a
stripped, lower-cased copy; the original text is what gets executed.

This is not a parser. Keywords inside string literals or comments are still
matched (so ``WHERE note = 'please update'`` is rejected), identifiers that
only contain a keyword (``updated_at``, ``created_at``) pass because matching
is whole-word, and comments or stacked statements are not analysed beyond
the keyword scan.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Sequence

from luna.errors import UnsafeQueryError, UnsafeQueryReason
from luna.schemas import CandidateQuery


logger = logging.getLogger(__name__)

_ALLOWED_PREFIX_RE = re.compile(r"^(select|with)\b")
DISALLOWED_KEYWORDS = ("drop", "delete", "insert", "update", "alter", "truncate", "create", "grant", "revoke")
_DISALLOWED_RE = re.compile(r"\b(" + "|".join(DISALLOWED_KEYWORDS) + r")\b")


@dataclass(frozen=True)
class ValidatedQuery:
    name: str
    description: str
    sql: str

    @classmethod
    def from_candidate(cls, candidate: CandidateQuery) -> "ValidatedQuery":
        return cls(name=candidate.query_name, description=candidate.query_description, sql=candidate.sql)


def normalize_sql(sql: str) -> str:
    return (sql or "").strip().lower()


def find_disallowed_keyword(sql: str) -> str | None:
    match = _DISALLOWED_RE.search(normalize_sql(sql))
    return match.group(1) if match else None


def validate_query(candidate: CandidateQuery) -> ValidatedQuery:
    normalized = normalize_sql(candidate.sql)
    keyword = find_disallowed_keyword(normalized)

    if not _ALLOWED_PREFIX_RE.match(normalized):
        raise UnsafeQueryError(
            UnsafeQueryReason.WRONG_STATEMENT_TYPE,
            query_name=candidate.query_name,
            sql=candidate.sql,
            keyword=keyword,
        )
    if keyword:
        raise UnsafeQueryError(
            UnsafeQueryReason.DISALLOWED_KEYWORD,
            query_name=candidate.query_name,
            sql=candidate.sql,
            keyword=keyword,
        )
    return ValidatedQuery.from_candidate(candidate)


def validate_batch(
    candidates: Sequence[CandidateQuery],
) -> tuple[list[ValidatedQuery], list[UnsafeQueryError]]:
    accepted: list[ValidatedQuery] = []
    rejected: list[UnsafeQueryError] = []
    for candidate in candidates:
        try:
            accepted.append(validate_query(candidate))
        except UnsafeQueryError as exc:
            logger.warning("Rejected query %s (%s)", exc.query_name, exc.reason)
            rejected.append(exc)
    return accepted, rejected
