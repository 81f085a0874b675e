"""Trigram name lookup for lab parameters and analytes."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from labquery.config import settings
from labquery.services.datastore import Datastore
from labquery.services.errors import DatastoreError, ToolExecutionError

logger = logging.getLogger("labquery.fuzzy")

PARAMETER_SEARCH_SQL = """
SELECT DISTINCT
    parameter_name AS candidate,
    parameter_name AS identifier,
    similarity(parameter_name, :term) AS similarity
FROM lab_results
WHERE parameter_name % :term
ORDER BY similarity DESC, candidate ASC
LIMIT :limit
"""

ANALYTE_SEARCH_SQL = """
SELECT DISTINCT
    aa.alias AS candidate,
    a.code AS identifier,
    a.name AS analyte_name,
    aa.alias_display AS alias_display,
    aa.lang AS lang,
    similarity(aa.alias, :term) AS similarity
FROM analyte_aliases aa
JOIN analytes a ON aa.analyte_id = a.analyte_id
WHERE aa.alias % :term
ORDER BY similarity DESC, candidate ASC
LIMIT :limit
"""


@dataclass(frozen=True)
class FuzzyMatch:
    """A candidate name scored by trigram similarity."""

    candidate: str
    identifier: str
    similarity: float
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidate": self.candidate,
            "identifier": self.identifier,
            "similarity": round(self.similarity, 4),
            "similarity_percent": f"{round(self.similarity * 100)}%",
            **self.extra,
        }


def rank_matches(matches: list[FuzzyMatch], limit: int, threshold: float) -> list[FuzzyMatch]:
    """Filter by threshold, order by similarity desc then candidate asc, cut to limit."""
    kept = [match for match in matches if match.similarity >= threshold]
    kept.sort(key=lambda match: (-match.similarity, match.candidate))
    return kept[:limit]


class FuzzySearchService:
    """Approximate name search on top of a ``Datastore``.

    Each search runs in its own transaction with a transaction-local
    similarity threshold (see ``SQLAlchemyDatastore.similarity_search``).
    """

    def __init__(
        self,
        datastore: Datastore,
        *,
        default_limit: Optional[int] = None,
        max_limit: Optional[int] = None,
        default_threshold: Optional[float] = None,
        timeout_ms: Optional[int] = None,
    ):
        self.datastore = datastore
        self.default_limit = default_limit or settings.agent_fuzzy_search_limit
        self.max_limit = max_limit or settings.agent_fuzzy_search_max_limit
        self.default_threshold = (
            default_threshold
            if default_threshold is not None
            else settings.agent_similarity_threshold
        )
        self.timeout_ms = timeout_ms or int(settings.agent_tool_timeout_seconds * 1000)

    def resolve_limit(self, limit: Optional[int]) -> int:
        if limit is None or limit < 1:
            return self.default_limit
        return min(int(limit), self.max_limit)

    def resolve_threshold(self, threshold: Optional[float]) -> float:
        if threshold is None:
            return self.default_threshold
        return min(max(float(threshold), 0.0), 1.0)

    async def search_parameter_names(
        self,
        term: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> list[FuzzyMatch]:
        """Search distinct ``lab_results.parameter_name`` values."""
        return await self._search(
            "search_parameter_names", PARAMETER_SEARCH_SQL, term, limit, threshold
        )

    async def search_analyte_names(
        self,
        term: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> list[FuzzyMatch]:
        """Search analyte aliases and return canonical analyte codes."""
        return await self._search(
            "search_analyte_names", ANALYTE_SEARCH_SQL, term, limit, threshold
        )

    async def _search(
        self,
        tool: str,
        sql: str,
        term: str,
        limit: Optional[int],
        threshold: Optional[float],
    ) -> list[FuzzyMatch]:
        effective_limit = self.resolve_limit(limit)
        effective_threshold = self.resolve_threshold(threshold)
        started = time.perf_counter()
        try:
            rows = await self.datastore.similarity_search(
                sql,
                {"term": term, "limit": effective_limit},
                threshold=effective_threshold,
                timeout_ms=self.timeout_ms,
            )
        except DatastoreError as exc:
            logger.warning("%s failed term=%r error=%s", tool, term, exc.message)
            raise ToolExecutionError(tool, f"Fuzzy search failed: {exc.message}") from exc

        matches = rank_matches(
            [self._to_match(row) for row in rows],
            effective_limit,
            effective_threshold,
        )
        logger.info(
            "%s term=%r threshold=%.2f matches=%d top=%r duration_ms=%d",
            tool,
            term,
            effective_threshold,
            len(matches),
            matches[0].candidate if matches else None,
            int((time.perf_counter() - started) * 1000),
        )
        return matches

    @staticmethod
    def _to_match(row: dict[str, Any]) -> FuzzyMatch:
        extra = {
            key: value
            for key, value in row.items()
            if key not in ("candidate", "identifier", "similarity")
        }
        return FuzzyMatch(
            candidate=str(row["candidate"]),
            identifier=str(row["identifier"]),
            similarity=float(row["similarity"]),
            extra=extra,
        )
