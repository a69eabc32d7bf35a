"""Persistence for ranked match results; a request's set is always replaced whole."""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Sequence

from models.domain import MatchResult
from services.db import get_conn

logger = logging.getLogger(__name__)

DDL = """
CREATE SCHEMA IF NOT EXISTS sourcing;

CREATE TABLE IF NOT EXISTS sourcing.match_results (
    request_id TEXT NOT NULL,
    candidate_id TEXT NOT NULL,
    semantic_score NUMERIC(8, 6) NOT NULL,
    responsiveness_score NUMERIC(8, 6) NOT NULL,
    trust_score NUMERIC(8, 6) NOT NULL,
    composite_score NUMERIC(8, 4) NOT NULL,
    rank INTEGER NOT NULL,
    category_fallback BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (request_id, candidate_id)
);

CREATE INDEX IF NOT EXISTS match_results_request_rank_idx
    ON sourcing.match_results (request_id, rank);
"""

_COLUMNS = (
    "request_id",
    "candidate_id",
    "semantic_score",
    "responsiveness_score",
    "trust_score",
    "composite_score",
    "rank",
    "category_fallback",
    "created_at",
)


def init_schema() -> None:
    with get_conn() as conn:
        cur = conn.cursor()
        for statement in filter(None, (stmt.strip() for stmt in DDL.split(";"))):
            cur.execute(statement)
        cur.close()


def _row_to_result(row: Sequence) -> MatchResult:
    data = dict(zip(_COLUMNS, row))
    return MatchResult(
        request_id=data["request_id"],
        candidate_id=data["candidate_id"],
        semantic_score=float(data["semantic_score"]),
        responsiveness_score=float(data["responsiveness_score"]),
        trust_score=float(data["trust_score"]),
        composite_score=float(data["composite_score"]),
        rank=int(data["rank"]),
        category_fallback=bool(data["category_fallback"]),
        created_at=data["created_at"],
    )


class PostgresMatchResultRepository:
    def replace(self, request_id: str, results: Sequence[MatchResult]) -> None:
        """Delete then insert the request's results inside one transaction."""

        with get_conn(autocommit=False) as conn:
            cur = conn.cursor()
            cur.execute(
                "DELETE FROM sourcing.match_results WHERE request_id = %s",
                (request_id,),
            )
            if results:
                cur.executemany(
                    """
                    INSERT INTO sourcing.match_results (
                        request_id, candidate_id, semantic_score, responsiveness_score,
                        trust_score, composite_score, rank, category_fallback, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    [
                        (
                            request_id,
                            result.candidate_id,
                            result.semantic_score,
                            result.responsiveness_score,
                            result.trust_score,
                            result.composite_score,
                            result.rank,
                            result.category_fallback,
                            result.created_at,
                        )
                        for result in results
                    ],
                )
            cur.close()
        logger.info("Stored %d match results for request %s", len(results), request_id)

    def list_for_request(self, request_id: str) -> List[MatchResult]:
        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM sourcing.match_results "
                "WHERE request_id = %s ORDER BY rank ASC",
                (request_id,),
            )
            rows = cur.fetchall()
            cur.close()
        return [_row_to_result(row) for row in rows]


class InMemoryMatchResultRepository:
    def __init__(self) -> None:
        self._results: Dict[str, List[MatchResult]] = {}
        self._lock = threading.Lock()

    def replace(self, request_id: str, results: Sequence[MatchResult]) -> None:
        ordered = sorted(results, key=lambda item: item.rank)
        with self._lock:
            self._results[request_id] = list(ordered)

    def list_for_request(self, request_id: str) -> List[MatchResult]:
        with self._lock:
            return list(self._results.get(request_id, []))
