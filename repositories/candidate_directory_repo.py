"""Supplier candidate directory with stored profile embeddings."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from models.domain import Candidate, utcnow
from services.db import get_conn

logger = logging.getLogger(__name__)

DDL = """
CREATE SCHEMA IF NOT EXISTS sourcing;

CREATE TABLE IF NOT EXISTS sourcing.supplier_candidates (
    candidate_id TEXT PRIMARY KEY,
    embedding JSONB,
    category TEXT,
    is_live BOOLEAN NOT NULL DEFAULT FALSE,
    response_rate NUMERIC(6, 4) NOT NULL DEFAULT 0,
    certification_verified NUMERIC(4, 3) NOT NULL DEFAULT 0,
    quality_rating NUMERIC(4, 2) NOT NULL DEFAULT 0,
    trust_override NUMERIC(4, 3),
    embedding_updated_at TIMESTAMPTZ,
    profile_updated_at TIMESTAMPTZ,
    profile_text TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE
);
"""

_COLUMNS = (
    "candidate_id",
    "embedding",
    "category",
    "is_live",
    "response_rate",
    "certification_verified",
    "quality_rating",
    "trust_override",
    "embedding_updated_at",
    "profile_updated_at",
    "profile_text",
    "is_active",
)


def init_schema() -> None:
    with get_conn() as conn:
        cur = conn.cursor()
        for statement in filter(None, (stmt.strip() for stmt in DDL.split(";"))):
            cur.execute(statement)
        cur.close()


def _row_to_candidate(row: Sequence) -> Candidate:
    data = dict(zip(_COLUMNS, row))
    embedding = data["embedding"]
    if isinstance(embedding, str):
        embedding = json.loads(embedding)
    trust_override = data["trust_override"]
    return Candidate(
        candidate_id=data["candidate_id"],
        embedding=[float(value) for value in embedding] if embedding else None,
        category=data["category"],
        is_live=bool(data["is_live"]),
        response_rate=float(data["response_rate"] or 0),
        certification_verified=float(data["certification_verified"] or 0),
        quality_rating=float(data["quality_rating"] or 0),
        trust_override=float(trust_override) if trust_override is not None else None,
        embedding_updated_at=data["embedding_updated_at"],
        profile_updated_at=data["profile_updated_at"],
        profile_text=data["profile_text"],
        is_active=bool(data["is_active"]),
    )


class PostgresCandidateDirectory:
    def list_active(self) -> List[Candidate]:
        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM sourcing.supplier_candidates "
                "WHERE is_active = TRUE ORDER BY candidate_id"
            )
            rows = cur.fetchall()
            cur.close()
        return [_row_to_candidate(row) for row in rows]

    def get(self, candidate_id: str) -> Optional[Candidate]:
        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM sourcing.supplier_candidates "
                "WHERE candidate_id = %s",
                (candidate_id,),
            )
            row = cur.fetchone()
            cur.close()
        return _row_to_candidate(row) if row else None

    def upsert(self, candidate: Candidate) -> None:
        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO sourcing.supplier_candidates (
                    candidate_id, embedding, category, is_live, response_rate,
                    certification_verified, quality_rating, trust_override,
                    embedding_updated_at, profile_updated_at, profile_text, is_active
                ) VALUES (%s, %s::jsonb, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (candidate_id) DO UPDATE SET
                    embedding = EXCLUDED.embedding,
                    category = EXCLUDED.category,
                    is_live = EXCLUDED.is_live,
                    response_rate = EXCLUDED.response_rate,
                    certification_verified = EXCLUDED.certification_verified,
                    quality_rating = EXCLUDED.quality_rating,
                    trust_override = EXCLUDED.trust_override,
                    embedding_updated_at = EXCLUDED.embedding_updated_at,
                    profile_updated_at = EXCLUDED.profile_updated_at,
                    profile_text = EXCLUDED.profile_text,
                    is_active = EXCLUDED.is_active
                """,
                (
                    candidate.candidate_id,
                    json.dumps(candidate.embedding) if candidate.embedding else None,
                    candidate.category,
                    candidate.is_live,
                    candidate.response_rate,
                    candidate.certification_verified,
                    candidate.quality_rating,
                    candidate.trust_override,
                    candidate.embedding_updated_at,
                    candidate.profile_updated_at,
                    candidate.profile_text,
                    candidate.is_active,
                ),
            )
            cur.close()

    def update_embedding(
        self, candidate_id: str, embedding: List[float], updated_at: Optional[datetime] = None
    ) -> bool:
        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE sourcing.supplier_candidates
                   SET embedding = %s::jsonb, embedding_updated_at = %s
                 WHERE candidate_id = %s
                """,
                (json.dumps(list(embedding)), updated_at or utcnow(), candidate_id),
            )
            updated = cur.rowcount > 0
            cur.close()
        return updated


class InMemoryCandidateDirectory:
    def __init__(self, candidates: Optional[Sequence[Candidate]] = None) -> None:
        self._candidates: Dict[str, Candidate] = {}
        self._lock = threading.Lock()
        for candidate in candidates or []:
            self.upsert(candidate)

    def list_active(self) -> List[Candidate]:
        with self._lock:
            return [
                self._candidates[key]
                for key in sorted(self._candidates)
                if self._candidates[key].is_active
            ]

    def get(self, candidate_id: str) -> Optional[Candidate]:
        with self._lock:
            return self._candidates.get(candidate_id)

    def upsert(self, candidate: Candidate) -> None:
        with self._lock:
            self._candidates[candidate.candidate_id] = candidate

    def update_embedding(
        self, candidate_id: str, embedding: List[float], updated_at: Optional[datetime] = None
    ) -> bool:
        with self._lock:
            current = self._candidates.get(candidate_id)
            if current is None:
                return False
            self._candidates[candidate_id] = replace(
                current,
                embedding=list(embedding),
                embedding_updated_at=updated_at or utcnow(),
            )
        return True
