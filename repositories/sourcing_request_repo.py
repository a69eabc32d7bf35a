"""Sourcing request storage keyed by request id and logical demand."""

from __future__ import annotations

import json
import logging
import threading
from typing import Dict, Optional, Sequence

from models.domain import SourcingRequest
from services.db import get_conn

logger = logging.getLogger(__name__)

DDL = """
CREATE SCHEMA IF NOT EXISTS sourcing;

CREATE TABLE IF NOT EXISTS sourcing.sourcing_requests (
    request_id TEXT PRIMARY KEY,
    demand_key TEXT NOT NULL,
    embedding JSONB NOT NULL,
    category TEXT,
    requester_id TEXT,
    product_name TEXT,
    quantity INTEGER,
    target_price NUMERIC(18, 4),
    submitted_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS sourcing_requests_demand_idx
    ON sourcing.sourcing_requests (demand_key, submitted_at DESC);
"""

_COLUMNS = (
    "request_id",
    "demand_key",
    "embedding",
    "category",
    "requester_id",
    "product_name",
    "quantity",
    "target_price",
    "submitted_at",
)


def init_schema() -> None:
    with get_conn() as conn:
        cur = conn.cursor()
        for statement in filter(None, (stmt.strip() for stmt in DDL.split(";"))):
            cur.execute(statement)
        cur.close()


def _row_to_request(row: Sequence) -> SourcingRequest:
    data = dict(zip(_COLUMNS, row))
    embedding = data["embedding"]
    if isinstance(embedding, str):
        embedding = json.loads(embedding)
    target_price = data["target_price"]
    return SourcingRequest(
        request_id=data["request_id"],
        demand_key=data["demand_key"],
        embedding=[float(value) for value in embedding or []],
        category=data["category"],
        requester_id=data["requester_id"],
        product_name=data["product_name"],
        quantity=data["quantity"],
        target_price=float(target_price) if target_price is not None else None,
        submitted_at=data["submitted_at"],
    )


class PostgresSourcingRequestRepository:
    def save(self, request: SourcingRequest) -> None:
        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO sourcing.sourcing_requests (
                    request_id, demand_key, embedding, category, requester_id,
                    product_name, quantity, target_price, submitted_at
                ) VALUES (%s, %s, %s::jsonb, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (request_id) DO NOTHING
                """,
                (
                    request.request_id,
                    request.demand_key,
                    json.dumps(list(request.embedding)),
                    request.category,
                    request.requester_id,
                    request.product_name,
                    request.quantity,
                    request.target_price,
                    request.submitted_at,
                ),
            )
            cur.close()

    def get(self, request_id: str) -> Optional[SourcingRequest]:
        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM sourcing.sourcing_requests "
                "WHERE request_id = %s",
                (request_id,),
            )
            row = cur.fetchone()
            cur.close()
        return _row_to_request(row) if row else None

    def latest_for_demand(self, demand_key: str) -> Optional[SourcingRequest]:
        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM sourcing.sourcing_requests "
                "WHERE demand_key = %s ORDER BY submitted_at DESC, request_id DESC LIMIT 1",
                (demand_key,),
            )
            row = cur.fetchone()
            cur.close()
        return _row_to_request(row) if row else None


class InMemorySourcingRequestRepository:
    def __init__(self) -> None:
        self._requests: Dict[str, SourcingRequest] = {}
        self._lock = threading.Lock()

    def save(self, request: SourcingRequest) -> None:
        with self._lock:
            self._requests.setdefault(request.request_id, request)

    def get(self, request_id: str) -> Optional[SourcingRequest]:
        with self._lock:
            return self._requests.get(request_id)

    def latest_for_demand(self, demand_key: str) -> Optional[SourcingRequest]:
        with self._lock:
            matches = [item for item in self._requests.values() if item.demand_key == demand_key]
        if not matches:
            return None
        return max(matches, key=lambda item: (item.submitted_at, item.request_id))
