"""Supplier-maintained structured price records (the structured table source)."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from models.domain import utcnow
from services.db import get_conn, is_configured

logger = logging.getLogger(__name__)

DDL = """
CREATE SCHEMA IF NOT EXISTS sourcing;

CREATE TABLE IF NOT EXISTS sourcing.supplier_price_records (
    candidate_id TEXT NOT NULL,
    product_name TEXT NOT NULL,
    unit_price NUMERIC(18, 4) NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USD',
    moq INTEGER,
    lead_time_days INTEGER,
    tier_pricing JSONB,
    payment_terms TEXT,
    is_verified BOOLEAN NOT NULL DEFAULT FALSE,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (candidate_id, product_name)
);
"""

_COLUMNS = (
    "candidate_id",
    "product_name",
    "unit_price",
    "currency",
    "moq",
    "lead_time_days",
    "tier_pricing",
    "payment_terms",
    "is_verified",
    "updated_at",
)


@dataclass
class PriceRecord:
    candidate_id: str
    product_name: str
    unit_price: float
    currency: str = "USD"
    moq: Optional[int] = None
    lead_time_days: Optional[int] = None
    tier_pricing: List[Dict[str, Any]] = field(default_factory=list)
    payment_terms: Optional[str] = None
    is_verified: bool = False
    updated_at: datetime = field(default_factory=utcnow)


def init_schema() -> None:
    with get_conn() as conn:
        cur = conn.cursor()
        for statement in filter(None, (stmt.strip() for stmt in DDL.split(";"))):
            cur.execute(statement)
        cur.close()


def _row_to_record(row: Sequence) -> PriceRecord:
    data = dict(zip(_COLUMNS, row))
    tiers = data["tier_pricing"]
    if isinstance(tiers, str):
        tiers = json.loads(tiers)
    return PriceRecord(
        candidate_id=data["candidate_id"],
        product_name=data["product_name"],
        unit_price=float(data["unit_price"]),
        currency=data["currency"] or "USD",
        moq=data["moq"],
        lead_time_days=data["lead_time_days"],
        tier_pricing=list(tiers or []),
        payment_terms=data["payment_terms"],
        is_verified=bool(data["is_verified"]),
        updated_at=data["updated_at"],
    )


def best_record(records: Sequence[PriceRecord]) -> Optional[PriceRecord]:
    """Verified records first, then the most recently updated."""

    if not records:
        return None
    return max(records, key=lambda record: (record.is_verified, record.updated_at))


class PostgresPriceRecordSource:
    def is_configured(self) -> bool:
        return is_configured()

    def find(self, candidate_id: str, product_name: Optional[str] = None) -> List[PriceRecord]:
        query = f"SELECT {', '.join(_COLUMNS)} FROM sourcing.supplier_price_records WHERE candidate_id = %s"
        params: Tuple[Any, ...] = (candidate_id,)
        if product_name:
            query += " AND LOWER(product_name) = LOWER(%s)"
            params = (candidate_id, product_name)
        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(query, params)
            rows = cur.fetchall()
            cur.close()
        return [_row_to_record(row) for row in rows]

    def upsert(self, record: PriceRecord) -> None:
        with get_conn() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO sourcing.supplier_price_records (
                    candidate_id, product_name, unit_price, currency, moq,
                    lead_time_days, tier_pricing, payment_terms, is_verified, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s)
                ON CONFLICT (candidate_id, product_name) DO UPDATE SET
                    unit_price = EXCLUDED.unit_price,
                    currency = EXCLUDED.currency,
                    moq = EXCLUDED.moq,
                    lead_time_days = EXCLUDED.lead_time_days,
                    tier_pricing = EXCLUDED.tier_pricing,
                    payment_terms = EXCLUDED.payment_terms,
                    is_verified = EXCLUDED.is_verified,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    record.candidate_id,
                    record.product_name,
                    record.unit_price,
                    record.currency,
                    record.moq,
                    record.lead_time_days,
                    json.dumps(record.tier_pricing),
                    record.payment_terms,
                    record.is_verified,
                    record.updated_at,
                ),
            )
            cur.close()


class InMemoryPriceRecordSource:
    def __init__(self, records: Optional[Sequence[PriceRecord]] = None, *, configured: bool = True) -> None:
        self.configured = configured
        self._records: Dict[Tuple[str, str], PriceRecord] = {}
        self._lock = threading.Lock()
        for record in records or []:
            self.upsert(record)

    def is_configured(self) -> bool:
        return self.configured

    def find(self, candidate_id: str, product_name: Optional[str] = None) -> List[PriceRecord]:
        wanted = product_name.casefold() if product_name else None
        with self._lock:
            return [
                replace(record)
                for (owner, name), record in self._records.items()
                if owner == candidate_id and (wanted is None or name == wanted)
            ]

    def upsert(self, record: PriceRecord) -> None:
        with self._lock:
            self._records[(record.candidate_id, record.product_name.casefold())] = record
