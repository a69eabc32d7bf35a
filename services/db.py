from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Optional

try:
    import psycopg2  # type: ignore
except Exception:  # pragma: no cover - psycopg2 optional in some environments
    psycopg2 = None  # type: ignore

from config.settings import settings

logger = logging.getLogger(__name__)


def _pg_dsn() -> Optional[str]:
    host = os.environ.get("PGHOST") or getattr(settings, "db_host", None)
    db = os.environ.get("PGDATABASE") or getattr(settings, "db_name", None)
    user = os.environ.get("PGUSER") or getattr(settings, "db_user", None)
    pwd = os.environ.get("PGPASSWORD") or getattr(settings, "db_password", None)
    port = os.environ.get("PGPORT") or str(getattr(settings, "db_port", "5432"))
    sslmode = os.environ.get("PGSSLMODE")

    if not host:
        return None

    parts = [f"host={host}", f"port={port or '5432'}"]
    if db:
        parts.append(f"dbname={db}")
    if user:
        parts.append(f"user={user}")
    if pwd:
        parts.append(f"password={pwd}")
    if sslmode:
        parts.append(f"sslmode={sslmode}")
    return " ".join(parts)


def is_configured() -> bool:
    """Return ``True`` when PostgreSQL connection parameters are available."""

    return psycopg2 is not None and _pg_dsn() is not None


@contextmanager
def get_conn(*, autocommit: bool = True):
    """Yield a PostgreSQL connection using environment derived DSN.

    With ``autocommit=False`` the block runs as one transaction: it is
    committed on success and rolled back if the block raises.
    """

    dsn = _pg_dsn()
    if not dsn or psycopg2 is None:
        raise RuntimeError(
            "PostgreSQL connection parameters are not configured. "
            "Set PGHOST/PGDATABASE/PGUSER/PGPASSWORD to continue."
        )

    conn = psycopg2.connect(dsn)
    conn.autocommit = autocommit
    try:
        yield conn
        if not autocommit:
            conn.commit()
    except Exception:
        if not autocommit:
            conn.rollback()
        raise
    finally:
        try:
            conn.close()
        except Exception:
            logger.warning("Failed to close PostgreSQL connection", exc_info=True)
