# QuoteBridge/config/settings.py

import json
import os
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
ENV_FILE_PATH = os.path.join(PROJECT_ROOT, '.env')

DEFAULT_CATEGORY_MAP: Dict[str, List[str]] = {
    "solar-panel": ["solar panel", "solar panels", "pv module", "photovoltaic module"],
    "led-lighting": ["led light", "led lamp", "led lighting"],
    "textile": ["fabric", "textiles", "garment fabric"],
    "packaging": ["carton", "packaging box", "corrugated box"],
    "electronics": ["pcb assembly", "consumer electronics", "electronic components"],
}


class Settings(BaseSettings):
    # PostgreSQL persistence; when unset the in-process stores are used.
    db_host: Optional[str] = Field(default=None, env="DB_HOST")
    db_name: Optional[str] = Field(default=None, env="DB_NAME")
    db_user: Optional[str] = Field(default=None, env="DB_USER")
    db_password: Optional[str] = Field(default=None, env="DB_PASSWORD")
    db_port: int = Field(default=5432, env="DB_PORT")
    db_schema: str = Field(default="sourcing", env="DB_SCHEMA")

    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    queue_key_prefix: str = Field(default="quotebridge:queue", env="QUEUE_KEY_PREFIX")
    agent_snapshot_key: str = Field(
        default="quotebridge:agents:snapshot", env="AGENT_SNAPSHOT_KEY"
    )

    # Candidate scoring
    semantic_weight: float = Field(default=0.60, env="SEMANTIC_WEIGHT")
    responsiveness_weight: float = Field(default=0.25, env="RESPONSIVENESS_WEIGHT")
    trust_weight: float = Field(default=0.15, env="TRUST_WEIGHT")
    match_top_n: int = Field(default=5, env="MATCH_TOP_N")
    category_min_candidates: int = Field(default=10, env="CATEGORY_MIN_CANDIDATES")
    category_map_version: str = Field(default="2024-01", env="CATEGORY_MAP_VERSION")
    category_map: Dict[str, List[str]] = Field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_MAP), env="CATEGORY_MAP"
    )
    stale_embedding_trust_penalty: float = Field(
        default=0.1, env="STALE_EMBEDDING_TRUST_PENALTY"
    )

    # Data source adapters
    inline_fetch_timeout_seconds: float = Field(
        default=5.0, env="INLINE_FETCH_TIMEOUT_SECONDS"
    )
    queued_fetch_timeout_seconds: float = Field(
        default=60.0, env="QUEUED_FETCH_TIMEOUT_SECONDS"
    )
    price_staleness_days: int = Field(default=90, env="PRICE_STALENESS_DAYS")
    structured_table_enabled: bool = Field(default=True, env="STRUCTURED_TABLE_ENABLED")
    erp_api_url: Optional[str] = Field(default=None, env="ERP_API_URL")
    erp_api_key: Optional[str] = Field(default=None, env="ERP_API_KEY")
    http_timeout_seconds: float = Field(default=10.0, env="HTTP_TIMEOUT_SECONDS")

    # Agent liveness
    agent_liveness_window_seconds: int = Field(
        default=180, env="AGENT_LIVENESS_WINDOW_SECONDS"
    )
    heartbeat_sweep_seconds: int = Field(default=60, env="HEARTBEAT_SWEEP_SECONDS")
    agent_pending_task_limit: int = Field(default=50, env="AGENT_PENDING_TASK_LIMIT")
    agent_snapshot_seconds: int = Field(default=300, env="AGENT_SNAPSHOT_SECONDS")
    callback_secret: Optional[str] = Field(default=None, env="CALLBACK_SECRET")

    # Job queues: attempts, backoff (seconds), retained history, concurrency
    queue_poll_seconds: float = Field(default=1.0, env="QUEUE_POLL_SECONDS")
    # A claimed job whose worker has not finished within the lease is handed out again.
    queue_lease_seconds: float = Field(default=300.0, env="QUEUE_LEASE_SECONDS")
    matching_attempts: int = Field(default=3, env="MATCHING_ATTEMPTS")
    matching_backoff_seconds: float = Field(default=2.0, env="MATCHING_BACKOFF_SECONDS")
    matching_keep_completed: int = Field(default=100, env="MATCHING_KEEP_COMPLETED")
    matching_keep_failed: int = Field(default=50, env="MATCHING_KEEP_FAILED")
    matching_concurrency: int = Field(default=5, env="MATCHING_CONCURRENCY")
    embedding_attempts: int = Field(default=3, env="EMBEDDING_ATTEMPTS")
    embedding_backoff_seconds: float = Field(default=3.0, env="EMBEDDING_BACKOFF_SECONDS")
    embedding_keep_completed: int = Field(default=50, env="EMBEDDING_KEEP_COMPLETED")
    embedding_keep_failed: int = Field(default=20, env="EMBEDDING_KEEP_FAILED")
    embedding_concurrency: int = Field(default=3, env="EMBEDDING_CONCURRENCY")
    fulfillment_attempts: int = Field(default=3, env="FULFILLMENT_ATTEMPTS")
    fulfillment_backoff_seconds: float = Field(
        default=5.0, env="FULFILLMENT_BACKOFF_SECONDS"
    )
    fulfillment_keep_completed: int = Field(
        default=200, env="FULFILLMENT_KEEP_COMPLETED"
    )
    fulfillment_keep_failed: int = Field(default=100, env="FULFILLMENT_KEEP_FAILED")
    fulfillment_concurrency: int = Field(default=2, env="FULFILLMENT_CONCURRENCY")
    expiry_attempts: int = Field(default=2, env="EXPIRY_ATTEMPTS")
    expiry_backoff_seconds: float = Field(default=2.0, env="EXPIRY_BACKOFF_SECONDS")
    expiry_keep_completed: int = Field(default=200, env="EXPIRY_KEEP_COMPLETED")
    expiry_keep_failed: int = Field(default=50, env="EXPIRY_KEEP_FAILED")
    expiry_concurrency: int = Field(default=2, env="EXPIRY_CONCURRENCY")

    # Timeout and escalation
    fulfillment_timeout_minutes: int = Field(
        default=30, env="FULFILLMENT_TIMEOUT_MINUTES"
    )
    timeout_sweep_minutes: int = Field(default=5, env="TIMEOUT_SWEEP_MINUTES")
    fulfillment_max_attempts: int = Field(default=3, env="FULFILLMENT_MAX_ATTEMPTS")
    degradation_threshold: int = Field(default=3, env="DEGRADATION_THRESHOLD")
    degradation_window_minutes: int = Field(
        default=60, env="DEGRADATION_WINDOW_MINUTES"
    )
    request_deadline_minutes: int = Field(default=30, env="REQUEST_DEADLINE_MINUTES")

    # Alerts and embeddings
    alert_webhook_url: Optional[str] = Field(default=None, env="ALERT_WEBHOOK_URL")
    embedding_model: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2", env="EMBEDDING_MODEL"
    )
    embedding_device: Optional[str] = Field(default=None, env="EMBEDDING_DEVICE")

    class Config:
        env_file = ENV_FILE_PATH
        env_file_encoding = 'utf-8'
        extra = "ignore"

    @staticmethod
    def _parse_mapping(value: Any) -> Dict[str, Any]:
        if value in (None, ""):
            return {}
        if isinstance(value, dict):
            return value
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid JSON mapping: {exc}") from exc
            if not isinstance(parsed, dict):
                raise ValueError("Expected a JSON object")
            return parsed
        raise ValueError("Unsupported type; expected dict or JSON string")

    @field_validator("category_map", mode="before")
    @classmethod
    def _coerce_category_map(cls, value):
        """Normalise a canonical-category to synonyms mapping from the environment."""

        parsed = cls._parse_mapping(value)
        mapping: Dict[str, List[str]] = {}
        for key, synonyms in parsed.items():
            canonical = str(key).strip()
            if not canonical:
                continue
            if isinstance(synonyms, str):
                synonyms = [synonyms]
            mapping[canonical] = [str(item).strip() for item in synonyms or [] if str(item).strip()]
        return mapping

    @field_validator(
        "match_top_n",
        "category_min_candidates",
        "agent_liveness_window_seconds",
        "heartbeat_sweep_seconds",
        "fulfillment_timeout_minutes",
        "degradation_threshold",
        "fulfillment_max_attempts",
        "queue_lease_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    @model_validator(mode="after")
    def _check_weights(self) -> "Settings":
        total = self.semantic_weight + self.responsiveness_weight + self.trust_weight
        if abs(total - 1.0) > 1e-6:
            raise ValueError(
                f"Scoring weights must sum to 1.0 (got {total:.4f})"
            )
        return self


try:
    settings = Settings()
except Exception as e:
    print(f"!!! FATAL ERROR: Could not load application settings from .env file: {e}")
    raise
