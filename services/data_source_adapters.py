"""Data source adapters and the priority fallback chain used to price a match.

Each adapter wraps one way of obtaining a supplier quote: a supplier
maintained structured price table, a supplier ERP endpoint, or a quote
endpoint exposed by an online supplier agent.  :class:`AdapterRegistry`
checks availability at call time, tries adapters in ascending priority and
stops at the first success.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import requests

from models.domain import AgentCapability, QuoteOffer, TierPrice, utcnow
from repositories.price_record_repo import PriceRecord, best_record
from services.errors import TransientSourceError

logger = logging.getLogger(__name__)

STRUCTURED_TABLE = "structured_table"
ERP_API = "erp_api"
AGENT_API = "agent_api"


@dataclass
class QuoteParams:
    candidate_id: str
    request_id: str
    product_name: Optional[str] = None
    quantity: Optional[int] = None
    target_price: Optional[float] = None
    category: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "candidate_id": self.candidate_id,
            "request_id": self.request_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "target_price": self.target_price,
            "category": self.category,
        }
        payload.update(self.extra)
        return payload


@dataclass
class AdapterResult:
    success: bool
    offer: Optional[QuoteOffer] = None
    error: Optional[str] = None
    source: Optional[str] = None
    latency_ms: float = 0.0

    @classmethod
    def ok(cls, offer: QuoteOffer, source: str) -> "AdapterResult":
        return cls(success=True, offer=offer, source=source)

    @classmethod
    def failed(cls, error: str, source: Optional[str]) -> "AdapterResult":
        return cls(success=False, error=error, source=source)


class DataSourceAdapter:
    """Base class for quote sources; lower ``priority`` is tried first."""

    type: str = ""
    priority: int = 100

    def is_available(self) -> bool:
        raise NotImplementedError

    def fetch_quote(self, params: QuoteParams) -> AdapterResult:
        raise NotImplementedError

    def write_quote(self, offer: QuoteOffer, params: QuoteParams) -> bool:
        raise NotImplementedError(f"{self.type} does not support reverse sync")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(type={self.type!r}, priority={self.priority})"


_EXECUTOR_LOCK = threading.Lock()
_ADAPTER_EXECUTOR: Optional[ThreadPoolExecutor] = None


def _get_executor() -> ThreadPoolExecutor:
    global _ADAPTER_EXECUTOR
    with _EXECUTOR_LOCK:
        if _ADAPTER_EXECUTOR is None:
            _ADAPTER_EXECUTOR = ThreadPoolExecutor(
                max_workers=8, thread_name_prefix="quote-adapter"
            )
    return _ADAPTER_EXECUTOR


class AdapterRegistry:
    """Ordered set of adapters with a bounded fallback chain."""

    def __init__(self, adapters: Optional[Iterable[DataSourceAdapter]] = None) -> None:
        self._adapters: List[DataSourceAdapter] = []
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: DataSourceAdapter) -> None:
        self._adapters.append(adapter)

    @property
    def adapters(self) -> List[DataSourceAdapter]:
        return list(self._adapters)

    def available_adapters(self) -> List[DataSourceAdapter]:
        available: List[DataSourceAdapter] = []
        for adapter in self._adapters:
            try:
                if adapter.is_available():
                    available.append(adapter)
            except Exception:
                logger.exception("Availability check failed for adapter %s", adapter.type)
        # sorted() is stable so equal priorities keep registration order
        return sorted(available, key=lambda adapter: adapter.priority)

    def _invoke(
        self, adapter: DataSourceAdapter, params: QuoteParams, budget: Optional[float]
    ) -> AdapterResult:
        started = time.monotonic()
        try:
            if budget is None:
                result = adapter.fetch_quote(params)
            else:
                future = _get_executor().submit(adapter.fetch_quote, params)
                try:
                    result = future.result(timeout=budget)
                except FutureTimeout:
                    future.cancel()
                    result = AdapterResult.failed(
                        f"{adapter.type} timed out after {budget:.2f}s", adapter.type
                    )
        except Exception as exc:
            logger.warning(
                "Adapter %s failed for candidate %s: %s",
                adapter.type,
                params.candidate_id,
                exc,
            )
            result = AdapterResult.failed(f"{adapter.type}: {exc}", adapter.type)
        if result.source is None:
            result.source = adapter.type
        result.latency_ms = round((time.monotonic() - started) * 1000.0, 3)
        return result

    def fetch_with_fallback(
        self, params: QuoteParams, *, timeout: Optional[float] = None
    ) -> AdapterResult:
        """Try available adapters in priority order and return the first success.

        When every adapter fails the last error is returned together with the
        type of the last adapter tried.  ``timeout`` bounds the whole chain.
        """

        candidates = self.available_adapters()
        if not candidates:
            checked = ", ".join(adapter.type for adapter in self._adapters) or "none registered"
            message = f"No data source available for candidate {params.candidate_id} (checked: {checked})"
            logger.info(message)
            return AdapterResult.failed(message, None)

        deadline = time.monotonic() + timeout if timeout is not None else None
        last: Optional[AdapterResult] = None
        for adapter in candidates:
            budget = None
            if deadline is not None:
                budget = deadline - time.monotonic()
                if budget <= 0:
                    if last is None:
                        last = AdapterResult.failed("inline fetch budget exhausted", adapter.type)
                    break
            result = self._invoke(adapter, params, budget)
            if result.success and result.offer is not None:
                result.offer.provenance = adapter.type
                logger.info(
                    "Adapter %s priced candidate %s in %.1fms",
                    adapter.type,
                    params.candidate_id,
                    result.latency_ms,
                )
                return result
            if result.success:
                result = AdapterResult.failed(f"{adapter.type} returned no offer", adapter.type)
            logger.warning(
                "Adapter %s could not price candidate %s: %s",
                adapter.type,
                params.candidate_id,
                result.error,
            )
            last = result
        return last


class StructuredTableAdapter(DataSourceAdapter):
    """Reads supplier price records; stale records still yield a low-confidence offer."""

    type = STRUCTURED_TABLE
    priority = 1

    def __init__(
        self,
        source,
        *,
        staleness_days: int = 90,
        enabled: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.source = source
        self.staleness = timedelta(days=staleness_days)
        self.enabled = enabled
        self._clock = clock or utcnow

    def is_available(self) -> bool:
        return bool(self.enabled) and bool(self.source.is_configured())

    def confidence(self, record: PriceRecord) -> float:
        fresh = (self._clock() - record.updated_at) <= self.staleness
        return round(0.5 + (0.3 if record.is_verified else 0.0) + (0.2 if fresh else 0.0), 2)

    def fetch_quote(self, params: QuoteParams) -> AdapterResult:
        record = best_record(self.source.find(params.candidate_id, params.product_name))
        if record is None:
            return AdapterResult.failed(
                f"no price record for candidate {params.candidate_id}", self.type
            )
        offer = QuoteOffer(
            unit_price=record.unit_price,
            currency=record.currency,
            moq=record.moq,
            lead_time_days=record.lead_time_days,
            tier_pricing=[
                TierPrice(quantity=int(tier["quantity"]), unit_price=float(tier["unit_price"]))
                for tier in record.tier_pricing
            ],
            payment_terms=record.payment_terms,
            product_name=record.product_name,
            is_verified=record.is_verified,
            provenance=self.type,
            confidence=self.confidence(record),
        )
        return AdapterResult.ok(offer, self.type)

    def write_quote(self, offer: QuoteOffer, params: QuoteParams) -> bool:
        product = offer.product_name or params.product_name
        if not product:
            logger.info(
                "Skipping reverse sync for candidate %s: no product name", params.candidate_id
            )
            return False
        self.source.upsert(
            PriceRecord(
                candidate_id=params.candidate_id,
                product_name=product,
                unit_price=offer.unit_price,
                currency=offer.currency,
                moq=offer.moq,
                lead_time_days=offer.lead_time_days,
                tier_pricing=[
                    {"quantity": tier.quantity, "unit_price": tier.unit_price}
                    for tier in offer.tier_pricing
                ],
                payment_terms=offer.payment_terms,
                is_verified=offer.is_verified,
                updated_at=self._clock(),
            )
        )
        return True


class _HttpQuoteAdapter(DataSourceAdapter):
    def __init__(
        self,
        endpoint: Optional[str],
        *,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        priority: Optional[int] = None,
    ) -> None:
        self.endpoint = (endpoint or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()
        if priority is not None:
            self.priority = priority

    def _post(self, params: QuoteParams) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = self.session.post(
                f"{self.endpoint}/quotes",
                json=params.to_payload(),
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise TransientSourceError(str(exc), source=self.type) from exc
        if not isinstance(data, dict):
            raise TransientSourceError(f"unexpected payload from {self.type}", source=self.type)
        return data


class ErpApiAdapter(_HttpQuoteAdapter):
    type = ERP_API
    priority = 2

    def is_available(self) -> bool:
        return bool(self.endpoint and self.api_key)

    def fetch_quote(self, params: QuoteParams) -> AdapterResult:
        data = self._post(params)
        if data.get("unit_price") is None:
            return AdapterResult.failed(data.get("error") or "ERP returned no price", self.type)
        confidence = 0.75 if data.get("indicative") else 0.9
        offer = QuoteOffer.from_payload(data, provenance=self.type, confidence=confidence)
        return AdapterResult.ok(offer, self.type)


class AgentEndpointAdapter(_HttpQuoteAdapter):
    """Quote endpoint exposed by a supplier agent; usable only while it is online."""

    type = AGENT_API
    priority = 3

    def __init__(self, candidate_id: str, endpoint: Optional[str], *, agent_registry, **kwargs) -> None:
        super().__init__(endpoint, **kwargs)
        self.candidate_id = candidate_id
        self.agent_registry = agent_registry

    def is_available(self) -> bool:
        if not self.endpoint:
            return False
        return self.agent_registry.online_agent_for(self.candidate_id) is not None

    def fetch_quote(self, params: QuoteParams) -> AdapterResult:
        data = self._post(params)
        if data.get("unit_price") is None:
            return AdapterResult.failed(data.get("error") or "agent returned no price", self.type)
        confidence = round(0.7 + (0.2 if data.get("is_verified") else 0.0), 2)
        offer = QuoteOffer.from_payload(data, provenance=self.type, confidence=confidence)
        return AdapterResult.ok(offer, self.type)


def build_candidate_registry(
    candidate_id: str,
    capabilities: Sequence[AgentCapability],
    *,
    structured_adapter: Optional[StructuredTableAdapter],
    agent_registry,
    settings,
    session: Optional[requests.Session] = None,
) -> AdapterRegistry:
    """Build the fallback chain for one candidate from its declared capabilities.

    The shared structured table adapter is always included; capabilities
    that are not configured, or of an unknown type, contribute nothing.
    """

    registry = AdapterRegistry()
    if structured_adapter is not None:
        registry.register(structured_adapter)

    timeout = float(getattr(settings, "http_timeout_seconds", 10.0))
    has_erp = False
    for capability in capabilities:
        if not capability.configured:
            continue
        config = capability.config or {}
        if capability.type == STRUCTURED_TABLE:
            continue
        if capability.type == ERP_API:
            registry.register(
                ErpApiAdapter(
                    config.get("endpoint") or getattr(settings, "erp_api_url", None),
                    api_key=config.get("api_key") or getattr(settings, "erp_api_key", None),
                    timeout=timeout,
                    session=session,
                    priority=capability.priority,
                )
            )
            has_erp = True
        elif capability.type == AGENT_API:
            registry.register(
                AgentEndpointAdapter(
                    candidate_id,
                    config.get("endpoint"),
                    agent_registry=agent_registry,
                    api_key=config.get("api_key"),
                    timeout=timeout,
                    session=session,
                    priority=capability.priority,
                )
            )
        else:
            logger.warning(
                "Ignoring unknown capability %r declared for candidate %s",
                capability.type,
                candidate_id,
            )

    if not has_erp and getattr(settings, "erp_api_url", None) and getattr(settings, "erp_api_key", None):
        registry.register(
            ErpApiAdapter(
                settings.erp_api_url,
                api_key=settings.erp_api_key,
                timeout=timeout,
                session=session,
            )
        )
    return registry
