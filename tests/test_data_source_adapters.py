import os
import sys
import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import requests

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from models.domain import AgentCapability, QuoteOffer
from repositories.price_record_repo import InMemoryPriceRecordSource, PriceRecord, best_record
from services.data_source_adapters import (
    AGENT_API,
    ERP_API,
    STRUCTURED_TABLE,
    AdapterRegistry,
    AdapterResult,
    AgentEndpointAdapter,
    DataSourceAdapter,
    ErpApiAdapter,
    QuoteParams,
    StructuredTableAdapter,
    build_candidate_registry,
)

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


class DummyAdapter(DataSourceAdapter):
    def __init__(self, type_, priority, *, available=True, result=None, exc=None, delay=0.0):
        self.type = type_
        self.priority = priority
        self.available = available
        self.result = result
        self.exc = exc
        self.delay = delay
        self.calls = 0

    def is_available(self):
        return self.available

    def fetch_quote(self, params):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return self.result


class DummyResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"status {self.status}")

    def json(self):
        return self.payload


class DummySession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return self.response


class DummyAgentRegistry:
    def __init__(self, online=()):
        self.online = set(online)

    def online_agent_for(self, candidate_id):
        return f"agent-{candidate_id}" if candidate_id in self.online else None


def _params(**overrides):
    values = dict(candidate_id="C1", request_id="R1", product_name="Mono Panel 400W", quantity=100)
    values.update(overrides)
    return QuoteParams(**values)


def _offer(price=10.0):
    return QuoteOffer(unit_price=price)


def test_fallback_skips_unavailable_adapter_and_tags_provenance():
    structured = DummyAdapter(STRUCTURED_TABLE, 1, available=False)
    erp = DummyAdapter(ERP_API, 2, result=AdapterResult.ok(_offer(), ERP_API))
    registry = AdapterRegistry([erp, structured])

    result = registry.fetch_with_fallback(_params())

    assert result.success is True
    assert result.source == ERP_API
    assert result.offer.provenance == ERP_API
    assert structured.calls == 0


def test_adapters_are_tried_in_priority_order_until_success():
    order = []

    class Recording(DummyAdapter):
        def fetch_quote(self, params):
            order.append(self.type)
            return super().fetch_quote(params)

    first = Recording("first", 1, result=AdapterResult.failed("no record", "first"))
    second = Recording("second", 2, exc=RuntimeError("boom"))
    third = Recording("third", 3, result=AdapterResult.ok(_offer(), "third"))
    registry = AdapterRegistry([third, second, first])

    result = registry.fetch_with_fallback(_params())

    assert order == ["first", "second", "third"]
    assert result.success and result.offer.provenance == "third"


def test_all_adapters_failing_returns_last_error():
    registry = AdapterRegistry(
        [
            DummyAdapter("a", 1, result=AdapterResult.failed("first failure", "a")),
            DummyAdapter("b", 2, exc=RuntimeError("second failure")),
        ]
    )
    result = registry.fetch_with_fallback(_params())

    assert result.success is False
    assert result.source == "b"
    assert "second failure" in result.error


def test_no_available_adapter_names_checked_sources():
    registry = AdapterRegistry([DummyAdapter("a", 1, available=False), DummyAdapter("b", 2, available=False)])
    result = registry.fetch_with_fallback(_params())

    assert result.success is False
    assert result.source is None
    assert "a, b" in result.error


def test_failing_availability_check_is_treated_as_unavailable():
    class Broken(DummyAdapter):
        def is_available(self):
            raise RuntimeError("availability check exploded")

    good = DummyAdapter("good", 2, result=AdapterResult.ok(_offer(), "good"))
    registry = AdapterRegistry([Broken("broken", 1), good])

    assert registry.available_adapters() == [good]


def test_success_without_offer_counts_as_failure():
    registry = AdapterRegistry([DummyAdapter("a", 1, result=AdapterResult(success=True))])
    result = registry.fetch_with_fallback(_params())
    assert result.success is False
    assert "no offer" in result.error


def test_slow_adapter_is_abandoned_after_budget():
    slow = DummyAdapter("slow", 1, result=AdapterResult.ok(_offer(), "slow"), delay=0.5)
    registry = AdapterRegistry([slow])

    result = registry.fetch_with_fallback(_params(), timeout=0.05)

    assert result.success is False
    assert "timed out" in result.error


def test_structured_table_confidence_reflects_verification_and_freshness():
    source = InMemoryPriceRecordSource(
        [
            PriceRecord("C1", "Mono Panel 400W", 120.0, is_verified=True, updated_at=NOW - timedelta(days=10)),
            PriceRecord("C2", "Mono Panel 400W", 99.0, is_verified=False, updated_at=NOW - timedelta(days=200)),
        ]
    )
    adapter = StructuredTableAdapter(source, staleness_days=90, clock=lambda: NOW)

    fresh = adapter.fetch_quote(_params(candidate_id="C1"))
    stale = adapter.fetch_quote(_params(candidate_id="C2", product_name="mono panel 400w"))

    assert fresh.offer.confidence == pytest.approx(1.0)
    assert fresh.offer.unit_price == 120.0
    assert stale.success is True
    assert stale.offer.confidence == pytest.approx(0.5)


def test_structured_table_without_record_fails():
    adapter = StructuredTableAdapter(InMemoryPriceRecordSource(), clock=lambda: NOW)
    result = adapter.fetch_quote(_params())
    assert result.success is False
    assert "no price record" in result.error


def test_structured_table_availability_follows_configuration():
    assert StructuredTableAdapter(InMemoryPriceRecordSource(configured=False)).is_available() is False
    assert StructuredTableAdapter(InMemoryPriceRecordSource(), enabled=False).is_available() is False
    assert StructuredTableAdapter(InMemoryPriceRecordSource()).is_available() is True


def test_structured_table_write_back_upserts_record():
    source = InMemoryPriceRecordSource()
    adapter = StructuredTableAdapter(source, clock=lambda: NOW)
    offer = QuoteOffer(unit_price=88.5, moq=50, product_name="Mono Panel 400W", is_verified=True)

    assert adapter.write_quote(offer, _params()) is True
    stored = source.find("C1", "MONO PANEL 400W")
    assert len(stored) == 1
    assert stored[0].unit_price == 88.5
    assert stored[0].updated_at == NOW


def test_best_record_prefers_verified_then_newest():
    old_verified = PriceRecord("C1", "a", 1.0, is_verified=True, updated_at=NOW - timedelta(days=30))
    new_unverified = PriceRecord("C1", "b", 2.0, is_verified=False, updated_at=NOW)
    assert best_record([new_unverified, old_verified]) is old_verified
    assert best_record([]) is None


def test_erp_adapter_posts_with_bearer_token():
    session = DummySession(DummyResponse({"unit_price": 12.5, "currency": "EUR", "moq": 10}))
    adapter = ErpApiAdapter("https://erp.example.com/", api_key="secret", session=session)

    result = adapter.fetch_quote(_params())

    assert result.success is True
    assert result.offer.confidence == pytest.approx(0.9)
    assert result.offer.currency == "EUR"
    call = session.calls[0]
    assert call["url"] == "https://erp.example.com/quotes"
    assert call["headers"]["Authorization"] == "Bearer secret"
    assert call["json"]["candidate_id"] == "C1"


def test_erp_adapter_indicative_quote_has_lower_confidence():
    session = DummySession(DummyResponse({"unit_price": 12.5, "indicative": True}))
    adapter = ErpApiAdapter("https://erp.example.com", api_key="k", session=session)
    assert adapter.fetch_quote(_params()).offer.confidence == pytest.approx(0.75)


def test_erp_transport_error_is_reported_by_registry():
    session = DummySession(exc=requests.ConnectionError("refused"))
    registry = AdapterRegistry([ErpApiAdapter("https://erp.example.com", api_key="k", session=session)])

    result = registry.fetch_with_fallback(_params())

    assert result.success is False
    assert result.source == ERP_API
    assert "refused" in result.error


def test_agent_endpoint_available_only_while_agent_online():
    session = DummySession(DummyResponse({"unit_price": 5.0, "is_verified": True}))
    agents = DummyAgentRegistry(online={"C1"})
    online = AgentEndpointAdapter("C1", "https://agent.example.com", agent_registry=agents, session=session)
    offline = AgentEndpointAdapter("C2", "https://agent.example.com", agent_registry=agents, session=session)

    assert online.is_available() is True
    assert offline.is_available() is False
    assert online.fetch_quote(_params()).offer.confidence == pytest.approx(0.9)


def test_build_candidate_registry_orders_declared_capabilities():
    settings = SimpleNamespace(http_timeout_seconds=3.0, erp_api_url=None, erp_api_key=None)
    structured = StructuredTableAdapter(InMemoryPriceRecordSource())
    capabilities = [
        AgentCapability(type=AGENT_API, config={"endpoint": "https://agent.example.com"}),
        AgentCapability(type=ERP_API, config={"endpoint": "https://erp.example.com", "api_key": "k"}),
        AgentCapability(type=ERP_API, configured=False),
        AgentCapability(type="carrier_pigeon"),
    ]

    registry = build_candidate_registry(
        "C1",
        capabilities,
        structured_adapter=structured,
        agent_registry=DummyAgentRegistry(online={"C1"}),
        settings=settings,
        session=DummySession(),
    )

    assert [adapter.type for adapter in registry.available_adapters()] == [
        STRUCTURED_TABLE,
        ERP_API,
        AGENT_API,
    ]


def test_build_candidate_registry_adds_global_erp_when_configured():
    settings = SimpleNamespace(
        http_timeout_seconds=3.0, erp_api_url="https://erp.example.com", erp_api_key="k"
    )
    registry = build_candidate_registry(
        "C1",
        [],
        structured_adapter=None,
        agent_registry=DummyAgentRegistry(),
        settings=settings,
        session=DummySession(),
    )
    assert [adapter.type for adapter in registry.adapters] == [ERP_API]
