from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from gophercrm.context import (
    get_log_context,
    reset_actor_id,
    reset_correlation_id,
    set_actor_id,
    set_correlation_id,
)
from gophercrm.core.config import get_settings
from gophercrm.core.database import Base, get_db
from gophercrm.core.events import InProcessEventBus, InternalEvent
from gophercrm.logging import MAX_ERROR_LENGTH, CorrelationIdFilter, JsonLogFormatter, TextLogFormatter
from gophercrm.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _record(msg: str, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord("gophercrm.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_emits_whitelisted_fields_with_context() -> None:
    correlation_token = set_correlation_id("corr-json-1")
    actor_token = set_actor_id(17)
    try:
        record = _record(
            "crm.lead.created",
            lead_id=5,
            password="hunter2",
            token="secret-token",
            unrelated="dropped",
            error="x" * (MAX_ERROR_LENGTH + 50),
        )
        CorrelationIdFilter().filter(record)
        payload = json.loads(JsonLogFormatter().format(record))
    finally:
        reset_actor_id(actor_token)
        reset_correlation_id(correlation_token)

    assert payload["msg"] == "crm.lead.created"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "gophercrm.test"
    assert payload["correlation_id"] == "corr-json-1"
    assert payload["fields"]["lead_id"] == 5
    assert payload["fields"]["actor_id"] == 17
    assert len(payload["fields"]["error"]) == MAX_ERROR_LENGTH
    for name in ("password", "token", "unrelated"):
        assert name not in payload["fields"]


def test_explicit_actor_id_is_not_overwritten() -> None:
    actor_token = set_actor_id(17)
    try:
        record = _record("authz.denied", actor_id=3)
        CorrelationIdFilter().filter(record)
    finally:
        reset_actor_id(actor_token)
    assert record.actor_id == 3


def test_text_formatter_is_single_line_with_sorted_fields() -> None:
    record = _record("http.request", method="GET", path="/api/v1/health", status_code=200)
    record.correlation_id = "corr-text-1"

    line = TextLogFormatter().format(record)

    assert "\n" not in line
    assert "INFO" in line
    assert "http.request [corr-text-1]" in line
    assert line.endswith("method=GET path=/api/v1/health status_code=200")


def test_log_context_defaults_to_empty() -> None:
    assert get_log_context() == {"correlation_id": None, "actor_id": None}


def test_request_log_carries_correlation_id_and_route_template(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/v1/leads/42", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 401

    records = [
        record
        for record in caplog.records
        if record.name == "gophercrm.request" and record.getMessage() == "http.request"
    ]
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "status_code", None) == 401
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )
    auth_records = [record for record in caplog.records if record.name == "gophercrm.auth"]
    assert all(getattr(record, "correlation_id", None) == "abc-123" for record in auth_records)


def test_event_bus_isolates_failing_subscribers(caplog: pytest.LogCaptureFixture) -> None:
    bus = InProcessEventBus()
    received: list[InternalEvent] = []

    def broken(event: InternalEvent) -> None:
        raise RuntimeError("boom")

    bus.subscribe("crm.lead.*", broken)
    bus.subscribe("crm.lead.converted", received.append)
    bus.subscribe("crm.lead.converted", received.append)
    bus.subscribe("crm.ticket.*", received.append)

    with caplog.at_level(logging.ERROR, logger="gophercrm.events"):
        delivered = bus.publish("crm.lead.converted", {"lead_id": 1})

    assert delivered == 1
    assert [event.payload for event in received] == [{"lead_id": 1}]
    assert any(record.getMessage() == "events.subscriber_failed" for record in caplog.records)

    bus.unsubscribe("crm.lead.*", broken)
    assert bus.publish("crm.lead.updated", {}) == 0
