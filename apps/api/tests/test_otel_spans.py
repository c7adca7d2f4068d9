from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.automation.api import get_current_user as automation_get_current_user
from app.automation.models import AutomationRule
from app.automation.service import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.otel import setup_inmemory_otel


ALL_PERMISSIONS = {
    "automation.rules.read",
    "automation.rules.manage",
    "automation.executions.read",
    "automation.events.ingest",
}


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("automation-api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            tenant_id="tenant-a",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[automation_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_rule(client: TestClient) -> dict:
    response = client.post(
        "/api/automations/rules",
        json={
            "name": "Inactive customer win-back",
            "trigger_event": "customer.inactive_90d",
            "actions": [
                {"type": "send_email", "config": {"to": "{{email}}", "template": "win_back"}},
                {"type": "notify", "config": {"channel": "#sales", "message": "Win-back sent to {{name}}"}},
            ],
        },
    )
    assert response.status_code == 201
    return response.json()


def _inactive_customer(client: TestClient, correlation_id: str) -> None:
    response = client.post(
        "/api/automations/events",
        json={
            "event_type": "customer.inactive_90d",
            "entity_id": "cust-4",
            "payload": {"email": "lee@example.com", "name": "Lee"},
        },
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 200


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/api/automations/rules", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_rule_evaluation_span_contains_rule_and_outcome(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    rule = _create_rule(client)
    _inactive_customer(client, "otel-rule-corr-1")

    spans = span_exporter.get_finished_spans()
    rule_spans = [span for span in spans if span.name == "automation.rule.evaluate"]
    assert rule_spans
    assert any(
        span.attributes.get("rule_id") == rule["id"]
        and span.attributes.get("tenant_id") == "tenant-a"
        and span.attributes.get("entity_id") == "cust-4"
        and span.attributes.get("outcome") == "successful"
        for span in rule_spans
    )

    outbound = [span for span in spans if span.name.startswith("automation.outbound.")]
    assert {span.name for span in outbound} == {"automation.outbound.send_email", "automation.outbound.notify"}
    assert all(span.attributes.get("correlation_id") == "otel-rule-corr-1" for span in outbound)


def test_failed_rule_span_records_error(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    broken = AutomationRule(
        tenant_id="tenant-a",
        name="Broken rule",
        trigger_event="customer.inactive_90d",
        conditions_json=[],
        actions_json=[{"type": "fax", "config": {}}],
        constraints_json={},
    )
    db_session.add(broken)
    db_session.commit()

    _inactive_customer(client, "otel-fail-corr-1")

    rule_spans = [span for span in span_exporter.get_finished_spans() if span.name == "automation.rule.evaluate"]
    assert any(
        span.attributes.get("rule_id") == str(broken.id)
        and span.attributes.get("outcome") == "failed"
        and span.status.status_code == StatusCode.ERROR
        for span in rule_spans
    )
