from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automation.api import get_current_user as automation_get_current_user
from app.automation.service import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.middleware.rate_limit import reset_rate_limiter
from app.main import app


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


def _create_rule(client: TestClient, constraints: dict | None = None) -> dict:
    response = client.post(
        "/api/automations/rules",
        json={
            "name": "Overdue invoice reminder",
            "trigger_event": "invoice.overdue",
            "actions": [{"type": "send_email", "config": {"to": "{{email}}", "template": "invoice_overdue"}}],
            "constraints": constraints or {},
        },
    )
    assert response.status_code == 201
    return response.json()


def _overdue_invoice(client: TestClient, correlation_id: str) -> None:
    response = client.post(
        "/api/automations/events",
        json={"event_type": "invoice.overdue", "entity_id": "inv-8", "payload": {"email": "ap@example.com"}},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 200


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    rule_id = uuid.uuid4()
    path = f"/api/automations/rules/{rule_id}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/automations/rules/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_rule_evaluation_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    rule = _create_rule(client)

    _overdue_invoice(client, "abc-456")

    engine_records = [record for record in caplog.records if record.name == "app.automation.engine"]
    assert any(
        record.getMessage() == "automation_rule_evaluated"
        and getattr(record, "rule_id", None) == rule["id"]
        and getattr(record, "entity_id", None) == "inv-8"
        and getattr(record, "outcome", None) == "successful"
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in engine_records
    )


def test_suppression_is_logged_with_reason(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    rule = _create_rule(client, {"max_fires_per_entity": 1})

    _overdue_invoice(client, "abc-789")
    _overdue_invoice(client, "abc-790")

    suppressed = [
        record
        for record in caplog.records
        if record.name == "app.automation.engine" and record.getMessage() == "automation_rule_suppressed"
    ]
    assert len(suppressed) == 1
    assert getattr(suppressed[0], "rule_id", None) == rule["id"]
    assert getattr(suppressed[0], "reason", None) == "max fires reached: 1/1"
    assert getattr(suppressed[0], "correlation_id", None) == "abc-790"
