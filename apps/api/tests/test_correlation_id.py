from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow import audit, events
from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db
from leadflow.crm.api import get_current_user as crm_get_current_user
from leadflow.crm.service import ActorUser
from leadflow.main import app


ALL_PERMISSIONS = {
    "crm.leads.create",
    "crm.leads.read",
    "crm.leads.update",
    "crm.workflows.read",
    "crm.workflows.manage",
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
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def sub_account_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def client(db_session: Session, sub_account_id: uuid.UUID) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            allowed_sub_account_ids=[sub_account_id],
            current_sub_account_id=sub_account_id,
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, sub_account_id: uuid.UUID, correlation_id: str) -> dict:
    response = client.post(
        "/api/crm/leads",
        json={"sub_account_id": str(sub_account_id), "name": "Corr Lead", "phone": "+15550150"},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert body["code"] == "crm_lead_get_failed"
    assert body["message"] == "lead not found"


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/workflows/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_audit_uses_request_correlation_id(client: TestClient, sub_account_id: uuid.UUID) -> None:
    lead = _create_lead(client, sub_account_id, "corr-audit-1")

    lead_audits = audit.entries_for("crm.lead", lead["id"])
    assert lead_audits
    assert lead_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient, sub_account_id: uuid.UUID) -> None:
    lead = _create_lead(client, sub_account_id, "corr-event-1")
    response = client.patch(
        f"/api/crm/leads/{lead['id']}",
        json={"status": "contacted"},
        headers={"X-Correlation-Id": "corr-event-2"},
    )
    assert response.status_code == 200

    created_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"

    changed_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.status_changed"]
    assert changed_events
    assert changed_events[-1].get("correlation_id") == "corr-event-2"
    assert changed_events[-1]["version"] == 1
    assert changed_events[-1]["actor_user_id"] == "user-1"


def test_manual_execution_audit_uses_request_correlation_id(client: TestClient, sub_account_id: uuid.UUID) -> None:
    workflow = client.post(
        "/api/crm/workflows",
        json={
            "sub_account_id": str(sub_account_id),
            "name": "Manual task",
            "trigger": {"type": "manual", "config": {}},
            "actions": [{"type": "create_task", "config": {}}],
        },
    ).json()
    lead = _create_lead(client, sub_account_id, "corr-manual-0")

    response = client.post(
        f"/api/crm/workflows/{workflow['id']}/execute",
        json={"lead_id": lead["id"]},
        headers={"X-Correlation-Id": "corr-manual-1"},
    )
    assert response.status_code == 200

    executed = audit.entries_for("crm.workflow", workflow["id"], action="workflow.executed")
    assert len(executed) == 1
    assert executed[0]["correlation_id"] == "corr-manual-1"
    assert executed[0]["after"]["execution_id"] == response.json()["id"]
