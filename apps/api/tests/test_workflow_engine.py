from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event, inspect, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow import events
from leadflow.core.config import get_settings
from leadflow.core.database import Base
from leadflow.crm.models import (
    CRMLead,
    CRMLeadActivity,
    CRMTask,
    CRMWorkflow,
    CRMWorkflowActionLog,
    CRMWorkflowExecution,
)
from leadflow.messaging import StubMessagingClient
from leadflow.workflows.engine import WorkflowEngine


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
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    events.published_events.clear()


@pytest.fixture()
def messaging() -> StubMessagingClient:
    return StubMessagingClient()


@pytest.fixture()
def engine(messaging: StubMessagingClient) -> WorkflowEngine:
    return WorkflowEngine(messaging_client=messaging)


@pytest.fixture()
def sub_account_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def lead(db_session: Session, sub_account_id: uuid.UUID) -> CRMLead:
    row = CRMLead(
        sub_account_id=sub_account_id,
        name="Arjun Rao",
        phone="+15550123",
        email=None,
        status="contacted",
        source="website",
        value=1200,
    )
    db_session.add(row)
    db_session.commit()
    return row


_sequence = iter(range(1, 10_000))


def _add_workflow(
    db_session: Session,
    sub_account_id: uuid.UUID,
    *,
    trigger: object,
    actions: object,
    conditions: object = None,
    name: str = "Automation",
    is_active: bool = True,
) -> CRMWorkflow:
    workflow = CRMWorkflow(
        sub_account_id=sub_account_id,
        name=name,
        trigger_json=trigger,
        conditions_json=conditions if conditions is not None else [],
        actions_json=actions,
        is_active=is_active,
        created_by="admin-1",
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=next(_sequence)),
    )
    db_session.add(workflow)
    db_session.commit()
    return workflow


def _status_event(lead: CRMLead, new_status: str, old_status: str = "contacted") -> dict[str, object]:
    return events.build_envelope(
        "crm.lead.status_changed",
        actor_user_id="user-1",
        sub_account_id=lead.sub_account_id,
        payload={"lead_id": str(lead.id), "old_status": old_status, "new_status": new_status},
    )


def _executions(db_session: Session) -> list[CRMWorkflowExecution]:
    return list(db_session.scalars(select(CRMWorkflowExecution)).all())


def _logs(db_session: Session, execution_id: uuid.UUID) -> list[CRMWorkflowActionLog]:
    return list(
        db_session.scalars(
            select(CRMWorkflowActionLog)
            .where(CRMWorkflowActionLog.execution_id == execution_id)
            .order_by(CRMWorkflowActionLog.position)
        ).all()
    )


WHATSAPP = [{"type": "send_whatsapp_template", "config": {"templateName": "interest_ack"}}]


def test_status_trigger_matches_only_configured_status(
    db_session: Session,
    engine: WorkflowEngine,
    messaging: StubMessagingClient,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_status_changed", "config": {"status": "interested"}},
        actions=WHATSAPP,
    )

    assert engine.handle_event(db_session, _status_event(lead, "follow_up")) == []
    assert messaging.sent == []

    execution_ids = engine.handle_event(db_session, _status_event(lead, "interested"))
    assert len(execution_ids) == 1
    execution = db_session.get(CRMWorkflowExecution, execution_ids[0])
    assert execution is not None
    assert execution.status == "completed"
    assert execution.triggered_by == "status_changed_to_interested"
    assert execution.completed_at is not None
    assert [item["template_name"] for item in messaging.sent] == ["interest_ack"]

    activity = db_session.scalars(select(CRMLeadActivity).where(CRMLeadActivity.lead_id == lead.id)).one()
    assert activity.activity_type == "whatsapp"
    assert activity.content == 'Workflow "Automation" executed: WhatsApp template "interest_ack" sent automatically'
    assert activity.metadata_json["automated"] is True
    assert activity.metadata_json["trigger"] == "status_changed_to_interested"
    assert activity.metadata_json["template_name"] == "interest_ack"


def test_trigger_without_target_status_never_matches(
    db_session: Session,
    engine: WorkflowEngine,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_status_changed", "config": {}},
        actions=WHATSAPP,
    )
    assert engine.handle_event(db_session, _status_event(lead, "interested")) == []


def test_inactive_and_foreign_workflows_are_ignored(
    db_session: Session,
    engine: WorkflowEngine,
    messaging: StubMessagingClient,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    trigger = {"type": "lead_status_changed", "config": {"status": "interested"}}
    _add_workflow(db_session, sub_account_id, trigger=trigger, actions=WHATSAPP, is_active=False)
    _add_workflow(db_session, uuid.uuid4(), trigger=trigger, actions=WHATSAPP)
    deleted = _add_workflow(db_session, sub_account_id, trigger=trigger, actions=WHATSAPP)
    deleted.deleted_at = datetime.now(timezone.utc)
    db_session.commit()

    assert engine.handle_event(db_session, _status_event(lead, "interested")) == []
    assert messaging.sent == []
    assert _executions(db_session) == []


def test_malformed_definitions_skip_only_that_workflow(
    db_session: Session,
    engine: WorkflowEngine,
    messaging: StubMessagingClient,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING, logger="leadflow.workflows")
    trigger = {"type": "lead_status_changed", "config": {"status": "interested"}}
    broken_trigger = _add_workflow(db_session, sub_account_id, trigger="{not json", actions=WHATSAPP)
    broken_actions = _add_workflow(
        db_session,
        sub_account_id,
        trigger=trigger,
        actions=[{"type": "teleport", "config": {}}],
    )
    healthy = _add_workflow(
        db_session,
        sub_account_id,
        name="Healthy",
        trigger='{"type": "lead_status_changed", "config": {"status": "interested"}}',
        actions='[{"type": "send_whatsapp", "config": {"templateName": "from_string"}}]',
    )

    execution_ids = engine.handle_event(db_session, _status_event(lead, "interested"))

    assert len(execution_ids) == 1
    execution = db_session.get(CRMWorkflowExecution, execution_ids[0])
    assert execution is not None
    assert execution.workflow_id == healthy.id
    assert [item["template_name"] for item in messaging.sent] == ["from_string"]

    failures = {
        (record.getMessage(), record.workflow_id)
        for record in caplog.records
        if record.name == "leadflow.workflows" and record.getMessage().endswith("_parse_failed")
    }
    assert failures == {
        ("workflow.trigger_parse_failed", str(broken_trigger.id)),
        ("workflow.actions_parse_failed", str(broken_actions.id)),
    }


def test_failed_action_does_not_stop_later_actions(
    db_session: Session,
    engine: WorkflowEngine,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    workflow = _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_status_changed", "config": {"status": "interested"}},
        actions=[
            {"type": "send_email", "config": {"subject": "Hi"}},
            {"type": "create_task", "config": {"title": "Call them"}},
        ],
    )

    execution_ids = engine.handle_event(db_session, _status_event(lead, "interested"))
    execution = db_session.get(CRMWorkflowExecution, execution_ids[0])
    assert execution is not None
    assert execution.status == "failed"
    assert execution.error == "send_email: lead has no email address"
    assert execution.execution_data["actions_failed"] == 1
    assert execution.execution_data["actions_completed"] == 1

    logs = _logs(db_session, execution.id)
    assert [(log.position, log.action_type, log.status) for log in logs] == [
        (0, "send_email", "failed"),
        (1, "create_task", "completed"),
    ]
    assert logs[0].error == "lead has no email address"

    task = db_session.scalars(select(CRMTask).where(CRMTask.lead_id == lead.id)).one()
    assert task.title == "Call them"

    contents = [
        row.content
        for row in db_session.scalars(
            select(CRMLeadActivity).where(CRMLeadActivity.lead_id == lead.id).order_by(CRMLeadActivity.created_at)
        ).all()
    ]
    assert contents[0] == f'Workflow "{workflow.name}" failed: send_email - lead has no email address'
    assert contents[1] == f'Workflow "{workflow.name}" executed: task "Call them" created'


def test_messaging_failure_is_recorded(
    db_session: Session,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    failing = WorkflowEngine(messaging_client=StubMessagingClient(fail_with="provider unavailable"))
    _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_status_changed", "config": {"status": "interested"}},
        actions=WHATSAPP,
    )

    execution_ids = failing.handle_event(db_session, _status_event(lead, "interested"))
    execution = db_session.get(CRMWorkflowExecution, execution_ids[0])
    assert execution is not None
    assert execution.status == "failed"
    assert execution.error == "send_whatsapp_template: provider unavailable"
    assert _logs(db_session, execution.id)[0].status == "failed"


def test_update_lead_writes_directly_without_event(
    db_session: Session,
    engine: WorkflowEngine,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_status_changed", "config": {"status": "interested"}},
        actions=[{"type": "update_lead", "config": {"fields": {"status": "follow_up", "value": "2500"}}}],
    )
    _add_workflow(
        db_session,
        sub_account_id,
        name="Follow-up watcher",
        trigger={"type": "lead_status_changed", "config": {"status": "follow_up"}},
        actions=WHATSAPP,
    )

    execution_ids = engine.handle_event(db_session, _status_event(lead, "interested"))

    assert len(execution_ids) == 1
    db_session.refresh(lead)
    assert lead.status == "follow_up"
    assert lead.value == 2500
    assert events.published_events == []
    assert len(_executions(db_session)) == 1


def test_update_lead_rejects_fields_outside_allowlist(
    db_session: Session,
    engine: WorkflowEngine,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_status_changed", "config": {"status": "interested"}},
        actions=[{"type": "update_lead", "config": {"sub_account_id": str(uuid.uuid4())}}],
    )

    execution_ids = engine.handle_event(db_session, _status_event(lead, "interested"))
    execution = db_session.get(CRMWorkflowExecution, execution_ids[0])
    assert execution is not None
    assert execution.status == "failed"
    assert "fields not updatable: sub_account_id" in (execution.error or "")
    db_session.refresh(lead)
    assert lead.sub_account_id == sub_account_id


def test_create_task_defaults(
    db_session: Session,
    engine: WorkflowEngine,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_status_changed", "config": {"status": "interested"}},
        actions=[{"type": "create_task", "config": {}}],
    )

    before = datetime.now(timezone.utc).replace(tzinfo=None)
    engine.handle_event(db_session, _status_event(lead, "interested"))

    task = db_session.scalars(select(CRMTask).where(CRMTask.lead_id == lead.id)).one()
    assert task.title == "Follow up with Arjun Rao"
    assert task.priority == "medium"
    assert task.completed is False
    assert task.assigned_user_id == "user-1"
    assert task.created_by == "user-1"
    due_at = task.due_at.replace(tzinfo=None)
    assert timedelta(hours=23, minutes=59) <= due_at - before <= timedelta(hours=24, minutes=1)


def test_wait_is_recorded_as_skipped(
    db_session: Session,
    engine: WorkflowEngine,
    messaging: StubMessagingClient,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_status_changed", "config": {"status": "interested"}},
        actions=[{"type": "wait", "config": {"duration": 48}}, *WHATSAPP],
    )

    execution_ids = engine.handle_event(db_session, _status_event(lead, "interested"))
    execution = db_session.get(CRMWorkflowExecution, execution_ids[0])
    assert execution is not None
    assert execution.status == "completed"
    logs = _logs(db_session, execution.id)
    assert logs[0].status == "skipped"
    assert logs[0].result == {"duration": 48, "awaited": False}
    assert len(messaging.sent) == 1


def test_execution_count_increments_per_run(
    db_session: Session,
    engine: WorkflowEngine,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    workflow = _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_status_changed", "config": {"status": "interested"}},
        actions=WHATSAPP,
    )

    engine.handle_event(db_session, _status_event(lead, "interested"))
    engine.handle_event(db_session, _status_event(lead, "interested", old_status="follow_up"))

    db_session.refresh(workflow)
    assert workflow.execution_count == 2
    assert workflow.last_executed_at is not None


def test_actions_beyond_cap_are_skipped(
    db_session: Session,
    engine: WorkflowEngine,
    messaging: StubMessagingClient,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("WORKFLOW_MAX_ACTIONS", "1")
    get_settings.cache_clear()
    _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_status_changed", "config": {"status": "interested"}},
        actions=[*WHATSAPP, {"type": "create_task", "config": {}}],
    )

    execution_ids = engine.handle_event(db_session, _status_event(lead, "interested"))
    execution = db_session.get(CRMWorkflowExecution, execution_ids[0])
    assert execution is not None
    logs = _logs(db_session, execution.id)
    assert [log.status for log in logs] == ["completed", "skipped"]
    assert logs[1].result == {"reason": "max_actions_exceeded", "max_actions": 1}
    assert db_session.scalars(select(CRMTask)).all() == []
    assert len(messaging.sent) == 1


def test_conditions_gate_execution(
    db_session: Session,
    engine: WorkflowEngine,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    trigger = {"type": "lead_status_changed", "config": {"status": "interested"}}
    _add_workflow(
        db_session,
        sub_account_id,
        name="Big deals",
        trigger=trigger,
        conditions=[{"field": "value", "operator": "greater_than", "value": 5000}],
        actions=WHATSAPP,
    )
    matching = _add_workflow(
        db_session,
        sub_account_id,
        name="Website leads",
        trigger=trigger,
        conditions=[
            {"field": "source", "operator": "equals", "value": "website"},
            {"field": "phone", "operator": "exists"},
        ],
        actions=WHATSAPP,
    )

    execution_ids = engine.handle_event(db_session, _status_event(lead, "interested"))
    assert len(execution_ids) == 1
    execution = db_session.get(CRMWorkflowExecution, execution_ids[0])
    assert execution is not None
    assert execution.workflow_id == matching.id


def test_matched_workflows_run_newest_first(
    db_session: Session,
    engine: WorkflowEngine,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    trigger = {"type": "lead_status_changed", "config": {"status": "interested"}}
    older = _add_workflow(db_session, sub_account_id, name="Older", trigger=trigger, actions=WHATSAPP)
    newer = _add_workflow(db_session, sub_account_id, name="Newer", trigger=trigger, actions=WHATSAPP)

    execution_ids = engine.handle_event(db_session, _status_event(lead, "interested"))
    workflow_ids = [db_session.get(CRMWorkflowExecution, item).workflow_id for item in execution_ids]
    assert workflow_ids == [newer.id, older.id]


def test_lead_created_trigger_and_parameter_mappings(
    db_session: Session,
    engine: WorkflowEngine,
    messaging: StubMessagingClient,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_created", "config": {}},
        actions=[
            {
                "type": "send_whatsapp",
                "config": {"templateId": "welcome", "parameterMappings": {"10": "source", "2": "phone", "1": "name"}},
            }
        ],
    )
    envelope = events.build_envelope(
        "crm.lead.created",
        actor_user_id="user-1",
        sub_account_id=sub_account_id,
        payload={"lead_id": str(lead.id), "status": lead.status},
    )

    execution_ids = engine.handle_event(db_session, envelope)

    assert len(execution_ids) == 1
    assert db_session.get(CRMWorkflowExecution, execution_ids[0]).triggered_by == "lead_created"
    assert messaging.sent[0]["template_name"] == "welcome"
    assert messaging.sent[0]["parameters"] == ["Arjun Rao", "+15550123", "website"]


def test_default_template_when_none_configured(
    db_session: Session,
    engine: WorkflowEngine,
    messaging: StubMessagingClient,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_status_changed", "config": {"status": "interested"}},
        actions=[{"type": "send_whatsapp", "config": {}}],
    )
    engine.handle_event(db_session, _status_event(lead, "interested"))
    assert messaging.sent[0]["template_name"] == "enquiry_thanks"
    assert messaging.sent[0]["parameters"] == []


def test_unknown_event_or_lead_is_ignored(
    db_session: Session,
    engine: WorkflowEngine,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING, logger="leadflow.workflows")
    _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_created", "config": {}},
        actions=WHATSAPP,
    )

    other_event = events.build_envelope(
        "crm.lead.deleted",
        actor_user_id="user-1",
        sub_account_id=sub_account_id,
        payload={"lead_id": str(lead.id)},
    )
    assert engine.handle_event(db_session, other_event) == []

    bad_lead = events.build_envelope(
        "crm.lead.created",
        actor_user_id="user-1",
        sub_account_id=sub_account_id,
        payload={"lead_id": "not-a-uuid"},
    )
    assert engine.handle_event(db_session, bad_lead) == []

    missing_lead = events.build_envelope(
        "crm.lead.created",
        actor_user_id="user-1",
        sub_account_id=sub_account_id,
        payload={"lead_id": str(uuid.uuid4())},
    )
    assert engine.handle_event(db_session, missing_lead) == []

    messages = [record.getMessage() for record in caplog.records if record.name == "leadflow.workflows"]
    assert "workflow.event_invalid" in messages
    assert "workflow.lead_not_found" in messages
    assert _executions(db_session) == []


def test_blank_wait_duration_does_not_block_other_actions(
    db_session: Session,
    engine: WorkflowEngine,
    messaging: StubMessagingClient,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_status_changed", "config": {"status": "interested"}},
        actions=[*WHATSAPP, {"type": "wait", "config": {"duration": None}}],
    )

    execution_ids = engine.handle_event(db_session, _status_event(lead, "interested"))

    assert len(execution_ids) == 1
    execution = db_session.get(CRMWorkflowExecution, execution_ids[0])
    assert execution is not None
    assert execution.status == "completed"
    assert [item["template_name"] for item in messaging.sent] == ["interest_ack"]
    logs = _logs(db_session, execution.id)
    assert [log.status for log in logs] == ["completed", "skipped"]
    assert logs[1].result == {"duration": 0, "awaited": False}


def test_inactive_workflows_are_not_parsed(
    db_session: Session,
    engine: WorkflowEngine,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING, logger="leadflow.workflows")
    _add_workflow(db_session, sub_account_id, trigger="{not json", actions="[oops", is_active=False)

    assert engine.handle_event(db_session, _status_event(lead, "interested")) == []
    assert not [record for record in caplog.records if record.getMessage().endswith("_parse_failed")]


@pytest.mark.parametrize(
    ("fields", "expected_error"),
    [
        ({"notes": "partial", "name": None}, "update_lead: fields cannot be null: name"),
        ({"email": "not-an-email"}, "update_lead: invalid lead fields: email"),
        ({"tags": "vip"}, "update_lead: invalid lead fields: tags"),
    ],
)
def test_update_lead_validates_values_before_writing(
    db_session: Session,
    engine: WorkflowEngine,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
    fields: dict[str, object],
    expected_error: str,
) -> None:
    _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_status_changed", "config": {"status": "interested"}},
        actions=[{"type": "update_lead", "config": {"fields": fields}}],
    )

    execution_ids = engine.handle_event(db_session, _status_event(lead, "interested"))

    execution = db_session.get(CRMWorkflowExecution, execution_ids[0])
    assert execution is not None
    assert execution.error == expected_error
    db_session.refresh(lead)
    assert lead.name == "Arjun Rao"
    assert lead.email is None
    assert lead.notes is None
    assert lead.tags in (None, [])


def test_database_failure_rolls_back_action_and_keeps_sql_out_of_feed(
    db_session: Session,
    engine: WorkflowEngine,
    lead: CRMLead,
    sub_account_id: uuid.UUID,
) -> None:
    def reject_partial_notes(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
        if "partial" in inspect(target).attrs.notes.history.added:
            raise IntegrityError(
                "UPDATE crm_lead SET notes=? WHERE crm_lead.id = ?",
                ("partial", str(target.id)),
                Exception("CHECK constraint failed: crm_lead_notes"),
            )

    _add_workflow(
        db_session,
        sub_account_id,
        trigger={"type": "lead_status_changed", "config": {"status": "interested"}},
        actions=[
            {"type": "update_lead", "config": {"fields": {"notes": "partial"}}},
            {"type": "create_task", "config": {"title": "Call back"}},
        ],
    )
    event.listen(CRMLead, "before_update", reject_partial_notes)
    try:
        execution_ids = engine.handle_event(db_session, _status_event(lead, "interested"))
    finally:
        event.remove(CRMLead, "before_update", reject_partial_notes)

    execution = db_session.get(CRMWorkflowExecution, execution_ids[0])
    assert execution is not None
    assert execution.status == "failed"
    assert execution.error == "update_lead: database error: CHECK constraint failed: crm_lead_notes"
    logs = _logs(db_session, execution.id)
    assert [log.status for log in logs] == ["failed", "completed"]
    assert "[SQL" not in (logs[0].error or "")

    db_session.refresh(lead)
    assert lead.notes is None
    task = db_session.scalars(select(CRMTask).where(CRMTask.lead_id == lead.id)).one()
    assert task.title == "Call back"
    activities = db_session.scalars(select(CRMLeadActivity).where(CRMLeadActivity.lead_id == lead.id)).all()
    assert activities
    assert not [activity for activity in activities if "[SQL" in activity.content or "partial" in activity.content]
