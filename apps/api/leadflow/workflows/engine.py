from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from opentelemetry import trace
from pydantic import ValidationError
from sqlalchemy import Select, and_, select, update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.context import get_correlation_id, workflow_scope
from leadflow.core.config import get_settings
from leadflow.crm.models import (
    CRMLead,
    CRMTask,
    CRMWorkflow,
    CRMWorkflowActionLog,
    CRMWorkflowExecution,
    utcnow,
)
from leadflow.crm.schemas import (
    LeadUpdate,
    WorkflowAction,
    WorkflowActionCreateTask,
    WorkflowActionSendEmail,
    WorkflowActionSendSms,
    WorkflowActionSendWhatsapp,
    WorkflowActionUpdateLead,
    WorkflowActionWait,
    WorkflowConditionItem,
    WorkflowTrigger,
    workflow_actions_adapter,
    workflow_conditions_adapter,
    workflow_trigger_adapter,
)
from leadflow.crm.service import activity_service, is_valid_lead_status
from leadflow.messaging import MessagingClient, build_messaging_client
from leadflow.metrics import observe_workflow_action, observe_workflow_execution, observe_workflow_parse_failure
from leadflow.workflows.conditions import evaluate_conditions, lead_context


logger = logging.getLogger("leadflow.workflows")
tracer = trace.get_tracer("leadflow.workflows")

EVENT_TRIGGER_TYPES = {
    "crm.lead.created": "lead_created",
    "crm.lead.status_changed": "lead_status_changed",
}

LEAD_UPDATE_ALLOWLIST = {
    "status",
    "source",
    "assigned_user_id",
    "company",
    "position",
    "notes",
    "value",
    "tags",
    "email",
    "name",
}

LEAD_REQUIRED_FIELDS = ("name", "status")

TASK_PRIORITIES = {"low", "medium", "high"}


class WorkflowParseError(Exception):
    def __init__(self, part: str, message: str) -> None:
        super().__init__(f"invalid workflow {part}: {message}")
        self.part = part


class WorkflowActionError(Exception):
    pass


@dataclass
class ParsedWorkflow:
    workflow: CRMWorkflow
    trigger: WorkflowTrigger
    conditions: list[WorkflowConditionItem]
    actions: list[WorkflowAction]


@dataclass
class ActionContext:
    workflow_id: uuid.UUID
    workflow_name: str
    lead: CRMLead
    actor_user_id: str
    triggered_by: str


@dataclass
class ActionOutcome:
    status: str
    activity_type: str
    content: str
    result: dict[str, Any] = field(default_factory=dict)


def _load_blob(raw: Any) -> Any:
    if isinstance(raw, (str, bytes)):
        return json.loads(raw)
    return raw


def parse_trigger(raw: Any) -> WorkflowTrigger:
    try:
        return workflow_trigger_adapter.validate_python(_load_blob(raw))
    except ValueError as exc:
        raise WorkflowParseError("trigger", str(exc)) from exc


def parse_conditions(raw: Any) -> list[WorkflowConditionItem]:
    try:
        value = _load_blob(raw)
        if value is None or value == {}:
            return []
        return workflow_conditions_adapter.validate_python(value)
    except ValueError as exc:
        raise WorkflowParseError("conditions", str(exc)) from exc


def parse_actions(raw: Any) -> list[WorkflowAction]:
    try:
        return workflow_actions_adapter.validate_python(_load_blob(raw))
    except ValueError as exc:
        raise WorkflowParseError("actions", str(exc)) from exc


def trigger_matches(trigger: WorkflowTrigger, trigger_type: str, new_status: str | None = None) -> bool:
    if trigger.type != trigger_type:
        return False
    if trigger_type == "lead_status_changed":
        expected = trigger.config.get("status")
        return expected is not None and new_status is not None and expected == new_status
    return True


def triggered_by_label(trigger_type: str, new_status: str | None = None) -> str:
    if trigger_type == "lead_status_changed":
        return f"status_changed_to_{new_status}"
    return trigger_type


class WorkflowEngine:
    """Evaluates lead events against stored workflows and runs the matches inline.

    Parse failures skip the offending workflow; action failures are recorded
    and the remaining actions still run. Nothing raised by a single workflow
    reaches the caller of ``handle_event``.
    """

    def __init__(self, messaging_client: MessagingClient | None = None) -> None:
        self._messaging_client = messaging_client

    @property
    def messaging_client(self) -> MessagingClient:
        if self._messaging_client is None:
            self._messaging_client = build_messaging_client(get_settings())
        return self._messaging_client

    @messaging_client.setter
    def messaging_client(self, client: MessagingClient | None) -> None:
        self._messaging_client = client

    def close(self) -> None:
        """Release the messaging client; the next run builds a fresh one."""
        client, self._messaging_client = self._messaging_client, None
        if client is not None:
            client.close()

    def handle_event(self, session: Session, envelope: dict[str, Any]) -> list[uuid.UUID]:
        event_type = envelope.get("event_type")
        trigger_type = EVENT_TRIGGER_TYPES.get(str(event_type))
        if trigger_type is None:
            return []

        payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
        try:
            lead_id = uuid.UUID(str(payload.get("lead_id")))
        except ValueError:
            logger.warning("workflow.event_invalid", extra={"event_type": event_type})
            return []

        lead = session.scalar(select(CRMLead).where(CRMLead.id == lead_id))
        if lead is None:
            logger.warning("workflow.lead_not_found", extra={"event_type": event_type, "lead_id": str(lead_id)})
            return []

        new_status = payload.get("new_status") if trigger_type == "lead_status_changed" else None
        actor_user_id = str(envelope.get("actor_user_id") or "system")
        triggered_by = triggered_by_label(trigger_type, new_status)

        execution_ids: list[uuid.UUID] = []
        for parsed in self.find_matching_workflows(session, lead.sub_account_id, trigger_type, new_status):
            if not evaluate_conditions(parsed.conditions, lead_context(lead)):
                logger.info(
                    "workflow.conditions_not_met",
                    extra={"workflow_id": str(parsed.workflow.id), "lead_id": str(lead.id)},
                )
                continue
            execution = self.run_workflow(
                session,
                parsed.workflow,
                parsed.actions,
                lead,
                triggered_by=triggered_by,
                actor_user_id=actor_user_id,
            )
            execution_ids.append(execution.id)
        return execution_ids

    def find_matching_workflows(
        self,
        session: Session,
        sub_account_id: uuid.UUID,
        trigger_type: str,
        new_status: str | None = None,
    ) -> list[ParsedWorkflow]:
        stmt: Select[tuple[CRMWorkflow]] = select(CRMWorkflow).where(
            and_(
                CRMWorkflow.sub_account_id == sub_account_id,
                CRMWorkflow.deleted_at.is_(None),
            )
        )
        workflows = session.scalars(stmt.order_by(CRMWorkflow.created_at.desc())).all()

        matched: list[ParsedWorkflow] = []
        for workflow in workflows:
            if not workflow.is_active:
                continue
            try:
                trigger = parse_trigger(workflow.trigger_json)
            except WorkflowParseError as exc:
                self._log_parse_failure(workflow, exc)
                continue

            if not trigger_matches(trigger, trigger_type, new_status):
                continue

            try:
                conditions = parse_conditions(workflow.conditions_json)
                actions = parse_actions(workflow.actions_json)
            except WorkflowParseError as exc:
                self._log_parse_failure(workflow, exc)
                continue
            matched.append(ParsedWorkflow(workflow=workflow, trigger=trigger, conditions=conditions, actions=actions))
        return matched

    def run_workflow(
        self,
        session: Session,
        workflow: CRMWorkflow,
        actions: list[WorkflowAction],
        lead: CRMLead,
        *,
        triggered_by: str,
        actor_user_id: str,
    ) -> CRMWorkflowExecution:
        settings = get_settings()
        started = time.perf_counter()
        context = ActionContext(
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            lead=lead,
            actor_user_id=actor_user_id,
            triggered_by=triggered_by,
        )

        with tracer.start_as_current_span("workflow.execute") as span, workflow_scope(
            workflow_id=context.workflow_id, lead_id=lead.id
        ):
            span.set_attribute("workflow_id", str(context.workflow_id))
            span.set_attribute("lead_id", str(lead.id))
            span.set_attribute("triggered_by", triggered_by)
            span.set_attribute("correlation_id", get_correlation_id() or "")

            execution = CRMWorkflowExecution(
                workflow_id=context.workflow_id,
                lead_id=lead.id,
                status="running",
                triggered_by=triggered_by,
            )
            session.add(execution)
            session.execute(
                update(CRMWorkflow)
                .where(CRMWorkflow.id == context.workflow_id)
                .values(execution_count=CRMWorkflow.execution_count + 1, last_executed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            execution_id = execution.id
            span.set_attribute("execution_id", str(execution_id))
            logger.info(
                "workflow.started",
                extra={
                    "workflow_id": str(context.workflow_id),
                    "execution_id": str(execution_id),
                    "lead_id": str(lead.id),
                },
            )

            with workflow_scope(execution_id=execution_id):
                counts = {"completed": 0, "failed": 0, "skipped": 0}
                errors: list[str] = []
                for position, action in enumerate(actions):
                    if position >= settings.workflow_max_actions:
                        self._append_action_log(
                            session,
                            context,
                            execution_id,
                            position,
                            action,
                            status="skipped",
                            result={"reason": "max_actions_exceeded", "max_actions": settings.workflow_max_actions},
                        )
                        session.commit()
                        counts["skipped"] += 1
                        observe_workflow_action(action.type, "skipped")
                        continue

                    try:
                        outcome = self._execute_action(session, context, action)
                        self._append_action_log(
                            session,
                            context,
                            execution_id,
                            position,
                            action,
                            status=outcome.status,
                            result=outcome.result,
                        )
                        activity_service.add_activity(
                            session,
                            lead,
                            user_id=actor_user_id,
                            activity_type=outcome.activity_type,
                            content=outcome.content,
                            metadata=self._activity_metadata(context, action, outcome.result),
                        )
                        session.commit()
                        counts[outcome.status] += 1
                        observe_workflow_action(action.type, outcome.status)
                    except Exception as exc:
                        session.rollback()
                        message = _failure_message(exc)
                        errors.append(f"{action.type}: {message}")
                        counts["failed"] += 1
                        observe_workflow_action(action.type, "failed")
                        logger.warning(
                            "workflow.action_failed",
                            extra={
                                "workflow_id": str(context.workflow_id),
                                "execution_id": str(execution_id),
                                "lead_id": str(lead.id),
                                "action_type": action.type,
                                "error": message,
                            },
                        )
                        self._append_action_log(
                            session,
                            context,
                            execution_id,
                            position,
                            action,
                            status="failed",
                            error=message,
                        )
                        activity_service.add_activity(
                            session,
                            lead,
                            user_id=actor_user_id,
                            activity_type="other",
                            content=f'Workflow "{context.workflow_name}" failed: {action.type} - {message}',
                            metadata={**self._activity_metadata(context, action, None), "error": message},
                        )
                        session.commit()

                final_status = "failed" if errors else "completed"
                execution = session.scalar(select(CRMWorkflowExecution).where(CRMWorkflowExecution.id == execution_id))
                execution.status = final_status
                execution.error = "; ".join(errors) if errors else None
                execution.completed_at = utcnow()
                execution.execution_data = {
                    "lead_id": str(lead.id),
                    "workflow_name": context.workflow_name,
                    "actions_total": len(actions),
                    "actions_completed": counts["completed"],
                    "actions_failed": counts["failed"],
                    "actions_skipped": counts["skipped"],
                }
                session.commit()

                span.set_attribute("status", final_status)
                observe_workflow_execution(final_status, time.perf_counter() - started)
                logger.info(
                    "workflow.finished",
                    extra={
                        "workflow_id": str(context.workflow_id),
                        "execution_id": str(execution_id),
                        "lead_id": str(lead.id),
                        "status": final_status,
                    },
                )
                return execution

    def _execute_action(self, session: Session, context: ActionContext, action: WorkflowAction) -> ActionOutcome:
        if isinstance(action, WorkflowActionSendWhatsapp):
            return self._send_whatsapp(context, action)
        if isinstance(action, WorkflowActionSendEmail):
            return self._send_email(context, action)
        if isinstance(action, WorkflowActionSendSms):
            return self._send_sms(context, action)
        if isinstance(action, WorkflowActionUpdateLead):
            return self._update_lead(session, context, action)
        if isinstance(action, WorkflowActionCreateTask):
            return self._create_task(session, context, action)
        if isinstance(action, WorkflowActionWait):
            return self._wait(context, action)
        raise WorkflowActionError(f"unsupported action type: {action.type}")

    def _send_whatsapp(self, context: ActionContext, action: WorkflowActionSendWhatsapp) -> ActionOutcome:
        lead = context.lead
        if not lead.phone:
            raise WorkflowActionError("lead has no phone number")
        config = action.config
        template_name = str(
            config.get("templateName") or config.get("templateId") or get_settings().default_whatsapp_template
        )
        parameters = self._resolve_template_parameters(config.get("parameterMappings"), lead)
        response = self.messaging_client.send_whatsapp_template(
            lead_id=lead.id,
            phone=lead.phone,
            template_name=template_name,
            parameters=parameters,
        )
        return ActionOutcome(
            status="completed",
            activity_type="whatsapp",
            content=f'Workflow "{context.workflow_name}" executed: WhatsApp template "{template_name}" sent automatically',
            result={"template_name": template_name, "parameters": parameters, "response": response},
        )

    def _send_email(self, context: ActionContext, action: WorkflowActionSendEmail) -> ActionOutcome:
        lead = context.lead
        if not lead.email:
            raise WorkflowActionError("lead has no email address")
        config = action.config
        template_id = config.get("templateId")
        response = self.messaging_client.send_email(
            lead_id=lead.id,
            to=lead.email,
            subject=config.get("subject"),
            body=config.get("body"),
            template_id=str(template_id) if template_id is not None else None,
        )
        label = f'template "{template_id}"' if template_id else "message"
        return ActionOutcome(
            status="completed",
            activity_type="email",
            content=f'Workflow "{context.workflow_name}" executed: email {label} sent to {lead.email}',
            result={"to": lead.email, "template_id": template_id, "response": response},
        )

    def _send_sms(self, context: ActionContext, action: WorkflowActionSendSms) -> ActionOutcome:
        lead = context.lead
        if not lead.phone:
            raise WorkflowActionError("lead has no phone number")
        config = action.config
        template_id = config.get("templateId")
        response = self.messaging_client.send_sms(
            lead_id=lead.id,
            phone=lead.phone,
            message=config.get("message"),
            template_id=str(template_id) if template_id is not None else None,
        )
        return ActionOutcome(
            status="completed",
            activity_type="sms",
            content=f'Workflow "{context.workflow_name}" executed: SMS sent to {lead.phone}',
            result={"phone": lead.phone, "template_id": template_id, "response": response},
        )

    def _update_lead(self, session: Session, context: ActionContext, action: WorkflowActionUpdateLead) -> ActionOutcome:
        raw_fields = action.config.get("fields", action.config)
        if not isinstance(raw_fields, dict) or not raw_fields:
            raise WorkflowActionError("update_lead requires at least one field")

        rejected = sorted(key for key in raw_fields if key not in LEAD_UPDATE_ALLOWLIST)
        if rejected:
            raise WorkflowActionError(f"fields not updatable: {', '.join(rejected)}")
        nulled = sorted(key for key in LEAD_REQUIRED_FIELDS if key in raw_fields and raw_fields[key] is None)
        if nulled:
            raise WorkflowActionError(f"fields cannot be null: {', '.join(nulled)}")
        if "status" in raw_fields and not is_valid_lead_status(raw_fields["status"]):
            raise WorkflowActionError(f"invalid lead status: {raw_fields['status']}")
        try:
            validated = LeadUpdate.model_validate(raw_fields)
        except ValidationError as exc:
            invalid = sorted({str(error["loc"][0]) for error in exc.errors() if error["loc"]})
            raise WorkflowActionError(f"invalid lead fields: {', '.join(invalid)}") from exc
        values = validated.model_dump(mode="json", include=set(raw_fields))

        lead = context.lead
        before = {key: getattr(lead, key) for key in values}
        # Direct write: no status_changed event is published, so no workflow re-entry.
        for key, value in values.items():
            setattr(lead, key, value)
        session.flush()
        changed = ", ".join(f"{key}={value}" for key, value in sorted(values.items()))
        return ActionOutcome(
            status="completed",
            activity_type="other",
            content=f'Workflow "{context.workflow_name}" executed: lead updated ({changed})',
            result={"before": before, "after": values},
        )

    def _create_task(self, session: Session, context: ActionContext, action: WorkflowActionCreateTask) -> ActionOutcome:
        lead = context.lead
        config = action.config
        title = str(config.get("title") or f"Follow up with {lead.name}")
        try:
            due_in_hours = float(config.get("due_in_hours", config.get("dueInHours", 24)))
        except (TypeError, ValueError) as exc:
            raise WorkflowActionError("due_in_hours must be a number") from exc
        priority = str(config.get("priority") or "medium")
        if priority not in TASK_PRIORITIES:
            raise WorkflowActionError(f"invalid task priority: {priority}")
        assignee = str(config.get("assigned_user_id") or lead.assigned_user_id or context.actor_user_id)

        task = CRMTask(
            sub_account_id=lead.sub_account_id,
            lead_id=lead.id,
            title=title,
            description=config.get("description"),
            due_at=utcnow() + timedelta(hours=due_in_hours),
            priority=priority,
            assigned_user_id=assignee,
            created_by=context.actor_user_id,
        )
        session.add(task)
        session.flush()
        return ActionOutcome(
            status="completed",
            activity_type="other",
            content=f'Workflow "{context.workflow_name}" executed: task "{title}" created',
            result={"task_id": str(task.id), "title": title, "due_at": task.due_at.isoformat(), "priority": priority},
        )

    def _wait(self, context: ActionContext, action: WorkflowActionWait) -> ActionOutcome:
        duration = action.config.get("duration", 0)
        return ActionOutcome(
            status="skipped",
            activity_type="other",
            content=f'Workflow "{context.workflow_name}": wait of {duration} hour(s) recorded, not awaited',
            result={"duration": duration, "awaited": False},
        )

    def _resolve_template_parameters(self, mappings: Any, lead: CRMLead) -> list[str]:
        if not mappings:
            return []
        fields = lead_context(lead)
        if isinstance(mappings, dict):
            ordered = [mappings[key] for key in sorted(mappings, key=_parameter_index)]
        elif isinstance(mappings, list):
            ordered = list(mappings)
        else:
            raise WorkflowActionError("parameterMappings must be an object or a list")
        parameters: list[str] = []
        for field_name in ordered:
            value = fields.get(str(field_name))
            parameters.append("" if value is None else str(value))
        return parameters

    def _append_action_log(
        self,
        session: Session,
        context: ActionContext,
        execution_id: uuid.UUID,
        position: int,
        action: WorkflowAction,
        *,
        status: str,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> CRMWorkflowActionLog:
        row = CRMWorkflowActionLog(
            execution_id=execution_id,
            workflow_id=context.workflow_id,
            position=position,
            action_type=action.type,
            action_data=action.model_dump(mode="json"),
            status=status,
            result=_json_safe(result) if result is not None else None,
            error=error,
        )
        session.add(row)
        return row

    def _activity_metadata(
        self,
        context: ActionContext,
        action: WorkflowAction,
        result: dict[str, Any] | None,
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "workflow_id": str(context.workflow_id),
            "workflow_name": context.workflow_name,
            "action_type": action.type,
            "trigger": context.triggered_by,
            "automated": True,
        }
        if result and "template_name" in result:
            metadata["template_name"] = result["template_name"]
        return metadata

    def _log_parse_failure(self, workflow: CRMWorkflow, exc: WorkflowParseError) -> None:
        observe_workflow_parse_failure(exc.part)
        logger.warning(
            f"workflow.{exc.part}_parse_failed",
            extra={"workflow_id": str(workflow.id), "part": exc.part, "error": str(exc)},
        )


def _parameter_index(key: Any) -> tuple[int, str]:
    text = str(key)
    return (int(text), text) if text.isdigit() else (10**6, text)


def _failure_message(exc: Exception) -> str:
    # Driver errors carry the SQL statement and bound values; keep only the reason.
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        return f"database error: {exc.orig}"
    if isinstance(exc, SQLAlchemyError):
        return f"database error: {exc.__class__.__name__}"
    return str(exc) or exc.__class__.__name__


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


workflow_engine = WorkflowEngine()
