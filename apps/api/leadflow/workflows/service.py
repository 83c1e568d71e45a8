from __future__ import annotations

import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session, selectinload

from leadflow import audit
from leadflow.crm.models import CRMWorkflow, CRMWorkflowExecution, utcnow
from leadflow.crm.schemas import (
    WorkflowCreate,
    WorkflowExecutionDetail,
    WorkflowExecutionRead,
    WorkflowRead,
    WorkflowReplace,
    WorkflowUpdate,
)
from leadflow.crm.service import ActorUser, enforce_sub_account_access, lead_service, resolve_sub_account_id
from leadflow.workflows.engine import WorkflowEngine, WorkflowParseError, parse_actions


class WorkflowService:
    entity_type = "crm.workflow"

    def __init__(self, engine: WorkflowEngine) -> None:
        self.engine = engine

    def list_workflows(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        sub_account_id: uuid.UUID | None,
    ) -> list[WorkflowRead]:
        self._require_permission(actor_user, "crm.workflows.read")
        resolved_sub_account_id = resolve_sub_account_id(actor_user, sub_account_id)
        stmt: Select[tuple[CRMWorkflow]] = select(CRMWorkflow).where(
            and_(CRMWorkflow.sub_account_id == resolved_sub_account_id, CRMWorkflow.deleted_at.is_(None))
        )
        rows = session.scalars(stmt.order_by(CRMWorkflow.created_at.desc())).all()
        return [self._to_read(row) for row in rows]

    def get_workflow(self, session: Session, actor_user: ActorUser, workflow_id: uuid.UUID) -> WorkflowRead:
        self._require_permission(actor_user, "crm.workflows.read")
        return self._to_read(self._load_visible(session, actor_user, workflow_id))

    def create_workflow(self, session: Session, actor_user: ActorUser, dto: WorkflowCreate) -> WorkflowRead:
        self._require_permission(actor_user, "crm.workflows.manage")
        enforce_sub_account_access(actor_user, dto.sub_account_id)

        workflow = CRMWorkflow(
            sub_account_id=dto.sub_account_id,
            name=dto.name.strip(),
            description=dto.description,
            trigger_json=dto.trigger.model_dump(mode="json"),
            conditions_json=[item.model_dump(mode="json") for item in dto.conditions],
            actions_json=[item.model_dump(mode="json") for item in dto.actions],
            is_active=dto.is_active,
            created_by=actor_user.user_id,
        )
        session.add(workflow)
        session.flush()
        created = self._to_read(workflow)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=workflow.id,
            sub_account_id=workflow.sub_account_id,
            action="workflow.created",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return created

    def replace_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        dto: WorkflowReplace,
    ) -> WorkflowRead:
        self._require_permission(actor_user, "crm.workflows.manage")
        workflow = self._load_visible(session, actor_user, workflow_id)
        before = self._to_read(workflow).model_dump(mode="json")

        workflow.name = dto.name.strip()
        workflow.description = dto.description
        workflow.trigger_json = dto.trigger.model_dump(mode="json")
        workflow.conditions_json = [item.model_dump(mode="json") for item in dto.conditions]
        workflow.actions_json = [item.model_dump(mode="json") for item in dto.actions]
        workflow.is_active = dto.is_active
        return self._finish_update(session, actor_user, workflow, before)

    def update_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        dto: WorkflowUpdate,
    ) -> WorkflowRead:
        self._require_permission(actor_user, "crm.workflows.manage")
        workflow = self._load_visible(session, actor_user, workflow_id)
        before = self._to_read(workflow).model_dump(mode="json")

        changes = dto.model_dump(exclude_unset=True)
        for required_field in ("name", "trigger", "actions", "is_active"):
            if required_field in changes and changes[required_field] is None:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"{required_field} cannot be null",
                )
        if not changes:
            return self._to_read(workflow)

        if "name" in changes:
            workflow.name = dto.name.strip()
        if "description" in changes:
            workflow.description = dto.description
        if "trigger" in changes:
            workflow.trigger_json = dto.trigger.model_dump(mode="json")
        if "conditions" in changes:
            workflow.conditions_json = [item.model_dump(mode="json") for item in dto.conditions or []]
        if "actions" in changes:
            workflow.actions_json = [item.model_dump(mode="json") for item in dto.actions]
        if "is_active" in changes:
            workflow.is_active = dto.is_active
        return self._finish_update(session, actor_user, workflow, before)

    def soft_delete_workflow(self, session: Session, actor_user: ActorUser, workflow_id: uuid.UUID) -> None:
        self._require_permission(actor_user, "crm.workflows.manage")
        workflow = self._load_visible(session, actor_user, workflow_id)
        before = self._to_read(workflow).model_dump(mode="json")
        workflow.deleted_at = utcnow()
        workflow.is_active = False
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=workflow.id,
            sub_account_id=workflow.sub_account_id,
            action="workflow.deleted",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

    def list_executions(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        sub_account_id: uuid.UUID | None,
        workflow_id: uuid.UUID | None = None,
        limit: int = 50,
    ) -> list[WorkflowExecutionRead]:
        self._require_permission(actor_user, "crm.workflows.read")
        resolved_sub_account_id = resolve_sub_account_id(actor_user, sub_account_id)
        stmt: Select[tuple[CRMWorkflowExecution]] = (
            select(CRMWorkflowExecution)
            .join(CRMWorkflow, CRMWorkflow.id == CRMWorkflowExecution.workflow_id)
            .where(CRMWorkflow.sub_account_id == resolved_sub_account_id)
        )
        if workflow_id is not None:
            stmt = stmt.where(CRMWorkflowExecution.workflow_id == workflow_id)
        rows = session.scalars(stmt.order_by(CRMWorkflowExecution.started_at.desc()).limit(limit)).all()
        return [WorkflowExecutionRead.model_validate(row) for row in rows]

    def get_execution(self, session: Session, actor_user: ActorUser, execution_id: uuid.UUID) -> WorkflowExecutionDetail:
        self._require_permission(actor_user, "crm.workflows.read")
        row = session.execute(
            select(CRMWorkflowExecution, CRMWorkflow.sub_account_id)
            .join(CRMWorkflow, CRMWorkflow.id == CRMWorkflowExecution.workflow_id)
            .where(CRMWorkflowExecution.id == execution_id)
            .options(selectinload(CRMWorkflowExecution.action_logs))
        ).first()
        if row is None or not self._can_view(actor_user, row[1]):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="workflow execution not found")
        return WorkflowExecutionDetail.model_validate(row[0])

    def run_manual(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        lead_id: uuid.UUID,
    ) -> WorkflowExecutionDetail:
        if "crm.workflows.manage" not in actor_user.permissions and "crm.workflows.execute" not in actor_user.permissions:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: crm.workflows.execute")

        workflow = self._load_visible(session, actor_user, workflow_id)
        if not workflow.is_active:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="workflow is inactive")

        lead = lead_service.load_lead_in_sub_account(session, lead_id, workflow.sub_account_id)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")

        try:
            actions = parse_actions(workflow.actions_json)
        except WorkflowParseError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

        execution = self.engine.run_workflow(
            session,
            workflow,
            actions,
            lead,
            triggered_by="manual",
            actor_user_id=actor_user.user_id,
        )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=workflow_id,
            sub_account_id=workflow.sub_account_id,
            action="workflow.executed",
            before=None,
            after={"execution_id": str(execution.id), "lead_id": str(lead_id), "status": execution.status},
            correlation_id=actor_user.correlation_id,
        )
        return self.get_execution(session, actor_user, execution.id)

    def _finish_update(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow: CRMWorkflow,
        before: dict[str, Any],
    ) -> WorkflowRead:
        workflow.updated_at = utcnow()
        session.flush()
        updated = self._to_read(workflow)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=workflow.id,
            sub_account_id=workflow.sub_account_id,
            action="workflow.updated",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return updated

    def _load_visible(self, session: Session, actor_user: ActorUser, workflow_id: uuid.UUID) -> CRMWorkflow:
        workflow = session.scalar(
            select(CRMWorkflow).where(and_(CRMWorkflow.id == workflow_id, CRMWorkflow.deleted_at.is_(None)))
        )
        if workflow is None or not self._can_view(actor_user, workflow.sub_account_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="workflow not found")
        return workflow

    def _can_view(self, actor_user: ActorUser, sub_account_id: uuid.UUID) -> bool:
        return actor_user.is_super_admin or sub_account_id in set(actor_user.allowed_sub_account_ids)

    def _to_read(self, workflow: CRMWorkflow) -> WorkflowRead:
        return WorkflowRead.model_validate(
            {
                "id": workflow.id,
                "sub_account_id": workflow.sub_account_id,
                "name": workflow.name,
                "description": workflow.description,
                "trigger": workflow.trigger_json,
                "conditions": workflow.conditions_json,
                "actions": workflow.actions_json,
                "is_active": workflow.is_active,
                "created_by": workflow.created_by,
                "execution_count": workflow.execution_count,
                "last_executed_at": workflow.last_executed_at,
                "created_at": workflow.created_at,
                "updated_at": workflow.updated_at,
            }
        )

    def _require_permission(self, actor_user: ActorUser, permission: str) -> None:
        if permission not in actor_user.permissions:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")
