from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session

from leadflow import audit, events
from leadflow.crm.models import ACTIVITY_TYPES, LEAD_STATUSES, CRMLead, CRMLeadActivity, CRMTask, utcnow
from leadflow.crm.schemas import (
    LeadActivityRead,
    LeadCreate,
    LeadRead,
    LeadStatusUpdateResponse,
    LeadUpdate,
    TaskRead,
)


@dataclass
class ActorUser:
    user_id: str
    allowed_sub_account_ids: list[uuid.UUID]
    current_sub_account_id: uuid.UUID | None
    permissions: set[str]
    is_super_admin: bool = False
    correlation_id: str | None = None


def can_access_sub_account(actor_user: ActorUser, sub_account_id: uuid.UUID) -> bool:
    if actor_user.is_super_admin:
        return True
    return sub_account_id in set(actor_user.allowed_sub_account_ids)


def enforce_sub_account_access(actor_user: ActorUser, sub_account_id: uuid.UUID) -> None:
    if not can_access_sub_account(actor_user, sub_account_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied for sub_account_id")


def resolve_sub_account_id(actor_user: ActorUser, sub_account_id: uuid.UUID | None) -> uuid.UUID:
    resolved = sub_account_id or actor_user.current_sub_account_id
    if resolved is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="sub_account_id is required")
    enforce_sub_account_access(actor_user, resolved)
    return resolved


class ActivityService:
    def add_activity(
        self,
        session: Session,
        lead: CRMLead,
        *,
        user_id: str,
        activity_type: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        direction: str = "outgoing",
    ) -> CRMLeadActivity:
        if activity_type not in ACTIVITY_TYPES:
            raise ValueError(f"Unknown activity type: {activity_type}")
        activity = CRMLeadActivity(
            lead_id=lead.id,
            user_id=user_id,
            activity_type=activity_type,
            content=content,
            metadata_json=metadata,
            direction=direction,
        )
        session.add(activity)
        lead.last_activity_at = utcnow()
        return activity

    def list_for_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> list[LeadActivityRead]:
        lead = lead_service.load_visible_lead(session, actor_user, lead_id)
        rows = session.scalars(
            select(CRMLeadActivity)
            .where(CRMLeadActivity.lead_id == lead.id)
            .order_by(CRMLeadActivity.created_at.desc())
        ).all()
        return [LeadActivityRead.model_validate(row) for row in rows]


class TaskService:
    def list_tasks(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        sub_account_id: uuid.UUID | None,
        lead_id: uuid.UUID | None,
    ) -> list[TaskRead]:
        resolved_sub_account_id = resolve_sub_account_id(actor_user, sub_account_id)
        stmt: Select[tuple[CRMTask]] = select(CRMTask).where(CRMTask.sub_account_id == resolved_sub_account_id)
        if lead_id is not None:
            stmt = stmt.where(CRMTask.lead_id == lead_id)
        rows = session.scalars(stmt.order_by(CRMTask.due_at.asc())).all()
        return [TaskRead.model_validate(row) for row in rows]


class LeadService:
    entity_type = "crm.lead"

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        enforce_sub_account_access(actor_user, dto.sub_account_id)

        lead = CRMLead(
            sub_account_id=dto.sub_account_id,
            name=dto.name.strip(),
            phone=dto.phone.strip(),
            email=str(dto.email) if dto.email is not None else None,
            status=dto.status,
            source=dto.source,
            assigned_user_id=dto.assigned_user_id,
            company=dto.company,
            position=dto.position,
            notes=dto.notes,
            value=dto.value,
            tags=dto.tags,
        )
        session.add(lead)
        session.flush()
        lead_read = LeadRead.model_validate(lead)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=lead.id,
            sub_account_id=lead.sub_account_id,
            action="create",
            before=None,
            after=lead_read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        events.publish(
            events.build_envelope(
                "crm.lead.created",
                actor_user_id=actor_user.user_id,
                sub_account_id=lead_read.sub_account_id,
                payload={"lead_id": str(lead_read.id), "status": lead_read.status},
            )
        )
        return lead_read

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        sub_account_id: uuid.UUID | None,
        status_filter: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LeadRead]:
        resolved_sub_account_id = resolve_sub_account_id(actor_user, sub_account_id)
        stmt: Select[tuple[CRMLead]] = select(CRMLead).where(CRMLead.sub_account_id == resolved_sub_account_id)
        if status_filter:
            stmt = stmt.where(CRMLead.status == status_filter)
        rows = session.scalars(stmt.order_by(CRMLead.created_at.desc()).offset(offset).limit(limit)).all()
        return [LeadRead.model_validate(row) for row in rows]

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(self.load_visible_lead(session, actor_user, lead_id))

    def update_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadUpdate,
    ) -> LeadStatusUpdateResponse:
        lead = self.load_visible_lead(session, actor_user, lead_id)
        payload = dto.model_dump(exclude_unset=True)
        if "email" in payload:
            payload["email"] = str(payload["email"]) if payload["email"] is not None else None
        for required_field in ("name", "phone", "status"):
            if required_field in payload and payload[required_field] is None:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"{required_field} cannot be null",
                )

        old_status = lead.status
        before = LeadRead.model_validate(lead).model_dump(mode="json")
        for key, value in payload.items():
            setattr(lead, key, value)

        new_status = lead.status
        status_changed = new_status != old_status
        if status_changed:
            activity_service.add_activity(
                session,
                lead,
                user_id=actor_user.user_id,
                activity_type="status_change",
                content=f"Status changed from {old_status} to {new_status}",
                metadata={"old_status": old_status, "new_status": new_status},
                direction="internal",
            )
        session.flush()
        updated = LeadRead.model_validate(lead)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=lead.id,
            sub_account_id=lead.sub_account_id,
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

        if status_changed:
            events.publish(
                events.build_envelope(
                    "crm.lead.status_changed",
                    actor_user_id=actor_user.user_id,
                    sub_account_id=updated.sub_account_id,
                    payload={
                        "lead_id": str(updated.id),
                        "old_status": old_status,
                        "new_status": new_status,
                    },
                )
            )
        return LeadStatusUpdateResponse(updated_lead=updated, old_status=old_status, status_changed=status_changed)

    def load_visible_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> CRMLead:
        lead = session.scalar(select(CRMLead).where(CRMLead.id == lead_id))
        if lead is None or not self._can_view(actor_user, lead):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return lead

    def load_lead_in_sub_account(self, session: Session, lead_id: uuid.UUID, sub_account_id: uuid.UUID) -> CRMLead | None:
        return session.scalar(
            select(CRMLead).where(and_(CRMLead.id == lead_id, CRMLead.sub_account_id == sub_account_id))
        )

    def _can_view(self, actor_user: ActorUser, lead: CRMLead) -> bool:
        if "crm.leads.read_all" in actor_user.permissions:
            return True
        return can_access_sub_account(actor_user, lead.sub_account_id)


def is_valid_lead_status(value: Any) -> bool:
    return isinstance(value, str) and value in LEAD_STATUSES


lead_service = LeadService()
activity_service = ActivityService()
task_service = TaskService()
