from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadflow.context import get_correlation_id
from leadflow.core.auth import AuthUser, get_current_user as get_auth_user
from leadflow.core.context import build_request_context
from leadflow.core.database import get_db
from leadflow.crm.schemas import (
    LeadActivityRead,
    LeadCreate,
    LeadRead,
    LeadStatusUpdateResponse,
    LeadUpdate,
    TaskRead,
)
from leadflow.crm.service import ActorUser, activity_service, lead_service, task_service

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
activities_router = APIRouter(prefix="/api/crm", tags=["crm.activities"])
tasks_router = APIRouter(prefix="/api/crm", tags=["crm.tasks"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    context = getattr(request.state, "context", None)
    if context is None:
        context = build_request_context(request)

    normalized_roles = {str(role).lower() for role in auth_user.roles}
    is_super_admin = "admin" in normalized_roles or "system.admin" in normalized_roles

    return ActorUser(
        user_id=auth_user.sub,
        allowed_sub_account_ids=list(context.allowed_sub_account_ids),
        current_sub_account_id=context.current_sub_account_id,
        permissions=set(auth_user.roles),
        is_super_admin=is_super_admin,
        correlation_id=get_correlation_id() or context.correlation_id or None,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    sub_account_id: uuid.UUID | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.list_leads(
            db,
            user,
            sub_account_id=sub_account_id,
            status_filter=status_filter,
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.create")
        return lead_service.create_lead(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.get_lead(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.patch("/leads/{lead_id}", response_model=LeadStatusUpdateResponse)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadStatusUpdateResponse | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.update_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.get("/leads/{lead_id}/activities", response_model=list[LeadActivityRead])
def list_lead_activities(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadActivityRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return activity_service.list_for_lead(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.get("/tasks", response_model=list[TaskRead])
def list_tasks(
    request: Request,
    sub_account_id: uuid.UUID | None = Query(default=None),
    lead_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.tasks.read")
        return task_service.list_tasks(db, user, sub_account_id=sub_account_id, lead_id=lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
