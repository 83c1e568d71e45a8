from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadflow.core.database import get_db
from leadflow.crm.api import error_response, get_current_user
from leadflow.crm.schemas import (
    WorkflowCreate,
    WorkflowExecutionDetail,
    WorkflowExecutionRead,
    WorkflowRead,
    WorkflowReplace,
    WorkflowRunRequest,
    WorkflowUpdate,
)
from leadflow.crm.service import ActorUser
from leadflow.workflows.engine import workflow_engine
from leadflow.workflows.service import WorkflowService

workflows_router = APIRouter(prefix="/api/crm", tags=["crm.workflows"])
executions_router = APIRouter(prefix="/api/crm", tags=["crm.workflow_executions"])
workflow_service = WorkflowService(workflow_engine)


@workflows_router.get("/workflows", response_model=list[WorkflowRead])
def list_workflows(
    request: Request,
    sub_account_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[WorkflowRead] | JSONResponse:
    try:
        return workflow_service.list_workflows(db, user, sub_account_id=sub_account_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_workflow_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@workflows_router.post("/workflows", response_model=WorkflowRead, status_code=status.HTTP_201_CREATED)
def create_workflow(
    request: Request,
    dto: WorkflowCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        return workflow_service.create_workflow(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_workflow_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@workflows_router.get("/workflows/{workflow_id}", response_model=WorkflowRead)
def get_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        return workflow_service.get_workflow(db, user, workflow_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_workflow_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@workflows_router.put("/workflows/{workflow_id}", response_model=WorkflowRead)
def replace_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    dto: WorkflowReplace,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        return workflow_service.replace_workflow(db, user, workflow_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_workflow_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@workflows_router.patch("/workflows/{workflow_id}", response_model=WorkflowRead)
def patch_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    dto: WorkflowUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        return workflow_service.update_workflow(db, user, workflow_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_workflow_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@workflows_router.delete("/workflows/{workflow_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        workflow_service.soft_delete_workflow(db, user, workflow_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_workflow_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@workflows_router.post("/workflows/{workflow_id}/execute", response_model=WorkflowExecutionDetail)
def execute_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    dto: WorkflowRunRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowExecutionDetail | JSONResponse:
    try:
        return workflow_service.run_manual(db, user, workflow_id, dto.lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_workflow_execute_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@executions_router.get("/workflow-executions", response_model=list[WorkflowExecutionRead])
def list_workflow_executions(
    request: Request,
    sub_account_id: uuid.UUID | None = Query(default=None),
    workflow_id: uuid.UUID | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[WorkflowExecutionRead] | JSONResponse:
    try:
        return workflow_service.list_executions(
            db,
            user,
            sub_account_id=sub_account_id,
            workflow_id=workflow_id,
            limit=limit,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_workflow_execution_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@executions_router.get("/workflow-executions/{execution_id}", response_model=WorkflowExecutionDetail)
def get_workflow_execution(
    request: Request,
    execution_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowExecutionDetail | JSONResponse:
    try:
        return workflow_service.get_execution(db, user, execution_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_workflow_execution_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
