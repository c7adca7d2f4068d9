from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.automation.engine import automation_engine
from app.automation.schemas import (
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    EventIngestRequest,
    EventIngestResponse,
    ExecutionOutcome,
    ExecutionRecordRead,
    ExecutionStats,
    FollowUpSequenceCreate,
    FollowUpSequenceRead,
    LedgerEntryRead,
    SequenceStatus,
    ToggleRequest,
)
from app.automation.sequences import follow_up_sequence_service
from app.automation.service import (
    ActorUser,
    AutomationEventService,
    AutomationExecutionService,
    AutomationRuleService,
)
from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db

events_router = APIRouter(prefix="/api/automations", tags=["automations.events"])
rules_router = APIRouter(prefix="/api/automations", tags=["automations.rules"])
executions_router = APIRouter(prefix="/api/automations", tags=["automations.executions"])
sequences_router = APIRouter(prefix="/api/automations", tags=["automations.sequences"])

rule_service = AutomationRuleService()
execution_service = AutomationExecutionService()
event_service = AutomationEventService()


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
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _http_error(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    message = exc.detail.get("message") if isinstance(exc.detail, dict) else str(exc.detail)
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(message),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    tenant_id = auth_user.tenant_id or request.headers.get("x-tenant-id", "").strip()
    return ActorUser(
        user_id=auth_user.sub,
        tenant_id=tenant_id,
        permissions=set(auth_user.permissions) | set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def require_tenant(user: ActorUser) -> None:
    if not user.tenant_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="tenant context required")


@events_router.post("/events", response_model=EventIngestResponse)
def ingest_event(
    request: Request,
    response: Response,
    dto: EventIngestRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EventIngestResponse | JSONResponse:
    try:
        require_tenant(user)
        result = event_service.ingest(db, dto, user)
    except HTTPException as exc:
        code = "automation_event_malformed" if exc.status_code == 422 else "automation_event_rejected"
        return _http_error(request, exc, code)
    if result.status == "queued":
        response.status_code = status.HTTP_202_ACCEPTED
    return result


@events_router.post("/continuations/resume", response_model=list[ExecutionRecordRead])
def resume_continuations(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ExecutionRecordRead] | JSONResponse:
    try:
        require_tenant(user)
        require_permission(user, "automation.rules.manage")
    except HTTPException as exc:
        return _http_error(request, exc, "automation_continuations_resume_failed")
    records = automation_engine.scheduler.resume_due(db)
    return [record for record in records if record.tenant_id == user.tenant_id]


@rules_router.get("/rules", response_model=list[AutomationRuleRead])
def list_rules(
    request: Request,
    trigger_event: str | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    is_test_mode: bool | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationRuleRead] | JSONResponse:
    try:
        require_tenant(user)
        return rule_service.list_rules(
            db,
            user,
            trigger_event=trigger_event,
            is_active=is_active,
            is_test_mode=is_test_mode,
        )
    except HTTPException as exc:
        return _http_error(request, exc, "automation_rule_list_failed")


@rules_router.post("/rules", response_model=AutomationRuleRead, status_code=status.HTTP_201_CREATED)
def create_rule(
    request: Request,
    dto: AutomationRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_tenant(user)
        return rule_service.create_rule(db, dto, user)
    except HTTPException as exc:
        return _http_error(request, exc, "automation_rule_create_failed")


@rules_router.get("/rules/{rule_id}", response_model=AutomationRuleRead)
def get_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_tenant(user)
        return rule_service.get_rule(db, user, rule_id)
    except HTTPException as exc:
        return _http_error(request, exc, "automation_rule_get_failed")


@rules_router.patch("/rules/{rule_id}", response_model=AutomationRuleRead)
def update_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: AutomationRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_tenant(user)
        return rule_service.update_rule(db, rule_id, dto, user)
    except HTTPException as exc:
        return _http_error(request, exc, "automation_rule_update_failed")


@rules_router.delete("/rules/{rule_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        require_tenant(user)
        rule_service.soft_delete_rule(db, rule_id, user)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _http_error(request, exc, "automation_rule_delete_failed")


@rules_router.post("/rules/{rule_id}/active", response_model=AutomationRuleRead)
def set_rule_active(
    request: Request,
    rule_id: uuid.UUID,
    dto: ToggleRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_tenant(user)
        return rule_service.set_active(db, rule_id, dto.enabled, user)
    except HTTPException as exc:
        return _http_error(request, exc, "automation_rule_toggle_failed")


@rules_router.post("/rules/{rule_id}/test-mode", response_model=AutomationRuleRead)
def set_rule_test_mode(
    request: Request,
    rule_id: uuid.UUID,
    dto: ToggleRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_tenant(user)
        return rule_service.set_test_mode(db, rule_id, dto.enabled, user)
    except HTTPException as exc:
        return _http_error(request, exc, "automation_rule_toggle_failed")


@executions_router.get("/executions", response_model=list[ExecutionRecordRead])
def list_executions(
    request: Request,
    rule_id: uuid.UUID | None = Query(default=None),
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    outcome: ExecutionOutcome | None = Query(default=None),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ExecutionRecordRead] | JSONResponse:
    try:
        require_tenant(user)
        return execution_service.list_executions(
            db,
            user,
            rule_id=rule_id,
            entity_type=entity_type,
            entity_id=entity_id,
            outcome=outcome,
            since=since,
            until=until,
            limit=limit,
        )
    except HTTPException as exc:
        return _http_error(request, exc, "automation_execution_list_failed")


@executions_router.get("/executions/{execution_id}", response_model=ExecutionRecordRead)
def get_execution(
    request: Request,
    execution_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ExecutionRecordRead | JSONResponse:
    try:
        require_tenant(user)
        return execution_service.get_execution(db, user, execution_id)
    except HTTPException as exc:
        return _http_error(request, exc, "automation_execution_get_failed")


@executions_router.get("/stats", response_model=ExecutionStats)
def execution_stats(
    request: Request,
    rule_id: uuid.UUID | None = Query(default=None),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ExecutionStats | JSONResponse:
    try:
        require_tenant(user)
        return execution_service.execution_stats(db, user, rule_id=rule_id, since=since, until=until)
    except HTTPException as exc:
        return _http_error(request, exc, "automation_stats_failed")


@executions_router.get("/ledger/{rule_id}/{entity_id}", response_model=LedgerEntryRead)
def get_ledger_entry(
    request: Request,
    rule_id: uuid.UUID,
    entity_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LedgerEntryRead | JSONResponse:
    try:
        require_tenant(user)
        return execution_service.get_ledger_entry(db, user, rule_id, entity_id)
    except HTTPException as exc:
        return _http_error(request, exc, "automation_ledger_get_failed")


@sequences_router.post("/sequences", response_model=FollowUpSequenceRead, status_code=status.HTTP_201_CREATED)
def start_sequence(
    request: Request,
    dto: FollowUpSequenceCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FollowUpSequenceRead | JSONResponse:
    try:
        require_tenant(user)
        return follow_up_sequence_service.start(db, dto, user)
    except HTTPException as exc:
        return _http_error(request, exc, "automation_sequence_start_failed")


@sequences_router.get("/sequences", response_model=list[FollowUpSequenceRead])
def list_sequences(
    request: Request,
    lead_id: str | None = Query(default=None),
    sequence_status: SequenceStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FollowUpSequenceRead] | JSONResponse:
    try:
        require_tenant(user)
        return follow_up_sequence_service.list_sequences(db, user, lead_id=lead_id, status_filter=sequence_status)
    except HTTPException as exc:
        return _http_error(request, exc, "automation_sequence_list_failed")


@sequences_router.post("/sequences/process", response_model=list[FollowUpSequenceRead])
def process_sequences(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FollowUpSequenceRead] | JSONResponse:
    try:
        require_tenant(user)
        require_permission(user, "automation.sequences.manage")
    except HTTPException as exc:
        return _http_error(request, exc, "automation_sequence_process_failed")
    sequences = follow_up_sequence_service.process_due(db)
    return [sequence for sequence in sequences if sequence.tenant_id == user.tenant_id]


@sequences_router.get("/sequences/{sequence_id}", response_model=FollowUpSequenceRead)
def get_sequence(
    request: Request,
    sequence_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FollowUpSequenceRead | JSONResponse:
    try:
        require_tenant(user)
        return follow_up_sequence_service.get(db, user, sequence_id)
    except HTTPException as exc:
        return _http_error(request, exc, "automation_sequence_get_failed")


@sequences_router.post("/sequences/{sequence_id}/pause", response_model=FollowUpSequenceRead)
def pause_sequence(
    request: Request,
    sequence_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FollowUpSequenceRead | JSONResponse:
    try:
        require_tenant(user)
        return follow_up_sequence_service.pause(db, sequence_id, user)
    except HTTPException as exc:
        return _http_error(request, exc, "automation_sequence_pause_failed")


@sequences_router.post("/sequences/{sequence_id}/resume", response_model=FollowUpSequenceRead)
def resume_sequence(
    request: Request,
    sequence_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FollowUpSequenceRead | JSONResponse:
    try:
        require_tenant(user)
        return follow_up_sequence_service.resume(db, sequence_id, user)
    except HTTPException as exc:
        return _http_error(request, exc, "automation_sequence_resume_failed")


@sequences_router.post("/sequences/{sequence_id}/cancel", response_model=FollowUpSequenceRead)
def cancel_sequence(
    request: Request,
    sequence_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FollowUpSequenceRead | JSONResponse:
    try:
        require_tenant(user)
        return follow_up_sequence_service.cancel(db, sequence_id, user)
    except HTTPException as exc:
        return _http_error(request, exc, "automation_sequence_cancel_failed")
