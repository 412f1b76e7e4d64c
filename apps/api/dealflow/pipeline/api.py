from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dealflow.context import get_correlation_id
from dealflow.core.auth import AuthUser, get_current_user
from dealflow.core.config import get_settings
from dealflow.core.database import get_db
from dealflow.pipeline.access import Identity, Role
from dealflow.pipeline.deals import DealAssignmentEngine
from dealflow.pipeline.registry import StageRegistry
from dealflow.pipeline.schemas import (
    DealActivityRead,
    DealCreate,
    DealMoveRequest,
    DealRead,
    DealUpdate,
    DeleteResult,
    StageCreate,
    StageRead,
    StageReorderRequest,
    StageUpdate,
)
from dealflow.pipeline.store import DealFilters, RecordStore, SqlRecordStore


stages_router = APIRouter(prefix="/pipeline-stages", tags=["pipeline.stages"])
deals_router = APIRouter(prefix="/deals", tags=["pipeline.deals"])


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


def get_identity(request: Request, auth_user: AuthUser | None = Depends(get_current_user)) -> Identity | None:
    if auth_user is None:
        return None
    admin_roles = set(get_settings().admin_role_names)
    role = Role.ADMIN if admin_roles.intersection(auth_user.roles) else Role.MEMBER
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return Identity(user_id=auth_user.sub, role=role, correlation_id=correlation_id)


def get_store(db: Session = Depends(get_db)) -> RecordStore:
    return SqlRecordStore(db)


def get_registry(store: RecordStore = Depends(get_store)) -> StageRegistry:
    return StageRegistry(store)


def get_engine(
    store: RecordStore = Depends(get_store),
    registry: StageRegistry = Depends(get_registry),
) -> DealAssignmentEngine:
    return DealAssignmentEngine(store, registry)


@stages_router.get("", response_model=list[StageRead])
def list_stages(
    include_inactive: bool = Query(default=False),
    identity: Identity | None = Depends(get_identity),
    registry: StageRegistry = Depends(get_registry),
) -> list[StageRead]:
    return registry.list_stages(identity, include_inactive=include_inactive)


@stages_router.post("", response_model=StageRead, status_code=status.HTTP_201_CREATED)
def create_stage(
    dto: StageCreate,
    identity: Identity | None = Depends(get_identity),
    registry: StageRegistry = Depends(get_registry),
) -> StageRead:
    return registry.create_stage(identity, dto.name, order_index=dto.order_index, is_active=dto.is_active)


# Declared before "/{stage_id}" so "reorder" is not parsed as a stage id.
@stages_router.put("/reorder", response_model=list[StageRead])
def reorder_stages(
    dto: StageReorderRequest,
    identity: Identity | None = Depends(get_identity),
    registry: StageRegistry = Depends(get_registry),
) -> list[StageRead]:
    return registry.reorder_stages(identity, dto.stage_ids)


@stages_router.get("/{stage_id}", response_model=StageRead)
def get_stage(stage_id: uuid.UUID, registry: StageRegistry = Depends(get_registry)) -> StageRead:
    return registry.get_stage(stage_id)


@stages_router.put("/{stage_id}", response_model=StageRead)
def update_stage(
    stage_id: uuid.UUID,
    dto: StageUpdate,
    identity: Identity | None = Depends(get_identity),
    registry: StageRegistry = Depends(get_registry),
) -> StageRead:
    return registry.update_stage(identity, stage_id, dto)


@stages_router.delete("/{stage_id}", response_model=DeleteResult)
def deactivate_stage(
    stage_id: uuid.UUID,
    identity: Identity | None = Depends(get_identity),
    registry: StageRegistry = Depends(get_registry),
) -> DeleteResult:
    registry.deactivate_stage(identity, stage_id)
    return DeleteResult(success=True)


@deals_router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    dto: DealCreate,
    identity: Identity | None = Depends(get_identity),
    engine: DealAssignmentEngine = Depends(get_engine),
) -> DealRead:
    return engine.create_deal(identity, dto)


@deals_router.get("", response_model=list[DealRead])
def list_deals(
    stage_id: uuid.UUID | None = Query(default=None),
    owner_user_id: str | None = Query(default=None),
    deal_status: str | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    orphaned: bool | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=200),
    cursor: str | None = Query(default=None),
    identity: Identity | None = Depends(get_identity),
    engine: DealAssignmentEngine = Depends(get_engine),
) -> list[DealRead]:
    filters = DealFilters(
        stage_id=stage_id,
        owner_user_id=owner_user_id,
        status=deal_status,
        search=search,
        start_date=start_date,
        end_date=end_date,
        orphaned=orphaned,
    )
    return engine.list_deals(identity, filters, cursor=cursor, limit=limit or get_settings().default_page_limit)


@deals_router.get("/{deal_id}", response_model=DealRead)
def get_deal(
    deal_id: uuid.UUID,
    identity: Identity | None = Depends(get_identity),
    engine: DealAssignmentEngine = Depends(get_engine),
) -> DealRead:
    return engine.get_deal(identity, deal_id)


@deals_router.put("/{deal_id}", response_model=DealRead)
def update_deal(
    deal_id: uuid.UUID,
    dto: DealUpdate,
    identity: Identity | None = Depends(get_identity),
    engine: DealAssignmentEngine = Depends(get_engine),
) -> DealRead:
    return engine.update_deal(identity, deal_id, dto)


@deals_router.put("/{deal_id}/stage", response_model=DealRead)
def move_deal(
    deal_id: uuid.UUID,
    dto: DealMoveRequest,
    identity: Identity | None = Depends(get_identity),
    engine: DealAssignmentEngine = Depends(get_engine),
) -> DealRead:
    return engine.move_deal(identity, deal_id, dto.stage_id)


@deals_router.delete("/{deal_id}", response_model=DeleteResult)
def delete_deal(
    deal_id: uuid.UUID,
    identity: Identity | None = Depends(get_identity),
    engine: DealAssignmentEngine = Depends(get_engine),
) -> DeleteResult:
    engine.delete_deal(identity, deal_id)
    return DeleteResult(success=True)


@deals_router.get("/{deal_id}/activities", response_model=list[DealActivityRead])
def list_deal_activities(
    deal_id: uuid.UUID,
    identity: Identity | None = Depends(get_identity),
    engine: DealAssignmentEngine = Depends(get_engine),
) -> list[DealActivityRead]:
    return engine.list_deal_activities(identity, deal_id)
