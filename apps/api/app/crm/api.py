from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import get_current_actor
from app.api.errors import pipeline_error_response
from app.core.database import get_db
from app.core.errors import PipelineError
from app.crm.schemas import (
    DashboardStatsRead,
    LeadConvertRequest,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
)
from app.crm.service import conversion_service, dashboard_service, lead_service, opportunity_service
from app.platform.security import AuthContext

leads_router = APIRouter(prefix="/api/leads", tags=["crm.leads"])
opportunities_router = APIRouter(prefix="/api/opportunities", tags=["crm.opportunities"])
dashboard_router = APIRouter(prefix="/api/dashboard", tags=["crm.dashboard"])


@leads_router.get("", response_model=list[LeadRead])
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    q: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_actor),
) -> list[LeadRead] | JSONResponse:
    try:
        return lead_service.list(db, ctx, filters={"status": status_filter, "q": q})
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@leads_router.post("", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create(db, ctx, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@leads_router.get("/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get(db, ctx, lead_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@leads_router.patch("/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update(db, ctx, lead_id, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@leads_router.delete("/{lead_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_actor),
) -> Any:
    try:
        lead_service.delete(db, ctx, lead_id)
        return {"status": "deleted"}
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@leads_router.post("/{lead_id}/convert", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadConvertRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_actor),
) -> OpportunityRead | JSONResponse:
    try:
        return conversion_service.convert(db, ctx, lead_id, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@opportunities_router.get("", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    stage: str | None = Query(default=None),
    q: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_actor),
) -> list[OpportunityRead] | JSONResponse:
    try:
        return opportunity_service.list(db, ctx, filters={"stage": stage, "q": q})
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@opportunities_router.post("", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_actor),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.create(db, ctx, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@opportunities_router.get("/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_actor),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.get(db, ctx, opportunity_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@opportunities_router.patch("/{opportunity_id}", response_model=OpportunityRead)
def patch_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_actor),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.update(db, ctx, opportunity_id, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@opportunities_router.delete("/{opportunity_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_actor),
) -> Any:
    try:
        opportunity_service.delete(db, ctx, opportunity_id)
        return {"status": "deleted"}
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@dashboard_router.get("/stats", response_model=DashboardStatsRead)
def dashboard_stats(
    request: Request,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_actor),
) -> DashboardStatsRead | JSONResponse:
    try:
        return dashboard_service.stats(db, ctx)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)
