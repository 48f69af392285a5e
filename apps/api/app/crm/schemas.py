from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class LeadCreate(BaseModel):
    # Leads always start as New; a status in the payload is ignored.
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    email: EmailStr
    phone: str = ""


class LeadUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    # Validated by coerce_lead_status so a malformed value reports invalid_status.
    status: Any = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_user_id: UUID
    name: str
    email: str
    phone: str
    status: str
    converted_opportunity_id: UUID | None = None
    created_at: datetime
    updated_at: datetime
    row_version: int


class LeadConvertRequest(BaseModel):
    title: str = Field(min_length=1)
    value: Any = 0


class OpportunityCreate(BaseModel):
    title: str = Field(min_length=1)
    value: Any = 0
    stage: Any = None


class OpportunityUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    title: str | None = Field(default=None, min_length=1)
    value: Any = None
    stage: Any = None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_user_id: UUID
    title: str
    value: float
    stage: str
    is_closed: bool = False
    source_lead_id: UUID | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class StatusCount(BaseModel):
    status: str
    count: int


class StageSummary(BaseModel):
    stage: str
    count: int
    value: float


class DashboardStatsRead(BaseModel):
    total_leads: int
    total_opportunities: int
    total_value: float
    won_value: float
    conversion_rate: int
    leads_by_status: list[StatusCount]
    opportunities_by_stage: list[StageSummary]
