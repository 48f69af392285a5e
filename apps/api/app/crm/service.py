from __future__ import annotations

import logging
import math
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import (
    AlreadyConvertedError,
    ConflictError,
    ForbiddenError,
    InvalidStatusError,
    InvalidValueError,
    NotFoundError,
    PipelineError,
)
from app.crm.models import Lead, Opportunity
from app.crm.pipeline import (
    CONVERTED_LEAD_STATUS,
    INITIAL_LEAD_STATUS,
    INITIAL_OPPORTUNITY_STAGE,
    LeadStatus,
    OpportunityStage,
    coerce_lead_status,
    coerce_opportunity_stage,
    is_terminal_stage,
)
from app.crm.repositories import (
    EntityRepository,
    lead_repository,
    opportunity_repository,
    store_call,
)
from app.crm.schemas import (
    DashboardStatsRead,
    LeadConvertRequest,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    StageSummary,
    StatusCount,
)
from app.metrics import observe_lead_conversion
from app.platform.security import AuthContext, DenyReason, Operation, authorize, enforce, list_scope


logger = logging.getLogger("app.crm")
tracer = trace.get_tracer("app.crm")


# Numeric(14, 2) holds at most 999999999999.99.
MAX_OPPORTUNITY_VALUE = Decimal("1000000000000")


def coerce_value(value: Any) -> Decimal:
    """Validate an opportunity value: a finite number in [0, MAX_OPPORTUNITY_VALUE)."""

    if value is None:
        raise InvalidValueError("value is required")
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal, str)):
        raise InvalidValueError(f"invalid value {value!r}")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidValueError(f"invalid value {value!r}") from None
    if not amount.is_finite() or amount < 0:
        raise InvalidValueError("value must be a non-negative number", details={"value": str(value)})
    if amount >= MAX_OPPORTUNITY_VALUE:
        raise InvalidValueError(
            f"value must be below {MAX_OPPORTUNITY_VALUE}",
            details={"value": str(value), "max_exclusive": str(MAX_OPPORTUNITY_VALUE)},
        )
    return amount.copy_abs().quantize(Decimal("0.01"))


def load_for_operation(
    session: Session,
    ctx: AuthContext,
    repository: EntityRepository[Any],
    entity_id: uuid.UUID,
    operation: Operation,
) -> Any:
    """Fetch an entity and authorize `operation` against its owner.

    An entity outside the caller's ownership scope is reported exactly like a
    missing one.
    """

    label = repository.entity_type.rsplit(".", 1)[-1]
    entity = repository.find_by_id(session, entity_id)
    if entity is None:
        raise NotFoundError(f"{label} not found")
    decision = authorize(ctx, operation, entity.owner_user_id)
    if not decision.allowed:
        if decision.reason == DenyReason.NOT_OWNER:
            raise NotFoundError(f"{label} not found")
        raise ForbiddenError(f"operation '{operation.value}' is not permitted", details={"reason": decision.reason})
    return entity


def commit(session: Session, entity_type: str, operation: str) -> None:
    with store_call(session, entity_type, operation):
        session.commit()


class LeadService:
    entity_type = "crm.lead"

    def create(self, session: Session, ctx: AuthContext, dto: LeadCreate) -> LeadRead:
        enforce(ctx, Operation.CREATE)
        lead = Lead(
            owner_user_id=ctx.user_id,
            name=dto.name,
            email=str(dto.email),
            phone=dto.phone,
            status=INITIAL_LEAD_STATUS.value,
        )
        lead_repository.insert(session, lead)
        commit(session, self.entity_type, "create")
        logger.info("lead.created", extra={"entity_type": self.entity_type, "entity_id": str(lead.id), "user_id": str(ctx.user_id)})
        return self._to_read_model(session, lead.id)

    def list(self, session: Session, ctx: AuthContext, filters: dict[str, Any]) -> list[LeadRead]:
        scope = list_scope(ctx)
        if filters.get("status"):
            filters = {**filters, "status": coerce_lead_status(filters["status"]).value}
        leads = lead_repository.find_all_by_owner_or_all(session, scope, filters)
        converted = opportunity_repository.source_lead_map(session, [lead.id for lead in leads])
        return [self._to_read(lead, converted.get(lead.id)) for lead in leads]

    def get(self, session: Session, ctx: AuthContext, lead_id: uuid.UUID) -> LeadRead:
        lead = load_for_operation(session, ctx, lead_repository, lead_id, Operation.READ)
        return self._to_read(lead, self._converted_opportunity_id(session, lead.id))

    def update(self, session: Session, ctx: AuthContext, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = load_for_operation(session, ctx, lead_repository, lead_id, Operation.UPDATE)

        payload = {key: value for key, value in dto.model_dump(exclude_unset=True).items() if value is not None}
        expected_row_version = payload.pop("row_version", None)
        guards: list[Any] = []
        if "status" in payload:
            payload["status"] = coerce_lead_status(payload["status"]).value
            if payload["status"] != CONVERTED_LEAD_STATUS.value:
                self._require_unconverted(session, lead.id)
                # Re-checked in the UPDATE itself so a conversion committed in between still wins.
                guards.append(lead_repository.not_converted())
        if "email" in payload:
            payload["email"] = str(payload["email"])
        if not payload:
            return self._to_read(lead, self._converted_opportunity_id(session, lead.id))

        if not lead_repository.update(
            session,
            lead.id,
            payload,
            expected_row_version=expected_row_version,
            guards=guards,
        ):
            session.rollback()
            if guards:
                self._require_unconverted(session, lead_id)
            if expected_row_version is not None:
                raise ConflictError("row_version conflict")
            raise NotFoundError("lead not found")
        commit(session, self.entity_type, "update")
        logger.info(
            "lead.updated",
            extra={"entity_type": self.entity_type, "entity_id": str(lead_id), "user_id": str(ctx.user_id)},
        )
        return self._to_read_model(session, lead_id)

    def delete(self, session: Session, ctx: AuthContext, lead_id: uuid.UUID) -> None:
        # Converted leads may be deleted too; the opportunity keeps its source_lead_id.
        lead = load_for_operation(session, ctx, lead_repository, lead_id, Operation.DELETE)
        if not lead_repository.delete(session, lead.id):
            session.rollback()
            raise NotFoundError("lead not found")
        commit(session, self.entity_type, "delete")
        logger.info("lead.deleted", extra={"entity_type": self.entity_type, "entity_id": str(lead_id), "user_id": str(ctx.user_id)})

    def _converted_opportunity_id(self, session: Session, lead_id: uuid.UUID) -> uuid.UUID | None:
        return opportunity_repository.source_lead_map(session, [lead_id]).get(lead_id)

    def _require_unconverted(self, session: Session, lead_id: uuid.UUID) -> None:
        opportunity_id = self._converted_opportunity_id(session, lead_id)
        if opportunity_id is not None:
            raise InvalidStatusError(
                f"lead has been converted; status must remain {CONVERTED_LEAD_STATUS.value}",
                details={"converted_opportunity_id": str(opportunity_id)},
            )

    def _to_read_model(self, session: Session, lead_id: uuid.UUID) -> LeadRead:
        lead = lead_repository.find_by_id(session, lead_id)
        if lead is None:
            raise NotFoundError("lead not found")
        return self._to_read(lead, self._converted_opportunity_id(session, lead.id))

    def _to_read(self, lead: Lead, converted_opportunity_id: uuid.UUID | None) -> LeadRead:
        read = LeadRead.model_validate(lead)
        read.converted_opportunity_id = converted_opportunity_id
        return read


class OpportunityService:
    entity_type = "crm.opportunity"

    def create(self, session: Session, ctx: AuthContext, dto: OpportunityCreate) -> OpportunityRead:
        enforce(ctx, Operation.CREATE)
        value = coerce_value(dto.value)
        stage = coerce_opportunity_stage(dto.stage) if dto.stage is not None else INITIAL_OPPORTUNITY_STAGE
        opportunity = Opportunity(
            owner_user_id=ctx.user_id,
            title=dto.title,
            value=value,
            stage=stage.value,
        )
        opportunity_repository.insert(session, opportunity)
        commit(session, self.entity_type, "create")
        logger.info(
            "opportunity.created",
            extra={"entity_type": self.entity_type, "entity_id": str(opportunity.id), "user_id": str(ctx.user_id)},
        )
        return self.to_read_model(session, opportunity.id)

    def list(self, session: Session, ctx: AuthContext, filters: dict[str, Any]) -> list[OpportunityRead]:
        scope = list_scope(ctx)
        if filters.get("stage"):
            filters = {**filters, "stage": coerce_opportunity_stage(filters["stage"]).value}
        opportunities = opportunity_repository.find_all_by_owner_or_all(session, scope, filters)
        return [self._to_read(item) for item in opportunities]

    def get(self, session: Session, ctx: AuthContext, opportunity_id: uuid.UUID) -> OpportunityRead:
        opportunity = load_for_operation(session, ctx, opportunity_repository, opportunity_id, Operation.READ)
        return self._to_read(opportunity)

    def update(
        self,
        session: Session,
        ctx: AuthContext,
        opportunity_id: uuid.UUID,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        opportunity = load_for_operation(session, ctx, opportunity_repository, opportunity_id, Operation.UPDATE)

        payload = {key: value for key, value in dto.model_dump(exclude_unset=True).items() if value is not None}
        expected_row_version = payload.pop("row_version", None)
        if "stage" in payload:
            payload["stage"] = coerce_opportunity_stage(payload["stage"]).value
        if "value" in payload:
            payload["value"] = coerce_value(payload["value"])
        if not payload:
            return self._to_read(opportunity)

        if not opportunity_repository.update(session, opportunity.id, payload, expected_row_version=expected_row_version):
            session.rollback()
            if expected_row_version is not None:
                raise ConflictError("row_version conflict")
            raise NotFoundError("opportunity not found")
        commit(session, self.entity_type, "update")
        logger.info(
            "opportunity.updated",
            extra={"entity_type": self.entity_type, "entity_id": str(opportunity_id), "user_id": str(ctx.user_id)},
        )
        return self.to_read_model(session, opportunity_id)

    def delete(self, session: Session, ctx: AuthContext, opportunity_id: uuid.UUID) -> None:
        opportunity = load_for_operation(session, ctx, opportunity_repository, opportunity_id, Operation.DELETE)
        if not opportunity_repository.delete(session, opportunity.id):
            session.rollback()
            raise NotFoundError("opportunity not found")
        commit(session, self.entity_type, "delete")
        logger.info(
            "opportunity.deleted",
            extra={"entity_type": self.entity_type, "entity_id": str(opportunity_id), "user_id": str(ctx.user_id)},
        )

    def to_read_model(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityRead:
        opportunity = opportunity_repository.find_by_id(session, opportunity_id)
        if opportunity is None:
            raise NotFoundError("opportunity not found")
        return self._to_read(opportunity)

    def _to_read(self, opportunity: Opportunity) -> OpportunityRead:
        read = OpportunityRead.model_validate(opportunity)
        read.is_closed = is_terminal_stage(opportunity.stage)
        return read


class ConversionService:
    """Turns a lead into an opportunity in a single transaction."""

    def convert(
        self,
        session: Session,
        ctx: AuthContext,
        lead_id: uuid.UUID,
        dto: LeadConvertRequest,
    ) -> OpportunityRead:
        with tracer.start_as_current_span("crm.lead.convert") as span:
            span.set_attribute("lead_id", str(lead_id))
            span.set_attribute("user_id", str(ctx.user_id))
            if ctx.correlation_id:
                span.set_attribute("correlation_id", ctx.correlation_id)
            try:
                opportunity = self._convert(session, ctx, lead_id, dto)
            except PipelineError as exc:
                observe_lead_conversion(outcome=exc.code)
                span.set_status(Status(StatusCode.ERROR, exc.code))
                logger.info(
                    "lead.convert_failed",
                    extra={"entity_type": "crm.lead", "entity_id": str(lead_id), "outcome": exc.code},
                )
                raise
            span.set_attribute("opportunity_id", str(opportunity.id))

        observe_lead_conversion(outcome="converted")
        logger.info(
            "lead.converted",
            extra={
                "entity_type": "crm.lead",
                "entity_id": str(lead_id),
                "user_id": str(ctx.user_id),
                "outcome": "converted",
            },
        )
        return opportunity

    def _convert(
        self,
        session: Session,
        ctx: AuthContext,
        lead_id: uuid.UUID,
        dto: LeadConvertRequest,
    ) -> OpportunityRead:
        lead = load_for_operation(session, ctx, lead_repository, lead_id, Operation.CONVERT)
        value = coerce_value(dto.value)
        if opportunity_repository.find_by_source_lead(session, lead.id) is not None:
            raise AlreadyConvertedError("lead already converted", details={"lead_id": str(lead.id)})

        opportunity = Opportunity(
            owner_user_id=lead.owner_user_id,
            title=dto.title,
            value=value,
            stage=INITIAL_OPPORTUNITY_STAGE.value,
            source_lead_id=lead.id,
        )
        try:
            opportunity_repository.insert(session, opportunity)
            if not lead_repository.update(session, lead.id, {"status": CONVERTED_LEAD_STATUS.value}):
                session.rollback()
                raise NotFoundError("lead not found")
            commit(session, "crm.lead", "convert")
        except IntegrityError as exc:
            # A concurrent conversion committed first; the unique back-reference rejected this one.
            session.rollback()
            raise AlreadyConvertedError("lead already converted", details={"lead_id": str(lead_id)}) from exc

        return opportunity_service.to_read_model(session, opportunity.id)


class DashboardService:
    def stats(self, session: Session, ctx: AuthContext) -> DashboardStatsRead:
        scope = list_scope(ctx)
        lead_groups = lead_repository.count_by_group(session, scope, Lead.status)
        opportunity_groups = opportunity_repository.count_by_group(session, scope, Opportunity.stage)

        total_leads = sum(count for count, _ in lead_groups.values())
        total_opportunities = sum(count for count, _ in opportunity_groups.values())
        total_value = sum((Decimal(str(total or 0)) for _, total in opportunity_groups.values()), Decimal("0"))
        won_value = Decimal(str(opportunity_groups.get(OpportunityStage.WON.value, (0, 0))[1] or 0))
        conversion_rate = math.floor(total_opportunities * 100 / total_leads + 0.5) if total_leads else 0

        return DashboardStatsRead(
            total_leads=total_leads,
            total_opportunities=total_opportunities,
            total_value=float(total_value),
            won_value=float(won_value),
            conversion_rate=conversion_rate,
            leads_by_status=[
                StatusCount(status=status.value, count=lead_groups.get(status.value, (0, None))[0])
                for status in LeadStatus
            ],
            opportunities_by_stage=[
                StageSummary(
                    stage=stage.value,
                    count=opportunity_groups.get(stage.value, (0, 0))[0],
                    value=float(opportunity_groups.get(stage.value, (0, 0))[1] or 0),
                )
                for stage in OpportunityStage
            ],
        )


lead_service = LeadService()
opportunity_service = OpportunityService()
conversion_service = ConversionService()
dashboard_service = DashboardService()
