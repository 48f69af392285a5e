from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, and_, delete, exists, func, or_, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from app.core.database import Base
from app.core.errors import StoreUnavailableError
from app.crm.models import Lead, Opportunity
from app.metrics import observe_store_failure


logger = logging.getLogger("app.crm")

ModelT = TypeVar("ModelT", bound=Base)


@contextmanager
def store_call(session: Session, entity_type: str, operation: str) -> Iterator[None]:
    """Translate transient driver failures into StoreUnavailableError.

    The session is rolled back so the caller never observes a half-applied
    unit of work. Nothing is retried here.
    """

    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        session.rollback()
        observe_store_failure(entity_type=entity_type, operation=operation)
        logger.warning(
            "store.unavailable",
            extra={"entity_type": entity_type, "operation": operation, "error": str(exc)[:500]},
        )
        raise StoreUnavailableError(f"{entity_type} store unavailable") from exc


class EntityRepository(Generic[ModelT]):
    model: type[ModelT]
    entity_type = ""

    def insert(self, session: Session, entity: ModelT) -> ModelT:
        with store_call(session, self.entity_type, "insert"):
            session.add(entity)
            session.flush()
        return entity

    def find_by_id(self, session: Session, entity_id: uuid.UUID) -> ModelT | None:
        with store_call(session, self.entity_type, "find_by_id"):
            return session.scalar(select(self.model).where(self.model.id == entity_id))

    def find_all_by_owner_or_all(
        self,
        session: Session,
        scope: uuid.UUID | None,
        filters: dict[str, Any] | None = None,
    ) -> list[ModelT]:
        """List rows owned by `scope`, or every row when `scope` is None."""

        stmt: Select[Any] = select(self.model)
        if scope is not None:
            stmt = stmt.where(self.model.owner_user_id == scope)
        stmt = self.apply_filters(stmt, filters or {})
        with store_call(session, self.entity_type, "list"):
            return list(session.scalars(stmt.order_by(self.model.created_at.desc(), self.model.id)).all())

    def update(
        self,
        session: Session,
        entity_id: uuid.UUID,
        values: dict[str, Any],
        *,
        expected_row_version: int | None = None,
        guards: Sequence[Any] = (),
    ) -> bool:
        """Compare-and-swap update keyed by id (and row_version when given).

        `guards` are extra WHERE conditions evaluated atomically with the write.
        Returns False when no row matched; the caller decides whether that is a
        missing entity, a stale version or a failed guard.
        """

        conditions = [self.model.id == entity_id]
        if expected_row_version is not None:
            conditions.append(self.model.row_version == expected_row_version)
        conditions.extend(guards)
        payload = dict(values)
        payload["row_version"] = self.model.row_version + 1
        stmt = update(self.model).where(and_(*conditions)).values(**payload)
        if guards:
            # Subquery guards cannot be evaluated in Python; callers commit or roll back right after.
            stmt = stmt.execution_options(synchronize_session=False)
        with store_call(session, self.entity_type, "update"):
            result = session.execute(stmt)
        return result.rowcount > 0

    def delete(self, session: Session, entity_id: uuid.UUID) -> bool:
        with store_call(session, self.entity_type, "delete"):
            result = session.execute(delete(self.model).where(self.model.id == entity_id))
        return result.rowcount > 0

    def count_by_group(self, session: Session, scope: uuid.UUID | None, column: Any) -> dict[str, tuple[int, Any]]:
        """Row count (and summed value, where the entity has one) per distinct `column` value."""

        value_total = self.value_total()
        columns = [column, func.count(self.model.id)]
        if value_total is not None:
            columns.append(value_total)
        stmt = select(*columns).group_by(column)
        if scope is not None:
            stmt = stmt.where(self.model.owner_user_id == scope)
        with store_call(session, self.entity_type, "aggregate"):
            rows = session.execute(stmt).all()
        return {str(row[0]): (int(row[1]), row[2] if value_total is not None else None) for row in rows}

    def value_total(self) -> Any:
        return None

    def apply_filters(self, stmt: Select[Any], filters: dict[str, Any]) -> Select[Any]:
        return stmt


class LeadRepository(EntityRepository[Lead]):
    model = Lead
    entity_type = "crm.lead"

    def not_converted(self) -> Any:
        """Matches leads that no opportunity references."""

        return ~exists().where(Opportunity.source_lead_id == Lead.id)

    def apply_filters(self, stmt: Select[Any], filters: dict[str, Any]) -> Select[Any]:
        if filters.get("status"):
            stmt = stmt.where(Lead.status == filters["status"])
        if filters.get("q"):
            pattern = f"%{str(filters['q']).lower()}%"
            stmt = stmt.where(or_(func.lower(Lead.name).like(pattern), func.lower(Lead.email).like(pattern)))
        return stmt


class OpportunityRepository(EntityRepository[Opportunity]):
    model = Opportunity
    entity_type = "crm.opportunity"

    def find_by_source_lead(self, session: Session, lead_id: uuid.UUID) -> Opportunity | None:
        with store_call(session, self.entity_type, "find_by_source_lead"):
            return session.scalar(select(Opportunity).where(Opportunity.source_lead_id == lead_id))

    def source_lead_map(self, session: Session, lead_ids: list[uuid.UUID]) -> dict[uuid.UUID, uuid.UUID]:
        if not lead_ids:
            return {}
        with store_call(session, self.entity_type, "source_lead_map"):
            rows = session.execute(
                select(Opportunity.source_lead_id, Opportunity.id).where(Opportunity.source_lead_id.in_(lead_ids))
            ).all()
        return {lead_id: opportunity_id for lead_id, opportunity_id in rows}

    def value_total(self) -> Any:
        return func.coalesce(func.sum(Opportunity.value), 0)

    def apply_filters(self, stmt: Select[Any], filters: dict[str, Any]) -> Select[Any]:
        if filters.get("stage"):
            stmt = stmt.where(Opportunity.stage == filters["stage"])
        if filters.get("q"):
            stmt = stmt.where(func.lower(Opportunity.title).like(f"%{str(filters['q']).lower()}%"))
        return stmt


lead_repository = LeadRepository()
opportunity_repository = OpportunityRepository()
