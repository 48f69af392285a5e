from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.crm.repositories import store_call
from app.users.models import User


class UserRepository:
    entity_type = "app.user"

    def insert(self, session: Session, user: User) -> User:
        with store_call(session, self.entity_type, "insert"):
            session.add(user)
            session.flush()
        return user

    def find_by_id(self, session: Session, user_id: uuid.UUID) -> User | None:
        with store_call(session, self.entity_type, "find_by_id"):
            return session.scalar(select(User).where(User.id == user_id))

    def find_by_email(self, session: Session, email: str) -> User | None:
        with store_call(session, self.entity_type, "find_by_email"):
            return session.scalar(select(User).where(User.email == email.strip().lower()))

    def find_all(self, session: Session, filters: dict[str, Any]) -> list[User]:
        stmt = select(User)
        if filters.get("role"):
            stmt = stmt.where(User.role == filters["role"])
        if filters.get("q"):
            pattern = f"%{str(filters['q']).lower()}%"
            stmt = stmt.where(or_(func.lower(User.name).like(pattern), User.email.like(pattern)))
        with store_call(session, self.entity_type, "list"):
            return list(session.scalars(stmt.order_by(User.created_at.desc(), User.id)).all())


user_repository = UserRepository()
