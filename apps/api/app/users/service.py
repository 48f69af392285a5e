from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.auth import hash_password, issue_access_token, verify_password
from app.core.config import get_settings
from app.core.errors import (
    EmailAlreadyRegisteredError,
    ForbiddenError,
    InvalidRoleError,
    UnauthenticatedError,
)
from app.core.rbac import Role, parse_role
from app.crm.repositories import store_call
from app.platform.security import AuthContext, Operation, enforce
from app.users.models import User
from app.users.repositories import user_repository
from app.users.schemas import TokenRead, UserCreate, UserRead


logger = logging.getLogger("app.users")


class UserService:
    entity_type = "app.user"

    def register(self, session: Session, dto: UserCreate) -> TokenRead:
        """Self-registration; the role must be one of the self-assignable roles."""

        role = self._require_role(dto.role)
        if role.value not in get_settings().registration_roles:
            raise ForbiddenError(f"role '{role.value}' cannot be self-assigned", details={"role": role.value})
        user = self._insert(session, dto, role)
        logger.info("user.registered", extra={"entity_type": self.entity_type, "entity_id": str(user.id), "role": role.value})
        return self._issue_token(user)

    def create_user(self, session: Session, ctx: AuthContext, dto: UserCreate) -> UserRead:
        enforce(ctx, Operation.MANAGE_USERS)
        role = self._require_role(dto.role)
        user = self._insert(session, dto, role)
        logger.info(
            "user.created",
            extra={"entity_type": self.entity_type, "entity_id": str(user.id), "role": role.value, "user_id": str(ctx.user_id)},
        )
        return UserRead.model_validate(user)

    def list_users(self, session: Session, ctx: AuthContext, filters: dict[str, Any]) -> list[UserRead]:
        enforce(ctx, Operation.MANAGE_USERS)
        if filters.get("role"):
            filters = {**filters, "role": self._require_role(filters["role"]).value}
        return [UserRead.model_validate(user) for user in user_repository.find_all(session, filters)]

    def authenticate(self, session: Session, email: str, password: str) -> TokenRead:
        user = user_repository.find_by_email(session, email)
        if user is None or not verify_password(password, user.password_hash):
            logger.info("user.login_failed", extra={"reason": "bad_credentials"})
            raise UnauthenticatedError("invalid email or password")
        return self._issue_token(user)

    def get(self, session: Session, user_id: uuid.UUID) -> UserRead:
        user = user_repository.find_by_id(session, user_id)
        if user is None:
            # The token outlived its user.
            raise UnauthenticatedError("user no longer exists")
        return UserRead.model_validate(user)

    def _require_role(self, value: Any) -> Role:
        role = parse_role(value)
        if role is None:
            allowed = ", ".join(item.value for item in Role)
            raise InvalidRoleError(f"invalid role {value!r}; expected one of: {allowed}")
        return role

    def _insert(self, session: Session, dto: UserCreate, role: Role) -> User:
        email = str(dto.email).strip().lower()
        if user_repository.find_by_email(session, email) is not None:
            raise EmailAlreadyRegisteredError("email already registered")

        user = User(name=dto.name, email=email, password_hash=hash_password(dto.password), role=role.value)
        try:
            user_repository.insert(session, user)
            with store_call(session, self.entity_type, "create"):
                session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise EmailAlreadyRegisteredError("email already registered") from exc
        return user

    def _issue_token(self, user: User) -> TokenRead:
        token = issue_access_token(str(user.id), user.role)
        return TokenRead(access_token=token, user=UserRead.model_validate(user))


user_service = UserService()
