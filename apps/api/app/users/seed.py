from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.core.auth import hash_password
from app.core.rbac import Role
from app.crm.repositories import store_call
from app.users.models import User
from app.users.repositories import user_repository


logger = logging.getLogger("app.users")

DEMO_PASSWORD = "password"
DEMO_USERS: tuple[tuple[str, str, Role], ...] = (
    ("Demo Admin", "admin@demo.com", Role.ADMIN),
    ("Demo Manager", "manager@demo.com", Role.MANAGER),
    ("Demo Rep", "rep@demo.com", Role.REP),
)


def seed_demo_users(session: Session) -> int:
    """Create the demo accounts that do not exist yet. Returns how many were added."""

    created = 0
    for name, email, role in DEMO_USERS:
        if user_repository.find_by_email(session, email) is not None:
            continue
        user_repository.insert(
            session,
            User(name=name, email=email, password_hash=hash_password(DEMO_PASSWORD), role=role.value),
        )
        created += 1
    with store_call(session, "app.user", "seed"):
        session.commit()
    if created:
        logger.info("users.seeded", extra={"outcome": f"created {created}"})
    return created
