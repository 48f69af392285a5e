from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from passlib.context import CryptContext
from starlette.requests import Request

from app.core.config import get_settings
from app.core.errors import UnauthenticatedError

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@dataclass
class AuthUser:
    sub: str
    role: str


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def issue_access_token(user_id: str, role: str, expires_delta: timedelta | None = None) -> str:
    settings = get_settings()
    expires_at = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    claims = {"sub": user_id, "role": role, "exp": expires_at}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_access_token(token: str) -> AuthUser:
    if not token:
        raise UnauthenticatedError("missing bearer token")

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise UnauthenticatedError("invalid or expired token") from exc

    subject = payload.get("sub")
    role = payload.get("role")
    if not isinstance(subject, str) or not subject or not isinstance(role, str):
        raise UnauthenticatedError("invalid or expired token")
    return AuthUser(sub=subject, role=role)


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header[len("Bearer "):] if auth_header.startswith("Bearer ") else ""


async def get_current_user(request: Request) -> AuthUser:
    return verify_access_token(bearer_token(request))
