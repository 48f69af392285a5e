from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import get_current_actor
from app.api.errors import pipeline_error_response
from app.core.database import get_db
from app.core.errors import PipelineError
from app.platform.security import AuthContext
from app.users.schemas import LoginRequest, TokenRead, UserCreate, UserRead
from app.users.service import user_service

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
users_router = APIRouter(prefix="/api/users", tags=["users"])


@auth_router.post("/register", response_model=TokenRead, status_code=status.HTTP_201_CREATED)
def register(request: Request, dto: UserCreate, db: Session = Depends(get_db)) -> TokenRead | JSONResponse:
    try:
        return user_service.register(db, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@auth_router.post("/login", response_model=TokenRead)
def login(request: Request, dto: LoginRequest, db: Session = Depends(get_db)) -> TokenRead | JSONResponse:
    try:
        return user_service.authenticate(db, str(dto.email), dto.password)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@auth_router.get("/me", response_model=UserRead)
def me(
    request: Request,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_actor),
) -> UserRead | JSONResponse:
    try:
        return user_service.get(db, ctx.user_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@users_router.get("", response_model=list[UserRead])
def list_users(
    request: Request,
    role: str | None = Query(default=None),
    q: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_actor),
) -> list[UserRead] | JSONResponse:
    try:
        return user_service.list_users(db, ctx, filters={"role": role, "q": q})
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@users_router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    dto: UserCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_current_actor),
) -> UserRead | JSONResponse:
    try:
        return user_service.create_user(db, ctx, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)
