from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI, Request
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.errors import pipeline_error_response
from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.database import SessionLocal, get_db
from app.core.errors import PipelineError
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import MutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.users.seed import seed_demo_users


configure_logging()
logger = logging.getLogger("app.lifecycle")


@contextmanager
def _session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("api.starting", extra={"outcome": settings.app_env})
    if settings.seed_demo_users:
        with _session_scope() as session:
            seed_demo_users(session)
    yield
    logger.info("api.stopped")


app = FastAPI(title="Pipeline API", version="0.1.0", lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(PipelineError)
async def handle_pipeline_error(request: Request, exc: PipelineError):  # type: ignore[no-untyped-def]
    # Reached for errors raised while resolving dependencies, e.g. a missing token.
    return pipeline_error_response(request, exc)


settings = get_settings()
if settings.otel_enabled:
    setup_otel("pipeline-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
