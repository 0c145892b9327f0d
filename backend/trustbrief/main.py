import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustbrief.api.routes import router
from trustbrief.config import Settings, get_settings
from trustbrief.database import create_tables, dispose_engine, get_engine, get_session_factory
from trustbrief.errors import DomainError
from trustbrief.observability import bind_correlation_id, configure_logging, new_correlation_id
from trustbrief.services.factory import build_services

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    **service_overrides,
) -> FastAPI:
    """
    Build the application.

    With no arguments, everything comes from the environment (Postgres,
    Redis, provider keys). Tests pass their own settings, a session factory
    on a throwaway database, and fake providers / source search through
    service_overrides (see services.factory.build_services).
    """
    settings = settings or get_settings()

    # =========================================================================
    # LIFESPAN: Startup and Shutdown Logic
    # =========================================================================
    #
    # Everything BEFORE 'yield' runs once on startup, everything AFTER on
    # shutdown. Stage jobs run in separate worker processes (trustbrief.worker);
    # the API only enqueues.
    #
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""

        # === STARTUP ===
        configure_logging(settings.log_level)
        owns_engine = session_factory is None
        if owns_engine:
            await create_tables(get_engine())
        factory = session_factory or get_session_factory()

        services = build_services(settings, factory, **service_overrides)
        app.state.session_factory = factory
        app.state.services = services
        logger.info("TrustBrief started")

        # === YIELD (server is now running and handling requests) ===
        yield

        # === SHUTDOWN ===
        await services.close()
        if owns_engine:
            await dispose_engine()
        logger.info("TrustBrief stopped")

    app = FastAPI(
        title="TrustBrief",
        description="Research analysis pipeline with evidence-bound, trust-scored claims",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173"],  # Vite default
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[CORRELATION_HEADER],
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or new_correlation_id()
        request.state.correlation_id = correlation_id
        with bind_correlation_id(correlation_id):
            response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    def _error(request: Request, status_code: int, body: dict) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", None)
        return JSONResponse(
            status_code=status_code,
            content={**body, "correlation_id": correlation_id},
            headers={CORRELATION_HEADER: correlation_id} if correlation_id else None,
        )

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        logger.info(f"{request.method} {request.url.path} → {exc.status_code} {exc.code}: {exc.message}")
        return _error(request, exc.status_code, exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        reasons = [
            f"{'.'.join(str(p) for p in err['loc'] if p != 'body') or 'body'}: {err['msg']}"
            for err in exc.errors()
        ]
        return _error(
            request,
            422,
            {"code": "VALIDATION_ERROR", "message": "Request validation failed", "reasons": reasons},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(
            f"Unhandled error on {request.method} {request.url.path} "
            f"[{getattr(request.state, 'correlation_id', '-')}]",
            exc_info=exc,
        )
        return _error(request, 500, {"code": "INTERNAL_ERROR", "message": "Internal server error"})

    app.include_router(router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        services = getattr(app.state, "services", None)
        circuits = services.health.snapshot() if services is not None else {}
        return {"status": "healthy", "providers": circuits}

    return app


app = create_app()
