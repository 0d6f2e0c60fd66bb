"""Agent Relay: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager
from functools import partial

# configure_structlog must run before other agentrelay imports create loggers
from agentrelay.core.logging import configure_structlog
from agentrelay.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from agentrelay.api.routes import api_router
from agentrelay.core.config import Settings, get_settings
from agentrelay.core.exceptions import AdmissionDeniedError, RelayError
from agentrelay.db import close_redis, init_redis
from agentrelay.integrations.credentials import CredentialStore, SettingsCredentialStore
from agentrelay.middleware.correlation import get_correlation_id, setup_correlation_middleware
from agentrelay.quota.schemas import QuotaConfig
from agentrelay.quota.tracker import QuotaTracker
from agentrelay.services.janitor import SessionJanitor
from agentrelay.services.session_service import InteractiveSessionService
from agentrelay.sessions.ledger import SessionLedger
from agentrelay.worker.agent import AgentBackend, build_agent_backend
from agentrelay.worker.classifier import KeywordQuestionClassifier
from agentrelay.worker.compute import ComputeWorker
from agentrelay.worker.git_workspace import GitWorkspaceManager
from agentrelay.worker.registry import WorkerRegistry

logger = structlog.get_logger(__name__)


def wire_services(
    app: FastAPI,
    redis: Redis,
    settings: Settings,
    agent: AgentBackend | None = None,
    credentials: CredentialStore | None = None,
    **worker_overrides,
) -> InteractiveSessionService:
    """Build the quota tracker, ledger, worker registry and session service onto app.state.

    ``agent``, ``credentials`` and ``worker_overrides`` (extra ComputeWorker
    keyword arguments such as ``pr_client_factory``) replace the
    settings-derived collaborators.
    """
    quota = QuotaTracker(
        redis,
        QuotaConfig(
            max_daily_tokens=settings.quota_max_daily_tokens,
            max_daily_cost=settings.quota_max_daily_cost,
            max_concurrent_sessions=settings.quota_max_concurrent_sessions,
        ),
        retention_days=settings.usage_retention_days,
        lease_ttl=settings.session_idle_timeout_seconds,
    )
    ledger = SessionLedger(
        redis,
        idle_timeout=settings.session_idle_timeout_seconds,
        completed_retention=settings.completed_session_retention_seconds,
    )
    workspaces = GitWorkspaceManager(
        settings.workspace_root,
        committer_name=settings.git_committer_name,
        committer_email=settings.git_committer_email,
        timeout=settings.git_timeout_seconds,
        pr_summary_filename=settings.pr_summary_filename,
    )
    registry = WorkerRegistry(
        partial(
            ComputeWorker,
            agent=agent or build_agent_backend(settings),
            workspaces=workspaces,
            ledger=ledger,
            quota=quota,
            classifier=KeywordQuestionClassifier(),
            settings=settings,
            **worker_overrides,
        )
    )
    service = InteractiveSessionService(
        quota=quota,
        ledger=ledger,
        registry=registry,
        credentials=credentials or SettingsCredentialStore(settings),
        settings=settings,
    )

    app.state.quota = quota
    app.state.ledger = ledger
    app.state.registry = registry
    app.state.session_service = service
    app.state.janitor = SessionJanitor(ledger, quota, registry, interval=settings.janitor_interval_seconds)
    return service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so /health returns 503 while streams drain
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug, agent_backend=settings.agent_backend)

    redis = await init_redis()
    wire_services(app, redis, settings)
    app.state.janitor.start()
    logger.info("startup_complete")

    yield

    logger.info("shutdown_begin")
    await app.state.janitor.stop()
    await app.state.registry.close()
    await close_redis()
    logger.info("shutdown_complete")


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    """Map the relay error hierarchy to ``{success: false, error, reason?}``.

    Only the public message goes to the client; the full message is logged.
    """
    content: dict = {"success": False, "error": exc.public_message}
    if isinstance(exc, AdmissionDeniedError):
        status = exc.quota_status
        content.update(
            reason=status.reason,
            remainingTokens=status.remaining_tokens,
            remainingCost=status.remaining_cost,
            activeSessions=status.active_sessions,
        )

    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "relay_error",
        status_code=exc.status_code,
        error_type=type(exc).__name__,
        error=str(exc),
        correlation_id=get_correlation_id(),
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.status_code, content=content)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("request_validation_failed", path=request.url.path, errors=str(exc.errors())[:500])
    return JSONResponse(status_code=400, content={"success": False, "error": "Invalid request body"})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking."""
    debug_id = str(uuid.uuid4())
    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail, "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled errors: full traceback in logs, generic 500 to the client."""
    debug_id = str(uuid.uuid4())
    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Interactive coding-agent sessions over Server-Sent Events",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Session-Id", "X-Request-ID"],
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    app.exception_handler(RelayError)(relay_error_handler)
    app.exception_handler(RequestValidationError)(validation_exception_handler)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "agentrelay.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
