"""
Clinic Onboarding - FastAPI Application

Main entry point for the clinic onboarding backend.

Architecture:
- ClinicCodeIssuer   → OB-{REGION}-{TYPE}-{SEQ3} clinic codes
- InviteCodeIssuer   → {CLINIC CODE}-{YYYYMM}-{SUFFIX8} invite codes (hash at rest)
- InviteCodeValidator → rate limit → format → clinic → lookup → expiry → usage
- SuspiciousActivityMonitor → background anomaly scans and security alerts
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, configure_logging, load_settings
from .database import create_engine, create_session_factory, init_db
from .errors import CodeEngineError, ErrorCode
from .models.domain import utcnow
from .routers import clinic_codes_router, invite_codes_router, security_alerts_router
from .routers.deps import error_response
from .services.codes import CodeStore, CounterStore, build_engine

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[CodeStore] = None,
    counter_store: Optional[CounterStore] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """
    Build the application.

    `store` and `counter_store` override the backends named in settings;
    tests pass in-memory ones.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize database and code engine on startup."""
        configure_logging(settings.log_level)
        db_engine = None
        session_factory = None
        if store is None and settings.store_backend == "sql":
            db_engine = create_engine(settings.database_url)
            await init_db(db_engine)
            session_factory = create_session_factory(db_engine)

        app.state.engine = build_engine(
            settings,
            store=store,
            counter_store=counter_store,
            session_factory=session_factory,
            clock=clock,
        )
        try:
            yield
        finally:
            try:
                await app.state.engine.close()
            finally:
                if db_engine is not None:
                    await db_engine.dispose()

    app = FastAPI(
        lifespan=lifespan,
        title="Clinic Onboarding",
        description="""
        Clinic Onboarding - Invite and Clinic Code Service

        Issues tenant-scoped onboarding codes and validates them for customers
        joining a clinic.

        ## Codes
        - **Clinic code**: `OB-SEOUL-CLINIC-001`, one per clinic
        - **Invite code**: `OB-SEOUL-CLINIC-001-202401-A7B9X2K5`, stored only as a keyed hash

        ## Protections
        - Per-IP rate limits on validation and use
        - Expiry and usage limits enforced atomically
        - Audit record for every attempt, anomaly scans on suspicious failures
        """,
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    @app.exception_handler(CodeEngineError)
    async def code_engine_error_handler(request: Request, exc: CodeEngineError):
        if exc.error_code in (ErrorCode.STORE_ERROR, ErrorCode.SYSTEM_ERROR):
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}", exc_info=exc)
        engine = getattr(request.app.state, "engine", None)
        return error_response(exc, now=engine.clock() if engine else None)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = [str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path")]
        field_name = ".".join(location) or "request"
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": f"Invalid {field_name}: {first.get('msg', 'malformed request')}",
                "errorCode": ErrorCode.INVALID_INPUT.value,
            },
        )

    # Include routers
    app.include_router(invite_codes_router)
    app.include_router(clinic_codes_router)
    app.include_router(security_alerts_router)

    @app.get("/")
    async def root():
        """Root endpoint - API information."""
        return {
            "name": "Clinic Onboarding",
            "version": VERSION,
            "description": "Invite and clinic code service",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": VERSION}

    return app


app = create_app()


# For running with: python -m clinic_onboarding.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
