import os

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .db import Base, engine, SessionLocal
from .errors import ValidationError, describe_request_errors
from .logging import setup_logging, RequestIdMiddleware
from .auth.router import router as auth_router
from .routes.forms import router as forms_router
from .routes.approvals import router as approvals_router
from .routes.audit_logs import router as audit_logs_router
from .routes.permissions import router as permissions_router
from .routes.users import router as users_router
from .seed import seed_reference_data
from .storage.local_provider import PUBLIC_PREFIX


logger = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError):
        # Malformed ids and missing fields share the 400 shape of ValidationError
        error = ValidationError(describe_request_errors(exc.errors()))
        logger.info("request_invalid", path=request.url.path, method=request.method, detail=error.detail)
        return JSONResponse(status_code=error.status_code, content={"detail": error.detail})

    @app.exception_handler(SQLAlchemyError)
    async def _database_error(request: Request, exc: SQLAlchemyError):
        logger.error(
            "database_error",
            path=request.url.path,
            method=request.method,
            request_id=getattr(request.state, "request_id", None),
            error=str(exc),
        )
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})

    # Routers
    app.include_router(auth_router)
    app.include_router(permissions_router)
    app.include_router(users_router)
    app.include_router(forms_router)
    app.include_router(approvals_router)
    app.include_router(audit_logs_router)

    # Signatures and attachments written by the local storage provider
    if settings.storage_provider != "blob":
        app.mount(PUBLIC_PREFIX, StaticFiles(directory=settings.local_storage_dir, check_dir=False), name="storage")

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.on_event("startup")
    def _startup():
        logger.info("startup", environment=settings.environment)
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            db = SessionLocal()
            try:
                seed_reference_data(db)
            finally:
                db.close()

    return app


app = create_app()
