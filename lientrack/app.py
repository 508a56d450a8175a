import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lientrack.application import build_deadline_service, configure_deadline_service
from lientrack.core.errors import (
    DeadlineNotFoundError,
    InvalidTransitionError,
    MissingFactError,
    PartialSyncError,
    StorageError,
    UnsupportedRuleError,
)
from lientrack.core.settings import Settings
from lientrack.routes import deadlines, projects, users

logger = logging.getLogger(__name__)


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(MissingFactError)
    async def missing_fact(request: Request, exc: MissingFactError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": str(exc), "category": exc.category, "fact": exc.fact},
        )

    @app.exception_handler(UnsupportedRuleError)
    async def unsupported_rule(request: Request, exc: UnsupportedRuleError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": str(exc), "category": exc.category, "jurisdiction": exc.jurisdiction},
        )

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "current": exc.current, "requested": exc.requested},
        )

    @app.exception_handler(DeadlineNotFoundError)
    async def not_found(request: Request, exc: DeadlineNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(StorageError)
    async def storage_failure(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("storage failure on %s %s: %s", request.method, request.url.path, exc)
        content = {"detail": str(exc), "operation": exc.operation}
        if isinstance(exc, PartialSyncError) and exc.report is not None:
            content["report"] = exc.report.to_dict()
        return JSONResponse(status_code=503, content=content)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="Lientrack Deadline API", version="0.1.0")
    configure_deadline_service(build_deadline_service(settings))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _install_error_handlers(app)

    app.include_router(projects.router, prefix="/api")
    app.include_router(users.router, prefix="/api")
    app.include_router(deadlines.router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Lientrack Deadline API",
                "docs": "/docs",
                "health": "/api/deadlines/reminders",
            }
        )

    return app


app = create_app()
