import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clipforge.api import render, storage
from clipforge.config import get_settings
from clipforge.constants.error_codes import get_error_spec
from clipforge.exceptions import ClipForgeError
from clipforge.render import AssetResolver, JobManager, Publisher
from clipforge.schemas.envelope import ErrorInfo, ErrorLocation, ErrorResponse
from clipforge.services.storage_service import get_storage_service

settings = get_settings()
logger = logging.getLogger(__name__)


def build_job_manager() -> JobManager:
    """Wire a JobManager against the configured storage backend."""
    storage_service = get_storage_service()
    return JobManager(
        resolver=AssetResolver(storage_service),
        publisher=Publisher(storage_service),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    manager = build_job_manager()
    await manager.start()
    app.state.job_manager = manager
    yield
    # Shutdown
    await manager.shutdown()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _http_error_code(status_code: int) -> str:
    mapping = {
        400: "VALIDATION_ERROR",
        404: "NOT_FOUND",
        422: "VALIDATION_ERROR",
        500: "INTERNAL_ERROR",
    }
    return mapping.get(status_code, "HTTP_ERROR")


def _error_response(status_code: int, error: ErrorInfo) -> JSONResponse:
    body = ErrorResponse(detail=error.message, error=error)
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(body.model_dump(exclude_none=True)),
    )


def _error_info(code: str, message: str, location: ErrorLocation | None = None) -> ErrorInfo:
    spec = get_error_spec(code)
    return ErrorInfo(
        code=code,
        message=message,
        location=location,
        retryable=spec.get("retryable", False),
        suggested_fix=spec.get("suggested_fix"),
    )


@app.exception_handler(ClipForgeError)
async def clipforge_exception_handler(request: Request, exc: ClipForgeError) -> JSONResponse:
    return _error_response(exc.status_code, exc.to_error_info())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request body validation errors (422) with the error envelope."""
    errors = exc.errors()
    location = None
    if errors:
        first_error = errors[0]
        loc = [x for x in first_error.get("loc", []) if x != "body"]
        msg = first_error.get("msg", "Validation error")
        message = f"{' -> '.join(str(x) for x in loc)}: {msg}" if loc else msg
        fields = [str(x) for x in loc if not isinstance(x, int)]
        indexes = [x for x in loc if isinstance(x, int)]
        if fields:
            location = ErrorLocation(field=".".join(fields), index=indexes[0] if indexes else None)
    else:
        message = "Request validation failed"

    return _error_response(422, _error_info("VALIDATION_ERROR", message, location))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    error_code = _http_error_code(exc.status_code)
    return _error_response(exc.status_code, _error_info(error_code, str(exc.detail)))


# Global exception handler to ensure errors return proper JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception: {exc}")
    return _error_response(500, _error_info("INTERNAL_ERROR", "Internal server error"))


# Routers
app.include_router(render.router, prefix="/api", tags=["render"])
app.include_router(storage.router, prefix="/api/storage", tags=["storage"])


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "version": settings.app_version, "git_hash": settings.git_hash}


@app.get("/api/version")
async def get_version() -> dict[str, str]:
    """Return the backend version info."""
    return {"version": settings.app_version, "git_hash": settings.git_hash}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
    uvicorn.run("clipforge.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
