import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import StoreUnavailableError
from .routers import sync as sync_router
from .routers import tasks as tasks_router
from .settings import get_settings
from .utils import utc_now

logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "health", "description": "Service health and status endpoints."},
    {
        "name": "sync",
        "description": "Batch reconciliation of client task records using last-writer-wins timestamps.",
    },
    {
        "name": "tasks",
        "description": "CRUD operations for individual tasks with filtering, sorting, and pagination.",
    },
]


def configure_logging(level: int, *, force: bool = False) -> None:
    """Set up root logging for the service; one line per record, logger name in brackets."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        force=force,
    )


_settings = get_settings()
configure_logging(_settings.log_level_number)

app = FastAPI(
    title="Task Sync Backend",
    description="Backend API service that reconciles offline client task lists with server storage.",
    version="0.1.0",
    openapi_tags=openapi_tags,
)

allow_all = (_settings.cors_allow_origins == ["*"]) or (len(_settings.cors_allow_origins) == 0)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all else _settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_body(error: str, message: str) -> dict:
    return {"error": error, "message": message, "timestamp": utc_now().isoformat()}


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Return a consistent JSON structure for request validation errors.

    Response format:
        {
            "error": "ValidationError",
            "detail": [... pydantic/fastapi error details ...],
            "message": "Request validation failed"
        }
    """
    return JSONResponse(
        status_code=422,
        content={
            "error": "ValidationError",
            "message": "Request validation failed",
            "detail": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    """Whole-request failure: the record store could not be reached, nothing was written."""
    logger.error("Record store unavailable for %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content=_error_body("StoreUnavailable", str(exc)))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all returning JSON instead of a bare 500 page."""
    logger.exception("Unhandled error for %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=_error_body("InternalServerError", str(exc)))


# PUBLIC_INTERFACE
@app.get("/", summary="Health Check", tags=["health"])
def health_check():
    """
    Health check endpoint.

    Returns:
        A JSON object indicating service health.
    """
    return {"message": "Healthy", "backend": _settings.persistence_backend}


app.include_router(sync_router.router)
app.include_router(tasks_router.router)
