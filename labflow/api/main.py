import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from labflow import __version__
from labflow.core.config import get_settings, configure_logging
from labflow.core.errors import LabflowError
from labflow.api.routers import approval_matrix, borrowings, health, notifications
from labflow.api.middleware.rate_limit import RateLimitMiddleware, RateLimiter
from labflow.api.schemas.common import ErrorResponse
from labflow.db.session import init_db
from labflow.services.revalidation import CacheRevalidator, log_subscriber

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    logger.info("%s %s started", settings.app_name, __version__)
    yield
    await app.state.rate_limiter.store.close()


app = FastAPI(
    title=settings.app_name,
    description="Lab equipment borrowing workflow",
    version=__version__,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)

app.state.revalidator = CacheRevalidator([log_subscriber])
app.state.rate_limiter = RateLimiter(settings=settings)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RateLimitMiddleware, limiter=app.state.rate_limiter)


def _error_body(message: str) -> dict:
    return ErrorResponse(message=message).model_dump(exclude_none=True)


@app.exception_handler(LabflowError)
async def labflow_error_handler(request: Request, exc: LabflowError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s", type(exc).__name__, request.method, request.url.path)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    # Report the first problem by field name only; never echo the input back
    errors = exc.errors()
    message = "Submitted data is not valid."
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field or 'body'}: {first.get('msg', 'invalid value')}"
    return JSONResponse(status_code=400, content=_error_body(message))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=_error_body("Internal server error."))


# Include routers
app.include_router(notifications.router, prefix="/api")
app.include_router(approval_matrix.router, prefix="/api")
app.include_router(borrowings.router, prefix="/api")
app.include_router(health.router)


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": __version__,
        "docs": "/docs" if settings.debug else None,
    }
