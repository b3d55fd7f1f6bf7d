import logging
import sys
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request

from api.routes import auth
from config import AppMode, get_settings
from db.database import AsyncSessionLocal, init_db
from middleware.rate_limit import LoginRateLimiter
from middleware.security import SecurityHeadersMiddleware
from services.errors import AuthError
from services.password import PasswordHasher
from services.token_cleanup import TokenCleanupTask

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Quiet noisy loggers
logging.getLogger("aiosqlite").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown."""
    logger.info(f"Starting DMARC dashboard auth service in {settings.APP_MODE.value} mode...")

    await init_db()

    # One limiter and one hasher per process, shared by every request
    app.state.login_rate_limiter = LoginRateLimiter.from_settings(settings)
    app.state.password_hasher = PasswordHasher(settings.BCRYPT_ROUNDS)

    cleanup_task = None
    if "pytest" not in sys.modules:
        cleanup_task = TokenCleanupTask(AsyncSessionLocal, settings.TOKEN_CLEANUP_GRACE_DAYS)
        cleanup_task.start()

    yield

    if cleanup_task is not None:
        await cleanup_task.stop()
    await app.state.login_rate_limiter.close()
    logger.info("Shutting down DMARC dashboard auth service...")


app = FastAPI(
    title="DMARC Dashboard Auth",
    description="Authentication and session security for the DMARC report dashboard",
    version="1.0.0",
    lifespan=lifespan,
    debug=(settings.APP_MODE == AppMode.DEV and settings.DEBUG),
)

MAX_ERROR_MESSAGE_CHARS = 200


def _validation_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """
    Location, message and type of each validation error.

    The submitted value (pydantic's ``input``) is never included, so
    passwords in login and setup bodies are not echoed back.
    """
    errors = []
    for error in exc.errors():
        message = str(error.get("msg", ""))
        errors.append(
            {
                "loc": [str(part) for part in error.get("loc", ())],
                "msg": message.encode("utf-8", errors="replace").decode("utf-8")[:MAX_ERROR_MESSAGE_CHARS],
                "type": error.get("type"),
            }
        )
    return errors


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": _validation_errors(exc)},
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return auth.auth_error_response(exc)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Stack traces stay in the log, never in the response
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# Middlewares (order matters - first added = last executed)
app.add_middleware(SecurityHeadersMiddleware)

# Request logging (development only)
if settings.APP_MODE == AppMode.DEV:
    from middleware.logging import RequestLoggingMiddleware, configure_request_logging

    configure_request_logging(settings.LOG_LEVEL)
    app.add_middleware(RequestLoggingMiddleware)

# CORS middleware - must be last (first to process incoming requests)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type"],
    expose_headers=["Retry-After", "X-Request-ID"],
)

# API Routes - versioned under /api/v1/
api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(auth.router)
app.include_router(api_v1_router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "mode": settings.APP_MODE.value,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=(settings.APP_MODE == AppMode.DEV),
    )
