from contextlib import asynccontextmanager
import logging
import traceback

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text

from huddle.database import engine, Base, SessionLocal
import huddle.models  # noqa: F401  # Ensure all SQLAlchemy models are registered
from huddle.config.loader import get_session_sweep_settings
from huddle.routers import meetings as meetings_router
from huddle.routers import webhooks as webhooks_router
from huddle.services.errors import MeetingError
from huddle.services.session_sweeper import start_session_sweeper, stop_session_sweeper
from huddle.utils.logging_config import setup_logging

logger = logging.getLogger("huddle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    Base.metadata.create_all(bind=engine)
    sweep = get_session_sweep_settings()
    if sweep["enabled"]:
        start_session_sweeper(sweep["ttl_seconds"], sweep["interval_seconds"])
    logger.info("Database initialized.")
    yield
    stop_session_sweeper()
    logger.info("Application shutdown.")


app = FastAPI(
    title="Huddle",
    description="Meeting lifecycle and participant-session reconciliation",
    lifespan=lifespan,
)

app.include_router(meetings_router.router)
app.include_router(webhooks_router.router)


@app.exception_handler(MeetingError)
async def meeting_error_handler(request: Request, exc: MeetingError):
    log = logging.getLogger("huddle")
    log.info(f"{exc.code} ({exc.status_code}): {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    log = logging.getLogger("huddle")
    log.error(f"Global exception: {str(exc)}\n{traceback.format_exc()}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal Server Error. Please check logs."},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log = logging.getLogger("huddle")
    if exc.status_code >= 500:
        log.error(f"HTTP {exc.status_code} error: {exc.detail}")
    else:
        log.info(f"HTTP {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    log = logging.getLogger("huddle")
    error_messages = [err["msg"] for err in exc.errors()]
    log.warning(f"Validation error: {error_messages}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": error_messages, "code": "validation_error"},
    )


@app.get("/health", tags=["healthcheck"])
async def health_check():
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        logger.error("Health check database connection error: %s", e)
        raise HTTPException(
            status_code=503, detail=f"Database connection failed: {str(e)}"
        )
    finally:
        db.close()
