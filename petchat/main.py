import asyncio
import contextlib
import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import models  # noqa: F401 - register tables with Base
from .config import (
    CHAT_MESSAGE_RATE_LIMIT,
    CHAT_MESSAGE_RATE_WINDOW_SECONDS,
    CHAT_START_RATE_LIMIT,
    CHAT_START_RATE_WINDOW_SECONDS,
    CHAT_SWEEP_INTERVAL_SECONDS,
    FRONTEND_URL,
)
from .database import Base, engine
from .domain.chat.coordinator import ChatCoordinator
from .domain.chat.eligibility import AppointmentEligibilityProvider
from .domain.chat.presence import PresenceDirectory
from .domain.chat.router import router as chat_router
from .domain.chat.router import ws_router as chat_ws_router
from .rate_limiter import UserRateLimiter

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

CHAT_SWEEPER_ENABLED = os.getenv("CHAT_SWEEPER_ENABLED", "true").lower() == "true"


def build_chat_coordinator() -> ChatCoordinator:
    rate_limiter = UserRateLimiter(
        {
            "start_chat": (CHAT_START_RATE_LIMIT, CHAT_START_RATE_WINDOW_SECONDS),
            "send_temp_message": (CHAT_MESSAGE_RATE_LIMIT, CHAT_MESSAGE_RATE_WINDOW_SECONDS),
        }
    )
    return ChatCoordinator(
        PresenceDirectory(),
        AppointmentEligibilityProvider(),
        rate_limiter=rate_limiter,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    try:
        from .rate_limiter import get_redis_client

        get_redis_client()  # Connection test
        logger.info("Redis connection established")
    except Exception as e:
        logger.warning(f"Redis connection failed - Rate limiting will run from memory only: {e}")

    sweeper = None
    if CHAT_SWEEPER_ENABLED:
        sweeper = asyncio.create_task(
            app.state.chat_coordinator.run_sweeper(CHAT_SWEEP_INTERVAL_SECONDS)
        )
        logger.info(f"Chat invitation sweeper running every {CHAT_SWEEP_INTERVAL_SECONDS}s")

    yield

    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    logger.info("Application shutting down...")


app = FastAPI(title="PetChat API", version="1.0.0", lifespan=lifespan)
app.state.chat_coordinator = build_chat_coordinator()


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Convert 422 validation errors from HTTPBearer to 401 authentication errors
    when the issue is with the Authorization header
    """
    for error in exc.errors():
        if error.get("loc") and "authorization" in str(error.get("loc")).lower():
            logger.warning(
                f"Authentication failed for {request.url.path}: Missing or invalid Authorization header"
            )
            return JSONResponse(
                status_code=401,
                content={
                    "detail": "Not authenticated. Please provide a valid Bearer token in the Authorization header."
                },
            )

    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": exc.errors()})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    try:
        response = await call_next(request)
        return response
    except Exception as e:
        logger.error(f"{request.method} {request.url.path} - Error: {str(e)}")
        raise


# CORS Configuration
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    f"{FRONTEND_URL},http://localhost:5173",
).split(",")

logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Routes
app.include_router(chat_router)
app.include_router(chat_ws_router)


@app.get("/")
def root():
    return {"message": "PetChat API is running"}


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.get("/health/chat")
def chat_health():
    """Live room and connection counters"""
    return {"status": "healthy", "chat": app.state.chat_coordinator.stats()}


@app.get("/health/redis")
async def redis_health_check():
    """Check Redis connectivity for monitoring"""
    try:
        from .rate_limiter import get_redis_client

        redis_client = get_redis_client()

        start_time = time.time()
        redis_client.ping()
        response_time = (time.time() - start_time) * 1000  # Convert to milliseconds

        info = redis_client.info()

        return {
            "status": "healthy",
            "redis": {
                "connected": True,
                "response_time_ms": round(response_time, 2),
                "version": info.get("redis_version", "unknown"),
                "connected_clients": info.get("connected_clients", 0),
            },
        }
    except Exception as e:
        return {"status": "unhealthy", "redis": {"connected": False, "error": str(e)}}
