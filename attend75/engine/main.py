# attend75/engine/main.py
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import redis.asyncio as redis
import asyncpg
from apscheduler.schedulers.asyncio import AsyncIOScheduler as Scheduler
import logging

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config.config import settings
from .logging.logging_config import setup_logging
from .api import attendance, data, session, subjects

from .db.local_store import LocalStore
from .db.remote_store import RemoteStore
from .services.ledger import AttendanceLedger
from .services.sync_coordinator import SyncCoordinator
from .tasks.cron import keep_realtime_alive_task, retry_pending_writes_task

from .api.utilities.limiter import limiter

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Builds the connection pools, the ledger and the coordinator on startup,
    loads the guest ledger and starts the background jobs; tears them down on shutdown.
    """
    app.state.limiter = limiter

    logger.info("Starting attendance engine...")

    postgres_pool = None
    redis_pool = None
    scheduler = None

    try:
        postgres_pool = await asyncpg.create_pool(
            dsn=settings.DATABASE_URL, min_size=2, max_size=10
        )
        redis_pool = redis.ConnectionPool.from_url(
            settings.LOCAL_STORE_REDIS_URL, decode_responses=True
        )

        app.state.postgres_pool = postgres_pool
        app.state.redis_pool = redis_pool
        logger.info("PostgreSQL and Redis connection pools created.")

        remote = RemoteStore(pool=postgres_pool, channel=settings.REALTIME_CHANNEL)
        local = LocalStore(pool=redis_pool, prefix=settings.LOCAL_STORE_PREFIX)
        coordinator = SyncCoordinator(
            ledger=AttendanceLedger(),
            remote=remote,
            local=local,
            write_timeout=settings.REMOTE_WRITE_TIMEOUT_SECONDS,
        )
        await coordinator.start_guest_session()
        app.state.coordinator = coordinator

        scheduler = Scheduler()
        scheduler.add_job(retry_pending_writes_task, "interval", minutes=settings.PENDING_RETRY_INTERVAL_MINUTES,
                          args=[coordinator], id="retry_pending_writes")
        scheduler.add_job(keep_realtime_alive_task, "interval", minutes=settings.REALTIME_CHECK_INTERVAL_MINUTES,
                          args=[coordinator], id="keep_realtime_alive")
        scheduler.start()

        app.state.scheduler = scheduler
        logger.info("Background jobs scheduled.")

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        app.state.postgres_pool = postgres_pool
        app.state.redis_pool = redis_pool
        app.state.coordinator = None
        app.state.scheduler = None

    yield

    logger.info("Shutting down attendance engine...")
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is not None:
        await coordinator.disconnect_realtime()
    if getattr(app.state, "scheduler", None):
        app.state.scheduler.shutdown()
        logger.info("Scheduler stopped.")
    if getattr(app.state, "postgres_pool", None):
        await app.state.postgres_pool.close()
        logger.info("PostgreSQL connection pool closed.")
    if getattr(app.state, "redis_pool", None):
        await app.state.redis_pool.disconnect()
        logger.info("Redis connection pool closed.")


app = FastAPI(
    title="Attend75 Engine API",
    description="Attendance analytics and synchronization engine",
    version="1.0.0",
    lifespan=lifespan
)

app.state.limiter = limiter

origins = [
    "*"
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(session.router, prefix="/api/v1")
app.include_router(subjects.router, prefix="/api/v1")
app.include_router(attendance.router, prefix="/api/v1")
app.include_router(data.router, prefix="/api/v1")


@app.get("/health", tags=["System"])
def health_check():
    """Simple liveness endpoint."""
    return {"status": "ok", "message": "Attend75 engine is running."}
