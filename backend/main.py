from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
import asyncio
import logging
import os

from dotenv import load_dotenv

load_dotenv()

import scheduler
import storage
from database import SessionLocal, init_db
from errors import register_exception_handlers
from rate_limit import RateLimitMiddleware
from seed import seed_database
from time_utils import utc_now
from auth.routes import router as auth_router
from routers.users import router as users_router
from routers.tasks import router as tasks_router
from routers.categories import router as categories_router
from routers.notifications import router as notifications_router
from routers.dashboard import router as dashboard_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="TaskFlow API",
    description="Task management API with categories, notifications, dashboards and scheduled jobs",
    version="1.0.0"
)

# Rate limiting for /api/ routes
app.add_middleware(RateLimitMiddleware)

# CORS middleware for frontend (added last so it also wraps rate-limited responses)
frontend_url = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted({
        frontend_url,
        "http://localhost:3000",     # Frontend
        "http://127.0.0.1:3000",     # Frontend (IP)
        "http://localhost:5173",     # Vite dev server
        "http://127.0.0.1:5173",     # Vite dev server (IP)
    }),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(auth_router)
app.include_router(users_router)
app.include_router(tasks_router)
app.include_router(categories_router)
app.include_router(notifications_router)
app.include_router(dashboard_router)

# Serve uploaded attachments
try:
    storage.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
except OSError as e:
    logger.warning(f"Could not create upload directory: {e}. File uploads will not work.")
app.mount("/uploads", StaticFiles(directory=str(storage.UPLOAD_DIR), check_dir=False), name="uploads")


def scheduler_enabled() -> bool:
    return os.getenv("ENABLE_SCHEDULER", "true").strip().lower() == "true"


def scheduler_poll_seconds() -> float:
    """SCHEDULER_POLL_SECONDS, clamped to 1-60 seconds."""
    return scheduler.clamp_poll_seconds(os.getenv("SCHEDULER_POLL_SECONDS", str(scheduler.DEFAULT_POLL_SECONDS)))


# ============== Startup / Shutdown ==============

@app.on_event("startup")
async def startup():
    """Create the schema, seed the admin account and start the scheduler."""
    init_db()

    db = SessionLocal()
    try:
        seed_database(db)
    finally:
        db.close()

    if scheduler_enabled():
        app.state.scheduler_task = asyncio.create_task(
            scheduler.run_scheduler(SessionLocal, poll_seconds=scheduler_poll_seconds())
        )
    else:
        app.state.scheduler_task = None
        logger.info("Scheduler disabled (ENABLE_SCHEDULER=false)")


@app.on_event("shutdown")
async def shutdown():
    task = getattr(app.state, "scheduler_task", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Scheduler stopped")


# Health check
@app.get("/api/health")
def health_check():
    return {"status": "OK", "timestamp": utc_now().isoformat()}
