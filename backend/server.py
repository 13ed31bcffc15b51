from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from database import database
from routes import webhooks, subscription, admin_automations, admin_billing

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Scheduler with MongoDB job store so jobs survive restarts
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'staffix')

try:
    from pymongo import MongoClient
    jobstores = {
        'default': MongoDBJobStore(
            database=db_name,
            collection='scheduled_jobs',
            client=MongoClient(mongo_url)
        )
    }
    logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
except Exception as e:
    logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
    jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores)

from job_runner import run_admin_automations, run_reservation_cleanup


def _automation_interval_minutes() -> int:
    try:
        return int(os.getenv("AUTOMATION_INTERVAL_MINUTES", "60"))
    except ValueError:
        return 60


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Staffix billing API")
    await database.connect()

    if os.getenv("PYTEST_RUNNING"):
        yield
        await database.close()
        return

    # In-process automation tick; 0 disables it when an external cron calls /api/cron/admin-automations
    interval = _automation_interval_minutes()
    if interval > 0:
        scheduler.add_job(
            run_admin_automations,
            IntervalTrigger(minutes=interval),
            id="admin_automations",
            name="Admin Automations Tick",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

    # Reservation cleanup daily at 3:00 AM UTC
    scheduler.add_job(
        run_reservation_cleanup,
        CronTrigger(hour=3, minute=0),
        id="automation_reservation_cleanup",
        name="Automation Reservation Cleanup",
        replace_existing=True
    )

    scheduler.start()
    logger.info(f"Background job scheduler started (automation interval={interval}m)")

    yield

    # Shutdown
    logger.info("Shutting down Staffix billing API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Staffix Billing API",
    description="Billing reconciliation and admin automations",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks.router)
app.include_router(subscription.router)
app.include_router(admin_automations.router)
app.include_router(admin_automations.cron_router)
app.include_router(admin_billing.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
