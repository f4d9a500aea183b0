from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import validation, documents, webhooks
from services.workflow_errors import WorkflowError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore
from pymongo import MongoClient

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from job_runner import run_notification_retry_worker

NOTIFICATION_RETRY_INTERVAL_SECONDS = int(os.environ.get("NOTIFICATION_RETRY_INTERVAL_SECONDS", "60"))


def _build_scheduler() -> AsyncIOScheduler:
    """Scheduler with a MongoDB job store so jobs survive restarts; memory store if Mongo is unreachable."""
    mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
    db_name = os.environ.get('DB_NAME', 'quote_validation')
    try:
        jobstores = {
            'default': MongoDBJobStore(
                database=db_name,
                collection='scheduled_jobs',
                client=MongoClient(mongo_url),
            )
        }
        logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
    except Exception as e:
        logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
        jobstores = {}
    return AsyncIOScheduler(jobstores=jobstores)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Quote Validation API")
    await database.connect()

    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_API_KEY / STRIPE_SECRET_KEY is not set. Online payment will fail.")
    else:
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", "test" if stripe_key.startswith("sk_test_") else "live")
    if not os.environ.get("POSTMARK_SERVER_TOKEN"):
        logger.warning("POSTMARK_SERVER_TOKEN is not set. Emails are logged, not delivered.")

    scheduler = None
    if not os.environ.get("PYTEST_RUNNING"):
        scheduler = _build_scheduler()
        # Notification retry worker (outbox) - default every minute
        scheduler.add_job(
            run_notification_retry_worker,
            IntervalTrigger(seconds=NOTIFICATION_RETRY_INTERVAL_SECONDS),
            id="notification_retry_worker",
            name="Notification Retry Worker",
            replace_existing=True
        )
        scheduler.start()
        logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Quote Validation API")
    if scheduler is not None:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Quote Validation API",
    description="Quote and invoice validation, e-signature and payment",
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

# Include routers
app.include_router(validation.router)  # Client-facing validation flow
app.include_router(documents.router)  # Issuer-side document access and sending
app.include_router(webhooks.router)  # Stripe + Postmark

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Quote Validation",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Version/build stamp for deployment verification (commit SHA set by CI/CD, e.g. GIT_COMMIT_SHA)
@app.get("/api/version")
async def version_info():
    return {
        "commit_sha": os.getenv("GIT_COMMIT_SHA", os.getenv("BUILD_SHA", "unknown")),
        "environment": os.getenv("ENVIRONMENT", "development"),
    }


# Workflow errors: NotFound 404, Expired 410, validation 422, conflicts 409, transient 503, reconciliation 502
@app.exception_handler(WorkflowError)
async def workflow_exception_handler(request: Request, exc: WorkflowError):
    log = logger.warning if exc.status_code >= 500 else logger.info
    log(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.to_http_detail()},
    )


# Validation error handler: log request_id + full errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_errors(errors), "request_id": request_id},
    )


def jsonable_errors(errors):
    """Pydantic error ctx may hold exception objects; keep only JSON-safe keys."""
    return [{k: e.get(k) for k in ("loc", "msg", "type")} for e in errors]


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
