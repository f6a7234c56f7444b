"""WebQ back-office service: Stripe webhooks in, notification emails out"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.orm import Session

from backoffice.api import notifications, webhooks
from backoffice.core.config import settings
from backoffice.core.logging import setup_logging
from backoffice.core.otel import configure_tracing, instrument_app
from backoffice.db.session import engine, get_db, init_db

setup_logging()
logger = logging.getLogger(__name__)


def _start_background_tasks() -> List[asyncio.Task]:
    """In-process loops; production usually drives the queue from an external scheduler"""
    tasks = []
    if settings.QUEUE_SCHEDULER_ENABLED:
        from backoffice.tasks.scheduler import notification_queue_task
        tasks.append(asyncio.create_task(notification_queue_task()))
    if settings.CLEANUP_TASK_ENABLED:
        from backoffice.tasks.cleanup import cleanup_task
        tasks.append(asyncio.create_task(cleanup_task()))
    logger.info(
        f"Background tasks: queue scheduler={'on' if settings.QUEUE_SCHEDULER_ENABLED else 'off'}, "
        f"cleanup={'on' if settings.CLEANUP_TASK_ENABLED else 'off'}"
    )
    return tasks


@asynccontextmanager
async def lifespan(app: FastAPI):
    if configure_tracing(engine):
        logger.info(f"Exporting traces to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")

    try:
        init_db()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    tasks = _start_background_tasks()
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Background tasks stopped")


app = FastAPI(
    title="WebQ Back-office",
    description="Payment webhooks and reliable notification delivery",
    version="1.0.0",
    lifespan=lifespan
)
instrument_app(app)

app.include_router(webhooks.router)
app.include_router(notifications.router)


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/metrics")
def metrics_endpoint():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Liveness plus a database round trip"""
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        db.rollback()
        logger.warning(f"Health check database query failed: {e}")
        database = "unavailable"
    return {"status": "healthy" if database == "ok" else "degraded", "database": database}
