"""
FastAPI application entry point.

This module initializes the FastAPI application, wires the bulk import worker
and its event broker, and registers the API routers.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI

from .api.routers import import_history
from .core.config import settings
from .core.logging_config import configure_logging
from .domain.imports.events import ImportEventBroker
from .domain.imports.worker import ImportWorker

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level, sql_echo=settings.log_sql)

logger = logging.getLogger(__name__)


def _init_database() -> None:
    from .db.models import create_record_tables
    from .domain.imports.history import create_import_history_table

    create_record_tables()
    logger.info("customers and companies tables ready")
    create_import_history_table()
    logger.info("import_history tables ready")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown events."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
    else:
        try:
            _init_database()
        except Exception:
            logger.exception("Failed to initialize database tables; the application cannot start")
            raise

    broker = ImportEventBroker(max_pending=settings.import_event_queue_size)
    worker = ImportWorker(broker, max_workers=settings.import_max_workers)
    app.state.event_broker = broker
    app.state.import_worker = worker

    yield  # Application runs here

    worker.shutdown(wait=True, cancel_running=True)


app = FastAPI(
    title="CRM Ingest API",
    version="1.0.0",
    description="Bulk customer and company imports with live progress tracking",
    lifespan=lifespan,
)

app.include_router(import_history.router)


@app.get("/")
async def root():
    return {
        "message": "CRM Ingest API",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "crm-ingest-api"
    }
