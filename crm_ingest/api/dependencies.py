"""
Shared dependencies for the API.

The event broker and the import worker are created once in the application
lifespan and kept on ``app.state``; routers reach them through these helpers
so tests can swap them with ``app.dependency_overrides``.
"""
from fastapi import HTTPException, Request

from crm_ingest.domain.imports.events import ImportEventBroker
from crm_ingest.domain.imports.worker import ImportWorker


def get_event_broker(request: Request) -> ImportEventBroker:
    broker = getattr(request.app.state, "event_broker", None)
    if broker is None:
        raise HTTPException(status_code=503, detail="Event broker is not running")
    return broker


def get_import_worker(request: Request) -> ImportWorker:
    worker = getattr(request.app.state, "import_worker", None)
    if worker is None:
        raise HTTPException(status_code=503, detail="Import worker is not running")
    return worker


def detect_file_type(filename: str) -> str:
    """
    Detect file type from filename extension.

    Raises:
    - HTTPException: If file type is not supported
    """
    lowered = filename.lower()
    if lowered.endswith('.csv'):
        return 'csv'
    elif lowered.endswith(('.xlsx', '.xls')):
        return 'excel'
    else:
        raise HTTPException(status_code=400, detail="Unsupported file type")
