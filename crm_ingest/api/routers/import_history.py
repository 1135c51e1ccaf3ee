"""
Bulk import endpoints: start imports, follow their progress, cancel or undo them.
"""
import json
import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from crm_ingest.api.dependencies import detect_file_type, get_event_broker, get_import_worker
from crm_ingest.api.schemas.shared import (
    BulkImportCreateRequest,
    ImportCancelResponse,
    ImportHistoryDeleteResponse,
    ImportHistoryListResponse,
    ImportHistoryRecord,
    ImportHistoryResponse,
    ImportHistorySummary,
)
from crm_ingest.core.config import settings
from crm_ingest.db.session import get_db
from crm_ingest.domain.imports.bulk_insert import BulkImportRequest
from crm_ingest.domain.imports.events import IMPORT_HISTORY_CHANGED, ImportEventBroker, Subscription
from crm_ingest.domain.imports.history import (
    ImportStatus,
    create_import_history,
    delete_import_history,
    get_import_history,
    list_import_history,
)
from crm_ingest.domain.imports.mapper import RowShapeError, validate_row_shapes
from crm_ingest.domain.imports.processors.csv_processor import read_tabular_file, resolve_properties
from crm_ingest.domain.imports.records import ContentType, delete_records
from crm_ingest.domain.imports.worker import ImportWorker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/import-history", tags=["import-history"])


def _start_import(
    worker: ImportWorker,
    *,
    content_type: ContentType,
    rows,
    properties,
    user_id: Optional[str],
    file_name: Optional[str] = None,
    per_row: Optional[float] = None,
) -> ImportHistoryResponse:
    try:
        validate_row_shapes(rows, properties)
    except RowShapeError as e:
        raise HTTPException(status_code=400, detail=str(e))

    progress = create_import_history(
        total=len(rows),
        content_type=content_type.value,
        user_id=user_id,
        file_name=file_name,
        per_row=per_row,
    )
    try:
        worker.submit(
            BulkImportRequest(
                import_id=progress.import_id,
                content_type=content_type,
                rows=rows,
                properties=properties,
                user_id=user_id,
            )
        )
    except Exception:
        # A history the worker never accepted would stay Pending forever.
        delete_import_history(progress.import_id)
        raise
    return ImportHistoryResponse(
        success=True,
        import_history=ImportHistoryRecord.from_progress(progress),
    )


@router.post("", response_model=ImportHistoryResponse, status_code=202)
async def create_bulk_import(
    request: BulkImportCreateRequest,
    worker: ImportWorker = Depends(get_import_worker),
):
    """
    Start importing pre-parsed rows in the background.

    Returns the Pending import history; follow it through
    ``GET /import-history/{import_id}`` or the ``/events`` stream.
    """
    try:
        return _start_import(
            worker,
            content_type=request.content_type,
            rows=request.rows,
            properties=request.properties,
            user_id=request.user_id,
            per_row=request.percentage_per_row,
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("Failed to start bulk import")
        raise HTTPException(status_code=500, detail=f"Failed to start import: {str(e)}")


@router.post("/upload", response_model=ImportHistoryResponse, status_code=202)
async def upload_bulk_import(
    file: UploadFile = File(...),
    content_type: ContentType = Form(...),
    user_id: Optional[str] = Form(None),
    custom_fields_json: Optional[str] = Form(None),
    worker: ImportWorker = Depends(get_import_worker),
):
    """
    Start importing a CSV or Excel file whose first row names the columns.

    Parameters:
    - file: CSV/XLSX upload
    - content_type: 'customer' or 'company'
    - user_id: Acting user recorded on every created record
    - custom_fields_json: JSON object of custom field label -> custom field id
    """
    file_type = detect_file_type(file.filename or "")
    file_content = await file.read()
    if len(file_content) > settings.upload_max_file_size_mb * 1024 * 1024:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds {settings.upload_max_file_size_mb}MB upload limit",
        )

    try:
        custom_fields = json.loads(custom_fields_json) if custom_fields_json else {}
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail=f"Invalid custom_fields_json: {str(e)}")
    if not isinstance(custom_fields, dict):
        raise HTTPException(status_code=400, detail="custom_fields_json must be a JSON object")

    try:
        headers, rows = read_tabular_file(file_content, file_type)
        properties = resolve_properties(headers, content_type, custom_fields)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        return _start_import(
            worker,
            content_type=content_type,
            rows=rows,
            properties=properties,
            user_id=user_id,
            file_name=file.filename,
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("Failed to start bulk import from %s", file.filename)
        raise HTTPException(status_code=500, detail=f"Failed to start import: {str(e)}")


@router.get("", response_model=ImportHistoryListResponse)
async def list_bulk_imports(
    content_type: Optional[ContentType] = None,
    status: Optional[ImportStatus] = None,
    user_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    try:
        imports, total = list_import_history(
            content_type=content_type.value if content_type else None,
            status=status.value if status else None,
            user_id=user_id,
            limit=limit,
            offset=offset,
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to retrieve import history: {str(e)}")

    return ImportHistoryListResponse(
        success=True,
        imports=[ImportHistorySummary.model_validate(item, from_attributes=True) for item in imports],
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{import_id}", response_model=ImportHistoryResponse)
async def get_bulk_import(import_id: str):
    progress = get_import_history(import_id)
    if not progress:
        raise HTTPException(status_code=404, detail="Import history not found")
    return ImportHistoryResponse(success=True, import_history=ImportHistoryRecord.from_progress(progress))


def _format_event(payload: dict) -> str:
    return f"event: {IMPORT_HISTORY_CHANGED}\ndata: {json.dumps(payload)}\n\n"


async def _event_stream(
    subscription: Subscription,
    first_payload: dict,
    import_id: str,
    worker: ImportWorker,
) -> AsyncIterator[str]:
    try:
        yield _format_event(first_payload)
        if first_payload["status"] == ImportStatus.DONE.value:
            return

        while True:
            payload = await run_in_threadpool(subscription.get, settings.import_event_poll_seconds)
            if payload is None:
                if worker.get(import_id) is not None:
                    yield ": keep-alive\n\n"
                    continue
                # The job is gone (finished, cancelled or crashed); flush what is left.
                payload = subscription.get(0)
                if payload is None:
                    return

            yield _format_event(payload)
            if payload["status"] == ImportStatus.DONE.value:
                return
    finally:
        subscription.close()


@router.get("/{import_id}/events")
async def stream_bulk_import_events(
    import_id: str,
    broker: ImportEventBroker = Depends(get_event_broker),
    worker: ImportWorker = Depends(get_import_worker),
):
    """
    Server-sent events carrying ``{_id, status, percentage}`` for one import.

    The first event is the current snapshot; the stream ends once the import
    reaches Done or its job is no longer running.
    """
    # Subscribe before reading so no event between the read and the subscription is lost.
    subscription = broker.subscribe(IMPORT_HISTORY_CHANGED, import_id=import_id)
    progress = get_import_history(import_id)
    if not progress:
        subscription.close()
        raise HTTPException(status_code=404, detail="Import history not found")

    return StreamingResponse(
        _event_stream(subscription, progress.event_payload(), import_id, worker),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.post("/{import_id}/cancel", response_model=ImportCancelResponse)
async def cancel_bulk_import(
    import_id: str,
    worker: ImportWorker = Depends(get_import_worker),
):
    if not worker.cancel(import_id):
        raise HTTPException(status_code=404, detail="No running import with that id")
    return ImportCancelResponse(
        success=True,
        import_id=import_id,
        message="Cancellation requested; the import stops before its next row",
    )


@router.delete("/{import_id}", response_model=ImportHistoryDeleteResponse)
async def delete_bulk_import(
    import_id: str,
    worker: ImportWorker = Depends(get_import_worker),
    db: Session = Depends(get_db),
):
    """Undo an import: delete the records it created, then its history."""
    progress = get_import_history(import_id)
    if not progress:
        raise HTTPException(status_code=404, detail="Import history not found")
    if worker.get(import_id) is not None:
        raise HTTPException(status_code=409, detail="Import is still running; cancel it first")

    try:
        records_deleted = delete_records(db, ContentType(progress.content_type), progress.ids)
        delete_import_history(import_id)
    except Exception as e:
        logger.exception("Failed to remove import %s", import_id)
        raise HTTPException(status_code=500, detail=f"Failed to remove import: {str(e)}")

    logger.info("Removed import %s and %d created records", import_id, records_deleted)
    return ImportHistoryDeleteResponse(success=True, import_id=import_id, records_deleted=records_deleted)
