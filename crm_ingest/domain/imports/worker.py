"""
Background execution of bulk imports.

Imports run on a dedicated thread pool so large files never block request
handlers. ``submit`` hands back an ``ImportHandle`` whose future resolves to
the job's ``BulkImportResult`` or raises the error that ended the run.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from crm_ingest.db.session import get_engine, get_session_local
from crm_ingest.domain.imports.bulk_insert import BulkImportJob, BulkImportRequest, BulkImportResult
from crm_ingest.domain.imports.events import EventPublisher
from crm_ingest.domain.imports.history import ImportHistoryTracker
from crm_ingest.domain.imports.records import RecordCreator

logger = logging.getLogger(__name__)


@dataclass
class ImportHandle:
    import_id: str
    future: "Future[BulkImportResult]"
    cancel_event: threading.Event

    def cancel(self) -> None:
        self.cancel_event.set()

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> BulkImportResult:
        return self.future.result(timeout=timeout)


class ImportWorker:
    def __init__(
        self,
        publisher: EventPublisher,
        session_factory: Optional[Callable[[], Session]] = None,
        engine: Optional[Engine] = None,
        max_workers: int = 2,
    ):
        self.publisher = publisher
        self._session_factory = session_factory
        self._engine = engine
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="bulk-import")
        self._handles: Dict[str, ImportHandle] = {}
        self._lock = threading.Lock()

    def submit(self, request: BulkImportRequest) -> ImportHandle:
        cancel_event = threading.Event()
        with self._lock:
            if request.import_id in self._handles:
                raise ValueError(f"Import {request.import_id} is already running")
            future = self._executor.submit(self._run, request, cancel_event)
            handle = ImportHandle(request.import_id, future, cancel_event)
            self._handles[request.import_id] = handle

        future.add_done_callback(lambda done: self._finished(request.import_id, done))
        logger.info("Queued bulk import %s (%d rows)", request.import_id, len(request.rows))
        return handle

    def get(self, import_id: str) -> Optional[ImportHandle]:
        """Handle of an import that is queued or running."""
        with self._lock:
            return self._handles.get(import_id)

    def cancel(self, import_id: str) -> bool:
        handle = self.get(import_id)
        if handle is None:
            return False
        handle.cancel()
        return True

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        if cancel_running:
            with self._lock:
                for handle in self._handles.values():
                    handle.cancel()
        self._executor.shutdown(wait=wait)

    def _run(self, request: BulkImportRequest, cancel_event: threading.Event) -> BulkImportResult:
        try:
            # Store failures here surface before the job ever reaches Running.
            tracker = ImportHistoryTracker(self._engine or get_engine())
            session_factory = self._session_factory or get_session_local()

            with RecordCreator(session_factory) as record_creator:
                job = BulkImportJob(
                    request,
                    record_creator=record_creator,
                    tracker=tracker,
                    publisher=self.publisher,
                    cancel_event=cancel_event,
                )
                return job.run()
        finally:
            # Drop the handle before the future resolves so get() never reports a finished job.
            self._forget(request.import_id)

    def _forget(self, import_id: str) -> None:
        with self._lock:
            self._handles.pop(import_id, None)

    def _finished(self, import_id: str, future: "Future[BulkImportResult]") -> None:
        self._forget(import_id)

        if future.cancelled():
            logger.warning("Bulk import %s was dropped before it started", import_id)
            return

        error = future.exception()
        if error is not None:
            logger.error("Bulk import %s terminated: %s", import_id, error, exc_info=error)
            return

        result = future.result()
        logger.info("Bulk import %s: %s", import_id, result.message)
