"""
Bulk insert of customer/company rows.

``BulkImportJob`` walks the rows of one import in order. For each row it maps
the cells, asks the record creator for a new record, counts the outcome on the
import history and publishes the resulting progress snapshot. A failed row is
counted and skipped; only a missing import history stops the job.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Sequence

from crm_ingest.domain.imports.events import IMPORT_HISTORY_CHANGED, EventPublisher
from crm_ingest.domain.imports.history import (
    ImportHistoryNotFound,
    ImportHistoryTracker,
    ImportProgress,
    ImportStatus,
    RowFailure,
    RowOutcome,
    RowSuccess,
)
from crm_ingest.domain.imports.mapper import PropertyDescriptor, map_row, validate_row_shapes
from crm_ingest.domain.imports.records import ContentType, Created, CreationResult, RecordCreator

logger = logging.getLogger(__name__)

FINISHED_MESSAGE = "Successfully finished job"


class JobState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class BulkImportRequest:
    import_id: str
    content_type: ContentType
    rows: Sequence[Sequence[Any]]
    properties: Sequence[PropertyDescriptor]
    user_id: Optional[str] = None


@dataclass(frozen=True)
class BulkImportResult:
    import_id: str
    status: ImportStatus
    total: int
    success: int
    failed: int
    cancelled: bool = False
    message: str = FINISHED_MESSAGE


def to_outcome(result: CreationResult) -> RowOutcome:
    if isinstance(result, Created):
        return RowSuccess(result.record_id)
    return RowFailure(result.message)


class BulkImportJob:
    def __init__(
        self,
        request: BulkImportRequest,
        record_creator: RecordCreator,
        tracker: ImportHistoryTracker,
        publisher: EventPublisher,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.request = request
        self.record_creator = record_creator
        self.tracker = tracker
        self.publisher = publisher
        self.cancel_event = cancel_event or threading.Event()
        self.state = JobState.CREATED

    @property
    def import_id(self) -> str:
        return self.request.import_id

    def run(self) -> BulkImportResult:
        """
        Process every row and return the final counters.

        Raises:
            RowShapeError: If any row width differs from the property list (nothing is processed)
            ImportHistoryNotFound: If the import history disappears while running
        """
        if self.state is not JobState.CREATED:
            raise RuntimeError(f"Import job {self.import_id} has already been started")

        rows = self.request.rows
        validate_row_shapes(rows, self.request.properties)

        self.tracker.start(self.import_id)
        self.state = JobState.RUNNING
        logger.info(
            "Starting bulk import %s: %d %s rows",
            self.import_id,
            len(rows),
            ContentType(self.request.content_type).value,
        )

        if not rows:
            self._publish(self._complete_if_done(self._snapshot()))

        for record_number, row in enumerate(rows, start=1):
            if self.cancel_event.is_set():
                return self._cancelled(record_number - 1)
            self._publish(self._process_row(record_number, row))

        progress = self._snapshot()
        self.state = JobState.COMPLETED
        logger.info(
            "Finished bulk import %s: %d succeeded, %d failed (status %s)",
            self.import_id,
            progress.success,
            progress.failed,
            progress.status.value,
        )
        return BulkImportResult(
            import_id=self.import_id,
            status=progress.status,
            total=progress.total,
            success=progress.success,
            failed=progress.failed,
        )

    def _process_row(self, record_number: int, row: Sequence[Any]) -> ImportProgress:
        mapped = map_row(row, self.request.properties, row_number=record_number)
        result = self.record_creator.create(self.request.content_type, mapped, self.request.user_id)
        outcome = to_outcome(result)
        if isinstance(outcome, RowFailure):
            logger.debug("Import %s row %d failed: %s", self.import_id, record_number, outcome.message)

        self.tracker.record_outcome(self.import_id, record_number, outcome)
        return self._complete_if_done(self._snapshot())

    def _snapshot(self) -> ImportProgress:
        progress = self.tracker.snapshot(self.import_id)
        if progress is None:
            raise ImportHistoryNotFound(self.import_id)
        return progress

    def _complete_if_done(self, progress: ImportProgress) -> ImportProgress:
        if not progress.is_complete:
            return progress
        self.tracker.finalize(self.import_id)
        return self._snapshot()

    def _publish(self, progress: ImportProgress) -> None:
        try:
            self.publisher.publish(IMPORT_HISTORY_CHANGED, progress.event_payload())
        except Exception:
            logger.exception("Failed to publish progress for import %s", self.import_id)

    def _cancelled(self, processed_rows: int) -> BulkImportResult:
        progress = self._snapshot()
        self.state = JobState.CANCELLED
        logger.warning(
            "Bulk import %s cancelled after %d of %d rows",
            self.import_id,
            processed_rows,
            progress.total,
        )
        return BulkImportResult(
            import_id=self.import_id,
            status=progress.status,
            total=progress.total,
            success=progress.success,
            failed=progress.failed,
            cancelled=True,
            message=f"Import cancelled after {processed_rows} of {progress.total} rows",
        )
