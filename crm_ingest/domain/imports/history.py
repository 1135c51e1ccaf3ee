"""
Durable progress tracking for bulk imports.

Each import owns one ``import_history`` row holding its counters and status.
Created record ids and row error messages live in two child tables keyed by
``(import_id, record_number)`` so a row outcome is an additive insert plus an
in-place counter increment, never a rewrite of the whole record.
"""
from __future__ import annotations

import logging
import threading
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import DateTime, Float, Integer, String, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, ProgrammingError

from crm_ingest.db.session import get_engine

logger = logging.getLogger(__name__)


class ImportStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    DONE = "Done"


class ImportHistoryError(Exception):
    """Base class for import history consistency errors."""


class ImportHistoryNotFound(ImportHistoryError):
    def __init__(self, import_id: str):
        self.import_id = import_id
        super().__init__(f"Could not find import history {import_id}")


class ImportHistoryFull(ImportHistoryError):
    """Raised when an outcome would push success + failed past total."""

    def __init__(self, import_id: str):
        self.import_id = import_id
        super().__init__(f"Import history {import_id} already accounts for every row")


@dataclass(frozen=True)
class RowSuccess:
    record_id: str


@dataclass(frozen=True)
class RowFailure:
    message: str


RowOutcome = Union[RowSuccess, RowFailure]


@dataclass
class ImportProgress:
    import_id: str
    content_type: str
    status: ImportStatus
    total: int
    success: int
    failed: int
    percentage: float
    percentage_per_row: float
    user_id: Optional[str] = None
    file_name: Optional[str] = None
    ids: List[str] = field(default_factory=list)
    error_msgs: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def processed(self) -> int:
        return self.success + self.failed

    @property
    def is_complete(self) -> bool:
        return self.processed == self.total

    def event_payload(self) -> Dict[str, Any]:
        return {
            "_id": self.import_id,
            "status": self.status.value,
            "percentage": self.percentage,
        }


def percentage_per_row(total: int) -> float:
    """Share of the progress bar each processed row is worth."""
    return 100 / total if total > 0 else 100


# ---------------------------------------------------------------------------
# Table bootstrap
# ---------------------------------------------------------------------------

_CREATE_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS import_history (
        import_id VARCHAR(36) PRIMARY KEY,
        content_type VARCHAR(50) NOT NULL,
        user_id VARCHAR(255),
        file_name VARCHAR(500),
        status VARCHAR(50) NOT NULL DEFAULT 'Pending',  -- 'Pending', 'InProgress', 'Done'
        total INTEGER NOT NULL DEFAULT 0,
        success INTEGER NOT NULL DEFAULT 0,
        failed INTEGER NOT NULL DEFAULT 0,
        percentage DOUBLE PRECISION NOT NULL DEFAULT 0,
        percentage_per_row DOUBLE PRECISION NOT NULL DEFAULT 100,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        completed_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS import_history_records (
        import_id VARCHAR(36) NOT NULL REFERENCES import_history(import_id) ON DELETE CASCADE,
        record_number INTEGER NOT NULL,  -- 1-indexed row in the import
        record_id VARCHAR(255) NOT NULL,
        PRIMARY KEY (import_id, record_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS import_history_errors (
        import_id VARCHAR(36) NOT NULL REFERENCES import_history(import_id) ON DELETE CASCADE,
        record_number INTEGER NOT NULL,
        error_message TEXT NOT NULL,
        PRIMARY KEY (import_id, record_number)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_import_history_status ON import_history(status)",
    "CREATE INDEX IF NOT EXISTS idx_import_history_content_type ON import_history(content_type)",
)

_initialized_engines: "weakref.WeakSet[Engine]" = weakref.WeakSet()
_table_init_lock = threading.Lock()


def create_import_history_table(engine: Optional[Engine] = None) -> None:
    """Create the import_history table and its child tables if they don't exist."""
    engine = engine or get_engine()
    try:
        with engine.begin() as conn:
            for statement in _CREATE_STATEMENTS:
                conn.execute(text(statement))
        logger.info("import_history tables created/verified successfully")
    except Exception as e:
        logger.error(f"Error creating import_history tables: {str(e)}")
        raise


def ensure_import_history_table(engine: Optional[Engine] = None) -> None:
    """Create the tables once per engine."""
    engine = engine or get_engine()
    if engine in _initialized_engines:
        return

    with _table_init_lock:
        if engine in _initialized_engines:
            return
        create_import_history_table(engine)
        _initialized_engines.add(engine)


def _is_missing_table_error(error: Exception) -> bool:
    origin = getattr(error, "orig", None)
    if getattr(origin, "pgcode", None) == "42P01":
        return True
    return "no such table" in str(origin or error)


def _run_with_table_retry(engine: Engine, operation: Callable[[], Any]) -> Any:
    try:
        return operation()
    except (ProgrammingError, OperationalError) as error:
        if not _is_missing_table_error(error):
            raise
        with _table_init_lock:
            _initialized_engines.discard(engine)
        ensure_import_history_table(engine)
        return operation()


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

_SELECT_HISTORY = """
SELECT import_id, content_type, user_id, file_name, status, total, success, failed,
       percentage, percentage_per_row, created_at, updated_at, completed_at
FROM import_history
"""

_TYPED_COLUMNS = {
    "import_id": String,
    "content_type": String,
    "user_id": String,
    "file_name": String,
    "status": String,
    "total": Integer,
    "success": Integer,
    "failed": Integer,
    "percentage": Float,
    "percentage_per_row": Float,
    "created_at": DateTime,
    "updated_at": DateTime,
    "completed_at": DateTime,
}


def _row_to_progress(row: Any) -> ImportProgress:
    return ImportProgress(
        import_id=str(row["import_id"]),
        content_type=row["content_type"],
        status=ImportStatus(row["status"]),
        total=row["total"],
        success=row["success"],
        failed=row["failed"],
        percentage=float(row["percentage"] or 0),
        percentage_per_row=float(row["percentage_per_row"]),
        user_id=row["user_id"],
        file_name=row["file_name"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )


def _fetch_progress(conn, import_id: str) -> Optional[ImportProgress]:
    query = text(_SELECT_HISTORY + "WHERE import_id = :import_id").columns(**_TYPED_COLUMNS)
    row = conn.execute(query, {"import_id": import_id}).mappings().first()
    if not row:
        return None

    progress = _row_to_progress(row)
    progress.ids = list(
        conn.execute(
            text(
                "SELECT record_id FROM import_history_records "
                "WHERE import_id = :import_id ORDER BY record_number"
            ),
            {"import_id": import_id},
        ).scalars()
    )
    progress.error_msgs = list(
        conn.execute(
            text(
                "SELECT error_message FROM import_history_errors "
                "WHERE import_id = :import_id ORDER BY record_number"
            ),
            {"import_id": import_id},
        ).scalars()
    )
    return progress


def get_import_history(import_id: str, engine: Optional[Engine] = None) -> Optional[ImportProgress]:
    """Fetch one import with its created ids and error messages."""
    engine = engine or get_engine()
    ensure_import_history_table(engine)

    def _fetch() -> Optional[ImportProgress]:
        with engine.connect() as conn:
            return _fetch_progress(conn, import_id)

    return _run_with_table_retry(engine, _fetch)


def list_import_history(
    *,
    content_type: Optional[str] = None,
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    engine: Optional[Engine] = None,
) -> Tuple[List[ImportProgress], int]:
    """
    List imports, newest first.

    Only counters are loaded; ``ids`` and ``error_msgs`` stay empty. Use
    ``get_import_history`` for the full detail of one import.
    """
    engine = engine or get_engine()
    ensure_import_history_table(engine)

    conditions = []
    params: Dict[str, Any] = {"limit": limit, "offset": offset}
    if content_type:
        conditions.append("content_type = :content_type")
        params["content_type"] = content_type
    if status:
        conditions.append("status = :status")
        params["status"] = status
    if user_id:
        conditions.append("user_id = :user_id")
        params["user_id"] = user_id

    where_clause = f"WHERE {' AND '.join(conditions)} " if conditions else ""

    query_sql = _SELECT_HISTORY + where_clause + "ORDER BY created_at DESC LIMIT :limit OFFSET :offset"
    count_sql = f"SELECT COUNT(*) FROM import_history {where_clause}"

    def _fetch() -> Tuple[List[ImportProgress], int]:
        with engine.connect() as conn:
            rows = conn.execute(text(query_sql).columns(**_TYPED_COLUMNS), params).mappings().all()
            total = conn.execute(text(count_sql), params).scalar() or 0
            return [_row_to_progress(row) for row in rows], total

    return _run_with_table_retry(engine, _fetch)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def create_import_history(
    *,
    total: int,
    content_type: str,
    user_id: Optional[str] = None,
    file_name: Optional[str] = None,
    per_row: Optional[float] = None,
    engine: Optional[Engine] = None,
) -> ImportProgress:
    """Persist a Pending import history sized for ``total`` rows."""
    engine = engine or get_engine()
    ensure_import_history_table(engine)
    import_id = str(uuid.uuid4())

    params = {
        "import_id": import_id,
        "content_type": content_type,
        "user_id": user_id,
        "file_name": file_name,
        "status": ImportStatus.PENDING.value,
        "total": total,
        "percentage_per_row": per_row if per_row is not None else percentage_per_row(total),
    }
    insert_sql = text("""
        INSERT INTO import_history (
            import_id, content_type, user_id, file_name, status,
            total, success, failed, percentage, percentage_per_row
        )
        VALUES (
            :import_id, :content_type, :user_id, :file_name, :status,
            :total, 0, 0, 0, :percentage_per_row
        )
    """)

    def _insert() -> ImportProgress:
        with engine.begin() as conn:
            conn.execute(insert_sql, params)
            progress = _fetch_progress(conn, import_id)
        if progress is None:
            raise RuntimeError("Failed to create import history")
        return progress

    progress = _run_with_table_retry(engine, _insert)
    logger.info(
        "Created import history %s (%s, %d rows)", import_id, content_type, total
    )
    return progress


def delete_import_history(import_id: str, engine: Optional[Engine] = None) -> bool:
    """Remove an import history and its child rows. Returns False if it did not exist."""
    engine = engine or get_engine()
    ensure_import_history_table(engine)
    params = {"import_id": import_id}

    def _delete() -> bool:
        with engine.begin() as conn:
            conn.execute(text("DELETE FROM import_history_records WHERE import_id = :import_id"), params)
            conn.execute(text("DELETE FROM import_history_errors WHERE import_id = :import_id"), params)
            result = conn.execute(text("DELETE FROM import_history WHERE import_id = :import_id"), params)
            return result.rowcount > 0

    return _run_with_table_retry(engine, _delete)


class ImportHistoryTracker:
    """
    Atomic progress updates for running imports.

    Every mutation is a single conditional UPDATE executed by the database,
    so many jobs can share the same tables without losing increments.
    """

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or get_engine()
        ensure_import_history_table(self.engine)

    def _exists(self, conn, import_id: str) -> bool:
        found = conn.execute(
            text("SELECT 1 FROM import_history WHERE import_id = :import_id"),
            {"import_id": import_id},
        ).first()
        return found is not None

    def start(self, import_id: str) -> None:
        """Move a Pending import to InProgress."""
        with self.engine.begin() as conn:
            conn.execute(
                text("""
                    UPDATE import_history
                    SET status = :in_progress, updated_at = CURRENT_TIMESTAMP
                    WHERE import_id = :import_id AND status = :pending
                """),
                {
                    "import_id": import_id,
                    "in_progress": ImportStatus.IN_PROGRESS.value,
                    "pending": ImportStatus.PENDING.value,
                },
            )
            if not self._exists(conn, import_id):
                raise ImportHistoryNotFound(import_id)

    def record_outcome(self, import_id: str, record_number: int, outcome: RowOutcome) -> None:
        """
        Count one processed row and keep its created id or error message.

        The counter increment and the child insert share a transaction; a
        second outcome for the same row number violates the child primary key
        and rolls the increment back.
        """
        succeeded = isinstance(outcome, RowSuccess)
        params = {
            "import_id": import_id,
            "record_number": record_number,
            "success": 1 if succeeded else 0,
            "failed": 0 if succeeded else 1,
        }

        with self.engine.begin() as conn:
            result = conn.execute(
                text("""
                    UPDATE import_history
                    SET success = success + :success,
                        failed = failed + :failed,
                        percentage = percentage + percentage_per_row,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE import_id = :import_id AND success + failed < total
                """),
                params,
            )
            if result.rowcount == 0:
                if not self._exists(conn, import_id):
                    raise ImportHistoryNotFound(import_id)
                raise ImportHistoryFull(import_id)

            if succeeded:
                conn.execute(
                    text("""
                        INSERT INTO import_history_records (import_id, record_number, record_id)
                        VALUES (:import_id, :record_number, :record_id)
                    """),
                    {**params, "record_id": outcome.record_id},
                )
            else:
                conn.execute(
                    text("""
                        INSERT INTO import_history_errors (import_id, record_number, error_message)
                        VALUES (:import_id, :record_number, :error_message)
                    """),
                    {**params, "error_message": outcome.message},
                )

    def snapshot(self, import_id: str) -> Optional[ImportProgress]:
        with self.engine.connect() as conn:
            return _fetch_progress(conn, import_id)

    def finalize(self, import_id: str) -> bool:
        """
        Mark the import Done once every row is accounted for.

        Returns True when this call performed the transition; calling it again
        after Done changes nothing.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                text("""
                    UPDATE import_history
                    SET status = :done,
                        updated_at = CURRENT_TIMESTAMP,
                        completed_at = CURRENT_TIMESTAMP
                    WHERE import_id = :import_id
                      AND success + failed = total
                      AND status <> :done
                """),
                {"import_id": import_id, "done": ImportStatus.DONE.value},
            )
            return result.rowcount > 0
