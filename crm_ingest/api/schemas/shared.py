from dataclasses import asdict
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from crm_ingest.domain.imports.history import ImportProgress, ImportStatus
from crm_ingest.domain.imports.mapper import PropertyDescriptor
from crm_ingest.domain.imports.records import ContentType


class BulkImportCreateRequest(BaseModel):
    """Pre-parsed rows to import; each row has one cell per property."""
    content_type: ContentType
    rows: List[List[Any]]
    properties: List[PropertyDescriptor]
    user_id: Optional[str] = None
    percentage_per_row: Optional[float] = Field(default=None, gt=0)


class ImportHistorySummary(BaseModel):
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
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ImportHistoryRecord(ImportHistorySummary):
    ids: List[str] = Field(default_factory=list)
    error_msgs: List[str] = Field(default_factory=list)

    @classmethod
    def from_progress(cls, progress: ImportProgress) -> "ImportHistoryRecord":
        return cls(**asdict(progress))


class ImportHistoryResponse(BaseModel):
    success: bool
    import_history: ImportHistoryRecord


class ImportHistoryListResponse(BaseModel):
    success: bool
    imports: List[ImportHistorySummary]
    total_count: int
    limit: int
    offset: int


class ImportHistoryDeleteResponse(BaseModel):
    success: bool
    import_id: str
    records_deleted: int


class ImportCancelResponse(BaseModel):
    success: bool
    import_id: str
    message: str
