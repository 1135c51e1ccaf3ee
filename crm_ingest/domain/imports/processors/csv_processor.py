import io
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from crm_ingest.db.models import COMPANY_FIELDS, CUSTOMER_FIELDS
from crm_ingest.domain.imports.mapper import PropertyDescriptor
from crm_ingest.domain.imports.records import ContentType

logger = logging.getLogger(__name__)

_CORE_FIELDS = {
    ContentType.CUSTOMER: CUSTOMER_FIELDS,
    ContentType.COMPANY: COMPANY_FIELDS,
}


def _clean_cell(value: Any) -> Optional[str]:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    text_value = str(value).strip()
    return text_value or None


def read_tabular_file(file_content: bytes, file_type: str) -> Tuple[List[str], List[List[Optional[str]]]]:
    """
    Read a CSV or Excel file whose first row holds the column headers.

    Every cell is returned as a stripped string, with empty cells as None.
    Rows where every cell is empty are skipped.

    Args:
        file_content: Raw file bytes
        file_type: "csv" or "excel", as returned by ``detect_file_type``

    Returns:
        Tuple of (headers, rows)

    Raises:
        ValueError: If the file type is unsupported or the file has no header row
    """
    try:
        if file_type == "csv":
            df = pd.read_csv(io.BytesIO(file_content), dtype=str, keep_default_na=False)
        elif file_type == "excel":
            df = pd.read_excel(io.BytesIO(file_content), dtype=str)
        else:
            raise ValueError(f"Unsupported file type: {file_type}")
    except pd.errors.EmptyDataError as exc:
        raise ValueError("File is empty") from exc

    headers = [str(column).strip() for column in df.columns]
    rows: List[List[Optional[str]]] = []
    for record in df.itertuples(index=False, name=None):
        cells = [_clean_cell(value) for value in record]
        if any(cell is not None for cell in cells):
            rows.append(cells)

    logger.info(f"Read {len(rows)} data rows with {len(headers)} columns from {file_type} file")
    return headers, rows


def normalize_header(header: str) -> str:
    """'Primary Email', 'primaryEmail' and 'primary-email' all become 'primary_email'."""
    snake = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", header.strip())
    return re.sub(r"[\s\-]+", "_", snake).lower()


def resolve_properties(
    headers: List[str],
    content_type: ContentType,
    custom_fields: Optional[Dict[str, str]] = None,
) -> List[PropertyDescriptor]:
    """
    Match file headers to core fields first, then to custom fields by label.

    Args:
        headers: Column headers from the file
        content_type: Which record type the file holds
        custom_fields: Custom field label -> custom field id

    Returns:
        One PropertyDescriptor per header, in header order

    Raises:
        ValueError: If a header matches nothing or two headers target the same field
    """
    core_fields = set(_CORE_FIELDS[ContentType(content_type)])
    custom_by_label = {
        normalize_header(label): field_id for label, field_id in (custom_fields or {}).items()
    }

    properties: List[PropertyDescriptor] = []
    seen = set()
    for header in headers:
        key = normalize_header(header)
        if key in core_fields:
            prop = PropertyDescriptor(id=key, name=key, is_custom_field=False)
        elif key in custom_by_label:
            prop = PropertyDescriptor(id=custom_by_label[key], name=header, is_custom_field=True)
        else:
            raise ValueError(f"Unknown column: {header}")

        if prop.id in seen:
            raise ValueError(f"Duplicate column: {header}")
        seen.add(prop.id)
        properties.append(prop)

    return properties
