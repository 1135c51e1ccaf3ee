"""
Row mapping for bulk imports.

A row is a flat list of cell values; the property list says, column by
column, whether the cell feeds a core field (keyed by field name) or a
custom field (keyed by custom field id).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Sequence

from pydantic import BaseModel, ConfigDict, Field


class RowShapeError(ValueError):
    """Raised when a row does not have one cell per property."""

    def __init__(self, row_number: int, cells: int, properties: int):
        self.row_number = row_number
        self.cells = cells
        self.properties = properties
        super().__init__(
            f"Row {row_number} has {cells} cells but {properties} properties were supplied"
        )


class PropertyDescriptor(BaseModel):
    """Describes how one column maps onto a record field."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    is_custom_field: bool = Field(False, alias="isCustomField")


@dataclass
class MappedRecord:
    core_fields: Dict[str, Any] = field(default_factory=dict)
    custom_fields_data: Dict[str, Any] = field(default_factory=dict)

    def as_document(self) -> Dict[str, Any]:
        document = dict(self.core_fields)
        document["custom_fields_data"] = dict(self.custom_fields_data)
        return document


def map_row(
    row: Sequence[Any],
    properties: Sequence[PropertyDescriptor],
    row_number: int = 1,
) -> MappedRecord:
    """
    Convert one row of cell values into a MappedRecord.

    Args:
        row: Cell values, one per property
        properties: Ordered property descriptors
        row_number: 1-indexed row position, used only in error messages

    Returns:
        MappedRecord with core fields keyed by name and custom fields keyed by id

    Raises:
        RowShapeError: If the row and property list differ in length
    """
    if len(row) != len(properties):
        raise RowShapeError(row_number, len(row), len(properties))

    mapped = MappedRecord()
    for value, prop in zip(row, properties):
        if prop.is_custom_field:
            mapped.custom_fields_data[prop.id] = value
        else:
            mapped.core_fields[prop.name] = value
    return mapped


def validate_row_shapes(
    rows: Sequence[Sequence[Any]],
    properties: Sequence[PropertyDescriptor],
) -> None:
    """Fail fast on the first row whose width differs from the property list."""
    expected = len(properties)
    for index, row in enumerate(rows, start=1):
        if len(row) != expected:
            raise RowShapeError(index, len(row), expected)

