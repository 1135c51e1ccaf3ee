"""
Customer and company creation for bulk imports.

The low-level ``create_customer`` / ``create_company`` helpers raise
``DuplicatedFieldError`` on duplicate keys. ``RecordCreator`` wraps them and
turns every row-level failure into a typed result so an import can keep going
past damaged rows.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Union

from sqlalchemy.orm import Session

from crm_ingest.db.models import COMPANY_FIELDS, CUSTOMER_FIELDS, Company, Customer
from crm_ingest.domain.imports.mapper import MappedRecord

logger = logging.getLogger(__name__)


class ContentType(str, Enum):
    CUSTOMER = "customer"
    COMPANY = "company"


class DuplicatedFieldError(Exception):
    """A record with the same unique field value already exists."""

    def __init__(self, field: str, value: Any):
        self.field = field
        self.value = value
        super().__init__(f"Duplicated {field}")


@dataclass(frozen=True)
class Created:
    record_id: str


@dataclass(frozen=True)
class DuplicateEmail:
    value: Any

    @property
    def message(self) -> str:
        return f"Duplicated email {self.value}"


@dataclass(frozen=True)
class DuplicatePhone:
    value: Any

    @property
    def message(self) -> str:
        return f"Duplicated phone {self.value}"


@dataclass(frozen=True)
class DuplicateName:
    value: Any

    @property
    def message(self) -> str:
        return f"Duplicated name {self.value}"


@dataclass(frozen=True)
class OtherError:
    raw_message: str

    @property
    def message(self) -> str:
        return self.raw_message


CreationError = Union[DuplicateEmail, DuplicatePhone, DuplicateName, OtherError]
CreationResult = Union[Created, CreationError]

_DUPLICATE_VARIANTS = {
    "email": DuplicateEmail,
    "phone": DuplicatePhone,
    "name": DuplicateName,
}


def classify_duplicate(error: DuplicatedFieldError) -> CreationError:
    variant = _DUPLICATE_VARIANTS.get(error.field)
    if variant is None:
        return OtherError(str(error))
    return variant(error.value)


def _clean_document(document: Dict[str, Any], allowed: Iterable[str], label: str) -> Dict[str, Any]:
    allowed = set(allowed)
    values: Dict[str, Any] = {}
    for key, value in document.items():
        if key == "custom_fields_data":
            continue
        if key not in allowed:
            raise ValueError(f"Unknown {label} field: {key}")
        if isinstance(value, str):
            value = value.strip() or None
        values[key] = value
    values["custom_fields_data"] = dict(document.get("custom_fields_data") or {})
    return values


def _exists(db: Session, model, column, value: Any) -> bool:
    if value in (None, ""):
        return False
    return db.query(model.id).filter(column == value).first() is not None


def create_customer(db: Session, document: Dict[str, Any], user_id: Optional[str] = None) -> Customer:
    """
    Insert a customer after checking email and phone uniqueness.

    Raises:
        DuplicatedFieldError: If another customer already uses the email or phone
        ValueError: If the document names a field customers don't have
    """
    values = _clean_document(document, CUSTOMER_FIELDS, "customer")

    if _exists(db, Customer, Customer.primary_email, values.get("primary_email")):
        raise DuplicatedFieldError("email", document.get("primary_email"))
    if _exists(db, Customer, Customer.primary_phone, values.get("primary_phone")):
        raise DuplicatedFieldError("phone", document.get("primary_phone"))

    customer = Customer(created_by=user_id, **values)
    db.add(customer)
    db.commit()
    db.refresh(customer)
    return customer


def create_company(db: Session, document: Dict[str, Any], user_id: Optional[str] = None) -> Company:
    """
    Insert a company after checking name uniqueness.

    Raises:
        DuplicatedFieldError: If another company already uses the name
        ValueError: If the document names a field companies don't have
    """
    values = _clean_document(document, COMPANY_FIELDS, "company")

    if _exists(db, Company, Company.primary_name, values.get("primary_name")):
        raise DuplicatedFieldError("name", document.get("primary_name"))

    company = Company(created_by=user_id, **values)
    db.add(company)
    db.commit()
    db.refresh(company)
    return company


_CREATORS: Dict[ContentType, Callable[..., Any]] = {
    ContentType.CUSTOMER: create_customer,
    ContentType.COMPANY: create_company,
}

_MODELS = {
    ContentType.CUSTOMER: Customer,
    ContentType.COMPANY: Company,
}


def delete_records(db: Session, content_type: ContentType, ids: Iterable[str]) -> int:
    """Delete records created by an import. Returns the number of rows removed."""
    ids = [record_id for record_id in ids if record_id]
    if not ids:
        return 0
    model = _MODELS[ContentType(content_type)]
    deleted = (
        db.query(model)
        .filter(model.id.in_(ids))
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted


class RecordCreator:
    """
    Creates one record per call and reports the outcome as a typed result.

    Holds a single session for its whole lifetime; call ``close()`` (or use it
    as a context manager) to release the connection.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._db = session_factory()

    def create(
        self,
        content_type: ContentType,
        mapped: MappedRecord,
        user_id: Optional[str] = None,
    ) -> CreationResult:
        creator = _CREATORS[ContentType(content_type)]
        try:
            record = creator(self._db, mapped.as_document(), user_id)
        except DuplicatedFieldError as exc:
            self._db.rollback()
            return classify_duplicate(exc)
        except Exception as exc:
            self._db.rollback()
            logger.debug("Record creation failed: %s", exc)
            return OtherError(str(exc))
        return Created(record.id)

    def close(self) -> None:
        self._db.close()

    def __enter__(self) -> "RecordCreator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
