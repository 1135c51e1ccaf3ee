"""
Business records written by bulk imports.

Customers and companies keep a handful of typed core columns plus an
open-ended ``custom_fields_data`` JSON map keyed by custom field id.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, String, Text

from crm_ingest.db.session import Base, get_engine


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=_new_id)
    first_name = Column(String(255))
    last_name = Column(String(255))
    primary_email = Column(String(255), index=True)
    primary_phone = Column(String(64), index=True)
    position = Column(String(255))
    department = Column(String(255))
    description = Column(Text)
    code = Column(String(255))
    custom_fields_data = Column(JSON, nullable=False, default=dict)
    created_by = Column(String(255))
    created_at = Column(DateTime, default=_utcnow)


class Company(Base):
    __tablename__ = "companies"

    id = Column(String(36), primary_key=True, default=_new_id)
    primary_name = Column(String(255), index=True)
    size = Column(String(64))
    industry = Column(String(255))
    website = Column(String(500))
    plan = Column(String(255))
    description = Column(Text)
    code = Column(String(255))
    custom_fields_data = Column(JSON, nullable=False, default=dict)
    created_by = Column(String(255))
    created_at = Column(DateTime, default=_utcnow)


CUSTOMER_FIELDS = (
    "first_name",
    "last_name",
    "primary_email",
    "primary_phone",
    "position",
    "department",
    "description",
    "code",
)

COMPANY_FIELDS = (
    "primary_name",
    "size",
    "industry",
    "website",
    "plan",
    "description",
    "code",
)


def create_record_tables(engine=None) -> None:
    """Create the customers and companies tables if they don't exist."""
    Base.metadata.create_all(
        engine or get_engine(),
        tables=[Customer.__table__, Company.__table__],
    )
