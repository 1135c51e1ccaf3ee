"""
Pytest configuration and fixtures for CRM Ingest tests.

Every test that touches the database gets its own SQLite file with the record
and import history tables already created. The module-level engine and
session factory in ``crm_ingest.db.session`` are pointed at that file so code
paths calling ``get_engine()`` / ``get_db()`` hit the same database.
"""

import os
import tempfile

# Never bootstrap or reach a real Postgres from the test suite.
os.environ["SKIP_DB_INIT"] = "1"
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite:///{os.path.join(tempfile.gettempdir(), 'crm_ingest_tests.db')}",
)

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from crm_ingest.db import session as db_session  # noqa: E402
from crm_ingest.db.models import create_record_tables  # noqa: E402
from crm_ingest.domain.imports.events import ImportEventBroker  # noqa: E402
from crm_ingest.domain.imports.history import (  # noqa: E402
    ImportHistoryTracker,
    create_import_history_table,
)
from crm_ingest.domain.imports.worker import ImportWorker  # noqa: E402
from tests.utils.imports import CapturingPublisher  # noqa: E402


@pytest.fixture
def engine(tmp_path, monkeypatch):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'crm_ingest.db'}",
        connect_args={"check_same_thread": False},
    )
    create_record_tables(engine)
    create_import_history_table(engine)

    monkeypatch.setattr(db_session, "_engine", engine)
    monkeypatch.setattr(
        db_session,
        "SessionLocal",
        sessionmaker(autocommit=False, autoflush=False, bind=engine),
    )
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tracker(engine):
    return ImportHistoryTracker(engine)


@pytest.fixture
def publisher():
    return CapturingPublisher()


@pytest.fixture
def broker():
    return ImportEventBroker(max_pending=16)


@pytest.fixture
def import_worker(engine, session_factory, broker):
    worker = ImportWorker(broker, session_factory=session_factory, engine=engine, max_workers=1)
    yield worker
    worker.shutdown(wait=True)

