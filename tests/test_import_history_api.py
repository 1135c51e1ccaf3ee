"""
Route tests for the bulk import API.

The worker and broker dependencies are replaced with instances bound to the
per-test SQLite database, so imports really run in the background pool.
"""

import io
import json
import threading
import time

import pytest
from fastapi.testclient import TestClient

from crm_ingest.api.dependencies import get_event_broker, get_import_worker
from crm_ingest.core.config import settings
from crm_ingest.db.models import Company, Customer
from crm_ingest.domain.imports.events import IMPORT_HISTORY_CHANGED
from crm_ingest.domain.imports.records import RecordCreator
from crm_ingest.main import app
from tests.utils.imports import wait_for_import

client = TestClient(app)

CUSTOMER_PROPERTIES = [
    {"id": "first_name", "name": "first_name", "isCustomField": False},
    {"id": "primary_email", "name": "primary_email", "isCustomField": False},
    {"id": "cf-tier", "name": "Tier", "isCustomField": True},
]


@pytest.fixture(autouse=True)
def wired_app(import_worker, broker):
    original_overrides = app.dependency_overrides.copy()
    app.dependency_overrides[get_import_worker] = lambda: import_worker
    app.dependency_overrides[get_event_broker] = lambda: broker
    yield
    app.dependency_overrides = original_overrides


def post_customer_import(rows):
    return client.post(
        "/import-history",
        json={
            "content_type": "customer",
            "rows": rows,
            "properties": CUSTOMER_PROPERTIES,
            "user_id": "user-1",
        },
    )


def start_customer_import(rows):
    response = post_customer_import(rows)
    assert response.status_code == 202, response.text
    return response.json()["import_history"]


def stream_payloads(body):
    return [
        json.loads(block.split("data: ", 1)[1])
        for block in body.split("\n\n")
        if block.startswith(f"event: {IMPORT_HISTORY_CHANGED}")
    ]


class CreationGate:
    """Holds every record creation until ``release`` is set."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()


@pytest.fixture
def creation_gate(monkeypatch):
    gate = CreationGate()
    original_create = RecordCreator.create

    def gated_create(self, *args, **kwargs):
        gate.entered.set()
        gate.release.wait(timeout=10)
        return original_create(self, *args, **kwargs)

    monkeypatch.setattr(RecordCreator, "create", gated_create)
    yield gate
    gate.release.set()


@pytest.fixture
def fast_event_polls(monkeypatch):
    monkeypatch.setattr(settings, "import_event_poll_seconds", 0.05)


def open_gate_once_streaming(broker, gate, before_release=None):
    """Release the gate after the job is mid-row and an events client is listening."""

    def run():
        gate.entered.wait(timeout=5)
        deadline = time.monotonic() + 5
        while broker.subscriber_count(IMPORT_HISTORY_CHANGED) == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        # Idle polls while the row is held produce keep-alives.
        time.sleep(0.2)
        if before_release is not None:
            before_release()
        gate.release.set()

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread


def test_json_import_runs_to_done(import_worker, db):
    created = start_customer_import(
        [
            ["Ada", "ada@example.com", "gold"],
            ["Grace", "grace@example.com", None],
            ["Copy", "ada@example.com", "silver"],
        ]
    )
    assert created["status"] == "Pending"
    assert created["total"] == 3

    wait_for_import(import_worker, created["import_id"])

    response = client.get(f"/import-history/{created['import_id']}")
    assert response.status_code == 200
    body = response.json()["import_history"]
    assert body["status"] == "Done"
    assert (body["success"], body["failed"], body["total"]) == (2, 1, 3)
    assert body["error_msgs"] == ["Duplicated email ada@example.com"]
    assert len(body["ids"]) == 2

    ada = db.query(Customer).filter(Customer.primary_email == "ada@example.com").one()
    assert ada.custom_fields_data == {"cf-tier": "gold"}
    assert ada.created_by == "user-1"


def test_requested_percentage_per_row_drives_progress(import_worker):
    response = client.post(
        "/import-history",
        json={
            "content_type": "customer",
            "rows": [["Ada", "ada@example.com", None], ["Grace", "grace@example.com", None]],
            "properties": CUSTOMER_PROPERTIES,
            "percentage_per_row": 10,
        },
    )
    assert response.status_code == 202, response.text
    created = response.json()["import_history"]
    assert created["percentage_per_row"] == 10

    wait_for_import(import_worker, created["import_id"])

    body = client.get(f"/import-history/{created['import_id']}").json()["import_history"]
    assert body["status"] == "Done"
    assert body["percentage"] == pytest.approx(20)


def test_mismatched_row_is_rejected_before_any_history_is_created():
    response = client.post(
        "/import-history",
        json={
            "content_type": "customer",
            "rows": [["Ada", "ada@example.com", "gold"], ["short"]],
            "properties": CUSTOMER_PROPERTIES,
        },
    )

    assert response.status_code == 400
    assert "Row 2" in response.json()["detail"]
    assert client.get("/import-history").json()["total_count"] == 0


def test_upload_csv_import(import_worker, db):
    content = "Primary Name,Industry Segment\nAcme,anvils\nGlobex,energy\n".encode("utf-8")

    response = client.post(
        "/import-history/upload",
        files={"file": ("companies.csv", io.BytesIO(content), "text/csv")},
        data={
            "content_type": "company",
            "user_id": "user-2",
            "custom_fields_json": json.dumps({"Industry segment": "cf-segment"}),
        },
    )
    assert response.status_code == 202, response.text
    created = response.json()["import_history"]
    assert created["file_name"] == "companies.csv"

    wait_for_import(import_worker, created["import_id"])

    body = client.get(f"/import-history/{created['import_id']}").json()["import_history"]
    assert body["status"] == "Done"
    assert body["success"] == 2
    acme = db.query(Company).filter(Company.primary_name == "Acme").one()
    assert acme.custom_fields_data == {"cf-segment": "anvils"}


def test_upload_with_unknown_column_is_rejected():
    content = b"primary_name,shoe_size\nAcme,44\n"

    response = client.post(
        "/import-history/upload",
        files={"file": ("companies.csv", io.BytesIO(content), "text/csv")},
        data={"content_type": "company"},
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Unknown column: shoe_size"


def test_upload_with_unsupported_file_type_is_rejected():
    response = client.post(
        "/import-history/upload",
        files={"file": ("companies.json", io.BytesIO(b"[]"), "application/json")},
        data={"content_type": "company"},
    )

    assert response.status_code == 400


def test_list_and_filter_imports(import_worker):
    created = start_customer_import([["Ada", "ada@example.com", None]])
    wait_for_import(import_worker, created["import_id"])

    response = client.get("/import-history", params={"content_type": "customer", "status": "Done"})

    assert response.status_code == 200
    body = response.json()
    assert body["total_count"] == 1
    assert body["imports"][0]["import_id"] == created["import_id"]
    assert client.get("/import-history", params={"content_type": "company"}).json()["total_count"] == 0


def test_unknown_import_returns_404():
    assert client.get("/import-history/missing").status_code == 404
    assert client.get("/import-history/missing/events").status_code == 404
    assert client.post("/import-history/missing/cancel").status_code == 404
    assert client.delete("/import-history/missing").status_code == 404


def test_event_stream_for_finished_import_sends_done_and_closes(import_worker):
    created = start_customer_import([["Ada", "ada@example.com", None]])
    wait_for_import(import_worker, created["import_id"])

    response = client.get(f"/import-history/{created['import_id']}/events")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = [block for block in response.text.split("\n\n") if block.startswith("event:")]
    assert len(events) == 1
    assert "event: importHistoryChanged" in events[0]
    data = json.loads(events[0].split("data: ", 1)[1])
    assert data == {"_id": created["import_id"], "status": "Done", "percentage": 100.0}


def test_event_stream_follows_a_running_import_until_done(broker, creation_gate, fast_event_polls):
    created = start_customer_import(
        [["Ada", "ada@example.com", None], ["Grace", "grace@example.com", None]]
    )
    releaser = open_gate_once_streaming(broker, creation_gate)

    response = client.get(f"/import-history/{created['import_id']}/events")
    releaser.join(timeout=5)

    assert response.status_code == 200
    assert ": keep-alive" in response.text
    payloads = stream_payloads(response.text)
    assert payloads[0]["status"] in ("Pending", "InProgress")
    assert [payload["status"] for payload in payloads[1:]] == ["InProgress", "Done"]
    assert [payload["percentage"] for payload in payloads[1:]] == pytest.approx([50, 100])
    assert all(payload["_id"] == created["import_id"] for payload in payloads)
    assert broker.subscriber_count() == 0


def test_event_stream_of_cancelled_import_ends_without_done(
    import_worker, broker, creation_gate, fast_event_polls
):
    created = start_customer_import(
        [
            ["Ada", "ada@example.com", None],
            ["Grace", "grace@example.com", None],
            ["Linus", "linus@example.com", None],
        ]
    )
    releaser = open_gate_once_streaming(
        broker,
        creation_gate,
        before_release=lambda: import_worker.cancel(created["import_id"]),
    )

    response = client.get(f"/import-history/{created['import_id']}/events")
    releaser.join(timeout=5)

    assert response.status_code == 200
    payloads = stream_payloads(response.text)
    assert "Done" not in [payload["status"] for payload in payloads]
    assert payloads[-1]["status"] == "InProgress"
    assert payloads[-1]["percentage"] == pytest.approx(100 / 3)

    body = client.get(f"/import-history/{created['import_id']}").json()["import_history"]
    assert body["status"] == "InProgress"
    assert (body["success"], body["failed"]) == (1, 0)


def test_history_is_removed_when_the_worker_refuses_the_job(import_worker):
    import_worker.shutdown(wait=True)

    response = post_customer_import([["Ada", "ada@example.com", None]])

    assert response.status_code == 500
    assert client.get("/import-history").json()["total_count"] == 0


@pytest.mark.parametrize(
    "params",
    [{"limit": -1}, {"limit": 0}, {"limit": 501}, {"offset": -1}],
)
def test_list_rejects_out_of_range_paging(params):
    assert client.get("/import-history", params=params).status_code == 422


def test_delete_removes_created_records_and_history(import_worker, db):
    created = start_customer_import(
        [["Ada", "ada@example.com", None], ["Grace", "grace@example.com", None]]
    )
    wait_for_import(import_worker, created["import_id"])

    response = client.delete(f"/import-history/{created['import_id']}")

    assert response.status_code == 200
    assert response.json()["records_deleted"] == 2
    assert db.query(Customer).count() == 0
    assert client.get(f"/import-history/{created['import_id']}").status_code == 404


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
