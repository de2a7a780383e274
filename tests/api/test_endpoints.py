"""
API endpoint tests
"""

import uuid
import pytest
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient
from api.main import app
from api.dependencies import get_db
from core.exceptions import CapacityError, JobNotFoundError
from ingestion.progress import ProgressChannel
from models.base import JobStatus
from models.job import BulkJob
from models.job_error import JobError


@pytest.fixture
def db_session():
    session = MagicMock()
    session.execute = AsyncMock()
    return session


@pytest.fixture
def orchestrator():
    orchestrator = MagicMock()
    orchestrator.submit = AsyncMock()
    orchestrator.get_status = AsyncMock()
    orchestrator.list_errors = AsyncMock()
    orchestrator.subscribe = AsyncMock()
    orchestrator.cancel = MagicMock(return_value=True)
    orchestrator.pool.stats.return_value = {
        "workers": 5,
        "active": 1,
        "backlog": 0,
        "queue_capacity": 50,
        "admission_policy": "reject",
    }
    return orchestrator


@pytest.fixture
def client(db_session, orchestrator):
    """Create test client with database and orchestrator overrides"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.orchestrator = orchestrator

    # Not used as a context manager: startup would build the real pipeline
    yield TestClient(app)

    app.dependency_overrides.clear()


def completed_job(job_id):
    return BulkJob(
        job_id=job_id,
        submitted_by="alice",
        file_name="update.csv",
        status=JobStatus.COMPLETED,
        error_count=0,
        rows_staged=4500,
        rows_updated=4498,
        chunks_completed=3,
        submitted_at=datetime(2024, 1, 15, 10, 0, 0),
        started_at=datetime(2024, 1, 15, 10, 0, 1),
        completed_at=datetime(2024, 1, 15, 10, 2, 30),
    )


def test_health_endpoint(client):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database_connected"] is True
    assert data["worker_pool"]["workers"] == 5
    assert "X-Request-ID" in response.headers


def test_health_endpoint_database_down(client, db_session):
    db_session.execute.side_effect = ConnectionRefusedError("connection refused")

    data = client.get("/health").json()

    assert data["status"] == "unhealthy"
    assert data["database_connected"] is False


def test_health_endpoint_backlog_full(client, orchestrator):
    orchestrator.pool.stats.return_value = {
        "workers": 1, "active": 1, "backlog": 2, "queue_capacity": 2, "admission_policy": "reject"
    }

    assert client.get("/health").json()["status"] == "degraded"


def test_submit_upload(client, orchestrator):
    job_id = uuid.uuid4()
    orchestrator.submit.return_value = job_id

    response = client.post(
        "/bulk-update",
        files={"file": ("update.csv", b"pk_col,name\n1,Widget\n", "text/csv")},
        headers={"X-Actor": "alice"},
    )

    assert response.status_code == 202
    assert response.json() == {"job_id": str(job_id), "status": "pending"}

    kwargs = orchestrator.submit.await_args.kwargs
    assert kwargs["actor"] == "alice"
    assert kwargs["file_name"] == "update.csv"


def test_submit_upload_default_actor(client, orchestrator):
    orchestrator.submit.return_value = uuid.uuid4()

    client.post("/bulk-update", files={"file": ("update.csv", b"pk_col\n", "text/csv")})

    assert orchestrator.submit.await_args.kwargs["actor"] == "anonymous"


def test_submit_upload_at_capacity(client, orchestrator):
    orchestrator.submit.side_effect = CapacityError("Bulk update backlog is full")

    response = client.post("/bulk-update", files={"file": ("update.csv", b"pk_col\n", "text/csv")})

    assert response.status_code == 503
    assert response.json()["detail"] == "Bulk update backlog is full"


def test_submit_requires_file(client):
    assert client.post("/bulk-update").status_code == 422


def test_get_job_status(client, orchestrator):
    job_id = uuid.uuid4()
    orchestrator.get_status.return_value = completed_job(job_id)

    response = client.get(f"/bulk-update/{job_id}")

    assert response.status_code == 200
    data = response.json()
    assert data["job_id"] == str(job_id)
    assert data["status"] == "completed"
    assert data["error_count"] == 0
    assert data["chunks_completed"] == 3


def test_get_unknown_job(client, orchestrator):
    orchestrator.get_status.side_effect = JobNotFoundError("Job not found")

    assert client.get(f"/bulk-update/{uuid.uuid4()}").status_code == 404


def test_invalid_job_id(client):
    assert client.get("/bulk-update/not-a-uuid").status_code == 422


def test_list_job_errors(client, orchestrator):
    job_id = uuid.uuid4()
    orchestrator.list_errors.return_value = [
        JobError(id=1, job_id=job_id, line_number=3, column_name="category_name",
                 invalid_value="Toolz", reason="Value not found in categories"),
        JobError(id=2, job_id=job_id, line_number=7, column_name="status",
                 invalid_value="gone", reason="Value not found in statuses"),
    ]

    response = client.get(f"/bulk-update/{job_id}/errors")

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert [error["line_number"] for error in data["errors"]] == [3, 7]
    assert data["errors"][0]["invalid_value"] == "Toolz"


def test_event_stream(client, orchestrator):
    job_id = uuid.uuid4()
    channel = ProgressChannel()
    subscription = channel.subscribe(job_id)
    channel.publish(job_id, "status", "Started processing")
    channel.publish(job_id, "updating.chunk", 1)
    channel.publish(job_id, "status", "Completed")
    channel.close_job(job_id)
    orchestrator.subscribe.return_value = subscription

    response = client.get(f"/bulk-update/{job_id}/events")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.text == (
        "event: status\ndata: Started processing\n\n"
        "event: updating.chunk\ndata: 1\n\n"
        "event: status\ndata: Completed\n\n"
    )
    assert channel.subscriber_count(job_id) == 0


def test_event_stream_for_finished_job_is_empty(client, orchestrator):
    orchestrator.subscribe.return_value = None

    response = client.get(f"/bulk-update/{uuid.uuid4()}/events")

    assert response.status_code == 200
    assert response.text == ""


def test_cancel_job(client, orchestrator):
    job_id = uuid.uuid4()
    orchestrator.get_status.return_value = completed_job(job_id)

    response = client.post(f"/bulk-update/{job_id}/cancel")

    assert response.status_code == 200
    assert response.json() == {"job_id": str(job_id), "cancelled": True}
    orchestrator.cancel.assert_called_once_with(job_id)
