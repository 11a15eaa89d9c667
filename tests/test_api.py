"""Tests for the command API."""

import csv
import io

import pytest
from fastapi.testclient import TestClient

from conftest import make_runtime
from qa_extractor.api import create_app, split_keys
from qa_extractor.models import QAResult
from qa_extractor.scheduler import PROCESS_NEXT


@pytest.fixture
def runtime(temp_db):
    return make_runtime(temp_db)


@pytest.fixture
def client(runtime):
    """Create a test client around a runtime with fake sessions."""
    with TestClient(create_app(runtime)) as client:
        yield client


def _set_status(runtime, key, status, results=()):
    with runtime.queue.mutate():
        item = runtime.queue.find(key, "US")
        item.status = status
        item.results = [QAResult(question=q, answer=a) for q, a in results]


def test_split_keys():
    """Test splitting pasted text into keys."""
    assert split_keys("B0TESTMARK01, B0TESTMARK02\nB0TESTMARK03  ,") == [
        "B0TESTMARK01", "B0TESTMARK02", "B0TESTMARK03"
    ]


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["message"] == "Q&A Extraction Queue API"


def test_enqueue(client):
    """Test adding keys from a list and from pasted text."""
    response = client.post("/api/queue", json={
        "keys": ["B0TESTMARK01"],
        "text": "b0testmark02, B0BAD, B0TESTMARK01",
        "marketplaceId": "US",
    })

    assert response.status_code == 200
    assert response.json() == {"success": True, "added": 2, "queueLength": 2}


def test_enqueue_default_marketplace(client, runtime):
    client.post("/api/queue", json={"keys": ["B0TESTMARK01"]})

    assert runtime.queue.state.queue[0].marketplace_id == "amazon.com"


def test_enqueue_without_keys(client):
    """Test that an empty request is rejected."""
    response = client.post("/api/queue", json={"keys": [], "text": "  "})

    assert response.status_code == 400


def test_state_and_stats(client):
    """Test reading the queue state and statistics."""
    client.post("/api/queue", json={"keys": ["B0TESTMARK01", "B0TESTMARK02"], "marketplaceId": "US"})

    state = client.get("/api/state").json()
    assert [item["key"] for item in state["queue"]] == ["B0TESTMARK01", "B0TESTMARK02"]
    assert state["is_running"] is False
    assert state["current_index"] == -1

    stats = client.get("/api/stats").json()
    assert stats == {"total": 2, "pending": 2, "processing": 0, "done": 0, "error": 0}


def test_remove(client, runtime):
    """Test removing a queued item by marketplace and key."""
    client.post("/api/queue", json={"keys": ["B0TESTMARK01"], "marketplaceId": "US"})

    response = client.delete("/api/queue/US/b0testmark01")

    assert response.json() == {"success": True, "removed": True}
    assert runtime.queue.state.queue == []


def test_start_and_stop(client, runtime):
    """Test starting and stopping a run."""
    client.post("/api/queue", json={"keys": ["B0TESTMARK01"], "marketplaceId": "US"})

    assert client.post("/api/start").json() == {"success": True, "started": True}
    assert runtime.queue.state.is_running is True
    assert runtime.scheduler.pending(PROCESS_NEXT) is not None

    assert client.post("/api/stop").json() == {"success": True}
    assert runtime.queue.state.is_running is False
    assert runtime.scheduler.pending(PROCESS_NEXT) is None


def test_start_with_empty_queue(client):
    assert client.post("/api/start").json() == {"success": True, "started": False}


def test_clear(client, runtime):
    client.post("/api/queue", json={"keys": ["B0TESTMARK01"], "marketplaceId": "US"})

    client.post("/api/clear")

    assert runtime.queue.state.queue == []


def test_clear_finished_and_retry_failed(client, runtime):
    """Test the bulk maintenance commands."""
    client.post("/api/queue", json={
        "keys": ["B0TESTMARK01", "B0TESTMARK02", "B0TESTMARK03"],
        "marketplaceId": "US",
    })
    _set_status(runtime, "B0TESTMARK01", "done")
    _set_status(runtime, "B0TESTMARK02", "error")

    assert client.post("/api/retry-failed").json() == {"success": True, "retried": 1}
    assert client.post("/api/clear-finished").json() == {"success": True, "removed": 1}
    assert [item.key for item in runtime.queue.state.queue] == ["B0TESTMARK02", "B0TESTMARK03"]


def test_export_json(client, runtime):
    """Test exporting finished items as JSON."""
    client.post("/api/queue", json={"keys": ["B0TESTMARK01", "B0TESTMARK02"], "marketplaceId": "US"})
    _set_status(runtime, "B0TESTMARK01", "done", [("Q1?", "A1")])

    data = client.get("/api/export").json()

    assert data["success"] is True
    assert len(data["data"]) == 1
    assert data["data"][0]["results"] == [{"question": "Q1?", "answer": "A1"}]


def test_export_csv(client, runtime):
    """Test exporting one CSV row per result."""
    client.post("/api/queue", json={"keys": ["B0TESTMARK01", "B0TESTMARK02"], "marketplaceId": "US"})
    _set_status(runtime, "B0TESTMARK01", "done", [("Q1?", "A1"), ("Is it \"big\", really?", "Yes")])
    _set_status(runtime, "B0TESTMARK02", "error", [("Q3?", "A3")])

    response = client.get("/api/export", params={"format": "csv"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "attachment" in response.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(response.text)))
    assert rows[0] == ["key", "marketplace", "status", "question", "answer"]
    assert rows[1:] == [
        ["B0TESTMARK01", "US", "done", "Q1?", "A1"],
        ["B0TESTMARK01", "US", "done", "Is it \"big\", really?", "Yes"],
        ["B0TESTMARK02", "US", "error", "Q3?", "A3"],
    ]


def test_export_unknown_format(client):
    assert client.get("/api/export", params={"format": "xml"}).status_code == 400


def test_remote_poll_requires_api_key(client, runtime):
    """Test that polling cannot be enabled without a backend key."""
    response = client.post("/api/remote-poll", json={"enabled": True})

    assert response.status_code == 400
    assert runtime.poller.enabled is False


def test_remote_poll_toggle(temp_db):
    """Test enabling and disabling remote polling."""
    runtime = make_runtime(temp_db, api_key="secret-key")
    with TestClient(create_app(runtime)) as client:
        assert client.post("/api/remote-poll", json={"enabled": True}).json() == {
            "success": True, "enabled": True
        }
        assert client.post("/api/remote-poll", json={"enabled": False}).json() == {
            "success": True, "enabled": False
        }
