"""Tests for the SQLite state store."""

import pytest

from qa_extractor.store import StateStore


@pytest.fixture
def store(temp_db):
    """Create a test store."""
    return StateStore(db_path=temp_db)


def test_get_missing_returns_default(store):
    """Test reading a key that was never written."""
    assert store.get("missing") is None
    assert store.get("missing", {"a": 1}) == {"a": 1}


def test_set_and_get(store):
    """Test storing and reading back a document."""
    store.set("doc", {"queue": [{"key": "B0TESTMARK01"}], "is_running": True})

    doc = store.get("doc")
    assert doc["is_running"] is True
    assert doc["queue"][0]["key"] == "B0TESTMARK01"


def test_set_replaces_previous_value(store):
    """Test that a second write replaces the first."""
    store.set("doc", {"version": 1})
    store.set("doc", {"version": 2})

    assert store.get("doc") == {"version": 2}


def test_delete(store):
    """Test deleting a document."""
    store.set("doc", [1, 2, 3])
    store.delete("doc")

    assert store.get("doc") is None


def test_values_survive_new_instance(temp_db):
    """Test that a fresh store over the same file sees earlier writes."""
    StateStore(db_path=temp_db).set("doc", {"remote_poll_enabled": True})

    reopened = StateStore(db_path=temp_db)
    assert reopened.get("doc") == {"remote_poll_enabled": True}
