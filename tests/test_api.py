"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from tracker import api
from tracker.config import ChapterbellConfig


@pytest.fixture
def client(engine, monkeypatch):
    monkeypatch.setattr("tracker.api.get_config", lambda: ChapterbellConfig(), raising=True)
    monkeypatch.setattr(api.app.state, "worker", None, raising=False)
    return TestClient(api.app)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "worker": False}


def test_post_runs_queues_forced_titles(client, make_title):
    title_id = make_title()

    response = client.post("/runs", json={"title_ids": [title_id, 404]})

    assert response.status_code == 202
    body = response.json()
    assert body["mode"] == "forced"
    assert body["queued"] == 1
    assert body["unknown"] == [404]


def test_post_runs_without_body_is_a_full_scan(client, make_title):
    make_title("a")
    make_title("b")

    response = client.post("/runs")

    assert response.status_code == 202
    assert response.json()["mode"] == "scan"
    assert response.json()["queued"] == 2


def test_jobs_reports_counts_and_listing(client, make_title):
    make_title()
    client.post("/runs")

    response = client.get("/jobs", params={"status": "pending"})

    assert response.status_code == 200
    body = response.json()
    assert body["counts"] == {"check": {"pending": 1}}
    assert len(body["jobs"]) == 1
    assert body["jobs"][0]["attempt"] == 0


def test_events_empty(client):
    response = client.get("/events")
    assert response.status_code == 200
    assert response.json() == []


def test_missing_config_returns_503(client, monkeypatch):
    def _missing():
        raise FileNotFoundError("Config file not found: config.ini")

    monkeypatch.setattr("tracker.api.get_config", _missing, raising=True)

    response = client.post("/runs")

    assert response.status_code == 503
    assert "Config file not found" in response.json()["detail"]
