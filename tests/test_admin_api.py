import copy

import pytest
from fastapi.testclient import TestClient

from bulkenrich.admin import app
from bulkenrich.config import DEFAULT_CONFIG
from bulkenrich.controller import JobController
from bulkenrich.errors import RateLimited, UpstreamError
from bulkenrich.storage import get_article, init_db

from conftest import FakeClient, make_config, seed_articles

HEADERS = {"X-Admin-Token": "secret", "X-Admin-User": "editor"}


@pytest.fixture
def controller(db_path, monkeypatch):
    monkeypatch.setenv("BE_ADMIN_TOKEN", "secret")
    ctl = JobController(
        connect=lambda: init_db(db_path),
        client=FakeClient(),
        config=make_config(),
        sleep=lambda seconds: None,
    )
    app.state.controller = ctl
    yield ctl
    ctl.shutdown()
    del app.state.controller


@pytest.fixture
def client(controller):
    return TestClient(app)


def test_health_is_public(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_missing_token_is_unauthorized(client):
    response = client.get("/admin/jobs")
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized", "code": "unauthorized"}


def test_wrong_token_is_forbidden(client):
    response = client.get("/admin/jobs", headers={"X-Admin-Token": "nope"})
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


def test_unconfigured_token_fails_closed(client, monkeypatch):
    monkeypatch.delenv("BE_ADMIN_TOKEN")
    response = client.get("/admin/jobs", headers=HEADERS)
    assert response.status_code == 403


def test_rpc_preview_missing_article(client, conn):
    response = client.post(
        "/admin/bulk/tldr-context", json={"action": "preview", "articleId": "abc"}, headers=HEADERS
    )
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"
    assert client.get("/admin/jobs", headers=HEADERS).json() == []


def test_rpc_preview(client, conn):
    seed_articles(conn, 1)
    response = client.post(
        "/admin/bulk/tldr-context", json={"action": "preview", "articleId": "art-01"}, headers=HEADERS
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["preview"]["whatChangesNext"] == "Watch for the follow-up vote."
    assert body["existingSnapshot"] == ["First point", "Second point"]
    assert get_article(conn, "art-01").tldr_snapshot == ["First point", "Second point"]


def test_rpc_preview_upstream_failure_is_bad_gateway(client, controller, conn):
    seed_articles(conn, 1)
    controller.client = FakeClient(failures={"art-01": UpstreamError("AI API error: 500 - boom")})
    response = client.post(
        "/admin/bulk/tldr-context", json={"action": "preview", "articleId": "art-01"}, headers=HEADERS
    )
    assert response.status_code == 502
    assert response.json() == {"error": "AI API error: 500 - boom", "code": "upstream_error"}


def test_rpc_preview_rate_limited(client, controller, conn):
    seed_articles(conn, 1)
    controller.client = FakeClient(failures={"art-01": RateLimited("Rate limit exceeded")})
    response = client.post(
        "/admin/bulk/tldr-context", json={"action": "preview", "articleId": "art-01"}, headers=HEADERS
    )
    assert response.status_code == 429
    assert response.json() == {"error": "Rate limit exceeded", "code": "rate_limited"}
    assert client.get("/admin/jobs", headers=HEADERS).json() == []


def test_rpc_start_status_flow(client, controller, conn):
    seed_articles(conn, 4)
    response = client.post("/admin/bulk/tldr-context", json={"action": "start"}, headers=HEADERS)
    assert response.status_code == 200
    started = response.json()
    assert started["success"] is True
    assert started["totalItems"] == 4

    controller.registry.wait(started["batchId"], timeout=10)
    status = client.post(
        "/admin/bulk/tldr-context",
        json={"action": "status", "batchId": started["batchId"]},
        headers=HEADERS,
    ).json()
    assert status["queue"]["status"] == "completed"
    assert status["queue"]["processed_items"] == 4
    assert status["queue"]["created_by"] == "editor"


def test_rpc_cancel_and_bad_actions(client, conn):
    started = client.post(
        "/admin/bulk/tldr-context",
        json={"action": "start", "filter": {"statuses": ["archived"]}},
        headers=HEADERS,
    ).json()
    assert started["totalItems"] == 0

    cancel = client.post(
        "/admin/bulk/tldr-context",
        json={"action": "cancel", "batchId": started["batchId"]},
        headers=HEADERS,
    )
    assert cancel.status_code == 200
    assert cancel.json()["acknowledged"] is True

    missing = client.post("/admin/bulk/tldr-context", json={"action": "cancel"}, headers=HEADERS)
    assert missing.status_code == 400

    unknown = client.post("/admin/bulk/tldr-context", json={"action": "explode"}, headers=HEADERS)
    assert unknown.status_code == 400
    assert unknown.json()["error"] == "Invalid action"


def test_jobs_routes(client, controller, conn):
    seed_articles(conn, 2)
    response = client.post(
        "/admin/jobs", json={"filter": {"statuses": ["published"]}, "dry_run": True}, headers=HEADERS
    )
    assert response.status_code == 200
    job_id = response.json()["job_id"]
    controller.registry.wait(job_id, timeout=10)

    job = client.get(f"/admin/jobs/{job_id}", headers=HEADERS).json()
    assert job["status"] == "completed"
    assert job["options"] == {"force": False, "dry_run": True}

    items = client.get(f"/admin/jobs/{job_id}/items", headers=HEADERS).json()
    assert [item["outcome"] for item in items] == ["preview", "preview"]

    listed = client.get("/admin/jobs", headers=HEADERS).json()
    assert listed[0]["id"] == job_id
    assert "item_ids" not in listed[0]

    resumed = client.post(f"/admin/jobs/{job_id}/resume", headers=HEADERS).json()
    assert resumed["resumed"] is False

    assert client.get("/admin/jobs/job_missing", headers=HEADERS).status_code == 404


def test_invalid_filter_is_bad_request(client):
    response = client.post(
        "/admin/jobs", json={"filter": {"statuses": ["deleted"]}}, headers=HEADERS
    )
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_filter"


def test_article_preview_route(client, conn):
    seed_articles(conn, 1)
    response = client.post(
        "/admin/articles/art-01/preview",
        json={"operation_type": "article_enrichment"},
        headers=HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["result"]["topics"] == ["AI Regulation"]
    assert response.json()["existing_value"] is None


def test_runtime_config_get_put(client, controller):
    response = client.get("/admin/config/runtime", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["config"] == DEFAULT_CONFIG

    updated = copy.deepcopy(DEFAULT_CONFIG)
    updated["jobs"]["batch_size"] = 5
    response = client.put("/admin/config/runtime", json={"config": updated}, headers=HEADERS)
    assert response.status_code == 200
    assert controller.config.jobs.batch_size == 5
    assert client.get("/admin/config/runtime", headers=HEADERS).json()["config"]["jobs"]["batch_size"] == 5


def test_runtime_config_rejects_invalid(client):
    response = client.put(
        "/admin/config/runtime", json={"config": {"app": {"name": "Bad"}}}, headers=HEADERS
    )
    assert response.status_code == 400
