import pytest
from fastapi.testclient import TestClient

from seoflow.admin import app
from seoflow.storage import (
    init_db,
    insert_article,
    insert_plan_item,
    upsert_integration,
    upsert_project,
)

HEADERS = {"X-Admin-Token": "secret"}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("SF_ADMIN_TOKEN", "secret")
    return TestClient(app)


@pytest.fixture
def seeded():
    conn = init_db()
    upsert_project(conn, "p1", "Project One", auto_publish_policy="immediate")
    plan_item_id = insert_plan_item(conn, "p1", "2024-06-01", "trail shoes")
    drafted_item_id = insert_plan_item(conn, "p1", "2024-06-02", "socks")
    article_id = insert_article(conn, "p1", "Draft", plan_item_id=drafted_item_id)
    upsert_integration(conn, "int-on", "p1", "webhook")
    upsert_integration(conn, "int-off", "p1", "webhook", status="disconnected")
    conn.close()
    return {"plan_item_id": plan_item_id, "article_id": article_id}


def test_health_is_public(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_token_required(client):
    assert client.get("/projects/p1/jobs").status_code == 401
    assert client.get("/projects/p1/jobs", headers={"X-Admin-Token": "wrong"}).status_code == 401
    assert client.get("/projects/p1/jobs", headers=HEADERS).status_code == 200


def test_generate_returns_202_then_200(client, seeded):
    body = {"plan_item_id": seeded["plan_item_id"]}

    first = client.post("/articles/generate", json=body, headers=HEADERS)
    second = client.post("/articles/generate", json=body, headers=HEADERS)

    assert first.status_code == 202
    assert first.json()["reused"] is False
    assert second.status_code == 200
    assert second.json()["reused"] is True
    assert second.json()["job_id"] == first.json()["job_id"]

    job = client.get(f"/jobs/{first.json()['job_id']}", headers=HEADERS).json()
    assert job["job_type"] == "generate"
    assert job["status"] == "queued"
    assert job["target_id"] == seeded["plan_item_id"]


def test_generate_errors_map_to_status(client, seeded):
    missing = client.post("/articles/generate", json={"plan_item_id": "plan_x"}, headers=HEADERS)
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "plan_item_not_found"


def test_publish_routes(client, seeded):
    url = f"/articles/{seeded['article_id']}/publish"

    refused = client.post(url, json={"integration_id": "int-off"}, headers=HEADERS)
    assert refused.status_code == 409
    assert refused.json()["detail"]["code"] == "integration_not_connected"

    first = client.post(url, json={"integration_id": "int-on"}, headers=HEADERS)
    second = client.post(url, json={"integration_id": "int-on"}, headers=HEADERS)
    assert first.status_code == 202
    assert second.status_code == 200

    missing = client.post("/articles/art_x/publish", json={"integration_id": "int-on"}, headers=HEADERS)
    assert missing.status_code == 404


def test_cancel_and_list_jobs(client, seeded):
    job_id = client.post(
        "/articles/generate", json={"plan_item_id": seeded["plan_item_id"]}, headers=HEADERS
    ).json()["job_id"]

    assert client.post(f"/jobs/{job_id}/cancel", headers=HEADERS).status_code == 200
    assert client.post(f"/jobs/{job_id}/cancel", headers=HEADERS).status_code == 409

    jobs = client.get("/projects/p1/jobs", params={"status": "canceled"}, headers=HEADERS).json()
    assert [job["id"] for job in jobs] == [job_id]
    assert client.get("/jobs/job_missing", headers=HEADERS).status_code == 404


def test_enqueue_stage_route(client, seeded):
    body = {"project_id": "p1", "job_type": "discovery", "payload": {"locale": "en"}}

    first = client.post("/jobs/enqueue", json=body, headers=HEADERS)
    second = client.post("/jobs/enqueue", json=body, headers=HEADERS)
    bad = client.post(
        "/jobs/enqueue", json={"project_id": "p1", "job_type": "nope"}, headers=HEADERS
    )

    assert first.status_code == 202
    assert second.status_code == 200
    assert bad.status_code == 400


def test_stuck_jobs_route(client):
    response = client.get("/jobs/stuck", params={"older_than_seconds": 60}, headers=HEADERS)
    assert response.status_code == 200
    assert response.json() == []


def test_schedule_run_route(client, seeded):
    response = client.post("/schedule/run", json={"today": "2024-06-10"}, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["generated_drafts"] == 1
    assert body["enqueued_jobs"] == 1
    assert body["published_articles"] == 1


def test_runtime_config_roundtrip(client):
    current = client.get("/admin/config/runtime", headers=HEADERS).json()["config"]
    current["worker"]["max_retries"] = 4

    assert client.put("/admin/config/runtime", json={"config": current}, headers=HEADERS).status_code == 200
    updated = client.get("/admin/config/runtime", headers=HEADERS).json()["config"]
    assert updated["worker"]["max_retries"] == 4

    current["worker"]["max_retries"] = -1
    assert client.put("/admin/config/runtime", json={"config": current}, headers=HEADERS).status_code == 400


def test_generate_writes_message_to_sql_queue(client, seeded):
    response = client.post(
        "/articles/generate", json={"plan_item_id": seeded["plan_item_id"]}, headers=HEADERS
    )
    assert response.status_code == 202

    conn = init_db()
    row = conn.execute("SELECT job_id FROM queue_messages").fetchone()
    conn.close()
    assert row[0] == response.json()["job_id"]


def test_in_process_queue_backend_rejects_publishing_routes(client, seeded):
    current = client.get("/admin/config/runtime", headers=HEADERS).json()["config"]
    current["queue"]["backend"] = "memory"
    assert client.put("/admin/config/runtime", json={"config": current}, headers=HEADERS).status_code == 200

    response = client.post(
        "/articles/generate", json={"plan_item_id": seeded["plan_item_id"]}, headers=HEADERS
    )

    assert response.status_code == 503
    assert client.get("/projects/p1/jobs", headers=HEADERS).json() == []
