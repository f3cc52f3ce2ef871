import time
from uuid import uuid4

from fastapi.testclient import TestClient

from jobcore.main import create_app


def enqueue(client: TestClient, **body) -> dict:
    response = client.post("/v1/jobs", json=body)
    assert response.status_code == 200, response.text
    return response.json()["data"]


def test_enqueue_and_get_job(client: TestClient):
    created = enqueue(client, type="CLICK_ROLLUP", payload={"rollup_date": "2026-03-14"})

    assert created["queue"] == "LOW"
    assert created["status"] == "queued"
    assert created["deduplicated"] is False

    job = client.get(f"/v1/jobs/{created['job_id']}").json()["data"]
    assert job["type"] == "CLICK_ROLLUP"
    assert job["payload"] == {"rollup_date": "2026-03-14"}
    assert job["attempt"] == 0
    assert job["origin"] == "admin_api"


def test_enqueue_unknown_type_is_rejected(client: TestClient):
    response = client.post("/v1/jobs", json={"type": "MINE_BITCOIN"})
    assert response.status_code == 422


def test_enqueue_dedupes_active_jobs(client: TestClient):
    first = enqueue(client, type="RSS_FEED_REFRESH", dedupe_key="feed-1")
    second = enqueue(client, type="RSS_FEED_REFRESH", dedupe_key="feed-1")

    assert second["deduplicated"] is True
    assert second["job_id"] == first["job_id"]


def test_get_missing_job(client: TestClient):
    response = client.get(f"/v1/jobs/{uuid4()}")

    assert response.status_code == 404
    assert response.json()["ok"] is False


def test_list_jobs_with_filters(client: TestClient):
    enqueue(client, type="EMAIL_DELIVERY")
    enqueue(client, type="EMAIL_DELIVERY")
    enqueue(client, type="SCREENSHOT_CAPTURE")

    data = client.get("/v1/jobs", params={"queue": "HIGH"}).json()["data"]
    assert data["total"] == 2
    assert {job["type"] for job in data["jobs"]} == {"EMAIL_DELIVERY"}

    data = client.get("/v1/jobs", params={"status": ["queued"], "limit": 1}).json()["data"]
    assert data["total"] == 3
    assert len(data["jobs"]) == 1


def test_queue_catalog(client: TestClient):
    families = client.get("/v1/jobs/queues").json()["data"]

    assert [f["queue"] for f in families][0] == "HIGH"
    screenshot = next(f for f in families if f["queue"] == "SCREENSHOT")
    assert screenshot["concurrency_limit"] == 3
    assert screenshot["job_types"] == ["SCREENSHOT_CAPTURE"]


def test_job_stats(client: TestClient):
    enqueue(client, type="AI_TAGGING", payload={"item_ids": []})

    stats = client.get("/v1/jobs/stats/overview").json()["data"]
    assert stats["total_jobs"] == 1
    assert stats["by_type"] == {"AI_TAGGING": 1}
    assert stats["queue_depth"] == 1


def test_retry_requires_failed_job(client: TestClient):
    created = enqueue(client, type="EMAIL_DELIVERY")

    response = client.post(f"/v1/jobs/{created['job_id']}/retry")
    assert response.status_code == 409

    batch = client.post(
        "/v1/jobs/batch/retry", json={"job_ids": [created["job_id"], str(uuid4())]}
    ).json()["data"]
    assert batch["success_ids"] == []
    assert len(batch["failed_ids"]) == 2


def test_cleanup(client: TestClient):
    response = client.post("/v1/jobs/cleanup", json={"older_than_days": 7})
    assert response.json()["data"] == {"deleted_count": 0, "older_than_days": 7}


def test_dispatcher_status_without_dispatcher(client: TestClient):
    assert client.get("/v1/jobs/dispatcher").json()["data"] is None


def test_budget_status_and_usage(client: TestClient):
    status = client.get("/v1/budget").json()["data"]
    assert status["action"] == "NORMAL"
    assert status["spent_cents"] == 0
    assert status["limit_cents"] == 50000

    client.put("/v1/budget/limit", json={"limit_cents": 10000})
    status = client.post(
        "/v1/budget/usage",
        json={"model": "claude-sonnet-4", "tokens_input": 1_000_000, "tokens_output": 4_000_000},
    ).json()["data"]

    # 300 + 6000 cents of 10000
    assert status["spent_cents"] == 6300
    assert status["action"] == "NORMAL"
    assert status["batch_size"] == 20

    status = client.post("/v1/budget/usage", json={"cost_cents": 3000}).json()["data"]
    assert status["action"] == "QUEUE"
    assert status["should_stop_processing"] is True
    assert status["remaining_cents"] == 700


def test_budget_usage_needs_cost_or_model(client: TestClient):
    response = client.post("/v1/budget/usage", json={"tokens_input": 10})
    assert response.status_code == 422


def test_budget_history_and_estimate(client: TestClient):
    client.put("/v1/budget/limit", json={"limit_cents": 2500, "month": "2026-01-20"})

    history = client.get("/v1/budget/history").json()["data"]
    assert [p["month"] for p in history] == ["2026-01-01"]
    assert history[0]["limit_cents"] == 2500

    estimate = client.get(
        "/v1/budget/estimate", params={"model": "claude-3-5-haiku", "tokens_input": 1_000_000}
    ).json()["data"]
    assert estimate["cost_cents"] == 25


def test_in_process_dispatcher_runs_jobs(api_settings):
    settings = api_settings.model_copy(
        update={"dispatcher_enabled": True, "job_poll_interval_ms": 20}
    )

    with TestClient(create_app(settings)) as client:
        created = enqueue(client, type="CLICK_ROLLUP", payload={"rollup_date": "2026-03-14"})

        job = None
        for _ in range(250):
            job = client.get(f"/v1/jobs/{created['job_id']}").json()["data"]
            if job["status"] == "succeeded":
                break
            time.sleep(0.02)

        assert job["status"] == "succeeded"
        assert job["result"]["stat_date"] == "2026-03-14"

        status = client.get("/v1/jobs/dispatcher").json()["data"]
        assert status["running"] is True
        assert status["concurrency_limits"]["SCREENSHOT"] == 3


def test_malformed_body_uses_error_envelope(client: TestClient):
    response = client.post(
        "/v1/jobs", json={"payload": "not-an-object"}, headers={"X-Request-ID": "req-42"}
    )

    assert response.status_code == 422
    body = response.json()
    assert body["ok"] is False
    assert body["request_id"] == "req-42"
    assert body["error"]["message"] == "Request validation failed"
    assert body["error"]["details"]["errors"]
    assert response.headers["X-Request-ID"] == "req-42"
