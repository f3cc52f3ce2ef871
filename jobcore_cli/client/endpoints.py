"""API Endpoint Wrappers - Typed admin API calls"""

from typing import Any

from ..utils.config_manager import config
from .base import APIClient, JobCoreError

__all__ = ["JobCoreClient", "JobCoreError"]


class JobCoreClient:
    """High-level client with one method per admin endpoint"""

    def __init__(self, base_url: str | None = None, headers: dict[str, str] | None = None):
        api_config = config.load_config().get("api", {})
        final_base_url = base_url or api_config.get("base_url", "http://localhost:8000")
        final_headers = headers or api_config.get("headers", {})

        self.api = APIClient(
            base_url=final_base_url,
            timeout=api_config.get("timeout", 30),
            headers=final_headers,
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    # Health
    def health_check(self) -> dict[str, Any]:
        return self.api.get("/healthz")

    def recent_alerts(self, kind: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": limit}
        if kind:
            params["kind"] = kind
        return self.api.get("/alerts", params)

    # Jobs
    def list_jobs(
        self,
        status: list[str] | None = None,
        type: str | None = None,
        queue: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if type:
            params["type"] = type
        if queue:
            params["queue"] = queue
        return self.api.get("/jobs", params)

    def get_job(self, job_id: str) -> dict[str, Any]:
        return self.api.get(f"/jobs/{job_id}")

    def job_stats(self) -> dict[str, Any]:
        return self.api.get("/jobs/stats/overview")

    def list_queues(self) -> list[dict[str, Any]]:
        return self.api.get("/jobs/queues")

    def enqueue_job(
        self,
        type: str,
        payload: dict[str, Any] | None = None,
        scheduled_at: str | None = None,
        max_attempts: int | None = None,
        dedupe_key: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"type": type, "payload": payload or {}}
        if scheduled_at:
            body["scheduled_at"] = scheduled_at
        if max_attempts is not None:
            body["max_attempts"] = max_attempts
        if dedupe_key:
            body["dedupe_key"] = dedupe_key
        return self.api.post("/jobs", body)

    def retry_job(self, job_id: str) -> dict[str, Any]:
        return self.api.post(f"/jobs/{job_id}/retry")

    def cleanup_jobs(self, older_than_days: int) -> dict[str, Any]:
        return self.api.post("/jobs/cleanup", {"older_than_days": older_than_days})

    # Budget
    def budget_status(self, provider: str | None = None) -> dict[str, Any]:
        return self.api.get("/budget", {"provider": provider} if provider else None)

    def budget_history(self, provider: str | None = None, months: int = 12) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"months": months}
        if provider:
            params["provider"] = provider
        return self.api.get("/budget/history", params)

    def set_budget_limit(self, limit_cents: int, provider: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"limit_cents": limit_cents}
        if provider:
            body["provider"] = provider
        return self.api.put("/budget/limit", body)
