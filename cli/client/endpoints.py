"""API Endpoint Wrappers"""

import os
from typing import Any

from .base import APIClient, JobEngineError

DEFAULT_API_URL = "http://localhost:8000"

__all__ = ["JobEngineClient", "JobEngineError", "resolve_base_url"]


def resolve_base_url(base_url: str | None = None) -> str:
    """Explicit URL, then JOBENGINE_API_URL, then the local default."""
    return base_url or os.environ.get("JOBENGINE_API_URL", DEFAULT_API_URL)


class JobEngineClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
        timeout: int = 30,
    ):
        final_headers = dict(headers or {})
        user_id = os.environ.get("JOBENGINE_USER_ID")
        if user_id and "X-User-ID" not in final_headers:
            final_headers["X-User-ID"] = user_id
            final_headers.setdefault("X-Roles", os.environ.get("JOBENGINE_ROLES", ""))

        self.api = APIClient(
            base_url=resolve_base_url(base_url),
            timeout=timeout,
            headers=final_headers,
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    # Health Check
    def health_check(self) -> dict[str, Any]:
        """Check API health status"""
        return self.api.get("/healthz")

    # Jobs Endpoints
    def enqueue_job(
        self,
        type: str,
        payload: dict[str, Any] | None = None,
        job_id: str | None = None,
    ) -> dict[str, Any]:
        """Submit a job"""
        body: dict[str, Any] = {"type": type, "payload": payload or {}}
        if job_id:
            body["job_id"] = job_id
        return self.api.post("/jobs", body)

    def get_job(self, job_id: str) -> dict[str, Any]:
        """Get the ledger entry of a job"""
        return self.api.get(f"/jobs/{job_id}")

    def job_stats(self) -> dict[str, Any]:
        """Get ledger statistics"""
        return self.api.get("/jobs/stats/overview")

    # Outbox Endpoints
    def outbox_stats(self) -> dict[str, Any]:
        """Get outbox counts by status"""
        return self.api.get("/outbox/stats")

    def requeue_outbox(self, outbox_id: int) -> dict[str, Any]:
        """Move a failed outbox event back to pending"""
        return self.api.post(f"/outbox/{outbox_id}/requeue")
