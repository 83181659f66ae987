"""Tests for the admin API endpoints"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from jobengine.v1.core.cache import LocalCache, get_cache
from jobengine.v1.core.security import Principal, get_principal
from jobengine.v1.jobs.ledger import IdempotencyLedger
from jobengine.v1.jobs.models import OutboxStatus
from jobengine.v1.jobs.outbox import add_events
from jobengine.v1.jobs.schemas import OutboundEvent


def _seed_ledger(api_database, settings, job_id="job-1"):
    async def seed():
        ledger = IdempotencyLedger(settings, worker_id="worker-a")
        async with api_database.SessionLocal() as session:
            await ledger.claim(session, job_id, 1, "email")

    asyncio.run(seed())


def _seed_failed_event(api_database) -> int:
    async def seed():
        async with api_database.SessionLocal() as session:
            (entry,) = add_events(session, [OutboundEvent("job.completed")], "job-1")
            entry.status = OutboxStatus.FAILED.value
            entry.attempts = 10
            await session.commit()
            return entry.id

    return asyncio.run(seed())


@pytest.fixture
def operator_app(app):
    """App whose caller only holds the read-only operator role."""
    app.dependency_overrides[get_principal] = lambda: Principal(
        user_id="ops", roles=["operator"]
    )
    return app


class TestJobEndpoints:
    def test_enqueue_job(self, client: TestClient, broker):
        response = client.post(
            "/v1/jobs", json={"type": "email", "payload": {"to": "a@example.com"}}
        )

        assert response.status_code == 202
        data = response.json()
        assert data["ok"] is True
        job_id = data["data"]["job_id"]

        assert len(broker.jobs) == 1
        published = broker.jobs[0]
        assert published.message.job_id == job_id
        assert published.message.attempt == 1
        assert published.delay is None

    def test_enqueue_job_with_caller_id(self, client: TestClient, broker):
        response = client.post("/v1/jobs", json={"type": "email", "job_id": "order-42"})

        assert response.status_code == 202
        assert response.json()["data"]["job_id"] == "order-42"
        assert broker.jobs[0].message_id == "order-42:1"

    def test_enqueue_requires_type(self, client: TestClient):
        response = client.post("/v1/jobs", json={"payload": {}})

        assert response.status_code == 422

    def test_enqueue_broker_down(self, client: TestClient, broker):
        broker.fail_job_publishes = 100

        response = client.post("/v1/jobs", json={"type": "email"})

        assert response.status_code == 503
        assert response.json()["ok"] is False

    def test_get_job(self, client: TestClient, api_database, settings):
        _seed_ledger(api_database, settings)

        response = client.get("/v1/jobs/job-1")

        assert response.status_code == 200
        job = response.json()["data"]
        assert job["job_id"] == "job-1"
        assert job["status"] == "claimed"
        assert job["attempt"] == 1

    def test_get_missing_job(self, client: TestClient):
        response = client.get("/v1/jobs/missing")

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Job not found"

    def test_job_stats(self, client: TestClient, api_database, settings):
        _seed_ledger(api_database, settings, "a")
        _seed_ledger(api_database, settings, "b")

        response = client.get("/v1/jobs/stats/overview")

        assert response.status_code == 200
        stats = response.json()["data"]
        assert stats["total_jobs"] == 2
        assert stats["by_status"] == {"claimed": 2}
        assert stats["in_progress"] == 2


class TestOutboxEndpoints:
    def test_outbox_stats(self, client: TestClient, api_database):
        _seed_failed_event(api_database)

        response = client.get("/v1/outbox/stats")

        assert response.status_code == 200
        stats = response.json()["data"]
        assert stats["by_status"] == {"failed": 1}
        assert stats["oldest_pending_at"] is None

    def test_requeue_failed_event(self, client: TestClient, api_database):
        outbox_id = _seed_failed_event(api_database)

        response = client.post(f"/v1/outbox/{outbox_id}/requeue")

        assert response.status_code == 200
        assert response.json()["data"]["outbox_id"] == outbox_id

        stats = client.get("/v1/outbox/stats").json()["data"]
        assert stats["by_status"] == {"pending": 1}

    def test_requeue_unknown_event(self, client: TestClient):
        response = client.post("/v1/outbox/999/requeue")

        assert response.status_code == 404


class TestAuthorization:
    def test_operator_can_read(self, operator_app, api_database, settings):
        _seed_ledger(api_database, settings)

        with TestClient(operator_app) as client:
            response = client.get("/v1/jobs/job-1")

        assert response.status_code == 200

    def test_operator_cannot_enqueue(self, operator_app, broker):
        with TestClient(operator_app) as client:
            response = client.post("/v1/jobs", json={"type": "email"})

        assert response.status_code == 403
        assert broker.jobs == []

    def test_operator_cannot_invalidate_cache(self, operator_app):
        with TestClient(operator_app) as client:
            response = client.post(
                "/v1/global-parameters/ignore-paths/invalidate-cache"
            )

        assert response.status_code == 403


class TestAdminEndpoints:
    def test_invalidate_ignore_paths_cache(self, app):
        cache = LocalCache({"global:ignore_paths": ["/tmp"]})
        app.dependency_overrides[get_cache] = lambda: cache

        with TestClient(app) as client:
            response = client.post(
                "/v1/global-parameters/ignore-paths/invalidate-cache"
            )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data == {
            "success": True,
            "message": "Global ignore paths cache invalidated",
        }
        assert "global:ignore_paths" not in cache

    def test_invalidate_is_idempotent(self, client: TestClient):
        first = client.post("/v1/global-parameters/ignore-paths/invalidate-cache")
        second = client.post("/v1/global-parameters/ignore-paths/invalidate-cache")

        assert first.status_code == 200
        assert second.status_code == 200
