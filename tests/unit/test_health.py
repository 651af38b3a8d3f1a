"""Unit tests for the health check endpoints."""

import pytest
from aiohttp import test_utils
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from jobs.health import create_health_app
from jobs.queue.base import JobKind, RunCyclePayload


class FailingQueue:
    """Queue whose backend is down."""

    async def depth(self):
        raise ConnectionError("redis down")


async def get_json(app, path):
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        response = await client.get(path)
        return response.status, await response.json()


class TestHealthEndpoints:
    """Test /health, /readiness, /liveness and /metrics."""

    @pytest.mark.asyncio
    async def test_health_running(self, engine):
        """Test health reports scheduler jobs, circuit state and queue depth."""
        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(lambda: None, "interval", minutes=5, id="job_recovery")
        scheduler.start()
        await engine.queue.enqueue(JobKind.RUN_CYCLE, RunCyclePayload(group_id="g"))
        try:
            app = create_health_app(scheduler, engine.queue, engine.breaker, engine.metrics)
            status, body = await get_json(app, "/health")
        finally:
            scheduler.shutdown(wait=False)

        assert status == 200
        assert body["status"] == "healthy"
        assert body["jobs"][0]["id"] == "job_recovery"
        assert body["circuit"]["state"] == "CLOSED"
        assert body["queue"]["waiting"] == 1
        assert body["failed_jobs"] == 0

    @pytest.mark.asyncio
    async def test_health_queue_down(self, engine):
        """Test an unreachable queue makes health return 503."""
        app = create_health_app(
            AsyncIOScheduler(timezone="UTC"), FailingQueue(), engine.breaker, engine.metrics
        )

        status, body = await get_json(app, "/health")

        assert status == 503
        assert body["status"] == "unhealthy"
        assert "redis down" in body["error"]

    @pytest.mark.asyncio
    async def test_readiness_requires_running_scheduler(self, engine):
        """Test readiness is 503 until the scheduler runs."""
        app = create_health_app(
            AsyncIOScheduler(timezone="UTC"), engine.queue, engine.breaker, engine.metrics
        )

        status, body = await get_json(app, "/readiness")

        assert status == 503
        assert body["ready"] is False

    @pytest.mark.asyncio
    async def test_liveness_and_metrics(self, engine):
        """Test liveness always answers and metrics returns the snapshot."""
        engine.metrics.record_job_success("cycles:run-cycle")
        app = create_health_app(
            AsyncIOScheduler(timezone="UTC"), engine.queue, engine.breaker, engine.metrics
        )

        status, body = await get_json(app, "/liveness")
        assert status == 200
        assert body["alive"] is True

        status, body = await get_json(app, "/metrics")
        assert status == 200
        assert body["summary"]["total_success"] == 1
