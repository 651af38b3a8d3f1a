"""
Health endpoints of the scheduler process.

/health reports the periodic jobs, the payment circuit and queue depth;
/readiness gates traffic on the scheduler running; /liveness always
answers; /metrics returns the MetricsRecorder snapshot.
"""

import asyncio
from typing import Any

from aiohttp import web
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from app.services.metrics_service import MetricsRecorder
from app.utils.circuit_breaker import CircuitBreaker
from jobs.queue.base import JobQueue

SCHEDULER_KEY = web.AppKey("scheduler", AsyncIOScheduler)
QUEUE_KEY = web.AppKey("queue", JobQueue)
BREAKER_KEY = web.AppKey("breaker", CircuitBreaker)
METRICS_KEY = web.AppKey("metrics", MetricsRecorder)


def _periodic_jobs(scheduler: AsyncIOScheduler) -> list[dict[str, Any]]:
    return [
        {
            "id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
        }
        for job in scheduler.get_jobs()
    ]


async def health_handler(request: web.Request) -> web.Response:
    """
    Overall health.

    Returns:
        200 with scheduler, circuit and queue status, or 503 when the
        queue backend cannot be reached
    """
    scheduler = request.app[SCHEDULER_KEY]
    try:
        depth = await request.app[QUEUE_KEY].depth()
    except Exception as e:
        logger.error(f"Health check: queue unreachable: {e}")
        return web.json_response({"status": "unhealthy", "error": str(e)}, status=503)

    jobs = _periodic_jobs(scheduler)
    return web.json_response(
        {
            "status": "healthy" if scheduler.running else "stopped",
            "scheduler_running": scheduler.running,
            "jobs_count": len(jobs),
            "jobs": jobs,
            "circuit": request.app[BREAKER_KEY].status(),
            "queue": depth,
            "failed_jobs": depth.get("failed", 0),
        }
    )


async def readiness_handler(request: web.Request) -> web.Response:
    ready = request.app[SCHEDULER_KEY].running
    return web.json_response(
        {"status": "ready" if ready else "not_ready", "ready": ready},
        status=200 if ready else 503,
    )


async def liveness_handler(request: web.Request) -> web.Response:
    return web.json_response({"status": "alive", "alive": True})


async def metrics_handler(request: web.Request) -> web.Response:
    return web.json_response(request.app[METRICS_KEY].snapshot())


def create_health_app(
    scheduler: AsyncIOScheduler,
    queue: JobQueue,
    breaker: CircuitBreaker,
    metrics: MetricsRecorder,
) -> web.Application:
    """Build the health application around the monitored components."""
    app = web.Application()
    app[SCHEDULER_KEY] = scheduler
    app[QUEUE_KEY] = queue
    app[BREAKER_KEY] = breaker
    app[METRICS_KEY] = metrics
    app.router.add_get("/health", health_handler)
    app.router.add_get("/readiness", readiness_handler)
    app.router.add_get("/liveness", liveness_handler)
    app.router.add_get("/metrics", metrics_handler)
    return app


async def start_health_server(
    app: web.Application, host: str = "0.0.0.0", port: int = 8081
) -> web.AppRunner:
    """
    Serve ``app`` until stop_health_server is called.

    Returns:
        AppRunner for cleanup
    """
    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, host, port).start()
    logger.info(f"Health server listening on http://{host}:{port} (/health, /metrics)")
    return runner


async def stop_health_server(runner: web.AppRunner, timeout: int = 5) -> None:
    """Clean up the health server, giving up after ``timeout`` seconds."""
    try:
        await asyncio.wait_for(runner.cleanup(), timeout=timeout)
        logger.info("Health server stopped")
    except TimeoutError:
        logger.warning(f"Health server cleanup timed out after {timeout}s")
