"""
Composition root.

Wires settings, the database, Redis, the job queue, the payment gateway
and the services into one ``AppContext``. Dramatiq actors cache one
context per worker thread, since the engine and the Redis client are
bound to the thread's event loop.
"""

import threading
from dataclasses import dataclass

import redis.asyncio as redis
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.config.settings import Settings, settings
from app.repositories.unit_of_work import UnitOfWork
from app.services.cycle_service import CyclePlanner, CycleService, PaymentEventHandler
from app.services.metrics_service import MetricsRecorder, get_metrics_recorder
from app.services.notification_service import (
    LogNotifier,
    NotificationService,
    Notifier,
    WebhookNotifier,
)
from app.services.payment_gateway import GuardedPaymentGateway, HttpPaymentGateway
from app.services.recovery_service import RecoveryService
from app.services.reminder_service import ReminderService
from app.services.scheduler_service import SchedulerService
from app.utils.circuit_breaker import CircuitBreaker, get_payment_circuit_breaker
from app.utils.redis_utils import get_redis_client
from jobs.dispatcher import JobDispatcher
from jobs.queue.base import (
    HandlePausePayload,
    JobKind,
    JobQueue,
    RetryPaymentPayload,
    RunCyclePayload,
)
from jobs.utils.database import create_task_engine, create_task_session_maker


@dataclass
class AppContext:
    """Everything a worker or the scheduler needs, built once."""

    settings: Settings
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    uow: UnitOfWork
    redis: redis.Redis
    queue: JobQueue
    breaker: CircuitBreaker
    gateway: GuardedPaymentGateway
    notifier: Notifier
    metrics: MetricsRecorder
    scheduler: SchedulerService
    cycles: CycleService
    planner: CyclePlanner
    payment_events: PaymentEventHandler
    recovery: RecoveryService
    reminders: ReminderService
    notifications: NotificationService
    dispatcher: JobDispatcher

    async def close(self) -> None:
        """Release network resources."""
        await self.gateway.close()
        await self.notifier.close()
        await self.queue.close()
        await self.engine.dispose()
        logger.debug("Application context closed")


def build_dispatcher(
    queue: JobQueue,
    metrics: MetricsRecorder,
    cycles: CycleService,
    notifications: NotificationService,
) -> JobDispatcher:
    """Register one handler per job kind."""

    async def run_cycle(payload: RunCyclePayload) -> None:
        await cycles.run_cycle(payload.group_id, payload.test_mode)

    async def retry_payment(payload: RetryPaymentPayload) -> None:
        await cycles.retry_payment(payload.payment_id, payload.group_id, payload.test_mode)

    async def handle_pause(payload: HandlePausePayload) -> None:
        await cycles.handle_group_pause(payload.group_id, payload.pause_reason)

    return JobDispatcher(
        queue,
        metrics,
        {
            JobKind.RUN_CYCLE: run_cycle,
            JobKind.RETRY_PAYMENT: retry_payment,
            JobKind.HANDLE_PAUSE: handle_pause,
            JobKind.SEND_NOTIFICATION: notifications.deliver,
        },
    )


def build_notifier(config: Settings) -> Notifier:
    if config.notification_webhook_url:
        return WebhookNotifier(config.notification_webhook_url)
    logger.warning("NOTIFICATION_WEBHOOK_URL not set, notifications are logged only")
    return LogNotifier()


def build_context(config: Settings = settings) -> AppContext:
    """
    Build the production context.

    Args:
        config: Application settings

    Returns:
        Context backed by PostgreSQL, Redis/dramatiq and the HTTP processor
    """
    # Actors must be declared on the broker before the queue can send to them
    from jobs.queue.dramatiq_queue import DramatiqJobQueue
    from jobs.tasks.cycle_tasks import ACTORS

    engine = create_task_engine(config)
    session_maker = create_task_session_maker(engine)
    uow = UnitOfWork(session_maker, timeout=config.cycle_transaction_timeout)
    metrics = get_metrics_recorder()
    redis_client = get_redis_client()
    queue = DramatiqJobQueue(
        redis_client,
        ACTORS,
        lease_seconds=config.job_lease_seconds,
        failed_retention=config.job_failed_retention,
        metrics=metrics,
    )

    breaker = get_payment_circuit_breaker()
    gateway = GuardedPaymentGateway(
        HttpPaymentGateway(
            config.payment_gateway_url,
            config.payment_gateway_api_key,
            timeout=config.payment_gateway_timeout,
        ),
        breaker,
    )
    notifier = build_notifier(config)

    scheduler = SchedulerService(uow, queue, config, metrics)
    cycles = CycleService(uow, queue, gateway, scheduler, config)
    notifications = NotificationService(notifier)

    return AppContext(
        settings=config,
        engine=engine,
        session_maker=session_maker,
        uow=uow,
        redis=redis_client,
        queue=queue,
        breaker=breaker,
        gateway=gateway,
        notifier=notifier,
        metrics=metrics,
        scheduler=scheduler,
        cycles=cycles,
        planner=CyclePlanner(uow, scheduler.schedule_next),
        payment_events=PaymentEventHandler(uow, queue, cycles),
        recovery=RecoveryService(uow, queue, scheduler, config, metrics),
        reminders=ReminderService(uow, queue, config),
        notifications=notifications,
        dispatcher=build_dispatcher(queue, metrics, cycles, notifications),
    )


_thread_local = threading.local()


def get_context() -> AppContext:
    """Get the context of the current thread, building it on first use."""
    context = getattr(_thread_local, "context", None)
    if context is None:
        context = build_context()
        _thread_local.context = context
        logger.debug(f"Built application context for thread {threading.current_thread().name}")
    return context
