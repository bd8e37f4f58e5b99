"""APScheduler-based scheduler for orchestration housekeeping.

Uses APScheduler 3.x with AsyncIOScheduler. Two jobs run in the
scheduler process:

- retention: deletes used topics past the retention window (cron)
- reconcile: marks runs failed when the engine reports an error that
  never reached us as a callback (interval)
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from matchday.engine.webhook_cache import WebhookUrlCache
from matchday.settings import Settings, get_settings

logger = logging.getLogger(__name__)

RETENTION_JOB_ID = "retention:used_topics"
RECONCILE_JOB_ID = "reconcile:failed_executions"


class SchedulerService:
    """Owns the AsyncIOScheduler and its maintenance jobs.

    Lifecycle:
        scheduler = SchedulerService(cache=app.state.webhook_cache)
        await scheduler.start()    # lifespan startup
        ...
        await scheduler.stop()     # lifespan shutdown
    """

    _instance: SchedulerService | None = None

    def __init__(self, *, cache: WebhookUrlCache | None = None, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.cache = cache if cache is not None else WebhookUrlCache()
        self._scheduler = AsyncIOScheduler(timezone=self.settings.scheduler_timezone)
        self._running = False

    @classmethod
    def get_instance(cls) -> SchedulerService | None:
        """The running scheduler, or None if not started."""
        return cls._instance

    @property
    def running(self) -> bool:
        return self._running

    def job_ids(self) -> list[str]:
        return sorted(job.id for job in self._scheduler.get_jobs())

    async def start(self) -> None:
        """Start the scheduler and register jobs.

        API-only replicas never run jobs (MATCHDAY_ROLE=api).
        """
        if self.settings.matchday_role == "api":
            logger.info(
                "Scheduler skipped: MATCHDAY_ROLE=%s (only 'all' or 'scheduler' run jobs)",
                self.settings.matchday_role,
            )
            return
        if not self.settings.scheduler_enabled:
            logger.info("Scheduler disabled via settings")
            return

        self._schedule_topic_cleanup()
        self._schedule_failure_reconciliation()
        self._scheduler.start()
        self._running = True
        SchedulerService._instance = self
        logger.info("Scheduler started with jobs: %s", ", ".join(self.job_ids()) or "none")

    async def stop(self) -> None:
        if self._running:
            self._scheduler.shutdown(wait=False)
            self._running = False
            SchedulerService._instance = None
            logger.info("Scheduler stopped")

    def _schedule_topic_cleanup(self) -> None:
        cron_expr = self.settings.topic_cleanup_cron
        try:
            trigger = CronTrigger.from_crontab(cron_expr, timezone=self.settings.scheduler_timezone)
        except ValueError:
            logger.error("Invalid cron expression for topic cleanup: %s", cron_expr)
            return

        self._scheduler.add_job(
            run_topic_cleanup,
            trigger=trigger,
            kwargs={"hours_old": self.settings.topic_retention_hours},
            id=RETENTION_JOB_ID,
            replace_existing=True,
            name="retention:used_topic_cleanup",
            misfire_grace_time=600,
        )
        logger.info("Used-topic cleanup scheduled: %s", cron_expr)

    def _schedule_failure_reconciliation(self) -> None:
        minutes = self.settings.failed_execution_check_minutes
        if minutes <= 0:
            logger.info("Failed-execution reconciliation disabled via settings")
            return
        if not self.settings.engine_configured:
            logger.info("Engine API not configured; failed-execution reconciliation skipped")
            return

        self._scheduler.add_job(
            run_failure_reconciliation,
            trigger=IntervalTrigger(minutes=minutes),
            kwargs={"cache": self.cache},
            id=RECONCILE_JOB_ID,
            replace_existing=True,
            name="reconcile:engine_failures",
            misfire_grace_time=300,
            max_instances=1,
        )
        logger.info("Failed-execution reconciliation scheduled every %d minutes", minutes)


async def run_topic_cleanup(hours_old: int) -> int:
    """Delete used topics older than ``hours_old``; returns the count."""
    from matchday.storage import get_committing_session
    from matchday.workflows.dedup import DedupLedger

    try:
        async with get_committing_session() as session:
            return await DedupLedger(session).cleanup(hours_old)
    except Exception:
        logger.exception("Used-topic cleanup failed")
        return 0


async def run_failure_reconciliation(cache: WebhookUrlCache) -> int:
    """Reconcile every synced external workflow against engine errors."""
    from matchday.engine.client import get_engine_client
    from matchday.workflows.poller import ExecutionPoller
    from matchday.workflows.registry import get_workflow_registry

    client = get_engine_client()
    if client is None:
        return 0

    poller = ExecutionPoller(client)
    updated = 0
    for definition in get_workflow_registry().external():
        engine_workflow_id = cache.get_engine_id(definition.id)
        if not engine_workflow_id:
            continue
        try:
            updated += await poller.reconcile_failures(
                workflow_id=definition.id,
                engine_workflow_id=engine_workflow_id,
            )
        except Exception:
            logger.exception("Failed-execution reconciliation for %s failed", definition.id)
    return updated
