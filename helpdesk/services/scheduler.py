from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from helpdesk.core.config import get_settings
from helpdesk.core.database import db
from helpdesk.core.logging import log_info
from helpdesk.services import email_sync
from helpdesk.services.retry import retry_manager


class SchedulerService:
    def __init__(self) -> None:
        settings = get_settings()
        self._scheduler = AsyncIOScheduler(timezone=settings.default_timezone)
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        settings = get_settings()
        if not settings.worker_enabled:
            log_info("Email sync worker disabled by configuration")
            return
        self._scheduler.start()
        self._started = True
        self._ensure_jobs()
        log_info("Scheduler started", tick_seconds=settings.worker_tick_seconds)

    async def stop(self) -> None:
        if not self._started:
            return
        self._scheduler.shutdown(wait=True)
        self._started = False
        log_info("Scheduler stopped")

    def _ensure_jobs(self) -> None:
        if not self._started:
            return
        settings = get_settings()
        if not self._scheduler.get_job("helpdesk-email-sync"):
            self._scheduler.add_job(
                self._run_email_sync,
                "interval",
                seconds=settings.worker_tick_seconds,
                id="helpdesk-email-sync",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
        if not self._scheduler.get_job("helpdesk-retry-cleanup"):
            self._scheduler.add_job(
                self._run_retry_cleanup,
                "interval",
                hours=1,
                id="helpdesk-retry-cleanup",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )

    async def _run_email_sync(self) -> None:
        """Sync due departments with a distributed lock to prevent duplicate execution."""
        async with db.acquire_lock("helpdesk_email_sync", timeout=1) as lock_acquired:
            if not lock_acquired:
                log_info("Email sync already running on another worker, skipping")
                return
            await email_sync.sync_due_departments()

    async def _run_retry_cleanup(self) -> None:
        retry_manager.cleanup(max_age=get_settings().retry_state_max_age_seconds)


scheduler_service = SchedulerService()
