import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cache import Cache, DatabaseCacheBackend
from config import get_settings


logger = logging.getLogger(__name__)


class SchedulerManager:
    """Housekeeping jobs that run beside the API process."""

    def __init__(self, cache: Cache) -> None:
        self.settings = get_settings()
        self.cache = cache
        self.scheduler = BackgroundScheduler(timezone="UTC")

    def _purge_backend(self) -> Optional[DatabaseCacheBackend]:
        backend = self.cache.backend
        return backend if isinstance(backend, DatabaseCacheBackend) else None

    def _run_purge(self, source: str = "manual") -> int:
        backend = self._purge_backend()
        if backend is None:
            return 0
        try:
            count = backend.purge_expired()
        except Exception:
            logger.exception(f"cache_purge_failed: source={source}")
            return 0
        logger.info(f"cache_purge: source={source} entries_removed={count}")
        return count

    def start(self) -> None:
        if self._purge_backend() is None:
            logger.info("Scheduler idle: cache backend expires entries itself")
            return

        self._run_purge("startup")
        trigger = IntervalTrigger(minutes=self.settings.cache_purge_interval_mins)
        self.scheduler.add_job(
            self._run_purge,
            trigger,
            args=["interval"],
            id="cache_purge",
            replace_existing=True,
            misfire_grace_time=300,
        )
        self.scheduler.start()
        logger.info(
            "Scheduler started with cache purge every "
            f"{self.settings.cache_purge_interval_mins} minutes"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
