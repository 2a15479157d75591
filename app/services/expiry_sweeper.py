"""Periodic expiry of reservations whose payment never completed."""

from collections.abc import Callable
from datetime import timedelta
from uuid import UUID

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import AsyncSessionLocal
from app.repositories.appointment_repository import AppointmentRepository, utcnow

logger = structlog.get_logger()


class ExpirySweeper:
    """
    Expire pending reservations older than the reservation window.

    Runs every ``interval_minutes`` on the event loop; at most one sweep
    is in flight at a time.
    """

    JOB_ID = "reservation_expiry_sweep"

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        ttl_minutes: int | None = None,
        interval_minutes: int | None = None,
        enabled: bool | None = None,
    ):
        """
        Initialize sweeper.

        Args:
            session_factory: Factory for database sessions
            ttl_minutes: Reservation window
            interval_minutes: Time between sweeps
            enabled: Whether ``start`` schedules anything
        """
        self.session_factory = session_factory
        self.ttl = timedelta(
            minutes=ttl_minutes if ttl_minutes is not None else settings.reservation_ttl_minutes
        )
        self.interval_minutes = interval_minutes or settings.expiry_sweep_interval_minutes
        self.enabled = settings.expiry_sweeper_enabled if enabled is None else enabled

        self._scheduler: AsyncIOScheduler | None = None

    @property
    def is_running(self) -> bool:
        """Whether the scheduler is started."""
        return self._scheduler is not None and self._scheduler.running

    async def sweep(self) -> list[UUID]:
        """
        Expire every pending reservation created before now minus the window.

        Returns:
            IDs of the expired reservations

        Raises:
            PersistenceException: If the database is unavailable
        """
        cutoff = utcnow() - self.ttl
        async with self.session_factory() as session:
            expired = await AppointmentRepository(session).expire_stale(cutoff)

        if expired:
            logger.info(
                "reservations_expired",
                count=len(expired),
                cutoff=cutoff.isoformat(),
            )
        return expired

    async def _run_sweep(self) -> None:
        """Scheduled job; a failed sweep is retried on the next tick."""
        try:
            await self.sweep()
        except Exception:
            logger.exception("expiry_sweep_failed")

    def start(self) -> None:
        """Schedule the sweep on the running event loop."""
        if not self.enabled:
            logger.info("expiry_sweeper_disabled")
            return

        if self.is_running:
            logger.warning("expiry_sweeper_already_running")
            return

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self._run_sweep,
            IntervalTrigger(minutes=self.interval_minutes),
            id=self.JOB_ID,
            name="Reservation expiry sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "expiry_sweeper_started",
            interval_minutes=self.interval_minutes,
            ttl_minutes=int(self.ttl.total_seconds() // 60),
        )

    def stop(self) -> None:
        """Stop scheduling sweeps. A sweep already running is left to finish."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("expiry_sweeper_stopped")
        self._scheduler = None
