import logging
import threading
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from ..ws.relay import Relay
from .message_service import MessageService, SweepReport

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60


class ExpirySweeper:
    """Runs ``MessageService.sweep_expired`` on a fixed interval.

    Usage::

        sweeper = ExpirySweeper(SessionLocal, relay)
        sweeper.start()     # every 60 seconds in a background thread
        sweeper.run_now()   # one synchronous cycle
        sweeper.stop()
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        relay: Optional[Relay] = None,
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
    ):
        self._session_factory = session_factory
        self._relay = relay
        self._interval_seconds = interval_seconds
        self._scheduler: Optional[BackgroundScheduler] = None
        # one cycle at a time, even if run_now() overlaps a scheduled run
        self._cycle_lock = threading.Lock()
        self.last_report: Optional[SweepReport] = None

    def start(self) -> None:
        if self._scheduler is not None:
            return  # already running

        self._scheduler = BackgroundScheduler(daemon=True)
        self._scheduler.add_job(
            self.run_now,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id="message_expiry_sweep",
            name="Self-destructing message sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(f"Expiry sweeper started: every {self._interval_seconds}s")

    def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Expiry sweeper stopped")

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def run_now(self) -> Optional[SweepReport]:
        """Run one sweep cycle. Errors are logged, never raised."""
        with self._cycle_lock:
            db = self._session_factory()
            try:
                report = MessageService(db, relay=self._relay).sweep_expired()
                self.last_report = report
                return report
            except Exception:
                logger.exception("Expiry sweep cycle failed")
                return None
            finally:
                db.close()
