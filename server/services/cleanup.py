"""Background sweeper that garbage-collects expired registrations and tokens.

Runs as a daemon thread, one pass every ``cleanup_interval_seconds``.
"""

import logging
import threading

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from server.config import settings
from server.database import engine
from server.services.token_service import cleanup_expired

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Periodically deletes rows whose ``expires_at`` has passed."""

    def __init__(self, interval_seconds: int):
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> bool:
        """Start the sweeper thread. Returns False when disabled by config."""
        if self.interval_seconds <= 0:
            logger.info("Expiry sweeper disabled")
            return False

        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="expiry-sweeper")
        self._thread.start()
        logger.info("Expiry sweeper started (every %ds)", self.interval_seconds)
        return True

    def stop(self):
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._thread = None

    def sweep_once(self) -> tuple[int, int]:
        with Session(engine) as session:
            return cleanup_expired(session)

    def _run(self):
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep_once()
            except SQLAlchemyError as e:
                logger.error("Expiry sweep failed: %s", e)


sweeper = ExpirySweeper(settings.cleanup_interval_seconds)
