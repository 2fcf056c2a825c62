"""Retention policy for assessments and alerts.

Assessments older than the cutoff are deleted unconditionally. Alerts older
than the cutoff are deleted only once RESOLVED or DISMISSED; an ACTIVE alert
is kept regardless of age.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Optional

from carelens.engine.ports import AbuseDetectionStore
from carelens.errors import TransientInfraError
from carelens.models import utcnow

logger = logging.getLogger(__name__)


class RetentionManager:
    """Purges aged records under the retention policy."""

    def __init__(self, store: AbuseDetectionStore, retention_days: int = 365) -> None:
        self.store = store
        self.retention_days = retention_days

    def cutoff_for(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) - timedelta(days=self.retention_days)

    def cleanup_old_data(self, cutoff: datetime) -> int:
        """Delete eligible records older than ``cutoff``.

        Returns:
            Number of assessments plus alerts deleted
        """
        assessments = self.store.delete_assessments_before(cutoff)
        alerts = self.store.delete_closed_alerts_before(cutoff)
        logger.info(
            "Retention cleanup before %s: %d assessments, %d closed alerts deleted",
            cutoff.isoformat(),
            assessments,
            alerts,
        )
        return assessments + alerts

    def run_cycle(self, now: Optional[datetime] = None) -> int:
        """Run one scheduled cleanup. Store failures are logged and retried next cycle."""
        try:
            return self.cleanup_old_data(self.cutoff_for(now))
        except TransientInfraError as exc:
            logger.warning("Retention cycle skipped, will retry next cycle: %s", exc.message)
            return 0

    def run_periodically(self, stop_event: threading.Event, interval_seconds: float) -> None:
        """Run ``run_cycle`` every ``interval_seconds`` until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                self.run_cycle()
            except Exception:
                # Keep the loop alive; the next cycle retries
                logger.exception("Retention cycle failed")
            stop_event.wait(interval_seconds)
