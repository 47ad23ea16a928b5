"""Background scheduler keeping dynamic tables within their target lags.

Each tick collects the dynamic tables that are due, meaning never refreshed
or stale for at least ``refresh_fraction`` of their effective lag, and
refreshes them together with their upstream dynamic tables. Ingestion
wakes the scheduler early so new data is picked up on the next tick.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import freshtable.errors as errors
import freshtable.freshness as freshness
import freshtable.refresh as refresh

if TYPE_CHECKING:
    import freshtable.pipeline as pipeline_mod

logger = logging.getLogger(__name__)


class Scheduler:
    """Refreshes due tables on a timer or on demand.

    Example:
        with pipeline.scheduler(tick_interval_seconds=5):
            pipeline.insert("transactions_raw", records)
            ...
    """

    def __init__(
        self,
        pipeline: pipeline_mod.Pipeline,
        *,
        tick_interval_seconds: float = 5.0,
        refresh_fraction: float = 0.5,
    ) -> None:
        self._pipeline = pipeline
        self._tick_interval = tick_interval_seconds
        self._refresh_fraction = refresh_fraction
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def due_tables(self, now: datetime | None = None) -> list[str]:
        """Names of active dynamic tables that need a refresh, in DAG order."""
        now = now or datetime.now(timezone.utc)
        lags = self._pipeline.effective_lags()

        due: list[str] = []
        for table in self._pipeline.dag.dynamic_tables():
            if self._pipeline.scheduling_state(table.name) == refresh.SUSPENDED:
                continue
            header = self._pipeline.read_header(table.name)
            data_timestamp = header.data_timestamp if header else None
            if freshness.is_due(
                lags.get(table.name), data_timestamp, now, self._refresh_fraction
            ):
                due.append(table.name)
        return due

    def run_pending(self, now: datetime | None = None) -> refresh.RefreshResult | None:
        """Refresh every due table once. Returns None if nothing was due."""
        due = self.due_tables(now)
        if not due:
            return None
        logger.debug("Scheduled refresh of: %s", ", ".join(due))
        return self._pipeline.refresh(
            due, trigger=refresh.RefreshTrigger.SCHEDULED, now=now
        )

    def notify(self, table_name: str | None = None) -> None:
        """Wake the background thread, e.g. after new data was ingested."""
        self._wake.set()

    def start(self) -> None:
        """Start the background thread. Idempotent."""
        if self.is_running:
            return
        self._stopping.clear()
        self._pipeline.subscribe(self.notify)
        self._thread = threading.Thread(
            target=self._run, name="freshtable-scheduler", daemon=True
        )
        self._thread.start()
        logger.info("Scheduler started (tick every %.1fs)", self._tick_interval)

    def stop(self, timeout: float | None = None) -> None:
        """Stop the background thread after the current tick."""
        if self._thread is None:
            return
        self._stopping.set()
        self._wake.set()
        self._thread.join(timeout)
        self._pipeline.unsubscribe(self.notify)
        self._thread = None
        logger.info("Scheduler stopped")

    def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                result = self.run_pending()
                if result is not None and not result.is_success:
                    logger.warning(
                        "Scheduled refresh: %d failed, %d skipped",
                        result.failed_count,
                        result.skipped_count,
                    )
            except errors.FreshtableError as exc:
                logger.error("Scheduled refresh failed: %s", exc.cause)
            except Exception:
                logger.exception("Unexpected error in scheduler tick")
            self._wake.wait(self._tick_interval)
            self._wake.clear()

    def __enter__(self) -> Scheduler:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
