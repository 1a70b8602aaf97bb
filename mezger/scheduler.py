import logging
import signal
import threading
import time
from datetime import datetime
from typing import Any, Optional, Type

from mezger.models import utcnow

log = logging.getLogger(__name__)

# Wait before retrying a run that did not persist (capped at the interval)
_DEFAULT_RETRY_DELAY = 300


class Scheduler:
    """
    Repeats client.run() every batch interval until SIGINT or SIGTERM.

    Runs are spaced from the document's lastUpdated stamp rather than from
    process start, so restarting shortly after a run waits out the rest of
    the interval instead of scraping every site again. A run that failed to
    persist is retried after retry_delay_secs.

    client_class must take (config_dir, data_file) and provide run(),
    last_run_at() and batch_interval_seconds. Defaults to HarvestClient.
    """

    def __init__(
        self,
        config_dir: str,
        data_file: Optional[str] = None,
        batch_interval_secs: Optional[int] = None,
        retry_delay_secs: Optional[int] = None,
        client_class: Optional[Type] = None,
    ) -> None:
        if client_class is None:
            from mezger.client import HarvestClient
            client_class = HarvestClient
        self._client      = client_class(config_dir=config_dir, data_file=data_file)
        self._interval    = int(batch_interval_secs or self._client.batch_interval_seconds)
        self._retry_delay = min(self._interval, int(retry_delay_secs or _DEFAULT_RETRY_DELAY))
        self._stopped     = threading.Event()
        self._run_count   = 0

    def run_once(self) -> dict[str, Any]:
        """Execute exactly one run and return its stats dict."""
        start = time.monotonic()
        stats = self._client.run()
        self._run_count += 1
        log.info(
            "Run %d finished in %.1fs: fetched=%d added=%d transitioned=%d "
            "failed_sites=%d persisted=%s",
            self._run_count, time.monotonic() - start, stats["records_fetched"],
            stats["added"], stats["transitioned"], stats["sites_failed"], stats["persisted"],
        )
        return stats

    def next_delay(self, stats: Optional[dict[str, Any]] = None,
                   now: Optional[datetime] = None) -> float:
        """
        Seconds to wait before the next run.

        stats is the previous run's result, or None before the first run.
        With no document yet the next run is due immediately.
        """
        if stats is not None and not stats["persisted"]:
            log.warning("Nothing was written — retrying in %ds", self._retry_delay)
            return float(self._retry_delay)

        last_run = self._client.last_run_at()
        if last_run is None:
            return 0.0
        elapsed = ((now or utcnow()) - last_run).total_seconds()
        return min(float(self._interval), max(0.0, self._interval - elapsed))

    def run_forever(self) -> None:
        """Run until stop() is called or a shutdown signal arrives."""
        self._register_signals()
        delay = self.next_delay()
        log.info("Scheduler started: interval %ds, first run in %ds", self._interval, delay)

        # Event.wait returns True once stop() has been called
        while not self._stopped.wait(delay):
            stats = self.run_once()
            delay = self.next_delay(stats)
            if delay:
                log.info("Next run in %ds", delay)

        log.info("Scheduler stopped after %d run(s)", self._run_count)

    def stop(self) -> None:
        self._stopped.set()

    def _register_signals(self) -> None:
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, self._handle_shutdown)

    def _handle_shutdown(self, signum: int, frame: Any) -> None:
        log.info("Signal %d received, stopping after the current run", signum)
        self.stop()
