import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import filelock
from dotenv import load_dotenv

from mezger.adapters import ADAPTER_REGISTRY
from mezger.errors import PersistenceFailure
from mezger.fetcher import Fetcher
from mezger.lifecycle import LifecyclePolicy
from mezger.models import utcnow
from mezger.reconcile import SourceScrape, reconcile
from mezger.storage import CollectionStorage

log = logging.getLogger(__name__)

_DEFAULT_SITE_TIMEOUT = 300


class HarvestClient:
    """
    Orchestrator for a single harvest run.

    Loads site configs, runs every enabled site concurrently via
    ThreadPoolExecutor, then (in the main thread, under the storage lock)
    loads the collection, reconciles all scrapes into it and saves it.

    A site that raises, or does not finish within site_timeout_secs, is
    recorded as a failed scrape so its listings are carried over untouched.
    """

    def __init__(self, config_dir: str, data_file: Optional[str] = None) -> None:
        load_dotenv()
        self._settings     = self._load_json(Path(config_dir) / "settings.json")
        self._sites        = self._load_json(Path(config_dir) / "sites.json").get("sites", [])
        self._data_file    = data_file or self._settings.get("data_file", "data.json")
        self._max_workers  = self._settings.get("max_workers", 4)
        self._site_timeout = self._settings.get("site_timeout_secs", _DEFAULT_SITE_TIMEOUT)
        self._policy       = LifecyclePolicy.from_config(self._settings.get("lifecycle"))
        self._storage      = CollectionStorage(
            self._data_file,
            track_auctions=self._settings.get("track_auctions", True),
        )

    @property
    def batch_interval_seconds(self) -> int:
        return int(self._settings.get("batch_interval_seconds", 3600))

    def last_run_at(self) -> Optional[datetime]:
        """lastUpdated of the stored document; None when there is no readable one."""
        if not self._storage.path.exists():
            return None
        try:
            return self._storage.load().last_updated
        except PersistenceFailure as exc:
            log.warning("Cannot read last run time: %s", exc)
            return None

    def run(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """
        Execute one harvest run.

        Returns a stats dict:
        {
            "sites_attempted": int,
            "sites_succeeded": int,
            "sites_failed":    int,
            "records_fetched": int,
            "added", "updated", "unchanged", "transitioned",
            "expired", "promoted", "malformed": int,
            "persisted":       bool,
            "site_stats":      { "site/category": {"fetched": int, "ok": bool} }
        }
        """
        enabled = [s for s in self._sites if s.get("enabled", False)]
        log.info("Starting run: %d/%d sites enabled", len(enabled), len(self._sites))
        if not enabled:
            log.warning("No enabled sites configured — sweeping existing data only.")

        scrapes = self._scrape_all(enabled)
        run_at  = now or utcnow()

        stats = _empty_stats()
        stats["sites_attempted"] = len(enabled)
        stats["sites_failed"]    = sum(1 for s in scrapes if not s.ok)
        stats["sites_succeeded"] = len(enabled) - stats["sites_failed"]
        stats["records_fetched"] = sum(len(s.records) for s in scrapes if s.ok)
        stats["site_stats"]      = {
            f"{s.source}/{s.category}": {"fetched": len(s.records), "ok": s.ok} for s in scrapes
        }

        try:
            with self._storage.lock():
                collection = self._storage.load(run_at)
                result     = reconcile(collection, scrapes, run_at, self._policy)
                self._storage.save(result.collection)
        except filelock.Timeout:
            log.error("Lock timeout for %s — nothing written", self._storage.path)
            return stats
        except PersistenceFailure as exc:
            log.error("Persistence failed, previous data left untouched: %s", exc)
            return stats

        stats.update({k: v for k, v in result.summary.to_dict().items() if k in stats})
        stats["persisted"] = True

        log.info(
            "Run complete: %d fetched, %d added, %d updated, %d transitioned, %d site(s) failed",
            stats["records_fetched"], stats["added"], stats["updated"],
            stats["transitioned"], stats["sites_failed"],
        )
        return stats

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _scrape_all(self, sites: list[dict[str, Any]]) -> list[SourceScrape]:
        if not sites:
            return []

        executor = ThreadPoolExecutor(
            max_workers=min(self._max_workers, len(sites)),
            thread_name_prefix="mezger-site",
        )
        futures: dict[Future, dict[str, Any]] = {
            executor.submit(self._scrape_site, site): site for site in sites
        }
        done, not_done = wait(futures, timeout=self._site_timeout)

        scrapes: list[SourceScrape] = []
        for future, site in futures.items():
            name     = site["name"]
            category = site.get("category", "car")
            if future in not_done:
                future.cancel()
                log.error("[%s] timed out after %ds", name, self._site_timeout)
                scrapes.append(SourceScrape.failed(name, category, "timed out"))
                continue
            try:
                scrape = future.result()
            except Exception as exc:
                log.error("[%s] site fetch failed: %s", name, exc)
                scrape = SourceScrape.failed(name, category, str(exc))
            if scrape.ok:
                log.info("[%s] fetched %d %s record(s)%s", name, len(scrape.records),
                         category, "" if scrape.complete else " (incomplete)")
            scrapes.append(scrape)

        executor.shutdown(wait=False, cancel_futures=True)
        return scrapes

    def _scrape_site(self, site_cfg: dict[str, Any]) -> SourceScrape:
        """Build a Fetcher and Adapter for one site, then scrape. Runs in a worker thread."""
        adapter_name = site_cfg.get("adapter", "html")
        adapter_cls  = ADAPTER_REGISTRY.get(adapter_name)
        if adapter_cls is None:
            raise ValueError(
                f"Unknown adapter {adapter_name!r} for site {site_cfg['name']!r}. "
                f"Available: {list(ADAPTER_REGISTRY)}"
            )
        fetcher = Fetcher(site_cfg, self._settings)
        try:
            return adapter_cls(site_cfg, fetcher).scrape()
        finally:
            fetcher.close()

    @staticmethod
    def _load_json(path: Path) -> dict[str, Any]:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)


def _empty_stats() -> dict[str, Any]:
    return {
        "sites_attempted": 0,
        "sites_succeeded": 0,
        "sites_failed":    0,
        "records_fetched": 0,
        "added":           0,
        "updated":         0,
        "unchanged":       0,
        "transitioned":    0,
        "expired":         0,
        "promoted":        0,
        "malformed":       0,
        "persisted":       False,
        "site_stats":      {},
    }
