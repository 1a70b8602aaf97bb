import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from mezger.errors import AdapterFailure
from mezger.identity import normalize_link
from mezger.models import RawRecord
from mezger.reconcile import SourceScrape

log = logging.getLogger(__name__)


class BaseAdapter(ABC):
    """
    Abstract base for all site-specific adapters.

    Each concrete adapter is responsible for:
      1. Fetching listing pages/payloads for one site (using the injected Fetcher).
      2. Parsing them into RawRecord instances for the site's category.

    The adapter does NOT manage HTTP sessions, auth or pacing directly.
    Those concerns belong to Fetcher.

    A fetch that cannot complete must raise AdapterFailure. Returning an
    empty list means "the site currently lists nothing", which the
    reconciliation pass reads as every known listing having gone.

    Attributes
    ----------
    name : str
        Class-level identifier matching the "adapter" field in sites.json.
        Used by the adapter registry in __init__.py.
    """

    name: str = ""

    def __init__(self, site_config: dict[str, Any], fetcher: Any) -> None:
        """
        Parameters
        ----------
        site_config : dict
            The full site entry from sites.json (name, category, base_url,
            url/endpoints, selectors or field_mapping, pagination, ...).
        fetcher : Fetcher
            Pre-configured Fetcher instance for this site.
        """
        self.config  = site_config
        self.fetcher = fetcher
        # Cleared by fetch() when it could only return part of the site's listings
        self.complete = True

    @property
    def source(self) -> str:
        return self.config["name"]

    @property
    def category(self) -> str:
        return self.config.get("category", "car")

    @property
    def base_url(self) -> Optional[str]:
        return self.config.get("base_url")

    @abstractmethod
    def fetch(self) -> list[RawRecord]:
        """
        Execute all HTTP calls for this site and return its RawRecords.

        Must not raise on individual record parse failures; log the error,
        clear self.complete and continue with the remaining records.
        Raises AdapterFailure when the site itself could not be scraped,
        including a page that yields no listing structure at all.
        """

    @abstractmethod
    def parse(self, payload: Any) -> list[RawRecord]:
        """
        Transform one fetched page/response into RawRecords.

        Called by fetch(). Can be called independently in tests.
        """

    def scrape(self) -> SourceScrape:
        """Run fetch() and package the outcome for the reconciliation pass."""
        self.complete = True
        try:
            records = self.fetch()
        except AdapterFailure as exc:
            return SourceScrape.failed(self.source, self.category, exc.reason)
        return SourceScrape(
            source   = self.source,
            category = self.category,
            records  = records,
            complete = self.complete,
        )

    def make_record(self, link: Any, title: Any, fields: dict[str, Any]) -> RawRecord:
        return RawRecord(
            source         = self.source,
            link           = normalize_link(str(link or ""), self.base_url),
            title          = str(title).strip() if title is not None else None,
            source_display = self.config.get("display_name"),
            fields         = fields,
        )
