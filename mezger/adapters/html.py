import logging
import re
from typing import Any, Optional

import requests
from bs4 import BeautifulSoup

from mezger.adapters.base import BaseAdapter
from mezger.errors import AdapterFailure
from mezger.filters import is_relevant_car, is_relevant_part
from mezger.models import AUCTION, CAR, PART, RawRecord

log = logging.getLogger(__name__)

_PRICE_RE = re.compile(r"\d[\d,]*(?:\.\d+)?")
_YEAR_RE  = re.compile(r"\b(?:19|20)\d{2}\b")
_INT_RE   = re.compile(r"\d[\d,]*")

# Selector values are CSS selectors, optionally suffixed with "@attr" to read
# an attribute instead of the element text (e.g. "a@href", "img@src").
_DEFAULT_SELECTORS: dict[str, dict[str, str]] = {
    CAR: {
        "container": ".listing-item, .auction-item, .car-listing",
        "title":     ".listing-title, .item-title",
        "price":     ".price, .amount",
        "link":      "a@href",
        "image":     "img@src",
        "location":  ".location",
        "mileage":   ".mileage",
    },
    PART: {
        "container":   ".part-item, .product-listing",
        "title":       ".part-title, .product-name",
        "price":       ".price, .amount",
        "link":        "a@href",
        "image":       "img@src",
        "partNumber":  ".part-number, .sku",
        "description": ".description, .details",
        "stockText":   ".stock, .availability",
    },
    AUCTION: {
        "container":  ".auction-item, .listing-item",
        "title":      ".listing-title, .item-title",
        "currentBid": ".current-bid, .price",
        "bidCount":   ".bid-count",
        "endTime":    "[data-end-time]@data-end-time",
        "link":       "a@href",
        "image":      "img@src",
    },
    "completed": {
        "container": ".listing-item, .auction-item",
        "title":     ".listing-title, .item-title",
        "soldPrice": ".sold-price, .price",
        "soldDate":  ".sold-date",
        "link":      "a@href",
        "image":     "img@src",
    },
}

_PRICE_FIELDS = ("price", "currentBid", "soldPrice")
_COUNT_FIELDS = ("bidCount",)
_SKIP_FIELDS  = ("container", "link", "title")


def extract_price(text: Optional[str]) -> Optional[float]:
    """First number in the text with thousands separators removed."""
    if not text:
        return None
    m = _PRICE_RE.search(text)
    if not m:
        return None
    return float(m.group(0).replace(",", ""))


def extract_year(text: Optional[str]) -> Optional[int]:
    m = _YEAR_RE.search(text or "")
    return int(m.group(0)) if m else None


def _extract_int(text: Optional[str]) -> Optional[int]:
    m = _INT_RE.search(text or "")
    return int(m.group(0).replace(",", "")) if m else None


def _select(element: Any, selector: Optional[str]) -> Optional[str]:
    """Resolve "css" or "css@attr" against element; None when nothing matches."""
    if not selector:
        return None
    css, _, attr = selector.partition("@")
    node = element.select_one(css) if css else element
    if node is None:
        return None
    if attr:
        value = node.get(attr)
        return str(value).strip() if value is not None else None
    return node.get_text(" ", strip=True) or None


class HtmlAdapter(BaseAdapter):
    """
    Generic CSS-selector adapter for listing pages.

    Site config keys:
      url / urls       page(s) holding the full listing set for the site
      category         car | part | auction | completed
      selectors        overrides for the category's default selectors
      filter           apply keyword relevance filtering (default true for car/part)
      search_terms     overrides for the filter terms
      allow_empty      a page with no listing containers is a valid empty
                       result (default false: it is treated as a block
                       page or layout change and fails the scrape)

    Subclasses preset selectors for known sites via DEFAULT_SELECTORS.
    """

    name = "html"
    DEFAULT_SELECTORS: dict[str, str] = {}

    @property
    def selectors(self) -> dict[str, str]:
        return {
            **_DEFAULT_SELECTORS.get(self.category, _DEFAULT_SELECTORS[CAR]),
            **self.DEFAULT_SELECTORS,
            **self.config.get("selectors", {}),
        }

    def fetch(self) -> list[RawRecord]:
        urls        = self.config.get("urls") or [self.config["url"]]
        allow_empty = self.config.get("allow_empty", False)
        records: list[RawRecord] = []
        for url in urls:
            try:
                html = self.fetcher.get_text(url)
            except requests.RequestException as exc:
                raise AdapterFailure(self.source, f"GET {url} failed: {exc}") from exc

            elements = self._containers(html)
            if not elements and not allow_empty:
                raise AdapterFailure(self.source, f"no listing containers matched on {url}")
            records.extend(self._map_elements(elements))

        log.info("[%s] %d relevant %s listing(s) across %d page(s)",
                 self.source, len(records), self.category, len(urls))
        return records

    def parse(self, payload: Any) -> list[RawRecord]:
        return self._map_elements(self._containers(payload))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _containers(self, html: Any) -> list[Any]:
        soup     = BeautifulSoup(html, "html.parser")
        elements = soup.select(self.selectors["container"])
        log.debug("[%s] found %d potential listing(s)", self.source, len(elements))
        return elements

    def _map_elements(self, elements: list[Any]) -> list[RawRecord]:
        selectors = self.selectors
        records   = []
        for element in elements:
            try:
                record = self._map_element(element, selectors)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                # The skipped listing may be a known one; absence proves nothing now
                log.warning("[%s] skipping malformed listing, scrape marked incomplete: %s",
                            self.source, exc)
                self.complete = False
                continue
            if record is not None:
                records.append(record)
        return records

    def _map_element(self, element: Any, selectors: dict[str, str]) -> Optional[RawRecord]:
        title = _select(element, selectors.get("title"))
        if not self._is_relevant(title):
            return None

        fields: dict[str, Any] = {}
        for key, selector in selectors.items():
            if key in _SKIP_FIELDS:
                continue
            value = _select(element, selector)
            if key in _PRICE_FIELDS:
                value = extract_price(value)
            elif key in _COUNT_FIELDS:
                value = _extract_int(value)
            fields[key] = value

        images = [img.get("src") for img in element.select("img") if img.get("src")]
        if images:
            fields["images"] = images
        if self.category in (CAR, AUCTION, "completed"):
            fields["year"] = extract_year(title)

        return self.make_record(
            link   = _select(element, selectors.get("link")),
            title  = title,
            fields = fields,
        )

    def _is_relevant(self, title: Optional[str]) -> bool:
        if not title:
            return False
        if not self.config.get("filter", self.category in (CAR, PART)):
            return True
        terms = self.config.get("search_terms")
        if self.category == PART:
            return is_relevant_part(title, terms)
        return is_relevant_car(title, terms)


class BringATrailerAdapter(HtmlAdapter):
    """Bring a Trailer model pages (e.g. /porsche/911-gt3-gt2-turbo-mezger/)."""

    name = "bringatrailer"
    DEFAULT_SELECTORS = {
        "container": ".bat-grid-item-image",
        "title":     ".bat-grid-item-title",
        "price":     ".bat-grid-item-details-price",
        "link":      "a@href",
        "image":     "img@src",
    }


class PelicanPartsAdapter(HtmlAdapter):
    """Pelican Parts catalogue pages."""

    name = "pelicanparts"
    DEFAULT_SELECTORS = {
        "container":  ".product-listing",
        "title":      ".product-title",
        "price":      ".product-price",
        "link":       "a@href",
        "image":      "img@src",
        "partNumber": ".product-number",
        "stockText":  ".stock-status",
    }

    @property
    def base_url(self) -> Optional[str]:
        return self.config.get("base_url", "https://www.pelicanparts.com")
