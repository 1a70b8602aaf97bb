import logging
from datetime import datetime, timezone
from typing import Any, Optional

import requests

from mezger.adapters.base import BaseAdapter
from mezger.errors import AdapterFailure
from mezger.models import RawRecord

log = logging.getLogger(__name__)

# Wrapper keys to try when the response is a dict rather than a bare list
_WRAPPER_KEYS = ("itemSummaries", "listings", "results", "data", "lots", "auctions", "items", "records", "products")

# Canonical field -> converter; anything else is copied through unchanged
_NUMERIC_FIELDS   = ("price", "currentBid", "soldPrice")
_INTEGER_FIELDS   = ("year", "bidCount")
_TIMESTAMP_FIELDS = ("endTime",)
_DATE_FIELDS      = ("soldDate",)
_IDENTITY_FIELDS  = ("link", "title")


# ---------------------------------------------------------------------------
# Module-level parse helpers
# ---------------------------------------------------------------------------

def _get_field(item: dict, mapping: dict, canonical: str) -> Any:
    """Extract canonical field value from item using dot-notation paths."""
    path = mapping.get(canonical)
    if not path:
        return None
    val: Any = item
    for part in path.split("."):
        if not isinstance(val, dict):
            return None
        val = val.get(part)
    return val


def _to_float(v: Any) -> Optional[float]:
    if v is None:
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _to_int(v: Any) -> Optional[int]:
    if v is None:
        return None
    try:
        return int(float(v))
    except (TypeError, ValueError):
        return None


def _to_date(v: Any, source: str = "") -> Optional[str]:
    if v is None:
        return None
    s = str(v)
    if len(s) >= 10 and s[4] == "-" and s[7] == "-":
        return s[:10]
    for fmt in ("%d/%m/%Y", "%m/%d/%Y", "%Y%m%d", "%d-%m-%Y"):
        try:
            return datetime.strptime(s, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue
    if source:
        log.debug("[%s] could not parse date %r — storing as-is", source, s)
    return s


def _to_timestamp(v: Any, source: str = "") -> Optional[str]:
    """ISO 8601 strings pass through; epoch seconds (or millis) become UTC ISO."""
    if v is None or v == "":
        return None
    if isinstance(v, (int, float)) or str(v).isdigit():
        secs = float(v)
        if secs > 1e12:
            secs /= 1000.0
        return datetime.fromtimestamp(secs, tz=timezone.utc).isoformat()
    s = str(v).strip()
    try:
        datetime.fromisoformat(s[:-1] + "+00:00" if s.endswith("Z") else s)
    except ValueError:
        if source:
            log.debug("[%s] could not parse timestamp %r — dropping", source, s)
        return None
    return s


class RestAdapter(BaseAdapter):
    """
    Generic REST adapter for sites that return JSON arrays of listing objects.

    Uses field_mapping from site config to normalise any REST API response
    into RawRecord instances. Canonical keys are "link", "title" and the
    persisted descriptive names (price, year, mileage, partNumber,
    stockText, endTime, bidCount, currentBid, soldPrice, ...).

    Pagination is config-driven:
      - type "none" (or omitted): single fetch
      - type "offset": increments a page param until empty/short page
      - type "cursor": follows a cursor field in the response until null/absent

    Both pagination types support an optional "max_pages" key (default 1000).
    Stopping on max_pages while more pages remain marks the scrape
    incomplete, so absent listings are not read as delisted.
    """

    name = "rest"

    def fetch(self) -> list[RawRecord]:
        endpoint   = self.config.get("endpoint", "")
        url        = self.config["base_url"].rstrip("/") + endpoint
        params     = dict(self.config.get("default_params", {}))
        pagination = self.config.get("pagination", {})
        pag_type   = pagination.get("type", "none")

        try:
            if pag_type == "offset":
                return self._fetch_offset(url, params, pagination)
            elif pag_type == "cursor":
                return self._fetch_cursor(url, params, pagination)
            else:
                raw = self.fetcher.get(url, params=params)
                return self.parse(raw)
        except (requests.RequestException, ValueError) as exc:
            raise AdapterFailure(self.source, f"fetch failed: {exc}") from exc

    def parse(self, payload: Any) -> list[RawRecord]:
        """
        Map a raw API response to RawRecords using field_mapping.

        payload may be a list of dicts or a dict wrapping a list.
        """
        mapping = self.config.get("field_mapping", {})
        records = []

        for item in self._unwrap(payload):
            try:
                records.append(self._map_item(item, mapping))
            except (AttributeError, KeyError, TypeError, ValueError, OverflowError, OSError) as exc:
                log.warning("[%s] skipping malformed record, scrape marked incomplete: %s — %r",
                            self.source, exc, item)
                self.complete = False

        log.debug("[%s] parsed %d records", self.source, len(records))
        return records

    # ------------------------------------------------------------------
    # Pagination helpers
    # ------------------------------------------------------------------

    def _fetch_offset(
        self,
        url: str,
        base_params: dict[str, Any],
        pagination: dict[str, Any],
    ) -> list[RawRecord]:
        page_param      = pagination.get("page_param", "page")
        page_size_param = pagination.get("page_size_param", "page_size")
        offset          = pagination.get("start_page", 1)
        page_size       = pagination.get("page_size") or base_params.get(page_size_param, 100)
        # offset_step=1  → page-number APIs (page 1, 2, 3…)
        # offset_step=N  → item-offset APIs (offset 0, 200, 400…)
        step            = pagination.get("offset_step", 1)
        max_pages       = pagination.get("max_pages", 1000)
        all_records: list[RawRecord] = []
        page_count = 0

        while True:
            params = {**base_params, page_param: offset}
            batch  = self.parse(self.fetcher.get(url, params=params))
            page_count += 1

            if not batch:
                break

            all_records.extend(batch)

            if len(batch) < page_size:
                break
            if page_count >= max_pages:
                log.warning("[%s] offset pagination hit max_pages=%d — scrape incomplete",
                            self.source, max_pages)
                self.complete = False
                break
            offset += step

        log.debug("[%s] offset pagination: %d records across %d pages",
                  self.source, len(all_records), page_count)
        return all_records

    def _fetch_cursor(
        self,
        url: str,
        base_params: dict[str, Any],
        pagination: dict[str, Any],
    ) -> list[RawRecord]:
        cursor_param          = pagination.get("cursor_param", "cursor")
        cursor_response_field = pagination.get("cursor_response_field", "next_cursor")
        max_pages             = pagination.get("max_pages", 1000)
        params                = dict(base_params)
        all_records: list[RawRecord] = []
        page_count = 0

        while True:
            raw = self.fetcher.get(url, params=params)
            all_records.extend(self.parse(raw))
            page_count += 1

            next_cursor = raw.get(cursor_response_field) if isinstance(raw, dict) else None
            if not next_cursor:
                break
            if page_count >= max_pages:
                log.warning("[%s] cursor pagination hit max_pages=%d — scrape incomplete",
                            self.source, max_pages)
                self.complete = False
                break
            params = {**base_params, cursor_param: next_cursor}

        log.debug("[%s] cursor pagination: %d records across %d pages",
                  self.source, len(all_records), page_count)
        return all_records

    # ------------------------------------------------------------------
    # Parse helpers
    # ------------------------------------------------------------------

    def _unwrap(self, raw: Any) -> list[dict]:
        """Extract the list of listing dicts from the raw API response."""
        if isinstance(raw, list):
            return raw
        if isinstance(raw, dict):
            for key in _WRAPPER_KEYS:
                if key in raw and isinstance(raw[key], list):
                    return raw[key]
        # An unrecognised shape is not "zero listings"
        raise ValueError(f"unexpected response shape: {type(raw).__name__}")

    def _map_item(self, item: dict[str, Any], mapping: dict[str, str]) -> RawRecord:
        """Apply field_mapping to a single listing dict.

        field_mapping values support dot-notation for nested fields,
        e.g. "currentBid": "bidding.current.amount".
        """
        fields: dict[str, Any] = {}
        for canonical in mapping:
            if canonical in _IDENTITY_FIELDS:
                continue
            value = _get_field(item, mapping, canonical)
            if canonical in _NUMERIC_FIELDS:
                value = _to_float(value)
            elif canonical in _INTEGER_FIELDS:
                value = _to_int(value)
            elif canonical in _TIMESTAMP_FIELDS:
                value = _to_timestamp(value, self.source)
            elif canonical in _DATE_FIELDS:
                value = _to_date(value, self.source)
            fields[canonical] = value

        return self.make_record(
            link   = _get_field(item, mapping, "link"),
            title  = _get_field(item, mapping, "title"),
            fields = fields,
        )
