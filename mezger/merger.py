import logging
from datetime import datetime
from typing import Any, Optional

from mezger import lifecycle
from mezger.identity import resolve
from mezger.models import AUCTION, CAR, CORE_KEYS, SOLD, Listing, RawRecord, is_empty, parse_timestamp

log = logging.getLogger(__name__)


def merge(
    existing: Optional[Listing],
    incoming: RawRecord,
    observed_at: datetime,
    category: Optional[str] = None,
) -> Listing:
    """
    Fold one observation into the listing it refers to.

    With no existing listing a new one is created (category is then
    required). Otherwise a new value is returned where descriptive fields
    are refreshed from incoming, lastSeenAt moves to observed_at, and
    firstSeenAt, soldPrice/soldDate and endTime keep the values they
    already had. Empty values in incoming never clear known data.

    Raises MalformedRecord when incoming has no usable source/link.
    """
    listing_id = resolve(incoming.source, incoming.link)

    if existing is None:
        if category is None:
            raise ValueError(f"category required to create listing {listing_id}")
        return _create(listing_id, category, incoming, observed_at)

    if existing.id != listing_id:
        raise ValueError(f"record resolves to {listing_id}, not {existing.id}")

    attributes = dict(existing.attributes)
    attributes.update(_descriptive(incoming))

    merged = existing.with_changes(
        title          = _refresh(existing.title, incoming.title),
        link           = _refresh(existing.link, incoming.link),
        source_display = _refresh(existing.source_display, incoming.source_display),
        attributes     = attributes,
        last_seen_at   = observed_at,
        # Set at most once
        sold_price     = existing.sold_price if existing.sold_price is not None
                         else _sold_price(existing.category, incoming),
        sold_date      = existing.sold_date if existing.sold_date is not None
                         else _sold_date(existing.category, incoming),
        end_time       = existing.end_time if existing.end_time is not None
                         else _end_time(existing.category, incoming),
    )
    return merged.with_changes(status=lifecycle.on_observed(merged))


def _create(listing_id: str, category: str, incoming: RawRecord, observed_at: datetime) -> Listing:
    attributes = _descriptive(incoming)
    sold_price = _sold_price(category, incoming)
    sold_date  = _sold_date(category, incoming)

    status = lifecycle.initial_status(category, attributes)
    if category == CAR and sold_price is not None:
        # A completed-sale observation enters the collection already sold
        status = SOLD

    log.debug("[%s] new %s listing %s", incoming.source, category, listing_id)
    return Listing(
        id             = listing_id,
        category       = category,
        status         = status,
        first_seen_at  = observed_at,
        last_seen_at   = observed_at,
        source         = incoming.source,
        link           = incoming.link,
        title          = incoming.title if not is_empty(incoming.title) else None,
        source_display = incoming.source_display,
        attributes     = attributes,
        sold_price     = sold_price,
        sold_date      = sold_date,
        end_time       = _end_time(category, incoming),
    )


def _descriptive(incoming: RawRecord) -> dict[str, Any]:
    return {
        k: v for k, v in incoming.fields.items()
        if k not in CORE_KEYS and not is_empty(v)
    }


def _refresh(current: Any, new: Any) -> Any:
    return current if is_empty(new) else new


def _sold_price(category: str, incoming: RawRecord) -> Optional[float]:
    return _to_float(incoming.get("soldPrice")) if category == CAR else None


def _sold_date(category: str, incoming: RawRecord) -> Optional[datetime]:
    return parse_timestamp(incoming.get("soldDate")) if category == CAR else None


def _end_time(category: str, incoming: RawRecord) -> Optional[datetime]:
    if category != AUCTION:
        return None
    return parse_timestamp(incoming.get("endTime"))


def _to_float(v: Any) -> Optional[float]:
    if v is None or v == "":
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None
