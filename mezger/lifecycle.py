"""
Status lifecycle per category.

    Car:      active -> sold                         (sold is terminal)
    Part:     in_stock <-> back_ordered <-> out_of_stock  (driven by stock text)
    Auction:  auction -> expired                     (time driven, see sweeper)

Observation never sells a Car; non-observation in a complete scrape does.
Parts ignore non-observation unless LifecyclePolicy.delist_parts is set.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from mezger.models import (
    ACTIVE, AUCTION, BACK_ORDERED, CAR, EXPIRED, IN_STOCK, LIVE,
    OUT_OF_STOCK, PART, SOLD, Listing,
)

log = logging.getLogger(__name__)

_OUT_OF_STOCK_MARKERS = ("out of stock", "sold out")
_BACK_ORDER_MARKERS   = ("back order", "backorder", "back-order", "pre-order", "preorder")


@dataclass(frozen=True)
class LifecyclePolicy:
    """
    Tunables where scraper variants disagree.

    delist_cars               an unobserved active Car becomes sold
    delist_parts              an unobserved Part becomes out_of_stock
    promote_expired_auctions  an expired Auction paired with a completed
                              observation becomes a sold Car
    """

    delist_cars: bool = True
    delist_parts: bool = False
    promote_expired_auctions: bool = True

    @classmethod
    def from_config(cls, config: Optional[Mapping[str, Any]]) -> "LifecyclePolicy":
        config = config or {}
        return cls(
            delist_cars              = bool(config.get("delist_cars", True)),
            delist_parts             = bool(config.get("delist_parts", False)),
            promote_expired_auctions = bool(config.get("promote_expired_auctions", True)),
        )


def classify_stock(stock_text: Any) -> str:
    """Map free-form availability text to a Part status."""
    text = str(stock_text or "").lower()
    if any(marker in text for marker in _OUT_OF_STOCK_MARKERS):
        return OUT_OF_STOCK
    if any(marker in text for marker in _BACK_ORDER_MARKERS):
        return BACK_ORDERED
    return IN_STOCK


def initial_status(category: str, attributes: Mapping[str, Any]) -> str:
    if category == CAR:
        return ACTIVE
    if category == PART:
        return classify_stock(attributes.get("stockText"))
    if category == AUCTION:
        return LIVE
    raise ValueError(f"Unknown category {category!r}")


def on_observed(listing: Listing) -> str:
    """Status for a listing that appeared in this run's scrape."""
    if listing.category == PART:
        return classify_stock(listing.attributes.get("stockText"))
    # Car stays where it is (active, or sold which is terminal); Auction stays live
    return listing.status


def on_unobserved(listing: Listing, policy: LifecyclePolicy) -> Listing:
    """
    Apply the non-observation rule to a listing whose source completed a
    full scrape without returning it. Only the status changes.
    """
    if listing.category == CAR and listing.status == ACTIVE and policy.delist_cars:
        log.debug("[%s] %s no longer listed: active -> sold", listing.source, listing.id)
        return listing.with_changes(status=SOLD)
    if listing.category == PART and listing.status != OUT_OF_STOCK and policy.delist_parts:
        log.debug("[%s] %s no longer listed: %s -> out_of_stock", listing.source, listing.id, listing.status)
        return listing.with_changes(status=OUT_OF_STOCK)
    return listing


def expire(listing: Listing) -> Listing:
    return listing.with_changes(status=EXPIRED)


def is_expired(listing: Listing, now: datetime) -> bool:
    if listing.status == EXPIRED:
        return True
    return listing.end_time is not None and listing.end_time <= now
