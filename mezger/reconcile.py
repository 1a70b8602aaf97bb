"""
One reconciliation pass: fold a run's observations into the collection.

Per category, independently:
  1. failed scrapes are ignored and their listings carried over unchanged
  2. every observed record is merged into (or creates) its listing
  3. listings of sources that completed a full scrape without returning
     them get the non-observation transition
  4. auctions are swept for expiry; expired ones leave the collection and
     may be promoted to sold Cars when a completed sale was observed
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Union

from mezger import lifecycle
from mezger.errors import AdapterFailure, MalformedRecord
from mezger.identity import resolve
from mezger.lifecycle import LifecyclePolicy
from mezger.merger import merge
from mezger.models import (
    AUCTION, CAR, CATEGORIES, COLLECTION_KEYS, PART, SOLD,
    Collection, Listing, RawRecord, format_timestamp, is_empty,
)
from mezger.sweeper import sweep

log = logging.getLogger(__name__)

# Pseudo-category for completed-sale observations used to promote expired auctions
COMPLETED = "completed"

_CATEGORY_ALIASES = {
    **{c: c for c in CATEGORIES},
    **{key: c for c, key in COLLECTION_KEYS.items()},
    COMPLETED: COMPLETED,
}


@dataclass
class SourceScrape:
    """
    Everything one source produced for one category in this run.

    source None means the scrape covers every source of the category.
    complete False means the source returned a partial snapshot (e.g. a
    pagination cap was hit): its records are merged but absence implies
    nothing.
    """

    source: Optional[str]
    category: str
    records: list[RawRecord] = field(default_factory=list)
    error: Optional[str] = None
    complete: bool = True

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, source: Optional[str], category: str, reason: str) -> "SourceScrape":
        return cls(source=source, category=category, error=reason, complete=False)


@dataclass
class CategorySummary:
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    transitioned: int = 0
    expired: int = 0
    promoted: int = 0
    malformed: int = 0
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "added":        self.added,
            "updated":      self.updated,
            "unchanged":    self.unchanged,
            "transitioned": self.transitioned,
            "expired":      self.expired,
            "promoted":     self.promoted,
            "malformed":    self.malformed,
            "skipped":      self.skipped,
        }


@dataclass
class ReconcileSummary:
    """Informational counts for one pass. Never feeds back into the collection."""

    by_category: dict[str, CategorySummary] = field(
        default_factory=lambda: {c: CategorySummary() for c in CATEGORIES}
    )
    failed_sources: list[str] = field(default_factory=list)

    def _total(self, name: str) -> int:
        return sum(getattr(s, name) for s in self.by_category.values())

    @property
    def added(self) -> int:
        return self._total("added")

    @property
    def updated(self) -> int:
        return self._total("updated")

    @property
    def unchanged(self) -> int:
        return self._total("unchanged")

    @property
    def transitioned(self) -> int:
        return self._total("transitioned")

    @property
    def expired(self) -> int:
        return self._total("expired")

    @property
    def promoted(self) -> int:
        return self._total("promoted")

    @property
    def malformed(self) -> int:
        return self._total("malformed")

    def to_dict(self) -> dict[str, Any]:
        return {
            "added":          self.added,
            "updated":        self.updated,
            "unchanged":      self.unchanged,
            "transitioned":   self.transitioned,
            "expired":        self.expired,
            "promoted":       self.promoted,
            "malformed":      self.malformed,
            "failed_sources": list(self.failed_sources),
            "by_category":    {c: s.to_dict() for c, s in self.by_category.items()},
        }


@dataclass
class ReconcileResult:
    collection: Collection
    summary: ReconcileSummary

    @property
    def next(self) -> Collection:
        return self.collection


ScrapeInput = Union[
    Iterable[SourceScrape],
    Mapping[str, Union[list[RawRecord], AdapterFailure, None]],
]


def reconcile(
    existing: Collection,
    scraped: ScrapeInput,
    run_at: datetime,
    policy: Optional[LifecyclePolicy] = None,
) -> ReconcileResult:
    """
    Reconcile existing with this run's scrapes and return the next collection.

    scraped is either an iterable of SourceScrape (per-source granularity)
    or a mapping {category: [RawRecord, ...] | AdapterFailure | None}
    where a list is a complete scrape of every source in the category and
    an AdapterFailure or None marks the category as failed.
    """
    policy  = policy or LifecyclePolicy()
    scrapes = _normalise(scraped)
    summary = ReconcileSummary()

    by_category: dict[str, list[SourceScrape]] = {}
    for scrape in scrapes:
        by_category.setdefault(scrape.category, []).append(scrape)
        if not scrape.ok:
            name = scrape.source or scrape.category
            summary.failed_sources.append(name)
            log.warning("[%s] %s scrape failed, carrying listings over: %s",
                        name, scrape.category, scrape.error)

    next_listings: dict[str, dict[str, Listing]] = {}
    for category in CATEGORIES:
        next_listings[category] = _reconcile_category(
            category,
            existing.listings(category),
            by_category.get(category, []),
            run_at,
            policy,
            summary.by_category[category],
        )

    # Time-driven expiry applies to every auction, observed or carried over
    swept = sweep(next_listings[AUCTION].values(), run_at)
    next_listings[AUCTION] = {l.id: l for l in swept.kept}
    summary.by_category[AUCTION].expired = len(swept.expired)

    if swept.expired and policy.promote_expired_auctions:
        completed = _completed_index(by_category.get(COMPLETED, []))
        for auction in swept.expired:
            car = _promote(auction, completed.get(auction.id), next_listings[CAR], run_at)
            if car is not None:
                next_listings[CAR][car.id] = car
                summary.by_category[CAR].promoted += 1

    collection = Collection(
        cars           = next_listings[CAR],
        parts          = next_listings[PART],
        auctions       = next_listings[AUCTION],
        last_updated   = run_at,
        track_auctions = existing.track_auctions or bool(by_category.get(AUCTION)),
    )

    log.info(
        "Reconciled: %d added, %d updated, %d unchanged, %d transitioned, "
        "%d expired, %d promoted, %d malformed, %d failed source(s)",
        summary.added, summary.updated, summary.unchanged, summary.transitioned,
        summary.expired, summary.promoted, summary.malformed, len(summary.failed_sources),
    )
    return ReconcileResult(collection=collection, summary=summary)


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------

def _reconcile_category(
    category: str,
    current: Mapping[str, Listing],
    scrapes: list[SourceScrape],
    run_at: datetime,
    policy: LifecyclePolicy,
    stats: CategorySummary,
) -> dict[str, Listing]:
    listings = dict(current)
    successful = [s for s in scrapes if s.ok]
    if not successful:
        stats.skipped = True
        return listings

    observed: set[str] = set()
    for scrape in successful:
        for record in scrape.records:
            try:
                listing_id = resolve(record.source, record.link)
                before = listings.get(listing_id)
                after  = merge(before, record, run_at, category)
            except MalformedRecord as exc:
                stats.malformed += 1
                log.warning("[%s] dropping malformed %s record %r: %s",
                            scrape.source or category, category, record.title, exc)
                continue

            observed.add(listing_id)
            listings[listing_id] = after
            if before is None:
                stats.added += 1
                continue
            if before.status != after.status:
                stats.transitioned += 1
            if _changed(before, after):
                stats.updated += 1
            else:
                stats.unchanged += 1

    covers_all = any(s.source is None and s.complete for s in successful)
    covered    = {s.source for s in successful if s.source is not None and s.complete}

    for listing_id, listing in current.items():
        if listing_id in observed:
            continue
        if not (covers_all or listing.source in covered):
            continue
        moved = lifecycle.on_unobserved(listing, policy)
        if moved is not listing:
            listings[listing_id] = moved
            stats.transitioned += 1

    return listings


def _changed(before: Listing, after: Listing) -> bool:
    return before.with_changes(last_seen_at=after.last_seen_at) != after


def _completed_index(scrapes: list[SourceScrape]) -> dict[str, RawRecord]:
    index: dict[str, RawRecord] = {}
    for scrape in scrapes:
        if not scrape.ok:
            continue
        for record in scrape.records:
            try:
                index[resolve(record.source, record.link)] = record
            except MalformedRecord as exc:
                log.warning("[%s] ignoring malformed completed record: %s", scrape.source, exc)
    return index


def _promote(
    auction: Listing,
    completed: Optional[RawRecord],
    cars: Mapping[str, Listing],
    run_at: datetime,
) -> Optional[Listing]:
    """Turn an expired auction plus its completed-sale observation into a sold Car."""
    if completed is None:
        log.debug("[%s] no completed sale observed for expired auction %s", auction.source, auction.id)
        return None

    sold_price = next(
        (v for v in (completed.get("soldPrice"), completed.get("price"),
                     completed.get("currentBid"), auction.attributes.get("currentBid"))
         if not is_empty(v)),
        None,
    )
    if sold_price is None:
        log.info("[%s] completed auction %s has no realised price, not promoting",
                 auction.source, auction.id)
        return None

    sold_date = completed.get("soldDate") or format_timestamp(auction.end_time) or format_timestamp(run_at)

    fields = dict(auction.attributes)
    fields.update({k: v for k, v in completed.fields.items() if not is_empty(v)})
    fields["soldPrice"] = sold_price
    fields["soldDate"]  = sold_date

    record = RawRecord(
        source         = auction.source,
        link           = auction.link,
        title          = completed.title or auction.title,
        source_display = completed.source_display or auction.source_display,
        fields         = fields,
    )
    existing = cars.get(auction.id)
    car = merge(existing, record, run_at, CAR)
    if existing is None:
        car = car.with_changes(first_seen_at=auction.first_seen_at)
    if car.status != SOLD:
        car = car.with_changes(status=SOLD)

    log.info("[%s] expired auction %s promoted to sold car at %s", auction.source, auction.id, sold_price)
    return car


def _normalise(scraped: ScrapeInput) -> list[SourceScrape]:
    if not isinstance(scraped, Mapping):
        return list(scraped)

    scrapes: list[SourceScrape] = []
    for key, value in scraped.items():
        category = _CATEGORY_ALIASES.get(key)
        if category is None:
            raise ValueError(f"Unknown category {key!r}")
        if value is None:
            scrapes.append(SourceScrape.failed(None, category, "no result"))
        elif isinstance(value, AdapterFailure):
            scrapes.append(SourceScrape.failed(None, category, str(value)))
        else:
            scrapes.append(SourceScrape(source=None, category=category, records=list(value)))
    return scrapes
