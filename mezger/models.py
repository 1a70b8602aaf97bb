from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

# Categories
CAR     = "car"
PART    = "part"
AUCTION = "auction"

CATEGORIES = (CAR, PART, AUCTION)

# Document key for each category
COLLECTION_KEYS = {
    CAR:     "cars",
    PART:    "parts",
    AUCTION: "auctions",
}

# Statuses
ACTIVE       = "active"
SOLD         = "sold"
IN_STOCK     = "in_stock"
BACK_ORDERED = "back_ordered"
OUT_OF_STOCK = "out_of_stock"
LIVE         = "auction"
EXPIRED      = "expired"

STATUSES = {
    CAR:     (ACTIVE, SOLD),
    PART:    (IN_STOCK, BACK_ORDERED, OUT_OF_STOCK),
    AUCTION: (LIVE, EXPIRED),
}

# Keys owned by Listing itself; everything else in a document entry is descriptive
CORE_KEYS = (
    "id", "type", "status", "source", "link", "sourceDisplay", "title",
    "firstSeenAt", "lastSeenAt", "soldPrice", "soldDate", "endTime",
)
_LEGACY_FIRST_SEEN_KEYS = ("dateScraped", "dateAdded", "scrapedAt")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601 string (or datetime) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def is_empty(value: Any) -> bool:
    """None, "" and empty containers carry no information; 0 and False do."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


@dataclass(frozen=True)
class RawRecord:
    """One observation of a listing from one source in one run."""

    source: str                      # Adapter/site name from sites.json
    link: str                        # Absolute, normalised URL (identity anchor)
    title: Optional[str] = None
    source_display: Optional[str] = None

    # Category-specific values keyed by their persisted names
    # (price, year, mileage, partNumber, stockText, endTime, bidCount, images, ...)
    fields: Mapping[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)


@dataclass(frozen=True)
class Listing:
    # Identity
    id: str
    category: str                    # car | part | auction, fixed at creation

    # Lifecycle
    status: str
    first_seen_at: datetime
    last_seen_at: datetime

    # Descriptive, refreshed on every observation
    source: str = ""
    link: str = ""
    title: Optional[str] = None
    source_display: Optional[str] = None
    attributes: Mapping[str, Any] = field(default_factory=dict)

    # Terminal fields (Car), set at most once
    sold_price: Optional[float] = None
    sold_date: Optional[datetime] = None

    # Auction only, fixed at creation
    end_time: Optional[datetime] = None

    def with_changes(self, **changes: Any) -> "Listing":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "id":            self.id,
            "type":          self.category,
            "status":        self.status,
            "source":        self.source,
            "sourceDisplay": self.source_display,
            "link":          self.link,
            "title":         self.title,
            "firstSeenAt":   format_timestamp(self.first_seen_at),
            "lastSeenAt":    format_timestamp(self.last_seen_at),
        }
        for key, value in self.attributes.items():
            doc.setdefault(key, value)
        if self.category == CAR:
            doc["soldPrice"] = self.sold_price
            doc["soldDate"]  = format_timestamp(self.sold_date)
        if self.category == AUCTION:
            doc["endTime"] = format_timestamp(self.end_time)
        return doc

    @classmethod
    def from_dict(
        cls, doc: Mapping[str, Any], category: str, seen_fallback: Optional[datetime] = None,
    ) -> "Listing":
        """
        Build a Listing from a persisted document entry.

        Accepts the older script output too: dateScraped/dateAdded stand in
        for firstSeenAt and a missing lastSeenAt falls back to firstSeenAt.
        An entry with no date at all takes seen_fallback (the document's
        lastUpdated), so loading the same document twice gives equal values.
        """
        first_seen = parse_timestamp(doc.get("firstSeenAt"))
        if first_seen is None:
            for key in _LEGACY_FIRST_SEEN_KEYS:
                first_seen = parse_timestamp(doc.get(key))
                if first_seen is not None:
                    break
        if first_seen is None:
            first_seen = seen_fallback or utcnow()
        last_seen = parse_timestamp(doc.get("lastSeenAt")) or first_seen

        attributes = {
            k: v for k, v in doc.items()
            if k not in CORE_KEYS and k not in _LEGACY_FIRST_SEEN_KEYS
        }

        return cls(
            id             = str(doc["id"]),
            category       = category,
            status         = _normalise_status(doc.get("status"), category),
            first_seen_at  = first_seen,
            last_seen_at   = last_seen,
            source         = str(doc.get("source") or ""),
            link           = str(doc.get("link") or ""),
            title          = doc.get("title"),
            source_display = doc.get("sourceDisplay"),
            attributes     = attributes,
            sold_price     = _to_float(doc.get("soldPrice")),
            sold_date      = parse_timestamp(doc.get("soldDate")),
            end_time       = parse_timestamp(doc.get("endTime")),
        )


@dataclass
class Collection:
    """
    The persisted store: one keyed set of Listing per category plus the
    document-wide lastUpdated timestamp.

    track_auctions controls whether the optional "auctions" key is written.
    """

    cars: dict[str, Listing] = field(default_factory=dict)
    parts: dict[str, Listing] = field(default_factory=dict)
    auctions: dict[str, Listing] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=utcnow)
    track_auctions: bool = True

    @classmethod
    def empty(cls, now: Optional[datetime] = None, track_auctions: bool = True) -> "Collection":
        return cls(last_updated=now or utcnow(), track_auctions=track_auctions)

    def listings(self, category: str) -> dict[str, Listing]:
        return getattr(self, COLLECTION_KEYS[category])

    def to_dict(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "cars":  [l.to_dict() for l in self.cars.values()],
            "parts": [l.to_dict() for l in self.parts.values()],
        }
        if self.track_auctions or self.auctions:
            doc["auctions"] = [l.to_dict() for l in self.auctions.values()]
        doc["lastUpdated"] = format_timestamp(self.last_updated)
        return doc

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> "Collection":
        last_updated = parse_timestamp(doc.get("lastUpdated")) or utcnow()
        keyed: dict[str, dict[str, Listing]] = {}
        for category, key in COLLECTION_KEYS.items():
            entries: dict[str, Listing] = {}
            for entry in doc.get(key) or []:
                if not isinstance(entry, Mapping) or not entry.get("id"):
                    continue
                listing = Listing.from_dict(entry, category, last_updated)
                # Later duplicates win, keeping ids unique per category
                entries[listing.id] = listing
            keyed[key] = entries

        return cls(
            cars           = keyed["cars"],
            parts          = keyed["parts"],
            auctions       = keyed["auctions"],
            last_updated   = last_updated,
            track_auctions = "auctions" in doc,
        )


def _normalise_status(status: Any, category: str) -> str:
    allowed = STATUSES[category]
    if status in allowed:
        return status
    # Older documents used "available" and similar for live entries
    return allowed[0]


def _to_float(v: Any) -> Optional[float]:
    if v is None:
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None
