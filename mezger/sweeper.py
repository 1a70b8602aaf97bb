import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from mezger.lifecycle import expire, is_expired
from mezger.models import Listing

log = logging.getLogger(__name__)


@dataclass
class SweepResult:
    kept: list[Listing] = field(default_factory=list)
    expired: list[Listing] = field(default_factory=list)


def sweep(auctions: Iterable[Listing], now: datetime) -> SweepResult:
    """
    Partition auctions on endTime > now.

    Expired entries come back with status "expired". Auctions without a
    known endTime are kept.
    """
    result = SweepResult()
    for listing in auctions:
        if is_expired(listing, now):
            result.expired.append(expire(listing))
        else:
            result.kept.append(listing)

    if result.expired:
        log.info("Swept %d expired auction(s), %d still live", len(result.expired), len(result.kept))
    return result
