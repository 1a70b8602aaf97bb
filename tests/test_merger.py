"""
Unit tests for merge(): creation, refresh, provenance and no-regression rules.
"""
from datetime import datetime, timedelta, timezone

import pytest

from mezger.errors import MalformedRecord
from mezger.identity import resolve
from mezger.merger import merge
from mezger.models import (
    ACTIVE, AUCTION, BACK_ORDERED, CAR, IN_STOCK, LIVE, OUT_OF_STOCK, PART, SOLD, RawRecord,
)

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(days=1)
T2 = T0 + timedelta(days=2)

LINK = "https://bringatrailer.com/listing/2004-porsche-996-gt3"


def _car(title="2004 996 GT3", **fields) -> RawRecord:
    return RawRecord(source="bat", link=LINK, title=title, source_display="Bring A Trailer",
                     fields={"price": 89500.0, **fields})


class TestCreate:
    def test_new_car(self):
        listing = merge(None, _car(), T0, CAR)
        assert listing.id == resolve("bat", LINK)
        assert listing.category == CAR
        assert listing.status == ACTIVE
        assert listing.first_seen_at == T0
        assert listing.last_seen_at == T0
        assert listing.title == "2004 996 GT3"
        assert listing.attributes["price"] == 89500.0

    def test_new_part_back_ordered(self):
        record = RawRecord(source="pelican", link="https://x/y", title="Mezger Oil Filter",
                           fields={"stockText": "Back Order 2 weeks"})
        listing = merge(None, record, T0, PART)
        assert listing.status == BACK_ORDERED
        assert listing.first_seen_at == listing.last_seen_at == T0

    def test_new_auction_end_time(self):
        record = RawRecord(source="bat", link=LINK, title="997 GT3 RS",
                           fields={"endTime": "2026-01-05T18:00:00Z", "bidCount": 12})
        listing = merge(None, record, T0, AUCTION)
        assert listing.status == LIVE
        assert listing.end_time == datetime(2026, 1, 5, 18, 0, tzinfo=timezone.utc)
        assert "endTime" not in listing.attributes

    def test_completed_car_created_sold(self):
        listing = merge(None, _car(soldPrice=120000, soldDate="2026-01-01"), T0, CAR)
        assert listing.status == SOLD
        assert listing.sold_price == 120000.0
        assert listing.sold_date == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_empty_fields_not_stored(self):
        listing = merge(None, _car(location="", images=[], mileage=None), T0, CAR)
        assert "location" not in listing.attributes
        assert "images" not in listing.attributes
        assert "mileage" not in listing.attributes

    def test_category_required(self):
        with pytest.raises(ValueError):
            merge(None, _car(), T0)

    def test_missing_link_is_malformed(self):
        record = RawRecord(source="bat", link="", title="x")
        with pytest.raises(MalformedRecord):
            merge(None, record, T0, CAR)


class TestRefresh:
    def test_descriptive_fields_overwritten(self):
        first  = merge(None, _car(), T0, CAR)
        second = merge(first, _car(title="2004 Porsche 996 GT3", price=87000.0), T1)
        assert second.title == "2004 Porsche 996 GT3"
        assert second.attributes["price"] == 87000.0

    def test_last_seen_advances(self):
        first  = merge(None, _car(), T0, CAR)
        second = merge(first, _car(), T1)
        assert second.last_seen_at == T1

    def test_first_seen_preserved(self):
        listing = merge(None, _car(), T0, CAR)
        for ts in (T1, T2):
            listing = merge(listing, _car(), ts)
        assert listing.first_seen_at == T0

    def test_existing_not_mutated(self):
        first = merge(None, _car(), T0, CAR)
        merge(first, _car(price=1.0), T1)
        assert first.attributes["price"] == 89500.0
        assert first.last_seen_at == T0

    def test_zero_is_real_value(self):
        record = RawRecord(source="bat", link=LINK, title="997 GT3", fields={"bidCount": 5})
        first  = merge(None, record, T0, AUCTION)
        second = merge(first, RawRecord(source="bat", link=LINK, fields={"bidCount": 0}), T1)
        assert second.attributes["bidCount"] == 0

    def test_wrong_listing_rejected(self):
        first = merge(None, _car(), T0, CAR)
        other = RawRecord(source="bat", link="https://bringatrailer.com/listing/other")
        with pytest.raises(ValueError):
            merge(first, other, T1)


class TestNoRegression:
    def test_absent_field_retained(self):
        first  = merge(None, _car(mileage="45,000 miles", location="Los Angeles, CA"), T0, CAR)
        second = merge(first, RawRecord(source="bat", link=LINK, fields={"price": 88000.0}), T1)
        assert second.attributes["mileage"] == "45,000 miles"
        assert second.attributes["location"] == "Los Angeles, CA"
        assert second.title == "2004 996 GT3"

    def test_empty_values_do_not_clear(self):
        first  = merge(None, _car(image="https://img/1.jpg", images=["https://img/1.jpg"]), T0, CAR)
        second = merge(first, _car(title="", image="", images=[], price=None), T1)
        assert second.title == "2004 996 GT3"
        assert second.attributes["image"] == "https://img/1.jpg"
        assert second.attributes["images"] == ["https://img/1.jpg"]
        assert second.attributes["price"] == 89500.0


class TestTerminalFields:
    def test_sold_fields_never_overwritten(self):
        listing = merge(None, _car(soldPrice=100000, soldDate="2026-01-01"), T0, CAR)
        listing = merge(listing, _car(soldPrice=1, soldDate="2030-01-01"), T1)
        assert listing.sold_price == 100000.0
        assert listing.sold_date == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_sold_fields_set_once_when_unknown(self):
        listing = merge(None, _car(), T0, CAR)
        assert listing.sold_price is None
        listing = merge(listing, _car(soldPrice=91000), T1)
        assert listing.sold_price == 91000.0

    def test_end_time_fixed_at_creation(self):
        record = RawRecord(source="bat", link=LINK, fields={"endTime": "2026-01-05T18:00:00+00:00"})
        listing = merge(None, record, T0, AUCTION)
        moved = RawRecord(source="bat", link=LINK, fields={"endTime": "2026-02-01T00:00:00+00:00"})
        listing = merge(listing, moved, T1)
        assert listing.end_time == datetime(2026, 1, 5, 18, 0, tzinfo=timezone.utc)


class TestObservedStatus:
    def test_car_stays_active_when_seen(self):
        listing = merge(merge(None, _car(), T0, CAR), _car(), T1)
        assert listing.status == ACTIVE

    def test_sold_car_stays_sold_when_seen_again(self):
        listing = merge(None, _car(), T0, CAR).with_changes(status=SOLD)
        assert merge(listing, _car(), T1).status == SOLD

    def test_part_status_follows_stock_text(self):
        def part(text):
            return RawRecord(source="pelican", link="https://x/y", title="Mezger Oil Filter",
                             fields={"stockText": text})
        listing = merge(None, part("In Stock"), T0, PART)
        assert listing.status == IN_STOCK
        listing = merge(listing, part("Sold Out"), T1)
        assert listing.status == OUT_OF_STOCK
        listing = merge(listing, part("Pre-Order now"), T2)
        assert listing.status == BACK_ORDERED
        listing = merge(listing, part("Ships today"), T2)
        assert listing.status == IN_STOCK

    def test_part_without_stock_text_keeps_known_status(self):
        record = RawRecord(source="pelican", link="https://x/y", fields={"stockText": "Out of stock"})
        listing = merge(None, record, T0, PART)
        listing = merge(listing, RawRecord(source="pelican", link="https://x/y", fields={"price": 20.0}), T1)
        assert listing.status == OUT_OF_STOCK
