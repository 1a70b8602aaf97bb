"""
Tests for the reconciliation pass: delisting, outage isolation, expiry,
promotion and summary counts.
"""
from datetime import datetime, timedelta, timezone

import pytest

from mezger.errors import AdapterFailure
from mezger.identity import resolve
from mezger.lifecycle import LifecyclePolicy
from mezger.merger import merge
from mezger.models import (
    ACTIVE, AUCTION, BACK_ORDERED, CAR, IN_STOCK, LIVE, OUT_OF_STOCK, PART, SOLD,
    Collection, Listing, RawRecord,
)
from mezger.reconcile import COMPLETED, SourceScrape, reconcile

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(days=1)
T2 = T0 + timedelta(days=2)


def _car(source="bat", slug="996-gt3", **fields) -> RawRecord:
    return RawRecord(source=source, link=f"https://{source}.example/listing/{slug}",
                     title=fields.pop("title", "2004 996 GT3"), fields={"price": 89500.0, **fields})


def _part(slug="oil-filter", stock="In Stock", **fields) -> RawRecord:
    return RawRecord(source="pelican", link=f"https://pelican.example/{slug}",
                     title="Mezger Oil Filter", fields={"stockText": stock, **fields})


def _auction(slug="997-rs", end=None, **fields) -> RawRecord:
    end = end or T1 + timedelta(days=3)
    return RawRecord(source="bat", link=f"https://bat.example/listing/{slug}", title="2007 997 GT3 RS",
                     fields={"endTime": end.isoformat(), "currentBid": 150000.0, "bidCount": 20, **fields})


def _collection(*records_by_category) -> Collection:
    """Build a collection by merging (category, record) pairs at T0."""
    collection = Collection.empty(T0)
    for category, record in records_by_category:
        listing = merge(None, record, T0, category)
        collection.listings(category)[listing.id] = listing
    return collection


class TestDelisting:
    def test_concrete_scenario_empty_complete_scrape(self):
        existing = Listing(id="bat-abc123", category=CAR, status=ACTIVE,
                           first_seen_at=T0, last_seen_at=T0, source="bat",
                           link="https://bat.example/abc123", title="2004 996 GT3",
                           attributes={"price": 89500})
        collection = Collection(cars={existing.id: existing}, last_updated=T0)

        result = reconcile(collection, {"car": []}, T1)
        car = result.next.cars["bat-abc123"]
        assert car.status == SOLD
        assert car.first_seen_at == T0
        # Delisting is not an observation
        assert car.last_seen_at == T0
        assert car.title == "2004 996 GT3"
        assert car.attributes["price"] == 89500
        assert car.with_changes(status=ACTIVE) == existing
        assert result.summary.transitioned == 1

    def test_unobserved_car_sold_observed_car_active(self):
        collection = _collection((CAR, _car(slug="a")), (CAR, _car(slug="b")))
        result = reconcile(collection, [SourceScrape("bat", CAR, [_car(slug="a")])], T1)
        cars = result.next.cars
        assert cars[resolve("bat", "https://bat.example/listing/a")].status == ACTIVE
        assert cars[resolve("bat", "https://bat.example/listing/b")].status == SOLD

    def test_only_scraped_source_delists(self):
        collection = _collection((CAR, _car(source="bat")), (CAR, _car(source="pcarmarket")))
        result = reconcile(collection, [SourceScrape("bat", CAR, [])], T1)
        statuses = {l.source: l.status for l in result.next.cars.values()}
        assert statuses == {"bat": SOLD, "pcarmarket": ACTIVE}

    def test_incomplete_scrape_does_not_delist(self):
        collection = _collection((CAR, _car(slug="a")), (CAR, _car(slug="b")))
        scrape = SourceScrape("bat", CAR, [_car(slug="a")], complete=False)
        result = reconcile(collection, [scrape], T1)
        assert all(l.status == ACTIVE for l in result.next.cars.values())

    def test_parts_not_delisted_by_default(self):
        collection = _collection((PART, _part(slug="a")), (PART, _part(slug="b", stock="Back Order")))
        result = reconcile(collection, {"parts": []}, T1)
        assert {l.status for l in result.next.parts.values()} == {IN_STOCK, BACK_ORDERED}
        assert result.summary.transitioned == 0

    def test_parts_delisted_with_policy(self):
        collection = _collection((PART, _part(slug="a")))
        result = reconcile(collection, {"parts": []}, T1, LifecyclePolicy(delist_parts=True))
        assert [l.status for l in result.next.parts.values()] == [OUT_OF_STOCK]

    def test_cars_kept_active_with_policy_off(self):
        collection = _collection((CAR, _car()))
        result = reconcile(collection, {"cars": []}, T1, LifecyclePolicy(delist_cars=False))
        assert [l.status for l in result.next.cars.values()] == [ACTIVE]


class TestOutageIsolation:
    def test_failed_category_unchanged(self):
        collection = _collection((CAR, _car(slug="a")), (PART, _part(slug="a")))
        before = {l.id: l.to_dict() for l in collection.parts.values()}

        result = reconcile(
            collection,
            {"car": [_car(slug="new")], "part": AdapterFailure("pelican", "timeout")},
            T1,
        )

        after = {l.id: l.to_dict() for l in result.next.parts.values()}
        assert after == before
        cars = result.next.cars
        assert cars[resolve("bat", "https://bat.example/listing/a")].status == SOLD
        assert cars[resolve("bat", "https://bat.example/listing/new")].status == ACTIVE
        assert result.summary.failed_sources == ["part"]
        assert result.summary.by_category[PART].skipped is True

    def test_failed_source_listings_carried_over(self):
        collection = _collection((CAR, _car(slug="a")))
        result = reconcile(collection, [SourceScrape.failed("bat", CAR, "HTTP 503")], T1)
        car = next(iter(result.next.cars.values()))
        assert car == next(iter(collection.cars.values()))
        assert result.summary.failed_sources == ["bat"]

    def test_failed_scrape_records_ignored(self):
        collection = _collection((CAR, _car(slug="a")))
        failed = SourceScrape("bat", CAR, [_car(slug="partial")], error="cancelled", complete=False)
        result = reconcile(collection, [failed], T1)
        assert len(result.next.cars) == 1

    def test_none_marks_category_failed(self):
        collection = _collection((CAR, _car()))
        result = reconcile(collection, {"car": None}, T1)
        assert next(iter(result.next.cars.values())).status == ACTIVE

    def test_unscraped_category_carried_over(self):
        collection = _collection((CAR, _car()), (PART, _part()))
        result = reconcile(collection, {"part": [_part()]}, T1)
        assert next(iter(result.next.cars.values())).status == ACTIVE

    def test_unknown_category_rejected(self):
        with pytest.raises(ValueError):
            reconcile(Collection.empty(T0), {"boats": []}, T1)


class TestMergeDuringPass:
    def test_new_part_created(self):
        record = RawRecord(source="pelican", link="https://x/y", title="Mezger Oil Filter",
                           fields={"stockText": "Back Order 2 weeks"})
        result = reconcile(Collection.empty(T0), {"part": [record]}, T1)
        part = result.next.parts[resolve("pelican", "https://x/y")]
        assert part.status == BACK_ORDERED
        assert part.first_seen_at == part.last_seen_at == T1
        assert result.summary.added == 1

    def test_rescrape_is_idempotent(self):
        records = [_car(slug="a"), _car(slug="b")]
        first  = reconcile(Collection.empty(T0), {"car": records}, T1).next
        second = reconcile(first, {"car": records}, T2)
        assert len(second.next.cars) == 2
        assert second.summary.added == 0
        assert second.summary.updated == 0
        assert second.summary.unchanged == 2
        for listing in second.next.cars.values():
            assert listing.first_seen_at == T1
            assert listing.last_seen_at == T2

    def test_changed_fields_counted_updated(self):
        collection = _collection((CAR, _car()))
        result = reconcile(collection, {"car": [_car(price=80000.0)]}, T1)
        assert result.summary.updated == 1
        assert next(iter(result.next.cars.values())).attributes["price"] == 80000.0

    def test_part_stock_change_is_transition(self):
        collection = _collection((PART, _part()))
        result = reconcile(collection, {"part": [_part(stock="Sold out")]}, T1)
        assert next(iter(result.next.parts.values())).status == OUT_OF_STOCK
        assert result.summary.transitioned == 1

    def test_duplicate_records_yield_unique_ids(self):
        result = reconcile(Collection.empty(T0), {"car": [_car(), _car(price=1.0)]}, T1)
        assert len(result.next.cars) == 1
        assert result.summary.added == 1

    def test_malformed_record_dropped(self):
        bad = RawRecord(source="bat", link="", title="no link")
        result = reconcile(Collection.empty(T0), {"car": [bad, _car()]}, T1)
        assert len(result.next.cars) == 1
        assert result.summary.malformed == 1

    def test_input_collection_not_mutated(self):
        collection = _collection((CAR, _car(slug="a")))
        snapshot = collection.to_dict()
        reconcile(collection, {"car": [_car(slug="b")]}, T1)
        assert collection.to_dict() == snapshot

    def test_last_updated_is_run_time(self):
        result = reconcile(Collection.empty(T0), {}, T1)
        assert result.next.last_updated == T1


class TestAuctions:
    def test_expired_auction_removed(self):
        collection = _collection((AUCTION, _auction(end=T0 + timedelta(hours=1))))
        result = reconcile(collection, {}, T1)
        assert result.next.auctions == {}
        assert result.summary.expired == 1

    def test_expiry_applies_to_failed_category(self):
        collection = _collection((AUCTION, _auction(end=T0 + timedelta(hours=1))))
        result = reconcile(collection, {"auction": AdapterFailure("bat", "down")}, T1)
        assert result.next.auctions == {}

    def test_live_auction_refreshed(self):
        collection = _collection((AUCTION, _auction()))
        result = reconcile(collection, {"auction": [_auction(currentBid=160000.0, bidCount=25)]}, T1)
        auction = next(iter(result.next.auctions.values()))
        assert auction.status == LIVE
        assert auction.attributes["currentBid"] == 160000.0
        assert auction.attributes["bidCount"] == 25

    def test_unobserved_auction_kept_until_end(self):
        collection = _collection((AUCTION, _auction()))
        result = reconcile(collection, {"auction": []}, T1)
        assert len(result.next.auctions) == 1

    def test_promotion_to_sold_car(self):
        auction = _auction(end=T0 + timedelta(hours=1))
        collection = _collection((AUCTION, auction))
        completed = RawRecord(source="bat", link=auction.link, title="2007 997 GT3 RS",
                              fields={"soldPrice": 175000.0, "soldDate": "2026-01-01"})
        result = reconcile(collection, [SourceScrape("bat", COMPLETED, [completed])], T1)

        assert result.next.auctions == {}
        car = result.next.cars[resolve("bat", auction.link)]
        assert car.category == CAR
        assert car.status == SOLD
        assert car.sold_price == 175000.0
        assert car.first_seen_at == T0
        assert result.summary.promoted == 1

    def test_promotion_falls_back_to_current_bid(self):
        auction = _auction(end=T0 + timedelta(hours=1))
        collection = _collection((AUCTION, auction))
        completed = RawRecord(source="bat", link=auction.link)
        result = reconcile(collection, {"completed": [completed]}, T1)
        car = result.next.cars[resolve("bat", auction.link)]
        assert car.sold_price == 150000.0
        assert car.sold_date == T0 + timedelta(hours=1)

    def test_promotion_keeps_existing_sale(self):
        auction = _auction(end=T0 + timedelta(hours=1))
        collection = _collection((AUCTION, auction))
        sold = merge(None, RawRecord(source="bat", link=auction.link, fields={"soldPrice": 99000.0}), T0, CAR)
        collection.cars[sold.id] = sold
        completed = RawRecord(source="bat", link=auction.link, fields={"soldPrice": 1.0})
        result = reconcile(collection, {"completed": [completed]}, T1)
        assert result.next.cars[sold.id].sold_price == 99000.0

    def test_no_pairing_still_removes(self):
        collection = _collection((AUCTION, _auction(end=T0 + timedelta(hours=1))))
        result = reconcile(collection, {"completed": AdapterFailure("bat", "timeout")}, T1)
        assert result.next.auctions == {}
        assert result.next.cars == {}
        assert result.summary.promoted == 0

    def test_promotion_disabled(self):
        auction = _auction(end=T0 + timedelta(hours=1))
        collection = _collection((AUCTION, auction))
        completed = RawRecord(source="bat", link=auction.link, fields={"soldPrice": 175000.0})
        policy = LifecyclePolicy(promote_expired_auctions=False)
        result = reconcile(collection, {"completed": [completed]}, T1, policy)
        assert result.next.cars == {}


class TestSummary:
    def test_to_dict_totals(self):
        collection = _collection((CAR, _car(slug="gone")))
        result = reconcile(collection, {"car": [_car(slug="new")], "part": [_part()]}, T1)
        summary = result.summary.to_dict()
        assert summary["added"] == 2
        assert summary["transitioned"] == 1
        assert summary["by_category"]["car"]["added"] == 1
        assert summary["by_category"]["part"]["added"] == 1
