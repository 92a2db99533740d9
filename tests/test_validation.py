"""Tests for ingestion validation and normalization."""

from datetime import datetime, timedelta

import pytest

from conftest import make_offering
from ipo_engine.core.records import CategoryRecord
from ipo_engine.core.validation import (
    has_significant_changes,
    is_status_regression,
    normalize_category,
    normalize_status,
    overall_subscription,
    parse_category,
    parse_demand,
    parse_offering,
    validate_offering,
)
from ipo_engine.errors import DataValidationError
from ipo_engine.utils.time import IST_TZ, UTC_TZ, now_ist


class TestValidateOffering:
    def test_valid_record_passes(self):
        assert validate_offering(make_offering()).passed

    def test_missing_symbol_and_name(self):
        res = validate_offering(make_offering(symbol="", name=""))
        assert not res.passed
        assert "Invalid or missing symbol" in res.errors
        assert "Invalid or missing name" in res.errors

    def test_inverted_price_band(self):
        res = validate_offering(make_offering(minPrice=130, maxPrice=120))
        assert "Min price cannot be greater than max price" in res.errors

    @pytest.mark.parametrize("lot", [0, -5, 1.5, "abc", None])
    def test_lot_size_must_be_positive_integer(self, lot):
        res = validate_offering(make_offering(lotSize=lot))
        assert "Invalid lot size" in res.errors

    def test_missing_dates(self):
        raw = make_offering()
        del raw["closeDate"]
        assert "Missing bidding dates" in validate_offering(raw).errors


class TestParseOffering:
    def test_symbol_is_upper_cased(self):
        rec = parse_offering(make_offering(symbol=" alpha "))
        assert rec.symbol == "ALPHA"
        assert rec.lot_size == 130
        assert rec.min_price <= rec.max_price

    def test_price_band_string(self):
        raw = make_offering()
        del raw["minPrice"], raw["maxPrice"]
        raw["priceBand"] = "Rs.285 to Rs.300"
        rec = parse_offering(raw)
        assert (rec.min_price, rec.max_price) == (285.0, 300.0)

    def test_invalid_raises_with_every_error(self):
        with pytest.raises(DataValidationError) as exc:
            parse_offering(make_offering(minPrice=200, maxPrice=100, lotSize=0))
        assert len(exc.value.errors) == 2
        assert exc.value.symbol == "ALPHA"
        assert not exc.value.retryable


class TestStatus:
    def test_aliases(self):
        assert normalize_status("Active", None, None, None) == "open"
        assert normalize_status("canceled", None, None, None) == "cancelled"

    def test_derived_from_dates(self):
        now = now_ist()
        assert normalize_status(None, now + timedelta(days=2), now + timedelta(days=4), None, now=now) == "upcoming"
        assert normalize_status(None, now - timedelta(days=1), now + timedelta(days=1), None, now=now) == "open"
        assert normalize_status(None, now - timedelta(days=5), now - timedelta(days=3), None, now=now) == "closed"
        assert normalize_status(None, now - timedelta(days=9), now - timedelta(days=7), now - timedelta(days=1), now=now) == "listed"

    def test_regressions(self):
        assert is_status_regression("closed", "open")
        assert is_status_regression("listed", "upcoming")
        assert is_status_regression("withdrawn", "open")
        assert is_status_regression("listed", "withdrawn")
        assert not is_status_regression("upcoming", "open")
        assert not is_status_regression("open", "withdrawn")
        assert not is_status_regression(None, "open")


class TestChangeDetection:
    def test_identical_record_has_no_changes(self):
        rec = parse_offering(make_offering())
        assert not has_significant_changes(rec, rec)

    def test_dates_compared_by_instant(self):
        rec = parse_offering(make_offering())
        stored = parse_offering(make_offering())
        # same instant expressed in UTC, and as a naive IST wall-clock value
        utc_view = type("Row", (), {**stored.column_values(), "open_date": stored.open_date.astimezone(UTC_TZ)})
        naive_view = type("Row", (), {**stored.column_values(), "open_date": stored.open_date.replace(tzinfo=None)})
        assert not has_significant_changes(utc_view, rec)
        assert not has_significant_changes(naive_view, rec)

    def test_price_change_detected(self):
        old = parse_offering(make_offering())
        new = parse_offering(make_offering(maxPrice=115.0))
        assert has_significant_changes(old, new)

    def test_ignored_field(self):
        old = parse_offering(make_offering(status="closed"))
        new = parse_offering(make_offering(status="open"))
        assert has_significant_changes(old, new)
        assert not has_significant_changes(old, new, ignore=("status",))


class TestCategories:
    @pytest.mark.parametrize(
        "code,expected",
        [("IND", "RETAIL"), ("INDIV", "RETAIL"), ("INST", "QIB"), ("HNI", "NIB"),
         ("NII", "NIB"), ("NON_INSTITUTIONAL", "NIB"), ("EMP", "EMPLOYEE"), ("anchor", "ANCHOR"), ("xyz", "XYZ")],
    )
    def test_alias_normalization(self, code, expected):
        assert normalize_category(code) == expected

    def test_alias_becomes_sub_category(self):
        ts = datetime(2026, 1, 5, 11, 0, tzinfo=IST_TZ)
        rec = parse_category({"category": "IND", "subscriptionRatio": 1.7, "noOfSharesBid": 1700, "bidCount": 17}, ts)
        assert rec.category == "RETAIL"
        assert rec.sub_category == "IND"
        assert rec.average_bid_size == 100.0

    def test_ratio_falls_back_to_quantity_over_offered(self):
        ts = datetime(2026, 1, 5, 11, 0, tzinfo=IST_TZ)
        rec = parse_category({"category": "QIB", "noOfSharesOffered": 1000, "noOfSharesBid": 2500}, ts)
        assert rec.subscription_ratio == pytest.approx(2.5)

    def test_overall_is_max_across_categories(self):
        ts = now_ist()
        cats = [
            CategoryRecord("RETAIL", None, 0, 0, 0.8, ts),
            CategoryRecord("QIB", None, 0, 0, 2.4, ts),
            CategoryRecord("NIB", None, 0, 0, 1.1, ts),
        ]
        assert overall_subscription(cats) == 2.4
        assert overall_subscription([]) == 0.0


class TestDemand:
    def test_cutoff_rows(self):
        ts = now_ist()
        pts = parse_demand(
            [{"price": "Cut-off", "absoluteQuantity": 1000, "absoluteBidCount": 10},
             {"price": "110.00", "absoluteQuantity": "2,000", "absoluteBidCount": 20}],
            ts,
        )
        assert pts[0].cutoff and pts[0].price is None
        assert pts[1].price == 110.0
        assert pts[1].quantity == 2000
