"""Unit tests for the aggregation views built on the balance engine."""

from __future__ import annotations

from datetime import date

import pytest

from supply_ledger import aggregation
from supply_ledger.constants import TransactionSource
from supply_ledger.data_manager import LocationRow, RoomSettings

COUNT = TransactionSource.COUNT
PURCHASE = TransactionSource.PURCHASE
CONSUMPTION = TransactionSource.CONSUMPTION

D1 = date(2024, 3, 1)
D2 = date(2024, 3, 2)


@pytest.fixture
def locations():
    return [
        LocationRow("LINEN", "Linen Room", "Housekeeping", ("PILLOW", "SHEET")),
        LocationRow("CART", "Floor Cart", "Housekeeping", ("PILLOW",)),
        LocationRow("STORE", "Basement Store", None, ("SHEET",)),
    ]


def test_current_stock_sums_assigned_locations(make_txn, linen_items, locations):
    """Stock per item is the sum of its balances at assigned locations."""

    rows = [
        make_txn(D1, COUNT, item_id="PILLOW", location_id="LINEN", counted_units=30),
        make_txn(D1, COUNT, item_id="PILLOW", location_id="CART", counted_units=6),
        make_txn(D1, COUNT, item_id="PILLOW", location_id="STORE", counted_units=100),
    ]
    totals = {row.item_id: row for row in aggregation.current_stock(linen_items.values(), locations, rows)}

    assert totals["PILLOW"].total_units == 36
    assert totals["KINGSET"].total_units == 0


def test_current_stock_converts_totals_to_packages(make_txn, linen_items, locations):
    """Totals are split using the item's package size only at the end."""

    rows = [
        make_txn(D1, COUNT, item_id="SHEET", location_id="LINEN", counted_packages=1, counted_units=4),
        make_txn(D1, COUNT, item_id="SHEET", location_id="STORE", counted_units=3),
    ]
    totals = {row.item_id: row for row in aggregation.current_stock(linen_items.values(), locations, rows)}

    sheet = totals["SHEET"]
    assert (sheet.total_units, sheet.packages, sheet.units) == (13, 2, 1)


def test_stock_by_location_includes_unassigned_history(make_txn, linen_items, locations):
    """Locations with history for the item are listed even when not assigned."""

    rows = [
        make_txn(D1, COUNT, item_id="PILLOW", location_id="STORE", counted_units=8),
        make_txn(D1, COUNT, item_id="PILLOW", location_id="GONE", counted_units=2),
    ]
    result = aggregation.stock_by_location(linen_items["PILLOW"], locations, rows)

    assert [(row.location_name, row.total_units) for row in result] == [
        ("Basement Store", 8),
        ("Floor Cart", 0),
        ("Linen Room", 0),
        ("Unknown", 2),
    ]


def test_opening_balances_cover_assigned_and_active_items(make_txn, linen_items):
    """Assigned items appear with zero balances and items with history are added."""

    rows = [
        make_txn(D1, COUNT, item_id="PILLOW", location_id="LINEN", counted_units=12),
        make_txn(D1, COUNT, item_id="MYSTERY", location_id="LINEN", counted_units=3),
        make_txn(D2, PURCHASE, item_id="PILLOW", location_id="LINEN", purchased_units=5),
    ]
    result = aggregation.opening_balances(
        linen_items, "LINEN", rows, D2, assigned_item_ids=("PILLOW", "SHEET")
    )

    assert list(result) == ["PILLOW", "SHEET", "MYSTERY"]
    assert result["PILLOW"].opening_units == 12
    assert result["SHEET"].opening_units == 0
    assert result["MYSTERY"].opening_units == 3


def test_combined_stock_groups_day_rows_by_item(make_txn, linen_items):
    """Combined stock pairs the opening balance with the same-day rows."""

    rows = [
        make_txn(D1, COUNT, item_id="PILLOW", location_id="LINEN", counted_units=12),
        make_txn(D2, CONSUMPTION, item_id="PILLOW", location_id="LINEN", consumed_units=2),
        make_txn(D2, PURCHASE, item_id="PILLOW", location_id="CART", purchased_units=9),
    ]
    combined = aggregation.combined_stock(linen_items, "LINEN", rows, D2, assigned_item_ids=("PILLOW",))

    assert combined.opening_balances["PILLOW"].opening_units == 12
    assert [txn.source for txn in combined.transactions["PILLOW"]] == [CONSUMPTION]


def test_par_level_report_computes_requirement_and_level(make_txn, linen_items, locations):
    """Par level is one plus available stock over the rooms' requirement."""

    rows = [
        make_txn(D1, COUNT, item_id="PILLOW", location_id="LINEN", counted_units=45),
        make_txn(D1, COUNT, item_id="PILLOW", location_id="CART", counted_units=15),
    ]
    rooms = RoomSettings(king_room_count=10, double_queen_room_count=5, par_level_threshold=2.5)

    report = {row.item_id: row for row in aggregation.par_level_report(linen_items.values(), locations, rows, rooms)}

    pillow = report["PILLOW"]
    assert pillow.required == 4 * 10 + 2 * 5
    assert pillow.total_available == 60
    assert pillow.par_level == pytest.approx(2.2)
    assert pillow.below_threshold
    assert pillow.group_totals == {"Basement Store": 0, "Housekeeping": 60}


def test_par_level_report_skips_items_without_room_quantities(linen_items, locations):
    """Bundles with no room defaults are left out of the report."""

    report = aggregation.par_level_report(linen_items.values(), locations, [], RoomSettings(1, 1))
    assert {row.item_id for row in report} == {"PILLOW", "SHEET"}


def test_par_level_is_undefined_without_rooms(linen_items, locations):
    """With zero rooms configured nothing is required and no level is computed."""

    report = aggregation.par_level_report(linen_items.values(), locations, [], RoomSettings())
    assert all(row.par_level is None and not row.below_threshold for row in report)


def test_group_locations_falls_back_to_location_name(locations):
    """Locations without a category group under their own name, sorted."""

    groups = aggregation.group_locations(locations)
    assert list(groups) == ["Basement Store", "Housekeeping"]
    assert [loc.location_id for loc in groups["Housekeeping"]] == ["LINEN", "CART"]
