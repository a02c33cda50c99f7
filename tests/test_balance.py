"""Unit tests for the reset-then-replay balance engine and stream partitioning."""

from __future__ import annotations

import logging
from datetime import date

import pytest

from supply_ledger import balance
from supply_ledger.constants import MAIN_STREAM, TransactionSource

COUNT = TransactionSource.COUNT
PURCHASE = TransactionSource.PURCHASE
SOAK = TransactionSource.SOAK
CONSUMPTION = TransactionSource.CONSUMPTION

D1 = date(2024, 3, 1)
D2 = date(2024, 3, 2)
D3 = date(2024, 3, 3)
D4 = date(2024, 3, 4)


def test_replay_without_anchor_sums_deltas(make_txn):
    """With no count, the balance starts at zero and applies every delta."""

    rows = [
        make_txn(D1, PURCHASE, purchased_units=10),
        make_txn(D2, CONSUMPTION, consumed_units=3),
        make_txn(D3, SOAK, soak_units=2),
    ]
    assert balance.replay(rows, 1) == 9


def test_replay_resets_to_latest_count(make_txn):
    """A count replaces everything before it; only later deltas are applied."""

    rows = [
        make_txn(D1, PURCHASE, purchased_units=100),
        make_txn(D2, COUNT, counted_units=40),
        make_txn(D3, PURCHASE, purchased_units=5),
        make_txn(D4, CONSUMPTION, consumed_units=8),
    ]
    assert balance.replay(rows, 1) == 37


def test_replay_ignores_same_day_deltas_of_anchor_day(make_txn):
    """Deltas dated on the anchor day are already reflected in the count."""

    rows = [
        make_txn(D2, COUNT, counted_units=40),
        make_txn(D2, PURCHASE, purchased_units=5, item_id="PILLOW"),
    ]
    assert balance.replay(rows, 1) == 40


def test_replay_is_independent_of_input_order(make_txn):
    """Rows are sorted before replay, so any permutation gives the same total."""

    rows = [
        make_txn(D1, COUNT, counted_units=20),
        make_txn(D2, PURCHASE, purchased_units=6),
        make_txn(D3, CONSUMPTION, consumed_units=4),
    ]
    assert balance.replay(list(reversed(rows)), 1) == balance.replay(rows, 1) == 22


def test_replay_same_day_counts_use_created_at_tie_break(make_txn):
    """The later-created count on the same day is authoritative."""

    later = make_txn(D1, COUNT, counted_units=30, created_at="2024-03-01T18:00:00+00:00")
    earlier = make_txn(D1, COUNT, counted_units=12, created_at="2024-03-01T08:00:00+00:00")
    assert balance.replay([later, earlier], 1) == 30


def test_replay_converts_packages_with_package_size(make_txn):
    """Package quantities are multiplied by the item's package size."""

    rows = [
        make_txn(D1, COUNT, counted_packages=2, counted_units=3),
        make_txn(D2, PURCHASE, purchased_packages=1),
        make_txn(D3, CONSUMPTION, consumed_units=5),
    ]
    assert balance.replay(rows, 12) == 24 + 3 + 12 - 5


def test_replay_returns_negative_balances_unchanged(make_txn):
    """Over-consumption is reported, not clamped."""

    rows = [
        make_txn(D1, COUNT, counted_units=2),
        make_txn(D2, CONSUMPTION, consumed_units=5),
    ]
    assert balance.replay(rows, 1) == -3


def test_opening_balance_excludes_as_of_day(make_txn):
    """Opening balance stops before the requested day; closing includes it."""

    rows = [
        make_txn(D1, COUNT, counted_units=10),
        make_txn(D2, PURCHASE, purchased_units=4),
        make_txn(D3, CONSUMPTION, consumed_units=1),
    ]
    assert balance.opening_balance(rows, 1, D2) == 10
    assert balance.closing_balance(rows, 1, D2) == 14
    assert balance.closing_balance(rows, 1) == 13


def test_opening_balance_equals_previous_closing_balance(make_txn):
    """Opening on a day is the closing balance of the day before."""

    rows = [
        make_txn(D1, COUNT, counted_units=10),
        make_txn(D2, SOAK, soak_units=3),
        make_txn(D3, COUNT, counted_units=9),
        make_txn(D4, CONSUMPTION, consumed_units=2),
    ]
    for earlier, later in ((D1, D2), (D2, D3), (D3, D4)):
        assert balance.opening_balance(rows, 1, later) == balance.closing_balance(rows, 1, earlier)


def test_stream_balance_reports_movement(make_txn):
    """stream_balance bundles opening and closing values for one day."""

    rows = [
        make_txn(D1, COUNT, counted_units=10),
        make_txn(D2, CONSUMPTION, consumed_units=4),
    ]
    result = balance.stream_balance(rows, 1, D2)
    assert (result.opening_units, result.closing_units, result.movement) == (10, 6, -4)


def test_partition_streams_keys_by_parent_item(make_txn):
    """Rows without a parent fall under MAIN; cascaded rows under their bundle."""

    main = make_txn(D1, COUNT, counted_units=4)
    cascaded = make_txn(D1, COUNT, counted_units=50, parent="KINGSET")
    streams = balance.partition_streams([main, cascaded])
    assert streams == {MAIN_STREAM: [main], "KINGSET": [cascaded]}


def test_consolidated_balance_sums_independent_streams(make_txn):
    """A MAIN recount does not reset the quantity contributed by a bundle."""

    rows = [
        make_txn(D1, COUNT, counted_units=50, parent="KINGSET"),
        make_txn(D1, COUNT, counted_units=4),
        make_txn(D2, COUNT, counted_units=4),
    ]
    assert balance.consolidated_balance(rows, 1) == 54


def test_consolidated_balance_single_stream_matches_replay(make_txn):
    """With only MAIN rows the consolidated balance equals a direct replay."""

    rows = [
        make_txn(D1, COUNT, counted_units=7),
        make_txn(D2, PURCHASE, purchased_units=3),
    ]
    assert balance.consolidated_balance(rows, 1) == balance.replay(rows, 1)


def test_consolidated_balance_logs_negative_totals(make_txn, caplog):
    """Negative consolidated totals are logged as warnings."""

    rows = [make_txn(D1, CONSUMPTION, consumed_units=3)]
    with caplog.at_level(logging.WARNING, logger="supply_ledger"):
        assert balance.consolidated_balance(rows, 1) == -3
    assert "Negative balance" in caplog.text


def test_consolidated_stream_balance_respects_cutoff(make_txn):
    """Opening and closing values apply the cutoff to every stream."""

    rows = [
        make_txn(D1, COUNT, counted_units=10, parent="KINGSET"),
        make_txn(D2, CONSUMPTION, consumed_units=2, parent="KINGSET"),
        make_txn(D2, PURCHASE, purchased_units=5),
    ]
    result = balance.consolidated_stream_balance(rows, 1, D2)
    assert result.opening_units == 10
    assert result.closing_units == 13


@pytest.mark.parametrize("source", [PURCHASE, SOAK, CONSUMPTION, TransactionSource.UNSPECIFIED])
def test_only_counts_are_anchors(source):
    """Every source other than a stock count applies as a delta."""

    assert not source.is_anchor
    assert COUNT.is_anchor
