"""Unit tests for bundle cascade planning and consistency checks."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date

from supply_ledger import cascade
from supply_ledger.constants import IssueKind, TransactionSource
from supply_ledger.data_manager import BundleComponent

D1 = date(2024, 3, 1)


def test_build_child_transactions_scales_units_by_component_quantity(make_txn, linen_items):
    """Each component receives the parent's unit quantities times its quantity."""

    parent = make_txn(D1, TransactionSource.COUNT, item_id="KINGSET", counted_units=25)
    plans = cascade.build_child_transactions(parent, linen_items["KINGSET"])

    by_component = {plan.component_item_id: plan for plan in plans}
    assert by_component["PILLOW"].counted_units == 50
    assert by_component["SHEET"].counted_units == 25


def test_build_child_transactions_keys_children_by_bundle_stream(make_txn, linen_items):
    """Children use the bundle as parent item and copy date, location and source."""

    parent = make_txn(D1, TransactionSource.PURCHASE, item_id="KINGSET", location_id="STORE", purchased_units=3)
    plans = cascade.build_child_transactions(parent, linen_items["KINGSET"])

    for plan in plans:
        assert plan.key == (D1, plan.component_item_id, "STORE", "KINGSET")
        assert plan.source is TransactionSource.PURCHASE


def test_build_child_transactions_returns_empty_for_plain_items(make_txn, linen_items):
    """Items that are not bundles produce no children."""

    parent = make_txn(D1, TransactionSource.COUNT, item_id="PILLOW", counted_units=5)
    assert cascade.build_child_transactions(parent, linen_items["PILLOW"]) == []


def test_build_child_transactions_does_not_scale_packages(make_txn, linen_items, caplog):
    """Package quantities are not carried to children and a warning is logged."""

    parent = make_txn(D1, TransactionSource.COUNT, item_id="KINGSET", counted_units=1, counted_packages=2)
    with caplog.at_level(logging.WARNING, logger="supply_ledger"):
        plans = cascade.build_child_transactions(parent, linen_items["KINGSET"])

    rows = [plan.to_row(transaction_id=f"C{i}", created_at="", updated_at="") for i, plan in enumerate(plans)]
    assert all(row.counted_packages == 0 for row in rows)
    assert "package quantities" in caplog.text


def test_build_child_transactions_treats_zero_quantity_as_one(make_txn, linen_items):
    """A component listed with quantity zero is cascaded once."""

    bundle = replace(
        linen_items["KINGSET"],
        components=(BundleComponent("PILLOW", 0),),
    )
    parent = make_txn(D1, TransactionSource.CONSUMPTION, item_id="KINGSET", consumed_units=4)
    (plan,) = cascade.build_child_transactions(parent, bundle)
    assert plan.consumed_units == 4


def test_build_child_transactions_skips_self_reference(make_txn, linen_items):
    """A bundle listing itself would loop; that component is skipped."""

    bundle = replace(
        linen_items["KINGSET"],
        components=(BundleComponent("KINGSET", 1), BundleComponent("SHEET", 1)),
    )
    parent = make_txn(D1, TransactionSource.COUNT, item_id="KINGSET", counted_units=1)
    plans = cascade.build_child_transactions(parent, bundle)
    assert [plan.component_item_id for plan in plans] == ["SHEET"]


def test_cascade_result_reports_degraded_components(make_txn):
    """Failures mark the result degraded and list the failed components."""

    parent = make_txn(D1, TransactionSource.COUNT, item_id="KINGSET", counted_units=1)
    result = cascade.CascadeResult(
        parent=parent,
        failures=(cascade.CascadeFailure("SHEET", "Unknown item id: SHEET"),),
    )
    assert result.degraded
    assert result.failed_component_ids == ["SHEET"]
    assert not cascade.CascadeResult(parent=parent).degraded


def test_find_cascade_issues_clean_log(make_txn, linen_items):
    """A fully cascaded bundle row yields no issues."""

    parent = make_txn(D1, TransactionSource.COUNT, item_id="KINGSET", counted_units=2)
    children = [
        plan.to_row(transaction_id=f"C{i}", created_at="", updated_at="")
        for i, plan in enumerate(cascade.build_child_transactions(parent, linen_items["KINGSET"]))
    ]
    assert cascade.find_cascade_issues([parent, *children], linen_items) == []


def test_find_cascade_issues_detects_missing_and_stale_children(make_txn, linen_items):
    """A missing component row and a child with outdated units are both reported."""

    parent = make_txn(D1, TransactionSource.COUNT, item_id="KINGSET", counted_units=2)
    stale = make_txn(D1, TransactionSource.COUNT, item_id="PILLOW", parent="KINGSET", counted_units=1)

    issues = cascade.find_cascade_issues([parent, stale], linen_items)

    kinds = {(issue.kind, issue.item_id) for issue in issues}
    assert kinds == {(IssueKind.STALE, "PILLOW"), (IssueKind.MISSING, "SHEET")}


def test_find_cascade_issues_detects_orphans(make_txn, linen_items):
    """Children without a parent row are orphaned."""

    orphan = make_txn(D1, TransactionSource.COUNT, item_id="PILLOW", parent="KINGSET", counted_units=4)

    (issue,) = cascade.find_cascade_issues([orphan], linen_items)
    assert issue.kind is IssueKind.ORPHANED
    assert issue.transaction_id == orphan.transaction_id


def test_find_cascade_issues_flags_children_of_removed_components(make_txn, linen_items):
    """A child for a component no longer in the bundle is orphaned."""

    items = dict(linen_items)
    items["KINGSET"] = replace(items["KINGSET"], components=(BundleComponent("SHEET", 1),))
    parent = make_txn(D1, TransactionSource.COUNT, item_id="KINGSET", counted_units=1)
    sheet = make_txn(D1, TransactionSource.COUNT, item_id="SHEET", parent="KINGSET", counted_units=1)
    pillow = make_txn(D1, TransactionSource.COUNT, item_id="PILLOW", parent="KINGSET", counted_units=2)

    (issue,) = cascade.find_cascade_issues([parent, sheet, pillow], items)
    assert (issue.kind, issue.item_id) == (IssueKind.ORPHANED, "PILLOW")
