"""Bundle cascade planning and consistency checks.

A bundle item (a "King Set") contains fixed quantities of component items
(two pillowcases, one flat sheet, ...). Every transaction written against a
bundle is mirrored onto each component as a child transaction in the
bundle's own stream, keyed ``(date, component, location, parent=bundle)``.

Only unit fields are scaled by the component quantity. Package fields on the
children are always written as zero; a parent carrying package quantities is
logged so the dropped amount is visible rather than silently lost.

This module only plans and inspects rows. Writing the planned children is
the business layer's job (see ``core_logic``).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from . import log
from .constants import IssueKind, TransactionSource
from .data_manager import ItemRow, TransactionKey, TransactionRow


SCALED_FIELDS = ("counted_units", "purchased_units", "soak_units", "consumed_units")
UNSCALED_FIELDS = ("counted_packages", "purchased_packages", "soak_packages", "consumed_packages")


@dataclass(frozen=True)
class ChildPlan:
    """Target state of one cascaded child transaction."""

    component_item_id: str
    quantity: int
    date: date
    location_id: str
    parent_item_id: str
    source: TransactionSource
    counted_units: int = 0
    purchased_units: int = 0
    soak_units: int = 0
    consumed_units: int = 0

    @property
    def key(self) -> TransactionKey:
        return (self.date, self.component_item_id, self.location_id, self.parent_item_id)

    def to_row(self, *, transaction_id: str, created_at: str, updated_at: str) -> TransactionRow:
        return TransactionRow(
            transaction_id=transaction_id,
            date=self.date,
            item_id=self.component_item_id,
            location_id=self.location_id,
            parent_item_id=self.parent_item_id,
            source=self.source,
            counted_units=self.counted_units,
            purchased_units=self.purchased_units,
            soak_units=self.soak_units,
            consumed_units=self.consumed_units,
            created_at=created_at,
            updated_at=updated_at,
        )

    def matches(self, row: TransactionRow) -> bool:
        """Whether an existing child row already reflects this plan."""
        if row.source is not self.source:
            return False
        if any(getattr(row, name) != getattr(self, name) for name in SCALED_FIELDS):
            return False
        return all(getattr(row, name) == 0 for name in UNSCALED_FIELDS)


@dataclass(frozen=True)
class CascadeFailure:
    """A child write that could not be completed."""

    component_item_id: str
    reason: str


@dataclass(frozen=True)
class CascadeResult:
    """Outcome of writing a parent transaction and its cascaded children.

    A result with failures is a degraded success: the parent and the listed
    children were written, the failed components were not and can be
    retried through ``reconcile_cascades``.
    """

    parent: TransactionRow
    children: Tuple[TransactionRow, ...] = ()
    failures: Tuple[CascadeFailure, ...] = ()

    @property
    def degraded(self) -> bool:
        return bool(self.failures)

    @property
    def failed_component_ids(self) -> List[str]:
        return [failure.component_item_id for failure in self.failures]


@dataclass(frozen=True)
class CascadeIssue:
    """A cascade inconsistency detected in the transaction log."""

    kind: IssueKind
    date: date
    location_id: str
    item_id: str
    parent_item_id: str
    transaction_id: Optional[str] = None
    detail: str = ""


def build_child_transactions(parent: TransactionRow, parent_item: ItemRow, *, warn: bool = True) -> List[ChildPlan]:
    """Plan the child transactions implied by a bundle transaction.

    Args:
        parent (TransactionRow): Transaction written against ``parent_item``.
        parent_item (ItemRow): Item the transaction belongs to.
        warn (bool): Log dropped package quantities. Reconciliation passes
            ``False`` to avoid repeating the warning on every scan.

    Returns:
        list[ChildPlan]: One plan per component; empty for non-bundles.
    """

    if not parent_item.is_bundle or not parent_item.components:
        return []

    if warn and any(getattr(parent, name) for name in UNSCALED_FIELDS):
        log.warning(
            "Bundle transaction '%s' carries package quantities; components of '%s' receive unit quantities only",
            parent.transaction_id,
            parent_item.item_id,
        )

    plans: List[ChildPlan] = []
    for component in parent_item.components:
        if component.component_item_id == parent_item.item_id:
            log.warning("Bundle '%s' lists itself as a component; skipping", parent_item.item_id)
            continue
        qty = component.quantity or 1
        plans.append(
            ChildPlan(
                component_item_id=component.component_item_id,
                quantity=qty,
                date=parent.date,
                location_id=parent.location_id,
                parent_item_id=parent.item_id,
                source=parent.source,
                **{name: getattr(parent, name) * qty for name in SCALED_FIELDS},
            )
        )
    return plans


def find_cascade_issues(
    transactions: Iterable[TransactionRow],
    items_by_id: Mapping[str, ItemRow],
) -> List[CascadeIssue]:
    """Compare the log against the children every bundle row implies.

    Three kinds of problem are reported:

    * ``MISSING``: a bundle row lacks the child for one of its components,
      typically after a partially failed cascade.
    * ``STALE``: a child exists but its units or source no longer match the
      parent times the component quantity.
    * ``ORPHANED``: a child whose parent row was deleted, or whose component
      was removed from the bundle.

    Cascades are single-level: rows already tagged with a parent are never
    expanded again.
    """

    rows = list(transactions)
    by_key: Dict[TransactionKey, TransactionRow] = {row.key: row for row in rows}
    issues: List[CascadeIssue] = []

    for row in rows:
        if row.parent_item_id is not None:
            continue
        item = items_by_id.get(row.item_id)
        if item is None:
            continue
        for plan in build_child_transactions(row, item, warn=False):
            child = by_key.get(plan.key)
            if child is None:
                issues.append(
                    CascadeIssue(
                        kind=IssueKind.MISSING,
                        date=plan.date,
                        location_id=plan.location_id,
                        item_id=plan.component_item_id,
                        parent_item_id=plan.parent_item_id,
                        detail=f"parent transaction {row.transaction_id}",
                    )
                )
            elif not plan.matches(child):
                issues.append(
                    CascadeIssue(
                        kind=IssueKind.STALE,
                        date=plan.date,
                        location_id=plan.location_id,
                        item_id=plan.component_item_id,
                        parent_item_id=plan.parent_item_id,
                        transaction_id=child.transaction_id,
                        detail=f"parent transaction {row.transaction_id}",
                    )
                )

    for row in rows:
        if row.parent_item_id is None:
            continue
        parent_row = by_key.get((row.date, row.parent_item_id, row.location_id, None))
        parent_item = items_by_id.get(row.parent_item_id)
        listed = parent_item is not None and any(
            c.component_item_id == row.item_id for c in parent_item.components
        )
        if parent_row is None or not listed:
            issues.append(
                CascadeIssue(
                    kind=IssueKind.ORPHANED,
                    date=row.date,
                    location_id=row.location_id,
                    item_id=row.item_id,
                    parent_item_id=row.parent_item_id,
                    transaction_id=row.transaction_id,
                    detail="parent row missing" if parent_row is None else "component no longer in bundle",
                )
            )

    return issues


__all__ = [
    "ChildPlan",
    "CascadeFailure",
    "CascadeResult",
    "CascadeIssue",
    "build_child_transactions",
    "find_cascade_issues",
]
