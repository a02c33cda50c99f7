"""Enumerations shared across the supply ledger modules.

Centralises domain constants so that the data access layer (DAL), the balance
engine, and the business logic layer (BLL) rely on a single source of truth
for transaction sources, sheet names, and stream keys.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Stream key used for transactions that were not cascaded from a bundle.
MAIN_STREAM = "MAIN"


class TransactionSource(str, Enum):
    """Enumerate the origins a ledger transaction can have.

    Values are the labels stored in the ``Source`` column of the log.
    ``COUNT`` is the only anchor; every other member is applied as a delta.
    """

    COUNT = "Stock Count"
    PURCHASE = "Stock Purchase"
    SOAK = "Soak Cycle"
    CONSUMPTION = "Consumption"
    UNSPECIFIED = ""

    @property
    def is_anchor(self) -> bool:
        return self is TransactionSource.COUNT

    @classmethod
    def parse(cls, raw: object) -> "TransactionSource":
        """Resolve a stored label or member name into an enum member.

        Blank cells map to ``UNSPECIFIED``. Member names (``"COUNT"``) are
        accepted alongside the stored labels so command-line input stays
        short. Unknown labels raise :class:`ValueError`.
        """

        if raw is None:
            return cls.UNSPECIFIED
        if isinstance(raw, cls):
            return raw
        text = str(raw).strip()
        for member in cls:
            if text == member.value or text.upper() == member.name:
                return member
        raise ValueError(f"Unknown transaction source: {raw!r}")


class IssueKind(str, Enum):
    """Enumerate cascade consistency problems found during reconciliation."""

    MISSING = "MISSING"
    STALE = "STALE"
    ORPHANED = "ORPHANED"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    ITEMS = "Items"
    LOCATIONS = "Locations"
    TRANSACTION_LOG = "TransactionLog"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MAIN_STREAM",
    "TransactionSource",
    "IssueKind",
    "SheetName",
]
