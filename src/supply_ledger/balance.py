"""Balance engine for the supply ledger.

Balances are never stored. Every read replays the transaction log of one
stream with the reset-then-replay rule:

* the latest ``Stock Count`` at or before the cutoff is the anchor,
* every delta dated strictly after the anchor day and within the cutoff is
  added (purchases and soak returns) or subtracted (consumption).

A location's balance for an item is the sum of independent streams: the
item's own MAIN stream plus one stream per bundle that cascades into it.
Counting loose pillowcases therefore resets the MAIN stream only and leaves
the quantity contributed by counted bundles untouched.

All functions here are pure; they take immutable rows and return integers.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence

from . import log
from .data_manager import TransactionRow
from .units import to_total_units


@dataclass(frozen=True)
class Balance:
    """Opening and closing total units for one stream or stream group."""

    opening_units: int
    closing_units: int

    @property
    def movement(self) -> int:
        return self.closing_units - self.opening_units


def replay_order(transactions: Iterable[TransactionRow]) -> List[TransactionRow]:
    """Return ``transactions`` sorted by ``(date, created_at)`` ascending.

    ``created_at`` values are ISO-8601 UTC strings, so lexical order is
    chronological. Same-day rows therefore replay in insertion order and the
    last same-day count is authoritative.
    """

    return sorted(transactions, key=lambda txn: (txn.date, txn.created_at))


def counted_total(transaction: TransactionRow, size: int) -> int:
    """Absolute total units recorded by a count transaction."""

    return to_total_units(transaction.counted_packages, transaction.counted_units, size)


def transaction_delta(transaction: TransactionRow, size: int) -> int:
    """Signed total-unit change carried by a non-count transaction."""

    purchased = to_total_units(transaction.purchased_packages, transaction.purchased_units, size)
    soak = to_total_units(transaction.soak_packages, transaction.soak_units, size)
    consumed = to_total_units(transaction.consumed_packages, transaction.consumed_units, size)
    return purchased + soak - consumed


def _within(day: date, cutoff: Optional[date], inclusive: bool) -> bool:
    if cutoff is None:
        return True
    return day <= cutoff if inclusive else day < cutoff


def replay(
    transactions: Sequence[TransactionRow],
    size: int,
    *,
    cutoff: Optional[date] = None,
    inclusive: bool = True,
) -> int:
    """Compute the balance of a single stream up to ``cutoff``.

    Args:
        transactions (Sequence[TransactionRow]): Every row of one stream, in
            any order.
        size (int): Package-size factor of the stream's item.
        cutoff (date | None): Last day to consider. ``None`` replays the
            entire stream.
        inclusive (bool): Whether rows dated on ``cutoff`` are included.

    Returns:
        int: Total units. Negative values are returned as-is; they point at a
            data-entry problem upstream rather than an engine fault.
    """

    ordered = [
        txn for txn in replay_order(transactions)
        if _within(txn.date, cutoff, inclusive)
    ]

    anchor_value = 0
    anchor_date: Optional[date] = None
    for txn in ordered:
        if txn.source.is_anchor:
            anchor_value = counted_total(txn, size)
            anchor_date = txn.date

    deltas = sum(
        transaction_delta(txn, size)
        for txn in ordered
        if not txn.source.is_anchor and (anchor_date is None or txn.date > anchor_date)
    )
    return anchor_value + deltas


def opening_balance(transactions: Sequence[TransactionRow], size: int, as_of: date) -> int:
    """Balance carried into ``as_of``: every row strictly before that day."""

    return replay(transactions, size, cutoff=as_of, inclusive=False)


def closing_balance(transactions: Sequence[TransactionRow], size: int, as_of: Optional[date] = None) -> int:
    """Balance at the end of ``as_of``, or of the whole log when ``None``."""

    return replay(transactions, size, cutoff=as_of, inclusive=True)


def stream_balance(transactions: Sequence[TransactionRow], size: int, as_of: date) -> Balance:
    return Balance(
        opening_units=opening_balance(transactions, size, as_of),
        closing_units=closing_balance(transactions, size, as_of),
    )


def partition_streams(transactions: Iterable[TransactionRow]) -> Dict[str, List[TransactionRow]]:
    """Group one item/location's rows by stream tag.

    Rows without a parent item land under ``MAIN``; cascaded rows are keyed
    by the bundle item that produced them.
    """

    streams: Dict[str, List[TransactionRow]] = defaultdict(list)
    for txn in transactions:
        streams[txn.stream_key].append(txn)
    return dict(streams)


def consolidated_balance(
    transactions: Sequence[TransactionRow],
    size: int,
    *,
    cutoff: Optional[date] = None,
    inclusive: bool = True,
) -> int:
    """Sum of independently replayed streams for one item and location."""

    total = 0
    for stream_key, rows in partition_streams(transactions).items():
        value = replay(rows, size, cutoff=cutoff, inclusive=inclusive)
        log.debug("Stream '%s' replayed to %d units over %d rows", stream_key, value, len(rows))
        total += value
    if total < 0 and transactions:
        sample = transactions[0]
        log.warning(
            "Negative balance %d for item '%s' at location '%s' (cutoff=%s)",
            total,
            sample.item_id,
            sample.location_id,
            cutoff,
        )
    return total


def consolidated_stream_balance(transactions: Sequence[TransactionRow], size: int, as_of: date) -> Balance:
    return Balance(
        opening_units=consolidated_balance(transactions, size, cutoff=as_of, inclusive=False),
        closing_units=consolidated_balance(transactions, size, cutoff=as_of, inclusive=True),
    )


__all__ = [
    "Balance",
    "replay_order",
    "counted_total",
    "transaction_delta",
    "replay",
    "opening_balance",
    "closing_balance",
    "stream_balance",
    "partition_streams",
    "consolidated_balance",
    "consolidated_stream_balance",
]
