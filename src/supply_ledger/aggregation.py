"""Read-only stock views built on the balance engine.

Every function in this module is a pure function of master data plus the
transaction log. Totals are accumulated as raw integer units and only split
into ``(packages, units)`` when a result record is built.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import balance
from .data_manager import ItemRow, LocationRow, RoomSettings, TransactionRow
from .units import from_total_units, package_size


UNKNOWN_LOCATION_NAME = "Unknown"

_IndexKey = Tuple[str, str]


@dataclass(frozen=True)
class StockTotal:
    """Current stock of one item summed over every assigned location."""

    item_id: str
    total_units: int
    packages: int
    units: int


@dataclass(frozen=True)
class LocationStock:
    """Current stock of one item at one location."""

    location_id: str
    location_name: str
    total_units: int
    packages: int
    units: int


@dataclass(frozen=True)
class OpeningBalance:
    """Stock of one item carried into a day at one location."""

    item_id: str
    opening_units: int
    packages: int
    units: int


@dataclass(frozen=True)
class CombinedStock:
    """Opening balances plus the day's transactions for one location."""

    as_of: date
    location_id: str
    opening_balances: Dict[str, OpeningBalance]
    transactions: Dict[str, List[TransactionRow]]


@dataclass(frozen=True)
class ParLevelRow:
    """Par-level line for one item with room requirements."""

    item_id: str
    item_name: str
    king_required: int
    queen_required: int
    group_totals: Dict[str, int] = field(default_factory=dict)
    total_available: int = 0
    par_level: Optional[float] = None
    below_threshold: bool = False

    @property
    def required(self) -> int:
        return self.king_required + self.queen_required


def index_by_item_location(transactions: Iterable[TransactionRow]) -> Dict[_IndexKey, List[TransactionRow]]:
    """Bucket the log by ``(item_id, location_id)``."""

    index: Dict[_IndexKey, List[TransactionRow]] = defaultdict(list)
    for txn in transactions:
        index[(txn.item_id, txn.location_id)].append(txn)
    return dict(index)


def _size_of(item: Optional[ItemRow]) -> int:
    return package_size(item.package_descriptor) if item is not None else 1


def _location_total(index: Mapping[_IndexKey, Sequence[TransactionRow]], item: ItemRow, location_id: str) -> int:
    rows = index.get((item.item_id, location_id), ())
    return balance.consolidated_balance(rows, _size_of(item))


def current_stock(
    items: Iterable[ItemRow],
    locations: Iterable[LocationRow],
    transactions: Iterable[TransactionRow],
) -> List[StockTotal]:
    """Current stock of every item across the locations assigned to it."""

    index = index_by_item_location(transactions)
    location_list = list(locations)
    results: List[StockTotal] = []
    for item in items:
        total = sum(
            _location_total(index, item, location.location_id)
            for location in location_list
            if item.item_id in location.assigned_item_ids
        )
        packages, units = from_total_units(total, _size_of(item))
        results.append(StockTotal(item_id=item.item_id, total_units=total, packages=packages, units=units))
    return results


def stock_by_location(
    item: ItemRow,
    locations: Iterable[LocationRow],
    transactions: Iterable[TransactionRow],
) -> List[LocationStock]:
    """Current stock of ``item`` broken down by location.

    Locations assigned the item are listed even without history. Locations
    holding transactions for the item are listed even when the assignment
    was later removed; unknown location ids are reported under
    ``"Unknown"``. Results are sorted by location name.
    """

    location_list = list(locations)
    names = {location.location_id: location.location_name for location in location_list}
    index = index_by_item_location(txn for txn in transactions if txn.item_id == item.item_id)

    relevant = {location_id for (_, location_id) in index}
    relevant.update(
        location.location_id for location in location_list if item.item_id in location.assigned_item_ids
    )

    size = _size_of(item)
    results: List[LocationStock] = []
    for location_id in relevant:
        total = _location_total(index, item, location_id)
        packages, units = from_total_units(total, size)
        results.append(
            LocationStock(
                location_id=location_id,
                location_name=names.get(location_id, UNKNOWN_LOCATION_NAME),
                total_units=total,
                packages=packages,
                units=units,
            )
        )
    results.sort(key=lambda row: (row.location_name, row.location_id))
    return results


def opening_balances(
    items_by_id: Mapping[str, ItemRow],
    location_id: str,
    transactions: Iterable[TransactionRow],
    as_of: date,
    *,
    assigned_item_ids: Iterable[str] = (),
) -> Dict[str, OpeningBalance]:
    """Balance of every item at ``location_id`` carried into ``as_of``.

    Covers ``assigned_item_ids`` plus any item that has history at the
    location. Items missing from ``items_by_id`` are converted with a package
    size of one.
    """

    index = index_by_item_location(
        txn for txn in transactions if txn.location_id == location_id
    )
    item_ids = list(assigned_item_ids)
    item_ids.extend(sorted(item_id for (item_id, _) in index if item_id not in item_ids))

    result: Dict[str, OpeningBalance] = {}
    for item_id in item_ids:
        size = _size_of(items_by_id.get(item_id))
        rows = index.get((item_id, location_id), ())
        total = balance.consolidated_balance(rows, size, cutoff=as_of, inclusive=False)
        packages, units = from_total_units(total, size)
        result[item_id] = OpeningBalance(item_id=item_id, opening_units=total, packages=packages, units=units)
    return result


def combined_stock(
    items_by_id: Mapping[str, ItemRow],
    location_id: str,
    transactions: Iterable[TransactionRow],
    as_of: date,
    *,
    assigned_item_ids: Iterable[str] = (),
) -> CombinedStock:
    """Opening balances and same-day transactions for one location in one pass."""

    rows = [txn for txn in transactions if txn.location_id == location_id]
    day_rows: Dict[str, List[TransactionRow]] = defaultdict(list)
    for txn in balance.replay_order(rows):
        if txn.date == as_of:
            day_rows[txn.item_id].append(txn)
    return CombinedStock(
        as_of=as_of,
        location_id=location_id,
        opening_balances=opening_balances(
            items_by_id, location_id, rows, as_of, assigned_item_ids=assigned_item_ids
        ),
        transactions=dict(day_rows),
    )


def group_locations(locations: Iterable[LocationRow]) -> Dict[str, List[LocationRow]]:
    """Group locations by category, falling back to the location name.

    Groups are returned in alphabetical order of their names.
    """

    groups: Dict[str, List[LocationRow]] = defaultdict(list)
    for location in locations:
        groups[location.group_name].append(location)
    return {name: groups[name] for name in sorted(groups)}


def par_level(required: int, available: int) -> Optional[float]:
    """``1 + available / required``; ``None`` when nothing is required."""

    if required <= 0:
        return None
    return 1 + available / required


def par_level_report(
    items: Iterable[ItemRow],
    locations: Iterable[LocationRow],
    transactions: Iterable[TransactionRow],
    rooms: RoomSettings,
) -> List[ParLevelRow]:
    """Compare stock on hand with what a full turnover of rooms needs.

    Only items with a nonzero default quantity for king or double-queen
    rooms are reported. Stock is the current balance of each item at every
    location, summed per location group.
    """

    index = index_by_item_location(transactions)
    groups = group_locations(locations)

    rows: List[ParLevelRow] = []
    for item in items:
        if not (item.default_king_qty or item.default_queen_qty):
            continue
        king_required = item.default_king_qty * rooms.king_room_count
        queen_required = item.default_queen_qty * rooms.double_queen_room_count

        group_totals = {
            name: sum(_location_total(index, item, location.location_id) for location in members)
            for name, members in groups.items()
        }
        total_available = sum(group_totals.values())
        level = par_level(king_required + queen_required, total_available)
        rows.append(
            ParLevelRow(
                item_id=item.item_id,
                item_name=item.item_name,
                king_required=king_required,
                queen_required=queen_required,
                group_totals=group_totals,
                total_available=total_available,
                par_level=level,
                below_threshold=level is not None and level < rooms.par_level_threshold,
            )
        )
    return rows


__all__ = [
    "StockTotal",
    "LocationStock",
    "OpeningBalance",
    "CombinedStock",
    "ParLevelRow",
    "index_by_item_location",
    "current_stock",
    "stock_by_location",
    "opening_balances",
    "combined_stock",
    "group_locations",
    "par_level",
    "par_level_report",
]
