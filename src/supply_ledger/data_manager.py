"""Data access layer for the supply ledger.

This module provides low-level helpers that read from and write to the
ledger workbook. Balance rules and cascade logic belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading structured records, appending master data, and
   upserting, replacing, or deleting transaction rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import MAIN_STREAM, SheetName, TransactionSource


CONFIG_FILE_NAME = "config.ini"
ITEMS_SHEET = SheetName.ITEMS.value
LOCATIONS_SHEET = SheetName.LOCATIONS.value
TRANSACTION_LOG_SHEET = SheetName.TRANSACTION_LOG.value

ITEM_COLUMNS = (
    "ItemID",
    "ItemName",
    "Category",
    "Package",
    "DefaultKingRoomQty",
    "DefaultDoubleQueenQty",
    "IsBundle",
    "BundleItems",
)
LOCATION_COLUMNS = ("LocationID", "LocationName", "Category", "Items")
TRANSACTION_COLUMNS = (
    "TransactionID",
    "Date",
    "ItemID",
    "LocationID",
    "ParentItemID",
    "Source",
    "CountedUnit",
    "CountedPackage",
    "PurchasedUnit",
    "PurchasedPackage",
    "SoakUnit",
    "SoakPackage",
    "ConsumedUnit",
    "ConsumedPackage",
    "CreatedAt",
    "UpdatedAt",
)

# Quantity fields carried by every transaction, in column order.
QUANTITY_FIELDS = (
    "counted_units",
    "counted_packages",
    "purchased_units",
    "purchased_packages",
    "soak_units",
    "soak_packages",
    "consumed_units",
    "consumed_packages",
)

TransactionKey = Tuple[date, str, str, Optional[str]]


@dataclass(frozen=True)
class RoomSettings:
    """Room counts and report thresholds used by the par-level report."""

    king_room_count: int = 0
    double_queen_room_count: int = 0
    par_level_threshold: float = 1.0


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    property_name: str
    schema_version: str
    rooms: RoomSettings = RoomSettings()


@dataclass(frozen=True)
class BundleComponent:
    """One component of a bundle item and how many units one bundle holds."""

    component_item_id: str
    quantity: int


@dataclass(frozen=True)
class ItemRow:
    """In-memory view of a row from the ``Items`` sheet."""

    item_id: str
    item_name: str
    category: Optional[str]
    package_descriptor: Optional[str]
    default_king_qty: int = 0
    default_queen_qty: int = 0
    is_bundle: bool = False
    components: Tuple[BundleComponent, ...] = ()


@dataclass(frozen=True)
class LocationRow:
    """In-memory view of a row from the ``Locations`` sheet."""

    location_id: str
    location_name: str
    category: Optional[str]
    assigned_item_ids: Tuple[str, ...] = ()

    @property
    def group_name(self) -> str:
        """Report grouping key: the category, else the location name."""
        return self.category or self.location_name


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``TransactionLog`` sheet."""

    transaction_id: str
    date: date
    item_id: str
    location_id: str
    parent_item_id: Optional[str]
    source: TransactionSource
    counted_units: int = 0
    counted_packages: int = 0
    purchased_units: int = 0
    purchased_packages: int = 0
    soak_units: int = 0
    soak_packages: int = 0
    consumed_units: int = 0
    consumed_packages: int = 0
    created_at: str = ""
    updated_at: str = ""

    @property
    def key(self) -> TransactionKey:
        """Upsert key identifying the single row allowed per stream and day."""
        return (self.date, self.item_id, self.location_id, self.parent_item_id)

    @property
    def stream_key(self) -> str:
        return self.parent_item_id or MAIN_STREAM


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the
    current working directory toward the filesystem root looking for a file
    named ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. The ``[Rooms]`` and ``[Reports]``
    sections are optional and default to zero rooms and a par-level
    threshold of ``1``. Relative ``DataFile`` entries are anchored to
    ``base_path`` (or the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required options is missing.
        ValueError: If a room count or threshold is not numeric.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        property_name = parser.get("System", "PropertyName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    rooms = RoomSettings(
        king_room_count=parser.getint("Rooms", "KingRoomCount", fallback=0),
        double_queen_room_count=parser.getint("Rooms", "DoubleQueenRoomCount", fallback=0),
        par_level_threshold=parser.getfloat("Reports", "ParLevelThreshold", fallback=1.0),
    )

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        property_name=property_name,
        schema_version=schema_version,
        rooms=rooms,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_items(workbook: Workbook) -> Iterable[ItemRow]:
    """Iterate over item records stored on the ``Items`` worksheet."""

    for raw in _iter_sheet(workbook, ITEMS_SHEET):
        yield deserialize_item(raw)


def iter_locations(workbook: Workbook) -> Iterable[LocationRow]:
    """Iterate over the ``Locations`` worksheet and yield typed records."""

    for raw in _iter_sheet(workbook, LOCATIONS_SHEET):
        yield deserialize_location(raw)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream transaction records from the ``TransactionLog`` worksheet.

    The generator skips headers and rows whose cells are all ``None``. Each
    meaningful row is transformed into a :class:`TransactionRow` via
    :func:`deserialize_transaction`, so dates become :class:`datetime.date`
    values, quantities become integers, and the source label becomes a
    :class:`TransactionSource` member.

    Args:
        workbook (Workbook): Workbook containing the transaction log sheet.

    Yields:
        TransactionRow: Normalized transaction record for each populated row.
    """

    for raw in _iter_sheet(workbook, TRANSACTION_LOG_SHEET):
        yield deserialize_transaction(raw)


def append_item(workbook: Workbook, record: ItemRow) -> None:
    """Append an item record to the ``Items`` worksheet."""

    workbook[ITEMS_SHEET].append(serialize_item(record))


def append_location(workbook: Workbook, record: LocationRow) -> None:
    """Append a location record to the ``Locations`` worksheet."""

    workbook[LOCATIONS_SHEET].append(serialize_location(record))


def update_location(workbook: Workbook, location_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing location.

    The function locates the row whose ``LocationID`` matches
    ``location_id``, validates that each requested field exists in the header
    row, and writes the provided values into the corresponding cells. Only
    the specified fields are modified.

    Args:
        workbook (Workbook): Workbook containing the locations sheet.
        location_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the location or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, LOCATIONS_SHEET, "LocationID", location_id)
    if row_index is None:
        raise KeyError(f"Location not found: {location_id}")

    sheet = workbook[LOCATIONS_SHEET]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown location field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def locate_transaction(workbook: Workbook, key: TransactionKey) -> Optional[int]:
    """Find the transaction row holding the upsert key ``key``.

    The key is ``(date, item_id, location_id, parent_item_id)``. Rows are
    deserialized before comparison so that blank parent cells match
    ``None`` and date cells written by Excel match ISO strings.

    Returns:
        int | None: 1-based row index of the first matching row.
    """

    sheet = workbook[TRANSACTION_LOG_SHEET]
    for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if not any(cell is not None for cell in raw):
            continue
        if deserialize_transaction(raw).key == key:
            return row_idx
    return None


def _write_row(workbook: Workbook, sheet_name: str, row_index: int, values: Sequence[object]) -> None:
    sheet = workbook[sheet_name]
    for column_index, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=column_index, value=value)


def upsert_transaction(workbook: Workbook, record: TransactionRow) -> bool:
    """Write ``record`` over the row sharing its key, or append it.

    The workbook allows one row per ``(date, item, location, stream)``; this
    is the storage-level guarantee that repeated same-day writes replace
    each other instead of piling up duplicate anchors.

    Args:
        workbook (Workbook): Workbook containing the transaction log.
        record (TransactionRow): Fully merged transaction to store.

    Returns:
        bool: ``True`` when a new row was appended, ``False`` when an
            existing row was overwritten.
    """

    row_index = locate_transaction(workbook, record.key)
    if row_index is None:
        workbook[TRANSACTION_LOG_SHEET].append(serialize_transaction(record))
        return True
    _write_row(workbook, TRANSACTION_LOG_SHEET, row_index, serialize_transaction(record))
    return False


def replace_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Overwrite the row whose ``TransactionID`` matches ``record``.

    Raises:
        KeyError: If no row carries ``record.transaction_id``.
    """

    row_index = locate_row(workbook, TRANSACTION_LOG_SHEET, "TransactionID", record.transaction_id)
    if row_index is None:
        raise KeyError(f"Transaction not found: {record.transaction_id}")
    _write_row(workbook, TRANSACTION_LOG_SHEET, row_index, serialize_transaction(record))


def delete_transaction(workbook: Workbook, transaction_id: str) -> None:
    """Hard-delete the row carrying ``transaction_id``.

    Raises:
        KeyError: If no row carries ``transaction_id``.
    """

    row_index = locate_row(workbook, TRANSACTION_LOG_SHEET, "TransactionID", transaction_id)
    if row_index is None:
        raise KeyError(f"Transaction not found: {transaction_id}")
    workbook[TRANSACTION_LOG_SHEET].delete_rows(row_index)


def format_components(components: Iterable[BundleComponent]) -> Optional[str]:
    """Encode bundle components as ``"ID:qty;ID:qty"`` for a single cell."""

    text = ";".join(f"{c.component_item_id}:{c.quantity}" for c in components)
    return text or None


def parse_components(raw: object) -> Tuple[BundleComponent, ...]:
    """Decode a ``BundleItems`` cell into :class:`BundleComponent` records.

    Entries without a quantity default to ``1``. Blank entries are ignored.

    Raises:
        ValueError: If a quantity is not an integer.
    """

    if raw is None:
        return ()
    components = []
    for chunk in str(raw).split(";"):
        chunk = chunk.strip()
        if not chunk:
            continue
        item_id, _, qty = chunk.partition(":")
        quantity = int(qty) if qty.strip() else 1
        components.append(BundleComponent(component_item_id=item_id.strip(), quantity=quantity))
    return tuple(components)


def _as_int(raw: object) -> int:
    if raw is None or raw == "":
        return 0
    try:
        value = Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Expected a whole number, found {raw!r}") from exc
    if not value.is_finite() or value != value.to_integral_value():
        raise ValueError(f"Expected a whole number, found {raw!r}")
    return int(value)


def _as_bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"true", "1", "yes", "y"}
    return bool(raw)


def _as_date(raw: object) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw).strip()[:10])


def _as_optional_str(raw: object) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def serialize_item(record: ItemRow) -> list[object]:
    """Convert an item dataclass into the ``Items`` column ordering."""

    return [
        record.item_id,
        record.item_name,
        record.category,
        record.package_descriptor,
        record.default_king_qty,
        record.default_queen_qty,
        record.is_bundle,
        format_components(record.components),
    ]


def serialize_location(record: LocationRow) -> list[object]:
    """Convert a location dataclass into the ``Locations`` column ordering."""

    return [
        record.location_id,
        record.location_name,
        record.category,
        ";".join(record.assigned_item_ids) or None,
    ]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the transaction log column order.

    Dates are written as ISO strings so Excel does not reinterpret them as
    local datetimes; the source is written as its stored label.
    """

    return [
        record.transaction_id,
        record.date.isoformat(),
        record.item_id,
        record.location_id,
        record.parent_item_id,
        record.source.value,
        *(getattr(record, name) for name in QUANTITY_FIELDS),
        record.created_at,
        record.updated_at,
    ]


def deserialize_item(raw_row: Sequence[object]) -> ItemRow:
    """Convert a raw worksheet row into a strongly typed item record."""

    (
        item_id,
        item_name,
        category,
        package,
        king_qty,
        queen_qty,
        is_bundle,
        bundle_items,
    ) = tuple(raw_row[: len(ITEM_COLUMNS)])

    return ItemRow(
        item_id=str(item_id),
        item_name=str(item_name) if item_name is not None else "",
        category=_as_optional_str(category),
        package_descriptor=_as_optional_str(package),
        default_king_qty=_as_int(king_qty),
        default_queen_qty=_as_int(queen_qty),
        is_bundle=_as_bool(is_bundle),
        components=parse_components(bundle_items),
    )


def deserialize_location(raw_row: Sequence[object]) -> LocationRow:
    """Convert a raw worksheet row into a strongly typed location record."""

    location_id, location_name, category, items = tuple(raw_row[: len(LOCATION_COLUMNS)])
    assigned = tuple(
        part.strip() for part in str(items).split(";") if part.strip()
    ) if items is not None else ()
    return LocationRow(
        location_id=str(location_id),
        location_name=str(location_name) if location_name is not None else "",
        category=_as_optional_str(category),
        assigned_item_ids=assigned,
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed transaction record.

    Quantity columns are normalized into integers (blank cells become ``0``),
    the parent column remains ``None`` when blank, and unknown source labels
    are logged and treated as :attr:`TransactionSource.UNSPECIFIED` so that a
    single malformed row does not block every balance read.

    Args:
        raw_row (Sequence[object]): Raw cell values from the transaction log row
            in their worksheet order.

    Returns:
        TransactionRow: Dataclass reflecting the row contents with consistent
            Python types.
    """

    values = tuple(raw_row[: len(TRANSACTION_COLUMNS)])
    values += (None,) * (len(TRANSACTION_COLUMNS) - len(values))
    transaction_id, raw_date, item_id, location_id, parent_item_id, source_raw = values[:6]
    quantities = values[6:14]
    created_at, updated_at = values[14:16]

    try:
        source = TransactionSource.parse(source_raw)
    except ValueError:
        log.warning(
            "Transaction '%s' has unknown source '%s'; treating as unspecified",
            transaction_id,
            source_raw,
        )
        source = TransactionSource.UNSPECIFIED

    return TransactionRow(
        transaction_id=str(transaction_id),
        date=_as_date(raw_date),
        item_id=str(item_id),
        location_id=str(location_id),
        parent_item_id=_as_optional_str(parent_item_id),
        source=source,
        **{name: _as_int(value) for name, value in zip(QUANTITY_FIELDS, quantities)},
        created_at=str(created_at) if created_at is not None else "",
        updated_at=str(updated_at) if updated_at is not None else "",
    )
