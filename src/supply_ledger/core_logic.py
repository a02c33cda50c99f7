"""Business logic layer for the supply ledger.

This module orchestrates writes to the ``TransactionLog`` and the read views
built on the balance engine. It consumes the Data Access Layer (DAL) for all
I/O; balances are always replayed from rows and never stored.

Writes follow one rule set:

* one row per ``(date, item, location, stream)``; repeated same-day writes
  merge into that row,
* every write to a bundle cascades onto its components,
* nothing reaches disk until :func:`persist_context` is called.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from uuid import uuid4

from openpyxl.workbook import Workbook

from . import aggregation, balance, cascade, data_manager, log
from .cascade import CascadeFailure, CascadeIssue, CascadeResult
from .constants import EXPECTED_SCHEMA_VERSION, IssueKind, TransactionSource
from .units import package_size, to_total_units


COUNTED_FIELDS = ("counted_units", "counted_packages")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced item, location, or transaction is unknown."""


class CountExceedsBalanceWarning(BusinessRuleViolation):
    """Raised when a stock count exceeds what the stream could hold.

    Set ``force=True`` on the command to record the count anyway.
    """


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class TransactionCommand:
    """User intent for writing one day's activity of an item at a location.

    Quantity fields left as ``None`` keep whatever the stored row already
    holds for the same key; a fresh row stores them as ``0``. A count is the
    exception: counted fields it leaves out are reset to ``0``.
    """

    date: date
    item_id: str
    location_id: str
    source: TransactionSource
    counted_units: Optional[int] = None
    counted_packages: Optional[int] = None
    purchased_units: Optional[int] = None
    purchased_packages: Optional[int] = None
    soak_units: Optional[int] = None
    soak_packages: Optional[int] = None
    consumed_units: Optional[int] = None
    consumed_packages: Optional[int] = None
    force: bool = False
    timestamp: Optional[datetime] = None

    def provided_quantities(self) -> Dict[str, int]:
        return {
            name: getattr(self, name)
            for name in data_manager.QUANTITY_FIELDS
            if getattr(self, name) is not None
        }


@dataclass(frozen=True)
class DeleteResult:
    """Outcome of deleting a transaction row.

    Deleting a bundle row leaves its cascaded children in place; their ids
    are listed in ``orphaned_child_ids`` so they can be reviewed or pruned
    with :func:`reconcile_cascades`.
    """

    deleted: data_manager.TransactionRow
    orphaned_child_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ReconcileReport:
    """Summary of a cascade reconciliation pass."""

    issues: Tuple[CascadeIssue, ...] = ()
    repaired: Tuple[CascadeResult, ...] = ()
    pruned_ids: Tuple[str, ...] = ()

    @property
    def clean(self) -> bool:
        return not self.issues


EDITABLE_FIELDS = frozenset(data_manager.QUANTITY_FIELDS) | {"source"}
KEY_FIELDS = frozenset({"date", "item_id", "location_id", "parent_item_id"})


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when ``None``, the current UTC datetime."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    The business logic layer keeps in-memory caches keyed by domain area
    (items, locations, transactions). Buckets are plain dictionaries holding
    row lists and lookup maps so repeated reads do not rescan the workbook.
    Balances are never cached.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache
            dictionary.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping for the bucket.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Args:
        context (RuntimeContext): Active runtime context whose cache should be
            pruned.
        *names (str): Bucket identifiers to remove. Missing buckets are
            ignored.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_items_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "items")
    if "all" not in bucket:
        all_items = list(data_manager.iter_items(context.workbook))
        bucket["all"] = all_items
        bucket["by_id"] = {item.item_id: item for item in all_items}
        log.debug("Populated items cache with %d entries", len(all_items))
    return bucket


def _ensure_locations_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "locations")
    if "all" not in bucket:
        all_locations = list(data_manager.iter_locations(context.workbook))
        bucket["all"] = all_locations
        bucket["by_id"] = {location.location_id: location for location in all_locations}
        log.debug("Populated locations cache with %d entries", len(all_locations))
    return bucket


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the transaction log cache bucket on demand.

    Besides the full list, the bucket holds a ``by_id`` lookup, a ``by_key``
    lookup on the upsert key, and ``by_item_location`` groups used by every
    balance read. All of it is dropped on the next write.

    Args:
        context (RuntimeContext): Runtime state used to access the workbook and
            shared caches.

    Returns:
        dict[str, Any]: The populated bucket.
    """

    bucket = _get_cache_bucket(context, "transactions")
    if "all" not in bucket:
        all_transactions = list(data_manager.iter_transactions(context.workbook))
        bucket["all"] = all_transactions
        bucket["by_id"] = {txn.transaction_id: txn for txn in all_transactions}
        bucket["by_key"] = {txn.key: txn for txn in all_transactions}
        bucket["by_item_location"] = aggregation.index_by_item_location(all_transactions)
        log.debug("Populated transactions cache with %d entries", len(all_transactions))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context bundling settings, the workbook handle, and an
            empty cache store.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def list_items(context: RuntimeContext) -> List[data_manager.ItemRow]:
    """Return the cached item rows in sheet order."""

    return list(_ensure_items_cache(context)["all"])


def list_locations(context: RuntimeContext) -> List[data_manager.LocationRow]:
    """Return the cached location rows in sheet order."""

    return list(_ensure_locations_cache(context)["all"])


def list_transactions(
    context: RuntimeContext,
    *,
    on: Optional[date] = None,
    location_id: Optional[str] = None,
    item_id: Optional[str] = None,
) -> List[data_manager.TransactionRow]:
    """Return transactions in replay order, optionally filtered.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        on (date | None): Keep only rows dated on this day.
        location_id (str | None): Keep only rows for this location.
        item_id (str | None): Keep only rows for this item.

    Returns:
        list[data_manager.TransactionRow]: Matching rows sorted by
            ``(date, created_at)``.
    """

    rows = _ensure_transactions_cache(context)["all"]
    selected = [
        txn
        for txn in rows
        if (on is None or txn.date == on)
        and (location_id is None or txn.location_id == location_id)
        and (item_id is None or txn.item_id == item_id)
    ]
    return balance.replay_order(selected)


def get_item(context: RuntimeContext, item_id: str) -> data_manager.ItemRow:
    """Resolve an item record by its identifier.

    Raises:
        MissingReferenceError: If ``item_id`` is absent from the workbook.
    """

    cache = _ensure_items_cache(context)
    try:
        return cache["by_id"][item_id]
    except KeyError as exc:
        log.warning("Item lookup failed for id '%s'", item_id)
        raise MissingReferenceError(f"Unknown item id: {item_id}") from exc


def get_location(context: RuntimeContext, location_id: str) -> data_manager.LocationRow:
    """Resolve a location record by its identifier.

    Raises:
        MissingReferenceError: If ``location_id`` is absent from the workbook.
    """

    cache = _ensure_locations_cache(context)
    try:
        return cache["by_id"][location_id]
    except KeyError as exc:
        log.warning("Location lookup failed for id '%s'", location_id)
        raise MissingReferenceError(f"Unknown location id: {location_id}") from exc


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Retrieve a transaction row by its primary identifier.

    Raises:
        MissingReferenceError: If the log lacks the supplied identifier.
    """

    cache = _ensure_transactions_cache(context)
    try:
        return cache["by_id"][transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise MissingReferenceError(f"Unknown transaction id: {transaction_id}") from exc


def _find_by_key(context: RuntimeContext, key: data_manager.TransactionKey) -> Optional[data_manager.TransactionRow]:
    return _ensure_transactions_cache(context)["by_key"].get(key)


def _rows_for(context: RuntimeContext, item_id: str, location_id: str) -> List[data_manager.TransactionRow]:
    return list(_ensure_transactions_cache(context)["by_item_location"].get((item_id, location_id), ()))


def add_item(context: RuntimeContext, record: data_manager.ItemRow) -> data_manager.ItemRow:
    """Validate and append a new item to the ``Items`` sheet.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        record (data_manager.ItemRow): Item to create.

    Returns:
        data_manager.ItemRow: The stored record.

    Raises:
        BusinessRuleViolation: If the id is taken, or a bundle has no
            components or lists itself.
        MissingReferenceError: If a bundle component is not a known item.
        ValueError: If a default room quantity or component quantity is
            negative.
    """

    if record.item_id in _ensure_items_cache(context)["by_id"]:
        log.error("Item id '%s' already exists", record.item_id)
        raise BusinessRuleViolation(f"Item '{record.item_id}' already exists")
    require_nonnegative_quantity("default_king_qty", record.default_king_qty)
    require_nonnegative_quantity("default_queen_qty", record.default_queen_qty)

    if record.is_bundle and not record.components:
        raise BusinessRuleViolation(f"Bundle '{record.item_id}' must list at least one component")
    for component in record.components:
        if component.component_item_id == record.item_id:
            raise BusinessRuleViolation(f"Bundle '{record.item_id}' cannot contain itself")
        require_nonnegative_quantity("component quantity", component.quantity)
        get_item(context, component.component_item_id)

    data_manager.append_item(context.workbook, record)
    _invalidate_cache(context, "items")
    log.info("Added item '%s' (%s)", record.item_id, record.item_name)
    return record


def add_location(context: RuntimeContext, record: data_manager.LocationRow) -> data_manager.LocationRow:
    """Validate and append a new location to the ``Locations`` sheet.

    Raises:
        BusinessRuleViolation: If the id is taken.
        MissingReferenceError: If an assigned item is unknown.
    """

    if record.location_id in _ensure_locations_cache(context)["by_id"]:
        log.error("Location id '%s' already exists", record.location_id)
        raise BusinessRuleViolation(f"Location '{record.location_id}' already exists")
    for item_id in record.assigned_item_ids:
        get_item(context, item_id)

    data_manager.append_location(context.workbook, record)
    _invalidate_cache(context, "locations")
    log.info("Added location '%s' (%s)", record.location_id, record.location_name)
    return record


def assign_item_to_location(context: RuntimeContext, location_id: str, item_id: str) -> data_manager.LocationRow:
    """Add ``item_id`` to the items tracked at ``location_id``.

    Assigning an item that is already assigned is a no-op.

    Raises:
        MissingReferenceError: If the item or location is unknown.
    """

    location = get_location(context, location_id)
    get_item(context, item_id)
    if item_id in location.assigned_item_ids:
        log.debug("Item '%s' already assigned to location '%s'", item_id, location_id)
        return location

    updated = replace(location, assigned_item_ids=location.assigned_item_ids + (item_id,))
    data_manager.update_location(
        context.workbook,
        location_id,
        field_values={"Items": ";".join(updated.assigned_item_ids)},
    )
    _invalidate_cache(context, "locations")
    log.info("Assigned item '%s' to location '%s'", item_id, location_id)
    return updated


def merge_command(
    existing: Optional[data_manager.TransactionRow],
    command: TransactionCommand,
    *,
    transaction_id: str,
    timestamp: datetime,
) -> data_manager.TransactionRow:
    """Fold ``command`` into the row already stored under its key.

    Provided quantities overwrite stored ones and omitted delta quantities
    are kept. A count replaces the stored count outright, so counted fields
    it leaves out are reset to ``0``. When either side is a count the merged
    row stays a count: the anchor already subsumes any same-day delta on its
    stream.

    Args:
        existing (data_manager.TransactionRow | None): Row currently stored
            under the command's key.
        command (TransactionCommand): Incoming write.
        transaction_id (str): Identifier used when no row exists yet.
        timestamp (datetime): Write time recorded in ``UpdatedAt`` (and
            ``CreatedAt`` for a fresh row).

    Returns:
        data_manager.TransactionRow: Row ready for upsert.
    """

    stamp = timestamp.isoformat()
    if existing is None:
        return data_manager.TransactionRow(
            transaction_id=transaction_id,
            date=command.date,
            item_id=command.item_id,
            location_id=command.location_id,
            parent_item_id=None,
            source=command.source,
            created_at=stamp,
            updated_at=stamp,
            **command.provided_quantities(),
        )

    quantities = command.provided_quantities()
    if command.source.is_anchor:
        for name in COUNTED_FIELDS:
            quantities.setdefault(name, 0)

    source = command.source
    if existing.source.is_anchor or command.source.is_anchor:
        source = TransactionSource.COUNT
    return replace(existing, source=source, updated_at=stamp, **quantities)


def validate_count(
    context: RuntimeContext,
    row: data_manager.TransactionRow,
    item: data_manager.ItemRow,
) -> None:
    """Reject a MAIN-stream count larger than the stock it could account for.

    The ceiling is the MAIN opening balance of the day plus the same-day
    purchase and soak quantities on the row. A stream with no earlier rows
    is an initial stock take and is not checked.

    Raises:
        CountExceedsBalanceWarning: If the counted total exceeds the ceiling.
    """

    if not row.source.is_anchor or row.parent_item_id is not None:
        return

    stream = [
        txn for txn in _rows_for(context, row.item_id, row.location_id)
        if txn.parent_item_id is None and txn.key != row.key
    ]
    if not any(txn.date < row.date for txn in stream):
        log.debug("Skipping count validation for first entry of '%s' at '%s'", row.item_id, row.location_id)
        return

    size = package_size(item.package_descriptor)
    opening = balance.opening_balance(stream, size, row.date)
    incoming = to_total_units(row.purchased_packages, row.purchased_units, size) + to_total_units(
        row.soak_packages, row.soak_units, size
    )
    counted = balance.counted_total(row, size)
    if counted > opening + incoming:
        log.error(
            "Count of %d units for '%s' at '%s' on %s exceeds available %d",
            counted,
            row.item_id,
            row.location_id,
            row.date,
            opening + incoming,
        )
        raise CountExceedsBalanceWarning(
            f"Count of {counted} units for '{row.item_id}' at '{row.location_id}' exceeds "
            f"the {opening + incoming} units available; use force to record it anyway"
        )


def record_transaction(context: RuntimeContext, command: TransactionCommand) -> CascadeResult:
    """Upsert one day's activity for an item and cascade it onto components.

    The command is merged into the row stored under
    ``(date, item, location, MAIN)`` (see :func:`merge_command`), validated,
    written, and, for bundle items, mirrored onto every component in the
    bundle's stream. The transaction cache is invalidated so later reads
    replay the new state.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (TransactionCommand): Structured write intent.

    Returns:
        CascadeResult: The parent row, the written children, and any child
            failures. A result with failures is degraded but the parent is
            stored.

    Raises:
        MissingReferenceError: If the item or location is unknown.
        CountExceedsBalanceWarning: If a count fails validation and
            ``command.force`` is not set.
        ValueError: When no quantity is given or a quantity is negative.
    """

    item = get_item(context, command.item_id)
    get_location(context, command.location_id)
    provided = command.provided_quantities()
    if not provided:
        raise ValueError(
            f"No quantity given for '{command.item_id}' at '{command.location_id}' on {command.date}"
        )
    for name, value in provided.items():
        require_nonnegative_quantity(name, value)

    timestamp = _resolve_timestamp(command.timestamp)
    existing = _find_by_key(context, (command.date, command.item_id, command.location_id, None))
    row = merge_command(
        existing,
        command,
        transaction_id=generate_transaction_id(when=timestamp),
        timestamp=timestamp,
    )
    if not command.force:
        validate_count(context, row, item)

    data_manager.upsert_transaction(context.workbook, row)
    _invalidate_cache(context, "transactions")
    log.info(
        "%s transaction '%s' (%s) for item '%s' at '%s' on %s",
        "Updated" if existing is not None else "Recorded",
        row.transaction_id,
        row.source.value or "unspecified",
        row.item_id,
        row.location_id,
        row.date,
    )
    return _apply_cascade(context, row, item, timestamp=timestamp)


def update_transaction(
    context: RuntimeContext,
    transaction_id: str,
    changes: Mapping[str, Any],
    *,
    force: bool = False,
    timestamp: Optional[datetime] = None,
) -> CascadeResult:
    """Edit the quantities or source of a stored row and re-run its cascade.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        transaction_id (str): Row to edit.
        changes (Mapping[str, Any]): Field name to new value. Only quantity
            fields and ``source`` may change.
        force (bool): Skip count validation.
        timestamp (datetime | None): Edit time; defaults to now.

    Returns:
        CascadeResult: Edited parent plus recomputed children.

    Raises:
        MissingReferenceError: If ``transaction_id`` is unknown.
        BusinessRuleViolation: If the row was cascaded from a bundle; such
            rows follow their parent.
        ValueError: If a key field or unknown field is changed, or a quantity
            is negative.
    """

    target = get_transaction(context, transaction_id)
    if target.parent_item_id is not None:
        log.error("Attempted direct edit of cascaded transaction '%s'", transaction_id)
        raise BusinessRuleViolation(
            f"Transaction '{transaction_id}' was cascaded from '{target.parent_item_id}'; edit the bundle row instead"
        )

    locked = KEY_FIELDS.intersection(changes)
    if locked:
        raise ValueError(f"Cannot change key fields: {', '.join(sorted(locked))}")
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown transaction fields: {', '.join(sorted(unknown))}")

    updates: Dict[str, Any] = {}
    for name, value in changes.items():
        if name == "source":
            updates[name] = TransactionSource.parse(value)
        else:
            require_nonnegative_quantity(name, value)
            updates[name] = value

    item = get_item(context, target.item_id)
    when = _resolve_timestamp(timestamp)
    row = replace(target, updated_at=when.isoformat(), **updates)
    if not force:
        validate_count(context, row, item)

    data_manager.replace_transaction(context.workbook, row)
    _invalidate_cache(context, "transactions")
    log.info("Edited transaction '%s' (%s)", transaction_id, ", ".join(sorted(updates)))
    return _apply_cascade(context, row, item, timestamp=when)


def delete_transaction(context: RuntimeContext, transaction_id: str) -> DeleteResult:
    """Hard-delete a row, leaving any cascaded children flagged as orphans.

    Raises:
        MissingReferenceError: If ``transaction_id`` is unknown.
    """

    target = get_transaction(context, transaction_id)
    orphans: Tuple[str, ...] = ()
    if target.parent_item_id is None:
        orphans = tuple(
            txn.transaction_id
            for txn in _ensure_transactions_cache(context)["all"]
            if txn.parent_item_id == target.item_id
            and txn.date == target.date
            and txn.location_id == target.location_id
        )

    data_manager.delete_transaction(context.workbook, transaction_id)
    _invalidate_cache(context, "transactions")
    log.info("Deleted transaction '%s'", transaction_id)
    if orphans:
        log.warning(
            "Deleting '%s' orphaned %d cascaded rows: %s",
            transaction_id,
            len(orphans),
            ", ".join(orphans),
        )
    return DeleteResult(deleted=target, orphaned_child_ids=orphans)


def _apply_cascade(
    context: RuntimeContext,
    parent: data_manager.TransactionRow,
    parent_item: data_manager.ItemRow,
    *,
    timestamp: datetime,
    warn: bool = True,
) -> CascadeResult:
    """Upsert every child implied by ``parent`` and collect failures.

    Each child is written independently; one failing component does not
    stop the others. Existing children keep their id and ``CreatedAt``.
    """

    plans = cascade.build_child_transactions(parent, parent_item, warn=warn)
    if not plans:
        return CascadeResult(parent=parent)

    stamp = timestamp.isoformat()
    children: List[data_manager.TransactionRow] = []
    failures: List[CascadeFailure] = []
    for plan in plans:
        try:
            get_item(context, plan.component_item_id)
            existing = _find_by_key(context, plan.key)
            child = plan.to_row(
                transaction_id=existing.transaction_id if existing else generate_transaction_id(prefix="C", when=timestamp),
                created_at=existing.created_at if existing else stamp,
                updated_at=stamp,
            )
            data_manager.upsert_transaction(context.workbook, child)
        except (BusinessRuleViolation, KeyError, ValueError) as exc:
            log.warning(
                "Cascade of '%s' onto component '%s' failed: %s",
                parent.transaction_id,
                plan.component_item_id,
                exc,
            )
            failures.append(CascadeFailure(component_item_id=plan.component_item_id, reason=str(exc)))
        else:
            children.append(child)
    _invalidate_cache(context, "transactions")

    if failures:
        log.warning(
            "Cascade of '%s' degraded: %d of %d components failed",
            parent.transaction_id,
            len(failures),
            len(plans),
        )
    else:
        log.info("Cascaded '%s' onto %d components", parent.transaction_id, len(children))
    return CascadeResult(parent=parent, children=tuple(children), failures=tuple(failures))


def find_cascade_issues(context: RuntimeContext) -> List[CascadeIssue]:
    """Scan the log for missing, stale, and orphaned cascaded rows."""

    return cascade.find_cascade_issues(
        _ensure_transactions_cache(context)["all"],
        _ensure_items_cache(context)["by_id"],
    )


def reconcile_cascades(
    context: RuntimeContext,
    *,
    prune_orphans: bool = False,
    timestamp: Optional[datetime] = None,
) -> ReconcileReport:
    """Repair partial or outdated cascades.

    Bundle rows with missing or stale children are cascaded again. Orphaned
    children are only deleted when ``prune_orphans`` is set; otherwise they
    are reported and left in place.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        prune_orphans (bool): Delete children whose parent row is gone or
            whose component left the bundle.
        timestamp (datetime | None): Time recorded on rewritten children.

    Returns:
        ReconcileReport: Issues found before repair, cascade results for each
            repaired parent, and the ids of pruned rows.
    """

    issues = find_cascade_issues(context)
    when = _resolve_timestamp(timestamp)

    parent_keys: List[data_manager.TransactionKey] = []
    for issue in issues:
        if issue.kind is IssueKind.ORPHANED:
            continue
        key = (issue.date, issue.parent_item_id, issue.location_id, None)
        if key not in parent_keys:
            parent_keys.append(key)

    repaired: List[CascadeResult] = []
    for key in parent_keys:
        parent = _find_by_key(context, key)
        if parent is None:
            continue
        item = get_item(context, parent.item_id)
        repaired.append(_apply_cascade(context, parent, item, timestamp=when, warn=False))

    pruned: List[str] = []
    if prune_orphans:
        for issue in issues:
            if issue.kind is IssueKind.ORPHANED and issue.transaction_id is not None:
                data_manager.delete_transaction(context.workbook, issue.transaction_id)
                pruned.append(issue.transaction_id)
        _invalidate_cache(context, "transactions")
    elif any(issue.kind is IssueKind.ORPHANED for issue in issues):
        log.warning(
            "%d orphaned cascaded rows left in place",
            sum(1 for issue in issues if issue.kind is IssueKind.ORPHANED),
        )

    log.info(
        "Reconciled cascades: %d issues, %d parents repaired, %d orphans pruned",
        len(issues),
        len(repaired),
        len(pruned),
    )
    return ReconcileReport(issues=tuple(issues), repaired=tuple(repaired), pruned_ids=tuple(pruned))


def opening_balances(context: RuntimeContext, as_of: date, location_id: str) -> Dict[str, aggregation.OpeningBalance]:
    """Balances carried into ``as_of`` for every item at a location.

    Raises:
        MissingReferenceError: If ``location_id`` is unknown.
    """

    location = get_location(context, location_id)
    return aggregation.opening_balances(
        _ensure_items_cache(context)["by_id"],
        location_id,
        _ensure_transactions_cache(context)["all"],
        as_of,
        assigned_item_ids=location.assigned_item_ids,
    )


def current_stock(context: RuntimeContext) -> List[aggregation.StockTotal]:
    """Current stock of every item over the locations it is assigned to."""

    return aggregation.current_stock(
        list_items(context),
        list_locations(context),
        _ensure_transactions_cache(context)["all"],
    )


def stock_by_item(context: RuntimeContext, item_id: str) -> List[aggregation.LocationStock]:
    """Current stock of one item per location.

    Raises:
        MissingReferenceError: If ``item_id`` is unknown.
    """

    item = get_item(context, item_id)
    return aggregation.stock_by_location(item, list_locations(context), _rows_for_item(context, item_id))


def _rows_for_item(context: RuntimeContext, item_id: str) -> Iterable[data_manager.TransactionRow]:
    return (txn for txn in _ensure_transactions_cache(context)["all"] if txn.item_id == item_id)


def combined_stock(context: RuntimeContext, as_of: date, location_id: str) -> aggregation.CombinedStock:
    """Opening balances plus the day's transactions at one location.

    Raises:
        MissingReferenceError: If ``location_id`` is unknown.
    """

    location = get_location(context, location_id)
    return aggregation.combined_stock(
        _ensure_items_cache(context)["by_id"],
        location_id,
        _ensure_transactions_cache(context)["all"],
        as_of,
        assigned_item_ids=location.assigned_item_ids,
    )


def par_level_report(context: RuntimeContext) -> List[aggregation.ParLevelRow]:
    """Par levels for every item with room quantities, using configured room counts."""

    return aggregation.par_level_report(
        list_items(context),
        list_locations(context),
        _ensure_transactions_cache(context)["all"],
        context.settings.rooms,
    )


def generate_transaction_id(*, prefix: str = "T", when: Optional[datetime] = None) -> str:
    """Generate a sortable transaction identifier using UTC timestamps.

    Args:
        prefix (str): Designator prepended to the identifier. ``"T"`` for
            rows written directly, ``"C"`` for cascaded children.
        when (datetime | None): Timestamp encoded in the identifier. When
            ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}-{hex6}``.
            The random suffix keeps children written in the same microsecond
            distinct.
    """

    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid4().hex[:6]}"


def require_nonnegative_quantity(name: str, quantity: Any) -> None:
    """Validate that a quantity is a whole number of zero or more.

    Raises:
        ValueError: If ``quantity`` is not an integer or is negative.
    """

    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity validation failed for %s: %r", name, quantity)
        raise ValueError(f"{name} must be a whole number")
    if quantity < 0:
        log.error("Quantity validation failed for %s: %s", name, quantity)
        raise ValueError(f"{name} must be zero or greater")


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""

    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook and an
            empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)
