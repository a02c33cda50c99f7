"""Command-line entry points for the supply ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing the resulting views. Balance rules live in
``core_logic`` and below.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log
from .cascade import CascadeResult
from .constants import TransactionSource


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_BUSINESS_RULE = 2
EXIT_MISSING_FILE = 3
EXIT_DEGRADED = 4

# Quantity columns written by each movement command: (units, packages).
MOVEMENT_FIELDS: Dict[TransactionSource, tuple[str, str]] = {
    TransactionSource.COUNT: ("counted_units", "counted_packages"),
    TransactionSource.PURCHASE: ("purchased_units", "purchased_packages"),
    TransactionSource.SOAK: ("soak_units", "soak_packages"),
    TransactionSource.CONSUMPTION: ("consumed_units", "consumed_packages"),
}


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="supply-ledger",
        description="Stock counts, movements, and balances for hotel supplies.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as counts and purchases."""
    specs = {
        "add-item": register_add_item_command(subparsers),
        "add-location": register_add_location_command(subparsers),
        "assign": register_assign_command(subparsers),
        "count": register_movement_command(subparsers, "count", TransactionSource.COUNT, "Record a stock count."),
        "purchase": register_movement_command(
            subparsers, "purchase", TransactionSource.PURCHASE, "Record a stock purchase."
        ),
        "soak": register_movement_command(
            subparsers, "soak", TransactionSource.SOAK, "Record linen returned from a soak cycle."
        ),
        "consume": register_movement_command(
            subparsers, "consume", TransactionSource.CONSUMPTION, "Record stock consumed."
        ),
        "edit": register_edit_command(subparsers),
        "delete": register_delete_command(subparsers),
        "reconcile": register_reconcile_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "opening-balance": register_opening_balance_command(subparsers),
        "stock": register_stock_command(subparsers),
        "stock-by-item": register_stock_by_item_command(subparsers),
        "combined": register_combined_command(subparsers),
        "par-level": register_par_level_command(subparsers),
        "log": register_log_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_date(raw: str) -> date:
    """``argparse`` type for ISO ``YYYY-MM-DD`` dates."""
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{raw}', expected YYYY-MM-DD") from exc


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Register a new item in the Items sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--item-name", required=True)
        parser.add_argument("--category", default=None)
        parser.add_argument("--package", default=None, help='Package text such as "Case of 12".')
        parser.add_argument("--king-qty", type=int, default=0, help="Units needed per king room.")
        parser.add_argument("--queen-qty", type=int, default=0, help="Units needed per double-queen room.")
        parser.add_argument(
            "--bundle",
            default=None,
            help='Components of a bundle item as "ITEM:QTY;ITEM:QTY".',
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_add_location_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-location``."""
    name = "add-location"
    help_text = "Register a new storage location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--location-id", required=True)
        parser.add_argument("--location-name", required=True)
        parser.add_argument("--category", default=None)
        parser.add_argument("--items", default=None, help='Assigned item ids as "ID;ID".')
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_location)


def register_assign_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``assign``."""
    name = "assign"
    help_text = "Track an item at a location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--location-id", required=True)
        parser.add_argument("--item-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_assign)


def register_movement_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    source: TransactionSource,
    help_text: str,
) -> CommandSpec:
    """Register one of the per-source commands (``count``, ``purchase``, ...)."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", type=parse_date, required=True)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--location-id", required=True)
        parser.add_argument("--units", type=int, default=None)
        parser.add_argument("--packages", type=int, default=None)
        if source.is_anchor:
            parser.add_argument(
                "--force",
                action="store_true",
                help="Record the count even if it exceeds the expected balance.",
            )
        parser.set_defaults(command=name, source=source.name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_movement)


def register_edit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit``."""
    name = "edit"
    help_text = "Change the quantities or source of a transaction."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument(
            "--source",
            choices=[member.name for member in TransactionSource if member.value],
            default=None,
        )
        for field_name in data_manager.QUANTITY_FIELDS:
            parser.add_argument(f"--{field_name.replace('_', '-')}", type=int, default=None)
        parser.add_argument("--force", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit)


def register_delete_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete``."""
    name = "delete"
    help_text = "Delete a transaction; cascaded rows are reported as orphans."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete)


def register_reconcile_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reconcile``."""
    name = "reconcile"
    help_text = "Repair missing or stale cascaded rows."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--prune-orphans", action="store_true", help="Delete orphaned cascaded rows.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile)


def register_opening_balance_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``opening-balance``."""
    name = "opening-balance"
    help_text = "Display balances carried into a day at a location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", type=parse_date, required=True)
        parser.add_argument("--location-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name, help_text=help_text, register=registrar, execute=run_opening_balance, mutates=False
    )


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report, mutates=False)


def register_stock_by_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock-by-item``."""
    name = "stock-by-item"
    help_text = "Display current stock of one item per location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_by_item, mutates=False)


def register_combined_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``combined``."""
    name = "combined"
    help_text = "Display opening balances and the day's transactions at a location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", type=parse_date, required=True)
        parser.add_argument("--location-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_combined, mutates=False)


def register_par_level_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``par-level``."""
    name = "par-level"
    help_text = "Display stock against room requirements."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_par_level, mutates=False)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the transaction log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", type=parse_date, default=None)
        parser.add_argument("--location-id", default=None)
        parser.add_argument("--item-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_add_item(args: argparse.Namespace) -> data_manager.ItemRow:
    """Translate CLI args into an item record."""
    components = data_manager.parse_components(args.bundle)
    return data_manager.ItemRow(
        item_id=args.item_id,
        item_name=args.item_name,
        category=args.category,
        package_descriptor=args.package,
        default_king_qty=args.king_qty,
        default_queen_qty=args.queen_qty,
        is_bundle=bool(components),
        components=components,
    )


def translate_add_location(args: argparse.Namespace) -> data_manager.LocationRow:
    """Translate CLI args into a location record."""
    items = tuple(part.strip() for part in (args.items or "").split(";") if part.strip())
    return data_manager.LocationRow(
        location_id=args.location_id,
        location_name=args.location_name,
        category=args.category,
        assigned_item_ids=items,
    )


def translate_movement(args: argparse.Namespace) -> core_logic.TransactionCommand:
    """Translate a ``count``/``purchase``/``soak``/``consume`` invocation."""
    source = TransactionSource[args.source]
    units_field, packages_field = MOVEMENT_FIELDS[source]
    quantities: Dict[str, Any] = {}
    if args.units is not None:
        quantities[units_field] = args.units
    if args.packages is not None:
        quantities[packages_field] = args.packages
    return core_logic.TransactionCommand(
        date=args.date,
        item_id=args.item_id,
        location_id=args.location_id,
        source=source,
        force=getattr(args, "force", False),
        **quantities,
    )


def translate_edit(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into the ``changes`` mapping of an edit."""
    changes: Dict[str, Any] = {
        name: getattr(args, name)
        for name in data_manager.QUANTITY_FIELDS
        if getattr(args, name) is not None
    }
    if args.source is not None:
        changes["source"] = TransactionSource[args.source]
    return changes


def format_quantity(packages: int, units: int, total: int) -> str:
    return f"{packages} pkg + {units} units ({total} units)"


def report_cascade(result: CascadeResult) -> int:
    """Print a write outcome and map a degraded cascade to its exit code."""
    print(f"{result.parent.transaction_id}\t{result.parent.item_id}\t{result.parent.source.value}")
    for child in result.children:
        print(f"  -> {child.transaction_id}\t{child.item_id}")
    for failure in result.failures:
        print(f"  !! {failure.component_item_id}: {failure.reason}")
    if result.degraded:
        log.warning(
            "Cascade incomplete for components %s; run 'reconcile' to repair",
            ", ".join(result.failed_component_ids),
        )
        return EXIT_DEGRADED
    return EXIT_OK


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-item workflow in the BLL."""
    core_logic.add_item(context, translate_add_item(args))
    return EXIT_OK


def run_add_location(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-location workflow in the BLL."""
    core_logic.add_location(context, translate_add_location(args))
    return EXIT_OK


def run_assign(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the item assignment workflow in the BLL."""
    core_logic.assign_item_to_location(context, args.location_id, args.item_id)
    return EXIT_OK


def run_movement(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Record a count or movement via the BLL."""
    result = core_logic.record_transaction(context, translate_movement(args))
    return report_cascade(result)


def run_edit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit workflow via the BLL."""
    result = core_logic.update_transaction(
        context, args.transaction_id, translate_edit(args), force=args.force
    )
    return report_cascade(result)


def run_delete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete workflow via the BLL."""
    result = core_logic.delete_transaction(context, args.transaction_id)
    print(f"Deleted {result.deleted.transaction_id}")
    for orphan_id in result.orphaned_child_ids:
        print(f"  orphaned {orphan_id}")
    return EXIT_OK


def run_reconcile(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute cascade reconciliation via the BLL."""
    report = core_logic.reconcile_cascades(context, prune_orphans=args.prune_orphans)
    for issue in report.issues:
        print(f"{issue.kind.value}\t{issue.date}\t{issue.location_id}\t{issue.item_id}\t{issue.detail}")
    for pruned_id in report.pruned_ids:
        print(f"pruned {pruned_id}")
    if any(result.degraded for result in report.repaired):
        return EXIT_DEGRADED
    return EXIT_OK


def run_opening_balance(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print opening balances for a location."""
    balances = core_logic.opening_balances(context, args.date, args.location_id)
    for item_id, entry in balances.items():
        print(f"{item_id}\t{format_quantity(entry.packages, entry.units, entry.opening_units)}")
    return EXIT_OK


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print current stock for every item."""
    for row in core_logic.current_stock(context):
        print(f"{row.item_id}\t{format_quantity(row.packages, row.units, row.total_units)}")
    return EXIT_OK


def run_stock_by_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print current stock of one item per location."""
    for row in core_logic.stock_by_item(context, args.item_id):
        print(f"{row.location_name}\t{format_quantity(row.packages, row.units, row.total_units)}")
    return EXIT_OK


def run_combined(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print opening balances and the day's activity at a location."""
    combined = core_logic.combined_stock(context, args.date, args.location_id)
    for item_id, entry in combined.opening_balances.items():
        print(f"{item_id}\topening {format_quantity(entry.packages, entry.units, entry.opening_units)}")
        for txn in combined.transactions.get(item_id, ()):
            print(f"  {txn.transaction_id}\t{txn.source.value}\t{txn.stream_key}")
    return EXIT_OK


def run_par_level(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the par-level report."""
    for row in core_logic.par_level_report(context):
        level = f"{row.par_level:.2f}" if row.par_level is not None else "n/a"
        flag = " LOW" if row.below_threshold else ""
        print(f"{row.item_id}\trequired {row.required}\tavailable {row.total_available}\tpar {level}{flag}")
    return EXIT_OK


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the transaction log, optionally filtered."""
    rows = core_logic.list_transactions(
        context, on=args.date, location_id=args.location_id, item_id=args.item_id
    )
    for txn in rows:
        print(
            f"{txn.transaction_id}\t{txn.date}\t{txn.item_id}\t{txn.location_id}\t"
            f"{txn.stream_key}\t{txn.source.value}"
        )
    return EXIT_OK


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return EXIT_BUSINESS_RULE
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return EXIT_MISSING_FILE
    log.error("%s", error)
    return EXIT_FAILURE


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code in (EXIT_OK, EXIT_DEGRADED) and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
