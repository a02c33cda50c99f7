"""Shared pytest fixtures and utilities for supply ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Callable, Iterator, Optional
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from supply_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from supply_ledger.constants import TransactionSource  # noqa: E402
from supply_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "PropertyName = {property_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Rooms]\n"
    "KingRoomCount = {king_rooms}\n"
    "DoubleQueenRoomCount = {queen_rooms}\n\n"
    "[Reports]\n"
    "ParLevelThreshold = {threshold}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    property_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "supply_ledger.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        property_name: str = "Test Inn",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        king_rooms: int = 10,
        queen_rooms: int = 5,
        threshold: float = 1.5,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                property_name=property_name,
                schema_version=schema_version,
                king_rooms=king_rooms,
                queen_rooms=queen_rooms,
                threshold=threshold,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            property_name=property_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Row builders
# ---------------------------------------------------------------------------


@pytest.fixture
def make_txn() -> Callable[..., data_manager.TransactionRow]:
    """Build transaction rows with terse keyword arguments.

    ``created_at`` defaults to a value derived from a running counter so rows
    built in sequence replay in construction order.
    """

    counter = {"n": 0}

    def _make(
        day: date,
        source: TransactionSource,
        *,
        item_id: str = "PILLOW",
        location_id: str = "LINEN",
        parent: Optional[str] = None,
        created_at: Optional[str] = None,
        transaction_id: Optional[str] = None,
        **quantities: int,
    ) -> data_manager.TransactionRow:
        counter["n"] += 1
        return data_manager.TransactionRow(
            transaction_id=transaction_id or f"T{counter['n']:04d}",
            date=day,
            item_id=item_id,
            location_id=location_id,
            parent_item_id=parent,
            source=source,
            created_at=created_at or f"{day.isoformat()}T00:00:{counter['n']:02d}+00:00",
            **quantities,
        )

    return _make


@pytest.fixture
def linen_items() -> dict[str, data_manager.ItemRow]:
    """A pillowcase, a flat sheet, and a king set bundling both."""

    pillow = data_manager.ItemRow("PILLOW", "Pillowcase", "Linen", None, 4, 2)
    sheet = data_manager.ItemRow("SHEET", "Flat Sheet", "Linen", "Pack of 6", 1, 2)
    king_set = data_manager.ItemRow(
        "KINGSET",
        "King Set",
        "Linen",
        None,
        is_bundle=True,
        components=(
            data_manager.BundleComponent("PILLOW", 2),
            data_manager.BundleComponent("SHEET", 1),
        ),
    )
    return {item.item_id: item for item in (pillow, sheet, king_set)}


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="supply-ledger", description="Supply ledger")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "supply_ledger.xlsx",
        property_name="Test Inn",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        rooms=data_manager.RoomSettings(king_room_count=10, double_queen_room_count=5),
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
