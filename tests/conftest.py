"""Shared pytest fixtures and utilities for CSA ordering tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from csa_orders import cli, constants, core_logic, data_manager  # noqa: E402
from csa_orders.setup_excel import LEDGER_ROW_LABELS, create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_MARKER = "2024-05-01T12:00:00+00:00"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "FarmName = {farm_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Email]\n"
    "Source = farm@example.com\n"
    "Template = weekly_confirmation\n"
    "ConfigurationSet = farm\n"
    "DefaultPickupInstructions = See you at the farm!\n"
    "Region = us-west-2\n\n"
    "[Api]\n"
    "AllowOrigins = https://orders.example.com, http://localhost:3000\n"
)

USERS: Sequence[Sequence[object]] = (
    ("ellen@example.com", "Ellen Ripley", "Barn", 12.5),
    ("ash@example.com", "Ash", "Market", 0),
    ("dallas@example.com", "Arthur Dallas", "Market", None),
)

LOCATIONS: Sequence[Sequence[object]] = (
    ("Barn", "Thursday", "Wednesday", "Pick up at the red barn."),
    ("Market", "Saturday", "Friday", None),
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    farm_name: str


@dataclass
class StubSesClient:
    """Records bulk sends and answers with canned statuses."""

    responses: List[Any] = field(default_factory=list)
    calls: List[Dict[str, Any]] = field(default_factory=list)

    def send_bulk_templated_email(self, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append(kwargs)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return {"Status": [{"Status": "Success"} for _ in kwargs["Destinations"]]}


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
    """Factory that creates an initialized workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "csa_orders.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        farm_name: str = "Frisky Acres",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
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
                farm_name=farm_name,
                schema_version=schema_version,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            farm_name=farm_name,
        )

    return _create_config


@pytest.fixture
def config_bundle(config_factory: Callable[..., ConfigBundle]) -> ConfigBundle:
    return config_factory()


@pytest.fixture
def config_file(config_bundle: ConfigBundle) -> Path:
    """Convenience fixture returning only the config path."""

    return config_bundle.config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Workbook content fixtures
# ---------------------------------------------------------------------------


def _append_rows(context: core_logic.RuntimeContext, title: str, rows: Sequence[Sequence[object]]) -> None:
    for row in rows:
        data_manager.append_row(context.workbook, title, list(row))


@pytest.fixture
def directory_context(runtime_context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Runtime context whose ``Users`` and ``Locations`` sheets are filled in."""

    _append_rows(runtime_context, constants.SheetName.USERS.value, USERS)
    _append_rows(runtime_context, constants.SheetName.LOCATIONS.value, LOCATIONS)
    return runtime_context


@pytest.fixture
def ledger_factory() -> Callable[..., int]:
    """Write a ledger sheet and return its registry id.

    ``products`` holds ``(name, price, image, limit)`` tuples; ``users`` holds
    rows of ``[identity, quantity, quantity, ...]``. The stored totals row is
    filled with a bogus value so tests notice if it is ever read. ``marker``
    of ``None`` leaves the sheet untagged.
    """

    def _create_ledger(
        context: core_logic.RuntimeContext,
        *,
        products: Sequence[Sequence[object]],
        users: Sequence[Sequence[object]] = (),
        title: str = constants.SheetName.ORDERS.value,
        marker: Optional[str] = DEFAULT_MARKER,
    ) -> int:
        workbook = context.workbook
        data_manager.create_sheet(workbook, title)
        names, prices, images, limits = (list(column) for column in zip(*products))
        header_rows = [
            [LEDGER_ROW_LABELS[0], *names],
            [LEDGER_ROW_LABELS[1], *prices],
            [LEDGER_ROW_LABELS[2], *images],
            [LEDGER_ROW_LABELS[3], *limits],
            [LEDGER_ROW_LABELS[4], *([999] * len(products))],
        ]
        _append_rows(context, title, header_rows)
        _append_rows(context, title, users)
        if marker is not None:
            return data_manager.add_sheet_metadata(
                workbook, title, constants.ORDER_SHEET_METADATA_KEY, marker
            )
        return data_manager.ensure_sheet_id(workbook, title)

    return _create_ledger


# Two capped products, one unlimited and one disabled (column 4).
STANDARD_PRODUCTS: Sequence[Sequence[object]] = (
    ("Lettuce", 2.5, "http://img/lettuce.png", 10),
    ("Kale", 3, "http://img/kale.png", 5),
    ("Garlic", 0.75, "http://img/garlic.png", -1),
    ("Ramps", 9, "http://img/ramps.png", 0),
)


@pytest.fixture
def orders_context(
    directory_context: core_logic.RuntimeContext,
    ledger_factory: Callable[..., int],
) -> core_logic.RuntimeContext:
    """Directory plus an open ``Orders`` ledger with two members' rows."""

    ledger_factory(
        directory_context,
        products=STANDARD_PRODUCTS,
        users=[
            ["ellen@example.com", 3, 5, None, None],
            ["ash@example.com", 4, None, 2, None],
        ],
    )
    return directory_context


@pytest.fixture
def ses_client() -> StubSesClient:
    return StubSesClient()


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="csa-orders", description="CSA orders CLI")


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
