"""Utility for initializing the CSA ordering workbook.

The module doubles as a script (``csa-orders-setup``) and as a library used by
tests. It lays out the ``Users`` and ``Locations`` directories, the
``Orders Template`` every week is copied from, and the hidden sheet registry.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import data_manager
from .constants import SheetName

# Directory sheets carry a single header row.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.USERS.value: ["Email", "Name", "Location", "Balance"],
    SheetName.LOCATIONS.value: ["Name", "Pickup day", "Harvest day", "Email instructions"],
}

# Labels for column A of the five ledger header rows.
LEDGER_ROW_LABELS: Sequence[str] = ["Product", "Price", "Image", "Limit", "Total ordered"]

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    ledger_row_labels: Sequence[str] = LEDGER_ROW_LABELS,
    overwrite: bool = False,
) -> Path:
    """Create the ordering workbook at ``destination``.

    Every sheet is created through :func:`data_manager.create_sheet` so it gets
    a registry id. The ledger template only carries its row labels; products
    are filled in week by week.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # openpyxl starts every workbook with an empty "Sheet".
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = data_manager.create_sheet(workbook, sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    template = data_manager.create_sheet(workbook, SheetName.ORDERS_TEMPLATE.value)
    for row_index, label in enumerate(ledger_row_labels, start=1):
        cell = template.cell(row=row_index, column=1)
        cell.value = label
        cell.font = bold_font

    workbook.active = 0
    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``DataFile`` in ``config_path``."""

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(
        prog="csa-orders-setup",
        description="Initialize the CSA ordering workbook",
    )
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help=f"Configuration file naming the workbook (default: {CONFIG_FILE})",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Replace an existing workbook.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- CSA Orders Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
