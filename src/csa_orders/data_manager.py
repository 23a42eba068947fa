"""Data access layer for the CSA ordering platform.

This module provides low-level helpers that read from and write to the
farm's master workbook. Ordering rules belong elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening the Excel file and saving it back atomically.
3. Range operations: reading whole sheets as grids, updating single cells
   and appending rows, addressed by 0-based row/column indices.
4. Sheet registry: stable integer ids and key/value metadata for sheets,
   stored on a hidden worksheet so they survive renames.
"""


from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.utils import get_column_letter
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import LocationColumn, SheetName, UserColumn


CONFIG_FILE_NAME = "config.ini"
USERS_SHEET = SheetName.USERS.value
LOCATIONS_SHEET = SheetName.LOCATIONS.value
METADATA_SHEET = SheetName.SHEET_METADATA.value
METADATA_HEADERS = ("SheetID", "SheetTitle", "MetadataKey", "MetadataValue")

DEFAULT_EMAIL_SOURCE = "orders@example.com"
DEFAULT_EMAIL_TEMPLATE = "order_confirmation"
DEFAULT_CONFIGURATION_SET = "default"
DEFAULT_PICKUP_INSTRUCTIONS = "Please contact the farm for pickup instructions."
DEFAULT_AWS_REGION = "us-east-1"


class SheetNotFoundError(KeyError):
    """Raised when a sheet title or id does not resolve to a worksheet."""


class SheetExistsError(ValueError):
    """Raised when creating or renaming onto a title that is already taken."""


@dataclass(frozen=True)
class EmailSettings:
    """Settings used when sending bulk confirmation emails."""

    source: str = DEFAULT_EMAIL_SOURCE
    template: str = DEFAULT_EMAIL_TEMPLATE
    configuration_set: str = DEFAULT_CONFIGURATION_SET
    default_pickup_instructions: str = DEFAULT_PICKUP_INSTRUCTIONS
    region: str = DEFAULT_AWS_REGION


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    farm_name: str
    schema_version: str
    email: EmailSettings = field(default_factory=EmailSettings)
    allow_origins: Tuple[str, ...] = ("*",)


@dataclass(frozen=True)
class UserRow:
    """In-memory view of a row from the ``Users`` sheet."""

    email: str
    name: str
    location: str
    balance: Optional[Decimal]


@dataclass(frozen=True)
class LocationRow:
    """In-memory view of a row from the ``Locations`` sheet."""

    name: str
    pickup_day: str
    harvest_day: str
    pickup_instructions: str


@dataclass(frozen=True)
class SheetInfo:
    """Registry entry describing a worksheet and its metadata."""

    sheet_id: int
    title: str
    metadata: Mapping[str, str] = field(default_factory=dict)


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

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

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

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

    ``[System]`` entries are mandatory. ``[Email]`` and ``[Api]`` are optional
    and fall back to module defaults. Relative ``DataFile`` paths are expanded
    against ``base_path`` (or the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        farm_name = parser.get("System", "FarmName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    email = EmailSettings(
        source=parser.get("Email", "Source", fallback=DEFAULT_EMAIL_SOURCE),
        template=parser.get("Email", "Template", fallback=DEFAULT_EMAIL_TEMPLATE),
        configuration_set=parser.get("Email", "ConfigurationSet", fallback=DEFAULT_CONFIGURATION_SET),
        default_pickup_instructions=parser.get(
            "Email", "DefaultPickupInstructions", fallback=DEFAULT_PICKUP_INSTRUCTIONS),
        region=parser.get("Email", "Region", fallback=DEFAULT_AWS_REGION),
    )
    origins_raw = parser.get("Api", "AllowOrigins", fallback="*")
    allow_origins = tuple(origin.strip() for origin in origins_raw.split(",") if origin.strip())

    return ConfigSettings(
        data_file=data_file_path,
        farm_name=farm_name,
        schema_version=schema_version,
        email=email,
        allow_origins=allow_origins or ("*",),
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    The workbook is written to a sibling ``.tmp`` file first and then moved
    over ``destination``, so readers never see a half-written file. Parent
    directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_name(dest.name + ".tmp")
    workbook.save(tmp)
    os.replace(tmp, dest)


def get_worksheet(workbook: Workbook, title: str) -> Worksheet:
    """Return the worksheet named ``title``.

    Raises:
        SheetNotFoundError: If the workbook has no sheet with that title. This
            is the workbook equivalent of a "bad range" error from a remote
            spreadsheet service.
    """

    if title not in workbook.sheetnames:
        raise SheetNotFoundError(f"Unable to parse range: {title}")
    return workbook[title]


def read_grid(workbook: Workbook, title: str) -> List[List[object]]:
    """Read every populated cell of a sheet as a row-major grid.

    Blank cells are returned as ``None`` and every row has the same width, so
    callers may index columns without bounds checks within the grid.

    Args:
        workbook (Workbook): Workbook containing the sheet.
        title (str): Worksheet title.

    Returns:
        list[list[object]]: Rows of raw cell values.

    Raises:
        SheetNotFoundError: If ``title`` is not a sheet of the workbook.
    """

    sheet = get_worksheet(workbook, title)
    return [list(row) for row in sheet.iter_rows(values_only=True)]


def update_cell(workbook: Workbook, title: str, row_index: int, column_index: int, value: object) -> None:
    """Write a single cell addressed by 0-based row and column indices."""

    sheet = get_worksheet(workbook, title)
    sheet.cell(row=row_index + 1, column=column_index + 1, value=value)
    log.debug("Updated %s!%s%d", title, get_column_letter(column_index + 1), row_index + 1)


def append_row(workbook: Workbook, title: str, values: Sequence[object]) -> int:
    """Append ``values`` after the last populated row of a sheet.

    ``None`` entries leave their cells blank, so positional alignment with the
    sheet's columns is preserved.

    Returns:
        int: 0-based index of the appended row.
    """

    sheet = get_worksheet(workbook, title)
    sheet.append(list(values))
    row_index = sheet.max_row - 1
    log.debug("Appended %s!A%d", title, row_index + 1)
    return row_index


def append_column(workbook: Workbook, title: str, header: object, values_by_row: Mapping[int, object]) -> int:
    """Add a column after the last populated one.

    Args:
        workbook (Workbook): Workbook containing the sheet.
        title (str): Worksheet title.
        header (object): Value written to the first row of the new column.
        values_by_row (Mapping[int, object]): 0-based row index to cell value.
            Rows not present are left blank.

    Returns:
        int: 0-based index of the new column.
    """

    sheet = get_worksheet(workbook, title)
    column = sheet.max_column + 1
    sheet.cell(row=1, column=column, value=header)
    for row_index, value in values_by_row.items():
        sheet.cell(row=row_index + 1, column=column, value=value)
    return column - 1


def hide_columns(workbook: Workbook, title: str, column_indexes: Iterable[int]) -> None:
    """Hide the given 0-based columns of a sheet."""

    sheet = get_worksheet(workbook, title)
    for column_index in column_indexes:
        sheet.column_dimensions[get_column_letter(column_index + 1)].hidden = True


def create_sheet(workbook: Workbook, title: str) -> Worksheet:
    """Create an empty worksheet and register it in the sheet registry.

    Raises:
        SheetExistsError: If ``title`` is already used.
    """

    if title in workbook.sheetnames:
        raise SheetExistsError(f"A sheet named '{title}' already exists")
    sheet = workbook.create_sheet(title=title)
    ensure_sheet_id(workbook, title)
    return sheet


def duplicate_sheet(workbook: Workbook, source_title: str, new_title: str) -> Worksheet:
    """Copy ``source_title`` (values and styles) into a new sheet.

    Raises:
        SheetNotFoundError: If the source sheet does not exist.
        SheetExistsError: If ``new_title`` is already used.
    """

    source = get_worksheet(workbook, source_title)
    if new_title in workbook.sheetnames:
        raise SheetExistsError(f"A sheet named '{new_title}' already exists")
    copy = workbook.copy_worksheet(source)
    copy.title = new_title
    ensure_sheet_id(workbook, new_title)
    log.debug("Duplicated sheet '%s' as '%s'", source_title, new_title)
    return copy


def rename_sheet(workbook: Workbook, old_title: str, new_title: str) -> None:
    """Rename a worksheet, keeping its registry id and metadata attached."""

    sheet = get_worksheet(workbook, old_title)
    if new_title in workbook.sheetnames:
        raise SheetExistsError(f"A sheet named '{new_title}' already exists")
    sheet.title = new_title

    registry = _metadata_sheet(workbook)
    if registry is not None:
        for row in registry.iter_rows(min_row=2):
            if row[1].value == old_title:
                row[1].value = new_title
    log.debug("Renamed sheet '%s' to '%s'", old_title, new_title)


def _metadata_sheet(workbook: Workbook, *, create: bool = False) -> Optional[Worksheet]:
    """Return the hidden registry worksheet, optionally creating it."""

    if METADATA_SHEET in workbook.sheetnames:
        return workbook[METADATA_SHEET]
    if not create:
        return None

    sheet = workbook.create_sheet(title=METADATA_SHEET)
    sheet.append(list(METADATA_HEADERS))
    sheet.sheet_state = "hidden"
    return sheet


def _registry_rows(workbook: Workbook) -> List[Tuple[int, str, Optional[str], Optional[str]]]:
    registry = _metadata_sheet(workbook)
    if registry is None:
        return []

    rows = []
    for raw in registry.iter_rows(min_row=2, values_only=True):
        if not raw or raw[0] is None:
            continue
        sheet_id, title, key, value = (list(raw) + [None] * 4)[:4]
        rows.append((
            int(sheet_id),
            str(title),
            str(key) if key is not None else None,
            str(value) if value is not None else None,
        ))
    return rows


def ensure_sheet_id(workbook: Workbook, title: str) -> int:
    """Return the registry id for ``title``, allocating one if needed.

    Ids are small positive integers, never reused, and stay attached to a
    sheet across :func:`rename_sheet` calls.
    """

    rows = _registry_rows(workbook)
    for sheet_id, registered_title, _, _ in rows:
        if registered_title == title:
            return sheet_id

    sheet_id = max((row[0] for row in rows), default=0) + 1
    registry = _metadata_sheet(workbook, create=True)
    registry.append([sheet_id, title, None, None])
    log.debug("Registered sheet '%s' with id %d", title, sheet_id)
    return sheet_id


def add_sheet_metadata(workbook: Workbook, title: str, key: str, value: str) -> int:
    """Attach ``key=value`` metadata to a sheet, replacing an existing value.

    Returns:
        int: Registry id of the sheet.

    Raises:
        SheetNotFoundError: If ``title`` is not a sheet of the workbook.
    """

    get_worksheet(workbook, title)
    sheet_id = ensure_sheet_id(workbook, title)
    registry = _metadata_sheet(workbook, create=True)
    for row in registry.iter_rows(min_row=2):
        if row[0].value == sheet_id and row[2].value == key:
            row[3].value = value
            return sheet_id
    registry.append([sheet_id, title, key, value])
    return sheet_id


def list_sheet_infos(workbook: Workbook) -> List[SheetInfo]:
    """Return registry entries for sheets that still exist in the workbook."""

    titles: Dict[int, str] = {}
    metadata: Dict[int, Dict[str, str]] = {}
    for sheet_id, title, key, value in _registry_rows(workbook):
        titles[sheet_id] = title
        bucket = metadata.setdefault(sheet_id, {})
        if key is not None:
            bucket[key] = value if value is not None else ""

    return [
        SheetInfo(sheet_id=sheet_id, title=title, metadata=metadata[sheet_id])
        for sheet_id, title in titles.items()
        if title in workbook.sheetnames
    ]


def list_sheets_with_metadata(workbook: Workbook, key: str) -> List[SheetInfo]:
    """Return the sheets carrying metadata ``key``."""

    return [info for info in list_sheet_infos(workbook) if key in info.metadata]


def get_sheet_info(workbook: Workbook, sheet_id: int) -> Optional[SheetInfo]:
    """Resolve a registry id, returning ``None`` when it is unknown."""

    for info in list_sheet_infos(workbook):
        if info.sheet_id == sheet_id:
            return info
    return None


def batch_read_columns(
    workbook: Workbook,
    sheet_ids: Iterable[int],
    *,
    column_index: int,
    start_row_index: int,
) -> Dict[int, List[object]]:
    """Read one column from several sheets in a single call.

    Args:
        workbook (Workbook): Workbook containing the sheets.
        sheet_ids (Iterable[int]): Registry ids of the sheets to read.
        column_index (int): 0-based column to read.
        start_row_index (int): 0-based first row to include.

    Returns:
        dict[int, list[object]]: Column values keyed by sheet id. Sheets with
            no rows in the requested region map to an empty list.

    Raises:
        SheetNotFoundError: If an id does not resolve to an existing sheet.
    """

    infos = {info.sheet_id: info for info in list_sheet_infos(workbook)}
    columns: Dict[int, List[object]] = {}
    for sheet_id in sheet_ids:
        info = infos.get(sheet_id)
        if info is None:
            raise SheetNotFoundError(f"Unknown sheet id: {sheet_id}")
        sheet = workbook[info.title]
        columns[sheet_id] = [
            row[0]
            for row in sheet.iter_rows(
                min_row=start_row_index + 1,
                min_col=column_index + 1,
                max_col=column_index + 1,
                values_only=True,
            )
        ]
    return columns


def iter_users(workbook: Workbook) -> Iterable[UserRow]:
    """Iterate over the ``Users`` directory.

    The header row is skipped, and so is every row whose email cell is blank,
    whatever the rest of the row holds (totals, notes, stray formulas).
    """

    sheet = get_worksheet(workbook, USERS_SHEET)
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if not raw or not _text(raw[UserColumn.EMAIL]).strip():
            continue
        yield deserialize_user(raw)


def iter_locations(workbook: Workbook) -> Iterable[LocationRow]:
    """Iterate over the ``Locations`` sheet, skipping header and empty rows."""

    sheet = get_worksheet(workbook, LOCATIONS_SHEET)
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_location(raw)


def _text(value: Any) -> str:
    return str(value) if value is not None else ""


def _pad(raw_row: Sequence[object], width: int) -> List[object]:
    return list(raw_row) + [None] * max(0, width - len(raw_row))


def _parse_balance(value: object) -> Optional[Decimal]:
    """Blank balances are zero; text, formulas and booleans become ``None``."""

    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, bool):
        return None
    try:
        balance = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    return balance if balance.is_finite() else None


def deserialize_user(raw_row: Sequence[object]) -> UserRow:
    """Convert a raw ``Users`` row into a typed record.

    Text columns are coerced to ``str`` (blank cells become ``""``). The
    balance becomes a :class:`~decimal.Decimal`, or ``None`` when the cell does
    not hold a number (the workbook is loaded with formulas, not their cached
    results). Columns past the balance are ignored. No trimming happens here;
    matching rules live in the core.
    """

    row = _pad(raw_row, len(UserColumn))
    balance_raw = row[UserColumn.BALANCE]
    balance = _parse_balance(balance_raw)
    if balance is None:
        log.warning("Balance of user '%s' is not a number: %r", row[UserColumn.EMAIL], balance_raw)
    return UserRow(
        email=_text(row[UserColumn.EMAIL]),
        name=_text(row[UserColumn.NAME]),
        location=_text(row[UserColumn.LOCATION]),
        balance=balance,
    )


def deserialize_location(raw_row: Sequence[object]) -> LocationRow:
    """Convert a raw ``Locations`` row into a typed record."""

    row = _pad(raw_row, len(LocationColumn))
    return LocationRow(
        name=_text(row[LocationColumn.NAME]),
        pickup_day=_text(row[LocationColumn.PICKUP_DAY]),
        harvest_day=_text(row[LocationColumn.HARVEST_DAY]),
        pickup_instructions=_text(row[LocationColumn.PICKUP_INSTRUCTIONS]),
    )
