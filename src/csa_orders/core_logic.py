"""Ordering core for the CSA platform.

This module treats a weekly ledger sheet (products x users) as a live
inventory: it computes what each member may still order, applies a member's
quantity change against the configured limits, locates the past weeks a
member took part in, and resolves members against the ``Users`` directory.
All I/O goes through the data access layer.

Reads never trust a cached view: every call re-reads the sheet it needs.
Individual storage calls run under :attr:`RuntimeContext.lock`, but a
read-then-write sequence such as :func:`set_ordered` is *not* atomic. Two
concurrent changes for the same member can both observe "no row yet" and both
append a row. Callers must serialize mutations per identity (see
:mod:`csa_orders.order_queue`).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    FIRST_USER_ROW_INDEX,
    IDENTITY_COLUMN_INDEX,
    ORDER_SHEET_METADATA_KEY,
    UNLIMITED,
    ErrorCode,
    LedgerRow,
    SheetName,
)


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class OrderingError(BusinessRuleViolation):
    """Base class for rejections surfaced verbatim to API clients.

    Each subclass fixes a stable :class:`ErrorCode` and the HTTP status the
    API layer answers with. ``extra`` carries machine readable details.
    """

    code: ErrorCode
    status_code: int = 400

    def __init__(self, message: Optional[str] = None, *, extra: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message or self.code.value)
        self.extra = dict(extra) if extra else None


class OrdersNotOpenError(OrderingError):
    """Raised when there is no open ledger to read or modify."""

    code = ErrorCode.ORDERS_NOT_OPEN
    status_code = 404


class NegativeQuantityError(OrderingError):
    """Raised when a member asks for a negative quantity."""

    code = ErrorCode.NEGATIVE_QUANTITY
    status_code = 400


class ProductNotFoundError(OrderingError):
    """Raised for unknown product ids and for products disabled this week."""

    code = ErrorCode.PRODUCT_NOT_FOUND
    status_code = 404


class QuantityNotAvailableError(OrderingError):
    """Raised when a requested total exceeds what the member may order."""

    code = ErrorCode.QUANTITY_NOT_AVAILABLE
    status_code = 409

    def __init__(self, available: int) -> None:
        super().__init__(f"Only {available} available", extra={"available": available})
        self.available = available


class UnknownUserError(OrderingError):
    """Raised when an identity is absent from the ``Users`` directory."""

    code = ErrorCode.UNKNOWN_USER
    status_code = 401


class MalformedLedgerError(ValueError):
    """Raised when stored ledger data violates the workbook layout contract."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the core."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class LedgerRef:
    """Identify the ledger sheet a call operates on.

    The open ledger is always the sheet titled ``Orders``; any other title is a
    past (or pending) week, usually resolved from its registry id.
    """

    title: str
    sheet_id: Optional[int] = None

    @classmethod
    def current(cls) -> "LedgerRef":
        return cls(title=SheetName.ORDERS.value)

    @classmethod
    def for_sheet(cls, info: data_manager.SheetInfo) -> "LedgerRef":
        return cls(title=info.title, sheet_id=info.sheet_id)

    @property
    def is_current(self) -> bool:
        return self.title == SheetName.ORDERS.value


@dataclass(frozen=True)
class ProductView:
    """One product as seen by one member."""

    name: str
    image_url: str
    price: Decimal
    available: int
    ordered: int


@dataclass(frozen=True)
class LedgerView:
    """Products visible this week plus the member's position in the ledger.

    ``products`` is keyed by product id, i.e. the 0-based column index of the
    product (column 0 holds identities, so ids start at 1).
    ``user_row_index`` is the member's 0-based offset within the user rows, or
    ``-1`` when the member has no row yet.
    """

    products: Dict[int, ProductView]
    user_row_index: int


@dataclass(frozen=True)
class PastOrder:
    """A closed week the member ordered in."""

    id: int
    date: datetime


def _to_int(value: object, *, what: str) -> int:
    """Coerce a numeric cell into an ``int``, rejecting fractions and text."""

    if isinstance(value, bool):
        raise MalformedLedgerError(f"{what} must be a number, got {value!r}")
    if isinstance(value, int):
        return value
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise MalformedLedgerError(f"{what} must be a number, got {value!r}") from exc
    if number != number.to_integral_value():
        raise MalformedLedgerError(f"{what} must be a whole number, got {value!r}")
    return int(number)


def parse_limit(value: object, *, product_id: int) -> Optional[int]:
    """Interpret a limit cell.

    Returns ``None`` for a disabled product (blank or zero), ``UNLIMITED`` for
    ``-1`` and the cap otherwise.

    Raises:
        MalformedLedgerError: For text, fractions or values below ``-1``.
    """

    if value is None or value == "" or value == 0:
        return None
    limit = _to_int(value, what=f"Limit of product {product_id}")
    if limit == 0:
        return None
    if limit < UNLIMITED:
        raise MalformedLedgerError(
            f"Limit of product {product_id} is {limit}; use -1 for unlimited or 0 to disable"
        )
    return limit


def parse_quantity(value: object, *, what: str = "Quantity") -> int:
    """Interpret an ordered-quantity cell; blank means zero."""

    if value is None or value == "":
        return 0
    quantity = _to_int(value, what=what)
    if quantity < 0:
        raise MalformedLedgerError(f"{what} cannot be negative, got {value!r}")
    return quantity


def _parse_price(value: object, *, product_id: int) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise MalformedLedgerError(f"Price of product {product_id} must be a number, got {value!r}") from exc


def _text(value: object) -> str:
    return str(value) if value is not None else ""


@dataclass(frozen=True)
class LedgerSnapshot:
    """Typed, rectangular view of a ledger grid read at one point in time.

    The first :data:`FIRST_USER_ROW_INDEX` rows are headers (names, prices,
    images, limits, stored totals); every following row belongs to one member.
    The stored totals row is advisory and never read; totals are recomputed
    from the user rows.
    """

    header_rows: Tuple[Tuple[object, ...], ...]
    user_rows: Tuple[Tuple[object, ...], ...]

    @classmethod
    def from_grid(cls, grid: Sequence[Sequence[object]]) -> "LedgerSnapshot":
        """Build a snapshot from raw row-major values.

        Raises:
            MalformedLedgerError: If the grid has fewer than five header rows.
        """

        if len(grid) < FIRST_USER_ROW_INDEX:
            raise MalformedLedgerError(
                f"Ledger needs {FIRST_USER_ROW_INDEX} header rows, found {len(grid)}"
            )
        width = max(len(row) for row in grid)
        rows = [tuple(row) + (None,) * (width - len(row)) for row in grid]
        return cls(
            header_rows=tuple(rows[:FIRST_USER_ROW_INDEX]),
            user_rows=tuple(rows[FIRST_USER_ROW_INDEX:]),
        )

    @property
    def width(self) -> int:
        return len(self.header_rows[0])

    @property
    def product_ids(self) -> range:
        return range(IDENTITY_COLUMN_INDEX + 1, self.width)

    def name(self, product_id: int) -> str:
        return _text(self.header_rows[LedgerRow.NAMES][product_id])

    def price(self, product_id: int) -> Decimal:
        return _parse_price(self.header_rows[LedgerRow.PRICES][product_id], product_id=product_id)

    def image_url(self, product_id: int) -> str:
        return _text(self.header_rows[LedgerRow.IMAGES][product_id])

    def limit(self, product_id: int) -> Optional[int]:
        return parse_limit(self.header_rows[LedgerRow.LIMITS][product_id], product_id=product_id)

    def identity(self, user_row_index: int) -> object:
        return self.user_rows[user_row_index][IDENTITY_COLUMN_INDEX]

    def user_row_index(self, identity: str) -> int:
        """Return the first user row whose identity cell equals ``identity``."""

        for index, row in enumerate(self.user_rows):
            if row[IDENTITY_COLUMN_INDEX] == identity:
                return index
        return -1

    def ordered(self, user_row_index: int, product_id: int) -> int:
        return parse_quantity(
            self.user_rows[user_row_index][product_id],
            what=f"Quantity of product {product_id} in user row {user_row_index}",
        )

    def total_ordered(self, product_id: int) -> int:
        return sum(self.ordered(index, product_id) for index in range(len(self.user_rows)))


def build_ledger_view(snapshot: LedgerSnapshot, identity: str) -> LedgerView:
    """Compute the per-product view of a ledger for one member.

    Products whose limit is blank or zero are skipped entirely. For unlimited
    products ``available`` is ``-1``. Otherwise ``available`` is the highest
    total the member could set their own order to:
    ``limit - total_ordered + own_ordered``, never lower than ``own_ordered``
    even when the operator has lowered a limit below what is already ordered.
    """

    user_row_index = snapshot.user_row_index(identity)
    products: Dict[int, ProductView] = {}
    for product_id in snapshot.product_ids:
        limit = snapshot.limit(product_id)
        if limit is None:
            continue

        ordered = snapshot.ordered(user_row_index, product_id) if user_row_index != -1 else 0
        if limit == UNLIMITED:
            available = UNLIMITED
        else:
            available = max(limit - snapshot.total_ordered(product_id) + ordered, ordered)

        products[product_id] = ProductView(
            name=snapshot.name(product_id),
            image_url=snapshot.image_url(product_id),
            price=snapshot.price(product_id),
            available=available,
            ordered=ordered,
        )
    return LedgerView(products=products, user_row_index=user_row_index)


def read_ledger(context: RuntimeContext, ledger: LedgerRef) -> LedgerSnapshot:
    """Read a ledger sheet into a :class:`LedgerSnapshot`.

    Raises:
        OrdersNotOpenError: If ``ledger`` is the open ledger and the sheet does
            not exist.
        data_manager.SheetNotFoundError: If a past ledger does not exist.
        MalformedLedgerError: If the sheet lacks the header rows.
    """

    try:
        with context.lock:
            grid = data_manager.read_grid(context.workbook, ledger.title)
    except data_manager.SheetNotFoundError as exc:
        if ledger.is_current:
            log.warning("Orders are not open: sheet '%s' is missing", ledger.title)
            raise OrdersNotOpenError() from exc
        raise
    return LedgerSnapshot.from_grid(grid)


def compute_view(context: RuntimeContext, identity: str, ledger: Optional[LedgerRef] = None) -> LedgerView:
    """Read ``ledger`` (the open one by default) and build a member's view."""

    ledger = ledger or LedgerRef.current()
    view = build_ledger_view(read_ledger(context, ledger), identity)
    log.debug(
        "Computed view of '%s' for '%s': %d products, user row %d",
        ledger.title,
        identity,
        len(view.products),
        view.user_row_index,
    )
    return view


def get_products(context: RuntimeContext, identity: str) -> Dict[int, ProductView]:
    """Return the open ledger's products as seen by ``identity``."""

    return compute_view(context, identity).products


def set_ordered(
    context: RuntimeContext,
    identity: str,
    product_id: int,
    quantity: int,
    *,
    ledger: Optional[LedgerRef] = None,
) -> Dict[int, ProductView]:
    """Set the quantity of one product a member has ordered.

    The ledger is re-read before validating. An existing row is updated in a
    single cell; a member without a row gets a new row holding their identity
    and the quantity in the product's column, with every other product cell
    left blank. Nothing is written when validation fails. The workbook is not
    persisted here; callers save once the change is accepted.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        identity (str): Member identity (email), matched exactly.
        product_id (int): Product id (column index) from the member's view.
        quantity (int): New total quantity for the product.
        ledger (LedgerRef | None): Ledger to modify, the open one by default.

    Returns:
        dict[int, ProductView]: The member's products with ``ordered`` updated
            for ``product_id``.

    Raises:
        NegativeQuantityError: If ``quantity`` is negative (checked before any
            read).
        OrdersNotOpenError: If there is no open ledger.
        ProductNotFoundError: If the product is unknown or disabled.
        QuantityNotAvailableError: If ``quantity`` exceeds the member's
            ``available`` ceiling.
    """

    if quantity < 0:
        log.warning("Rejected negative quantity %s for '%s'", quantity, identity)
        raise NegativeQuantityError()

    ledger = ledger or LedgerRef.current()
    view = compute_view(context, identity, ledger)
    product = view.products.get(product_id)
    if product is None:
        log.warning("Rejected order for unknown product %s by '%s'", product_id, identity)
        raise ProductNotFoundError()

    if product.available != UNLIMITED and quantity > product.available:
        log.warning(
            "Rejected %s x product %s for '%s': only %s available",
            quantity,
            product_id,
            identity,
            product.available,
        )
        raise QuantityNotAvailableError(product.available)

    with context.lock:
        if view.user_row_index != -1:
            data_manager.update_cell(
                context.workbook,
                ledger.title,
                FIRST_USER_ROW_INDEX + view.user_row_index,
                product_id,
                quantity,
            )
        else:
            row: List[object] = [None] * (product_id + 1)
            row[IDENTITY_COLUMN_INDEX] = identity
            row[product_id] = quantity
            data_manager.append_row(context.workbook, ledger.title, row)

    log.info(
        "Set '%s' order of product %s (%s) to %s in '%s'",
        identity,
        product_id,
        product.name,
        quantity,
        ledger.title,
    )
    products = dict(view.products)
    products[product_id] = replace(product, ordered=quantity)
    return products


def get_users_with_orders(context: RuntimeContext, ledger: Optional[LedgerRef] = None) -> List[str]:
    """Return identities whose ledger row holds any non-zero quantity."""

    snapshot = read_ledger(context, ledger or LedgerRef.current())
    identities = []
    for row in snapshot.user_rows:
        identity = row[IDENTITY_COLUMN_INDEX]
        if identity and any(cell for cell in row[IDENTITY_COLUMN_INDEX + 1:]):
            identities.append(str(identity))
    return identities


def parse_marker(value: str, *, sheet_title: str) -> datetime:
    """Parse a ledger's creation marker into an aware ``datetime``.

    Naive timestamps are taken as UTC.

    Raises:
        MalformedLedgerError: If ``value`` is not an ISO 8601 timestamp.
    """

    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        log.error("Ledger '%s' has an unreadable marker %r", sheet_title, value)
        raise MalformedLedgerError(f"Ledger '{sheet_title}' has an invalid marker: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def list_past_orders(context: RuntimeContext, identity: str) -> List[PastOrder]:
    """List the past ledgers ``identity`` has a row in.

    Candidates are the sheets tagged with the ledger marker, minus the open
    ``Orders`` sheet. Their identity columns are fetched in one batched read,
    which is skipped entirely when there are no candidates. The result is
    unsorted.

    Raises:
        MalformedLedgerError: If a candidate's marker is not a timestamp.
    """

    with context.lock:
        sheets = data_manager.list_sheets_with_metadata(context.workbook, ORDER_SHEET_METADATA_KEY)

    sheet_dates: Dict[int, datetime] = {}
    for info in sheets:
        if info.title == SheetName.ORDERS.value:
            continue
        sheet_dates[info.sheet_id] = parse_marker(
            info.metadata[ORDER_SHEET_METADATA_KEY], sheet_title=info.title
        )

    if not sheet_dates:
        return []

    with context.lock:
        columns = data_manager.batch_read_columns(
            context.workbook,
            list(sheet_dates),
            column_index=IDENTITY_COLUMN_INDEX,
            start_row_index=FIRST_USER_ROW_INDEX,
        )

    orders = []
    for sheet_id, date in sheet_dates.items():
        column = columns.get(sheet_id) or []
        if identity in column:
            orders.append(PastOrder(id=sheet_id, date=date))
    log.debug("Found %d past orders for '%s'", len(orders), identity)
    return orders


def get_ledger_by_id(context: RuntimeContext, sheet_id: int) -> Optional[LedgerRef]:
    """Resolve a registry id to a ledger.

    Returns ``None`` when the id is unknown or the sheet is not tagged as a
    ledger, so ids of arbitrary sheets cannot be used to read them.
    """

    with context.lock:
        info = data_manager.get_sheet_info(context.workbook, sheet_id)
    if info is None or ORDER_SHEET_METADATA_KEY not in info.metadata:
        log.debug("Sheet id %s is not a ledger", sheet_id)
        return None
    return LedgerRef.for_sheet(info)


def get_users(context: RuntimeContext, identities: Iterable[str]) -> List[data_manager.UserRow]:
    """Resolve identities against the ``Users`` directory.

    Leading and trailing whitespace is ignored on both the requested and the
    stored identities, rows with a blank identity are skipped and unknown
    identities are silently omitted. Returned records carry the trimmed email.
    """

    wanted = {identity.strip() for identity in identities}
    with context.lock:
        rows = list(data_manager.iter_users(context.workbook))

    users = []
    for row in rows:
        email = row.email.strip()
        if not email:
            continue
        if email in wanted:
            users.append(replace(row, email=email))
    return users


def get_user(context: RuntimeContext, identity: str) -> data_manager.UserRow:
    """Resolve a single identity.

    Raises:
        UnknownUserError: If the directory has no matching row.
    """

    users = get_users(context, [identity])
    if not users:
        log.warning("Unknown user '%s'", identity)
        raise UnknownUserError()
    return users[0]


def get_locations(context: RuntimeContext) -> List[data_manager.LocationRow]:
    """Return pickup locations that have a name."""

    with context.lock:
        rows = list(data_manager.iter_locations(context.workbook))
    return [row for row in rows if row.name]


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context.

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
    """Validate workbook compatibility before serving or mutating state.

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


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""
    with context.lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)
