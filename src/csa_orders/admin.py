"""Operator workflows: the weekly ledger lifecycle and harvest lists.

A week moves through three sheets:

1. ``prepare_new_week`` copies ``Orders Template`` to ``Orders (pending)`` and
   tags it with its creation timestamp, which later dates the week in order
   history.
2. ``open_orders`` renames the pending sheet to ``Orders`` once the operator
   has filled in prices and limits; members can then order.
3. ``close_orders`` renames ``Orders`` to ``Orders <M>-<D>`` and records what
   each member spent as a new column on the ``Users`` sheet.

Closed ledgers are never deleted. Harvest lists summarise any ledger per
harvest day for the people picking and packing.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from . import data_manager, log
from .constants import IDENTITY_COLUMN_INDEX, ORDER_SHEET_METADATA_KEY, SheetName
from .core_logic import (
    BusinessRuleViolation,
    LedgerRef,
    LedgerSnapshot,
    RuntimeContext,
    get_locations,
    read_ledger,
)


ORDERS_SHEET = SheetName.ORDERS.value
PENDING_SHEET = SheetName.PENDING_ORDERS.value
TEMPLATE_SHEET = SheetName.ORDERS_TEMPLATE.value
USERS_SHEET = SheetName.USERS.value


class WeekLifecycleError(BusinessRuleViolation):
    """Raised when a lifecycle step does not apply to the workbook's state."""


@dataclass(frozen=True)
class PackingSlip:
    """What one member picks up, keyed by product name."""

    email: str
    name: str
    location: str
    quantities: Dict[str, int] = field(default_factory=dict)

    def render(self) -> str:
        lines = [f"{self.name} ({self.location})"]
        lines.extend(f"{quantity} {product}" for product, quantity in self.quantities.items())
        return "\n".join(lines)


@dataclass(frozen=True)
class HarvestList:
    """Harvest totals and packing slips for the locations of one harvest day."""

    harvest_day: str
    locations: Tuple[str, ...]
    products: List[Tuple[str, int]]
    packing_slips: List[PackingSlip]


def _now(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def prepare_new_week(context: RuntimeContext, *, now: Optional[datetime] = None) -> int:
    """Create ``Orders (pending)`` from the template and tag it as a ledger.

    Returns:
        int: Registry id of the new ledger.

    Raises:
        WeekLifecycleError: If a pending week already exists or the template
            sheet is missing.
    """

    moment = _now(now)
    with context.lock:
        workbook = context.workbook
        if PENDING_SHEET in workbook.sheetnames:
            raise WeekLifecycleError(f"You already have a pending week, see the '{PENDING_SHEET}' sheet")
        if TEMPLATE_SHEET not in workbook.sheetnames:
            raise WeekLifecycleError(f"There is no '{TEMPLATE_SHEET}' sheet to copy")

        data_manager.duplicate_sheet(workbook, TEMPLATE_SHEET, PENDING_SHEET)
        sheet_id = data_manager.add_sheet_metadata(
            workbook, PENDING_SHEET, ORDER_SHEET_METADATA_KEY, moment.isoformat()
        )

    log.info("Prepared new week '%s' (sheet id %d)", PENDING_SHEET, sheet_id)
    return sheet_id


def open_orders(context: RuntimeContext) -> List[int]:
    """Open the pending week for ordering.

    Limits are validated first (anything below ``-1`` is rejected), then the
    sheet is renamed to ``Orders`` and the columns of disabled products are
    hidden.

    Returns:
        list[int]: 0-based indices of the hidden product columns.

    Raises:
        WeekLifecycleError: If there is no pending week or orders are already
            open.
        MalformedLedgerError: If a limit is invalid.
    """

    with context.lock:
        workbook = context.workbook
        if PENDING_SHEET not in workbook.sheetnames:
            raise WeekLifecycleError(
                f"There is no '{PENDING_SHEET}' sheet. Prepare a week before opening orders."
            )
        if ORDERS_SHEET in workbook.sheetnames:
            raise WeekLifecycleError(
                f"There is already an '{ORDERS_SHEET}' sheet. Close that week before opening a new one."
            )

        snapshot = LedgerSnapshot.from_grid(data_manager.read_grid(workbook, PENDING_SHEET))
        hidden = [product_id for product_id in snapshot.product_ids if snapshot.limit(product_id) is None]

        data_manager.rename_sheet(workbook, PENDING_SHEET, ORDERS_SHEET)
        data_manager.hide_columns(workbook, ORDERS_SHEET, hidden)

    log.info("Opened orders with %d hidden products", len(hidden))
    return hidden


def closed_sheet_title(moment: datetime) -> str:
    return f"{ORDERS_SHEET} {moment.month}-{moment.day}"


def close_orders(context: RuntimeContext, *, now: Optional[datetime] = None) -> str:
    """Close the open week and record each member's spend.

    Every ledger row must belong to a member of the ``Users`` sheet; the check
    runs before anything is modified. Spend is ``sum(quantity * price)`` over
    all products and is written to a new ``Users`` column headed by the close
    date. Members who spent nothing are left blank.

    Returns:
        str: The new title of the closed ledger.

    Raises:
        WeekLifecycleError: If orders are not open, the closed title is taken,
            or a ledger row names an unknown member.
    """

    moment = _now(now)
    new_title = closed_sheet_title(moment)

    with context.lock:
        workbook = context.workbook
        if ORDERS_SHEET not in workbook.sheetnames:
            raise WeekLifecycleError(f"There is no '{ORDERS_SHEET}' sheet to close out.")
        if new_title in workbook.sheetnames:
            raise WeekLifecycleError(
                f"A sheet named '{new_title}' already exists. Please rename it and try again."
            )

        email_to_row: Dict[str, int] = {}
        for row_index, row in enumerate(data_manager.read_grid(workbook, USERS_SHEET)[1:], start=1):
            if row and row[0]:
                email_to_row[str(row[0]).strip()] = row_index

        snapshot = LedgerSnapshot.from_grid(data_manager.read_grid(workbook, ORDERS_SHEET))
        spent_by_row: Dict[int, Decimal] = {}
        for user_row_index, row in enumerate(snapshot.user_rows):
            identity = row[IDENTITY_COLUMN_INDEX]
            if not identity and not any(row[IDENTITY_COLUMN_INDEX + 1:]):
                continue
            users_row = email_to_row.get(str(identity or "").strip())
            if users_row is None:
                raise WeekLifecycleError(
                    f"The email address '{identity}' was found in the order but not in the "
                    f"'{USERS_SHEET}' sheet. Update it to match a user or delete the row."
                )

            spent = Decimal("0")
            for product_id in snapshot.product_ids:
                quantity = snapshot.ordered(user_row_index, product_id)
                if quantity:
                    spent += quantity * snapshot.price(product_id)
            if spent:
                spent_by_row[users_row] = spent_by_row.get(users_row, Decimal("0")) + spent

        data_manager.rename_sheet(workbook, ORDERS_SHEET, new_title)
        data_manager.append_column(workbook, USERS_SHEET, moment.date(), spent_by_row)

    log.info("Closed orders as '%s' (%d members charged)", new_title, len(spent_by_row))
    return new_title


def group_locations_by_harvest_day(context: RuntimeContext) -> Dict[str, List[str]]:
    """Map each harvest day to the locations picking up from it."""

    groups: Dict[str, List[str]] = defaultdict(list)
    for location in get_locations(context):
        groups[location.harvest_day].append(location.name)
    return dict(groups)


def get_user_orders(
    context: RuntimeContext,
    ledger: LedgerRef,
    locations: Sequence[str],
) -> Tuple[List[Tuple[str, int]], List[PackingSlip]]:
    """Collect the orders of members picking up at ``locations``.

    Returns:
        tuple: ``(products, slips)`` where ``products`` lists
            ``(product name, total to harvest)`` in sheet order, omitting
            products nobody ordered, and ``slips`` holds one
            :class:`PackingSlip` per member who ordered anything.
    """

    with context.lock:
        users = list(data_manager.iter_users(context.workbook))
    members = {
        user.email.strip(): user
        for user in users
        if user.email.strip() and user.location in locations
    }

    snapshot = read_ledger(context, ledger)
    totals: Dict[int, int] = defaultdict(int)
    slips = []
    for user_row_index, row in enumerate(snapshot.user_rows):
        member = members.get(str(row[IDENTITY_COLUMN_INDEX] or "").strip())
        if member is None:
            continue

        quantities: Dict[str, int] = {}
        for product_id in snapshot.product_ids:
            quantity = snapshot.ordered(user_row_index, product_id)
            if quantity:
                quantities[snapshot.name(product_id)] = quantity
                totals[product_id] += quantity

        if quantities:
            slips.append(PackingSlip(
                email=member.email.strip(),
                name=member.name,
                location=member.location,
                quantities=quantities,
            ))

    products = [
        (snapshot.name(product_id), totals[product_id])
        for product_id in snapshot.product_ids
        if totals.get(product_id)
    ]
    return products, slips


def build_harvest_lists(context: RuntimeContext, ledger: LedgerRef) -> List[HarvestList]:
    """Build one harvest list per harvest day, skipping days with no orders."""

    harvest_lists = []
    for day, locations in group_locations_by_harvest_day(context).items():
        products, slips = get_user_orders(context, ledger, locations)
        if not products:
            log.debug("No orders to harvest on %s", day)
            continue
        harvest_lists.append(HarvestList(
            harvest_day=day,
            locations=tuple(locations),
            products=products,
            packing_slips=slips,
        ))
    return harvest_lists


def default_harvest_list_title(harvest_list: HarvestList, ledger: LedgerRef) -> str:
    return f"{ledger.title} {harvest_list.harvest_day} harvest"


def write_harvest_list(context: RuntimeContext, harvest_list: HarvestList, title: str) -> None:
    """Write a harvest list onto a new sheet.

    Product totals fill columns A-B from the first row. The packing slips go
    into a single cell in column A after two blank rows, separated by
    blank lines so the cell prints as one page of slips.

    Raises:
        data_manager.SheetExistsError: If ``title`` is already used.
    """

    with context.lock:
        workbook = context.workbook
        data_manager.create_sheet(workbook, title)
        for name, total in harvest_list.products:
            data_manager.append_row(workbook, title, [name, total])
        slips = "\n\n".join(slip.render() for slip in harvest_list.packing_slips)
        data_manager.update_cell(workbook, title, len(harvest_list.products) + 2, 0, slips)
    log.info("Wrote %s harvest list to '%s'", harvest_list.harvest_day, title)


__all__ = [
    "WeekLifecycleError",
    "PackingSlip",
    "HarvestList",
    "prepare_new_week",
    "open_orders",
    "close_orders",
    "closed_sheet_title",
    "group_locations_by_harvest_day",
    "get_user_orders",
    "build_harvest_lists",
    "default_harvest_list_title",
    "write_harvest_list",
]
