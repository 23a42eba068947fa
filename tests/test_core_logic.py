"""Tests for the ordering core, run against real in-memory workbooks."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import Mock

import pytest

from csa_orders import constants, core_logic, data_manager

from conftest import STANDARD_PRODUCTS


ORDERS = constants.SheetName.ORDERS.value


def _grid(limits, users=()):
    """Build a raw ledger grid with one product per limit."""

    width = len(limits)
    return [
        [None, *[f"P{index}" for index in range(1, width + 1)]],
        [None, *([1] * width)],
        [None, *([""] * width)],
        [None, *limits],
        [None, *([None] * width)],
        *users,
    ]


def _ledger_rows(context, title=ORDERS):
    return data_manager.read_grid(context.workbook, title)[constants.FIRST_USER_ROW_INDEX:]


# ---------------------------------------------------------------------------
# Cell parsing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, None), ("", None), (0, None), ("0", None), (-1, -1), ("-1", -1), (7, 7), ("12", 12), (4.0, 4)],
)
def test_parse_limit_interprets_cells(raw, expected):
    assert core_logic.parse_limit(raw, product_id=1) == expected


@pytest.mark.parametrize("raw", [-2, "-5", "lots", 2.5, True])
def test_parse_limit_rejects_invalid_values(raw):
    with pytest.raises(core_logic.MalformedLedgerError):
        core_logic.parse_limit(raw, product_id=1)


def test_parse_quantity_blank_is_zero():
    assert core_logic.parse_quantity(None) == 0
    assert core_logic.parse_quantity("") == 0
    assert core_logic.parse_quantity("3") == 3


def test_parse_quantity_rejects_negative_cells():
    with pytest.raises(core_logic.MalformedLedgerError):
        core_logic.parse_quantity(-1)


def test_snapshot_requires_header_rows():
    with pytest.raises(core_logic.MalformedLedgerError):
        core_logic.LedgerSnapshot.from_grid([[None, "A"], [None, 1]])


def test_snapshot_pads_short_rows():
    snapshot = core_logic.LedgerSnapshot.from_grid(_grid([5, 5], users=[["a@example.com", 2]]))

    assert snapshot.width == 3
    assert snapshot.ordered(0, 2) == 0
    assert list(snapshot.product_ids) == [1, 2]


# ---------------------------------------------------------------------------
# Ledger views
# ---------------------------------------------------------------------------


def test_build_ledger_view_skips_disabled_products():
    snapshot = core_logic.LedgerSnapshot.from_grid(_grid([3, None, 0, -1]))

    view = core_logic.build_ledger_view(snapshot, "a@example.com")

    assert sorted(view.products) == [1, 4]
    assert view.user_row_index == -1


def test_build_ledger_view_clamps_available_to_own_order():
    """Lowering a limit below what is ordered must not hide the member's order."""

    snapshot = core_logic.LedgerSnapshot.from_grid(
        _grid([2], users=[["a@example.com", 3], ["b@example.com", 2]])
    )

    view_a = core_logic.build_ledger_view(snapshot, "a@example.com")
    view_b = core_logic.build_ledger_view(snapshot, "b@example.com")
    view_c = core_logic.build_ledger_view(snapshot, "c@example.com")

    assert (view_a.products[1].available, view_a.products[1].ordered) == (3, 3)
    assert (view_b.products[1].available, view_b.products[1].ordered) == (2, 2)
    assert (view_c.products[1].available, view_c.products[1].ordered) == (0, 0)


def test_build_ledger_view_matches_identity_exactly():
    snapshot = core_logic.LedgerSnapshot.from_grid(_grid([5], users=[["a@example.com", 1]]))

    assert core_logic.build_ledger_view(snapshot, "A@example.com").user_row_index == -1
    assert core_logic.build_ledger_view(snapshot, " a@example.com").user_row_index == -1
    assert core_logic.build_ledger_view(snapshot, "a@example.com").user_row_index == 0


def test_build_ledger_view_uses_first_duplicate_row():
    snapshot = core_logic.LedgerSnapshot.from_grid(
        _grid([10], users=[["a@example.com", 1], ["a@example.com", 2]])
    )

    view = core_logic.build_ledger_view(snapshot, "a@example.com")

    assert view.user_row_index == 0
    assert view.products[1].ordered == 1
    assert view.products[1].available == 10 - 3 + 1


def test_get_products_for_member_with_row(orders_context):
    products = core_logic.get_products(orders_context, "ellen@example.com")

    assert products == {
        1: core_logic.ProductView("Lettuce", "http://img/lettuce.png", Decimal("2.5"), 6, 3),
        2: core_logic.ProductView("Kale", "http://img/kale.png", Decimal("3"), 5, 5),
        3: core_logic.ProductView("Garlic", "http://img/garlic.png", Decimal("0.75"), -1, 0),
    }


def test_get_products_for_member_without_row(orders_context):
    products = core_logic.get_products(orders_context, "dallas@example.com")

    assert {product_id: (p.available, p.ordered) for product_id, p in products.items()} == {
        1: (3, 0),
        2: (0, 0),
        3: (-1, 0),
    }


def test_get_products_without_open_ledger_raises(directory_context):
    with pytest.raises(core_logic.OrdersNotOpenError) as excinfo:
        core_logic.get_products(directory_context, "ellen@example.com")
    assert excinfo.value.status_code == 404
    assert excinfo.value.code is constants.ErrorCode.ORDERS_NOT_OPEN


def test_read_ledger_missing_past_sheet_propagates(directory_context):
    with pytest.raises(data_manager.SheetNotFoundError):
        core_logic.read_ledger(directory_context, core_logic.LedgerRef("Orders 5-1", sheet_id=9))


def test_compute_view_on_malformed_limit_raises(directory_context, ledger_factory):
    ledger_factory(directory_context, products=[("Beets", 2, "", -3)])

    with pytest.raises(core_logic.MalformedLedgerError):
        core_logic.compute_view(directory_context, "ellen@example.com")


def test_compute_view_reads_past_ledger(directory_context, ledger_factory):
    ledger_factory(
        directory_context,
        title="Orders 4-24",
        products=[("Beets", 2, "", 4)],
        users=[["ellen@example.com", 1]],
    )

    view = core_logic.compute_view(
        directory_context, "ellen@example.com", core_logic.LedgerRef("Orders 4-24")
    )

    assert view.products[1].ordered == 1


# ---------------------------------------------------------------------------
# set_ordered
# ---------------------------------------------------------------------------


def test_set_ordered_updates_existing_row(orders_context):
    products = core_logic.set_ordered(orders_context, "ellen@example.com", 1, 6)

    assert products[1].ordered == 6
    assert products[2].ordered == 5
    assert _ledger_rows(orders_context)[0] == ["ellen@example.com", 6, 5, None, None]
    assert len(_ledger_rows(orders_context)) == 2


def test_set_ordered_appends_row_for_new_member(orders_context):
    products = core_logic.set_ordered(orders_context, "dallas@example.com", 3, 40)

    assert products[3].ordered == 40
    assert products[3].available == -1
    rows = _ledger_rows(orders_context)
    assert rows[2] == ["dallas@example.com", None, None, 40, None]
    assert core_logic.get_products(orders_context, "dallas@example.com")[3].ordered == 40


def test_set_ordered_same_value_twice_does_not_duplicate_rows(orders_context):
    core_logic.set_ordered(orders_context, "dallas@example.com", 1, 2)
    core_logic.set_ordered(orders_context, "dallas@example.com", 1, 2)

    identities = [row[0] for row in _ledger_rows(orders_context)]
    assert identities.count("dallas@example.com") == 1


def test_set_ordered_up_to_available(orders_context):
    core_logic.set_ordered(orders_context, "ash@example.com", 1, 7)

    assert core_logic.get_products(orders_context, "ellen@example.com")[1].available == 3


def test_set_ordered_zero_keeps_row(orders_context):
    core_logic.set_ordered(orders_context, "ellen@example.com", 2, 0)

    assert _ledger_rows(orders_context)[0][2] == 0
    assert core_logic.get_products(orders_context, "ash@example.com")[2].available == 5


def test_set_ordered_over_available_raises_without_writing(orders_context):
    before = _ledger_rows(orders_context)

    with pytest.raises(core_logic.QuantityNotAvailableError) as excinfo:
        core_logic.set_ordered(orders_context, "ash@example.com", 2, 1)

    assert excinfo.value.available == 0
    assert excinfo.value.extra == {"available": 0}
    assert excinfo.value.status_code == 409
    assert _ledger_rows(orders_context) == before


def test_set_ordered_negative_checked_before_reading(directory_context):
    """No ledger exists, yet the negative quantity is reported first."""

    with pytest.raises(core_logic.NegativeQuantityError):
        core_logic.set_ordered(directory_context, "ellen@example.com", 1, -1)


@pytest.mark.parametrize("product_id", [4, 9, 0])
def test_set_ordered_unknown_or_disabled_product(orders_context, product_id):
    with pytest.raises(core_logic.ProductNotFoundError):
        core_logic.set_ordered(orders_context, "ellen@example.com", product_id, 1)


def test_set_ordered_without_open_ledger(directory_context):
    with pytest.raises(core_logic.OrdersNotOpenError):
        core_logic.set_ordered(directory_context, "ellen@example.com", 1, 1)


def test_set_ordered_does_not_persist(orders_context):
    core_logic.set_ordered(orders_context, "ellen@example.com", 1, 4)

    on_disk = data_manager.open_workbook(orders_context.settings.data_file)
    assert ORDERS not in on_disk.sheetnames


def test_set_ordered_rereads_ledger(orders_context):
    """Changes written behind the core's back are honoured."""

    data_manager.update_cell(orders_context.workbook, ORDERS, constants.FIRST_USER_ROW_INDEX + 1, 1, 7)

    with pytest.raises(core_logic.QuantityNotAvailableError) as excinfo:
        core_logic.set_ordered(orders_context, "ellen@example.com", 1, 4)
    assert excinfo.value.available == 3


def test_get_users_with_orders_skips_empty_rows(orders_context):
    data_manager.append_row(orders_context.workbook, ORDERS, ["dallas@example.com", 0, None, 0, None])
    data_manager.append_row(orders_context.workbook, ORDERS, [None, 1, None, None, None])

    assert core_logic.get_users_with_orders(orders_context) == ["ellen@example.com", "ash@example.com"]


# ---------------------------------------------------------------------------
# Order history
# ---------------------------------------------------------------------------


@pytest.fixture
def history_context(directory_context, ledger_factory):
    products = STANDARD_PRODUCTS[:2]
    ids = {
        "april": ledger_factory(
            directory_context,
            title="Orders 4-24",
            products=products,
            users=[["ellen@example.com", 1, 0], ["ash@example.com", 0, 1]],
            marker="2024-04-24T10:00:00+00:00",
        ),
        "may": ledger_factory(
            directory_context,
            title="Orders 5-1",
            products=products,
            users=[["ash@example.com", 2, 0]],
            marker="2024-05-01T10:00:00",
        ),
        "open": ledger_factory(
            directory_context,
            products=products,
            users=[["ellen@example.com", 1, 1]],
        ),
        "untagged": ledger_factory(
            directory_context,
            title="Scratch",
            products=products,
            users=[["ellen@example.com", 1, 1]],
            marker=None,
        ),
    }
    return directory_context, ids


def test_list_past_orders_returns_matching_closed_ledgers(history_context):
    context, ids = history_context

    orders = core_logic.list_past_orders(context, "ellen@example.com")

    assert orders == [core_logic.PastOrder(id=ids["april"], date=datetime(2024, 4, 24, 10, tzinfo=UTC))]


def test_list_past_orders_treats_naive_markers_as_utc(history_context):
    context, ids = history_context

    orders = core_logic.list_past_orders(context, "ash@example.com")

    assert {order.id for order in orders} == {ids["april"], ids["may"]}
    may = next(order for order in orders if order.id == ids["may"])
    assert may.date.utcoffset() == timedelta(0)


def test_list_past_orders_unknown_member_is_empty(history_context):
    context, _ = history_context
    assert core_logic.list_past_orders(context, "kane@example.com") == []


def test_list_past_orders_skips_batch_read_without_candidates(directory_context, ledger_factory, monkeypatch):
    ledger_factory(directory_context, products=STANDARD_PRODUCTS, users=[["ellen@example.com", 1]])
    batch_read = Mock(name="batch_read_columns")
    monkeypatch.setattr(data_manager, "batch_read_columns", batch_read)

    assert core_logic.list_past_orders(directory_context, "ellen@example.com") == []
    batch_read.assert_not_called()


def test_list_past_orders_rejects_malformed_marker(directory_context, ledger_factory):
    ledger_factory(directory_context, title="Orders 4-24", products=STANDARD_PRODUCTS, marker="last week")

    with pytest.raises(core_logic.MalformedLedgerError):
        core_logic.list_past_orders(directory_context, "ellen@example.com")


def test_parse_marker_keeps_offsets():
    parsed = core_logic.parse_marker("2024-05-01T08:00:00-04:00", sheet_title="Orders 5-1")
    assert parsed.utcoffset() == timedelta(hours=-4)
    assert parsed.astimezone(timezone.utc).hour == 12


def test_get_ledger_by_id_resolves_only_ledgers(history_context):
    context, ids = history_context

    assert core_logic.get_ledger_by_id(context, ids["april"]) == core_logic.LedgerRef("Orders 4-24", ids["april"])
    assert core_logic.get_ledger_by_id(context, ids["untagged"]) is None
    assert core_logic.get_ledger_by_id(context, 1) is None
    assert core_logic.get_ledger_by_id(context, 999) is None


def test_ledger_ref_current_flag():
    assert core_logic.LedgerRef.current().is_current
    assert not core_logic.LedgerRef("Orders 5-1").is_current


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------


def test_get_users_trims_both_sides(directory_context):
    data_manager.append_row(directory_context.workbook, constants.SheetName.USERS.value, ["  kane@example.com ", "Kane", "Barn"])

    users = core_logic.get_users(directory_context, [" kane@example.com", "ash@example.com", "nobody@example.com"])

    assert [user.email for user in users] == ["ash@example.com", "kane@example.com"]
    assert users[0].balance == Decimal("0")


def test_get_users_skips_blank_identities(directory_context):
    data_manager.append_row(directory_context.workbook, constants.SheetName.USERS.value, ["   ", "Ghost", "Barn"])

    assert core_logic.get_users(directory_context, [""]) == []


@pytest.mark.parametrize(
    "garbage",
    [
        [None, None, None, "TOTAL"],
        ["kane@example.com", "Kane", "Barn", "=SUM(E5:Z5)"],
    ],
)
def test_get_user_survives_garbage_directory_rows(directory_context, garbage):
    data_manager.append_row(directory_context.workbook, constants.SheetName.USERS.value, garbage)

    assert core_logic.get_user(directory_context, "ellen@example.com").balance == Decimal("12.5")



def test_get_user_returns_record(directory_context):
    user = core_logic.get_user(directory_context, "ellen@example.com")
    assert user == data_manager.UserRow("ellen@example.com", "Ellen Ripley", "Barn", Decimal("12.5"))


def test_get_user_unknown_raises(directory_context):
    with pytest.raises(core_logic.UnknownUserError) as excinfo:
        core_logic.get_user(directory_context, "kane@example.com")
    assert excinfo.value.status_code == 401


def test_get_locations_requires_name(directory_context):
    data_manager.append_row(directory_context.workbook, constants.SheetName.LOCATIONS.value, [None, "Sunday"])

    assert [location.name for location in core_logic.get_locations(directory_context)] == ["Barn", "Market"]


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_reads_config(config_bundle):
    context = core_logic.load_runtime_context(config_bundle.config_path)

    assert context.settings.data_file == config_bundle.workbook_path
    assert context.settings.farm_name == "Frisky Acres"
    assert constants.SheetName.ORDERS_TEMPLATE.value in context.workbook.sheetnames


def test_ensure_schema_version_mismatch_raises(config_factory):
    context = core_logic.load_runtime_context(config_factory(schema_version="0.9").config_path)

    with pytest.raises(RuntimeError, match="schema mismatch"):
        core_logic.ensure_schema_version(context)


def test_persisted_orders_survive_reopening(orders_context):
    core_logic.set_ordered(orders_context, "dallas@example.com", 1, 1)
    core_logic.persist_context(orders_context)
    data_manager.update_cell(orders_context.workbook, ORDERS, 0, 1, "Changed")

    reopened = core_logic.RuntimeContext(
        settings=orders_context.settings,
        workbook=data_manager.open_workbook(orders_context.settings.data_file),
    )

    assert core_logic.get_products(reopened, "dallas@example.com")[1] == core_logic.ProductView(
        "Lettuce", "http://img/lettuce.png", Decimal("2.5"), 3, 1
    )

