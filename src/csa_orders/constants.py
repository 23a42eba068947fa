"""Constants shared across the CSA ordering modules.

Centralises the workbook layout so that the data access layer, the ordering
core, the operator tooling and the HTTP surface agree on sheet names and on
the fixed row/column offsets of a weekly ledger. The ledger layout is a
storage contract: existing workbooks depend on these offsets.
"""

from __future__ import annotations

from enum import Enum, IntEnum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Developer-metadata style key tagging a sheet as a weekly ledger. The value is
# the ISO timestamp recorded when the week was prepared.
ORDER_SHEET_METADATA_KEY = "orderSheet"

# Ledger user rows start after the five header rows.
FIRST_USER_ROW_INDEX = 5

# Column holding the user identity (email) in every ledger row.
IDENTITY_COLUMN_INDEX = 0

# Limit sentinel meaning "no cap on this product".
UNLIMITED = -1

# Maximum number of destinations SES accepts per bulk send.
MAX_BULK_DESTINATIONS = 50


class SheetName(str, Enum):
    """Enumerate the worksheet titles the platform relies on."""

    ORDERS = "Orders"
    PENDING_ORDERS = "Orders (pending)"
    ORDERS_TEMPLATE = "Orders Template"
    USERS = "Users"
    LOCATIONS = "Locations"
    SHEET_METADATA = "_SheetMetadata"


class LedgerRow(IntEnum):
    """Semantic header rows of a ledger grid (0-based)."""

    NAMES = 0
    PRICES = 1
    IMAGES = 2
    LIMITS = 3
    TOTALS = 4


class UserColumn(IntEnum):
    """Columns of the ``Users`` directory sheet (0-based)."""

    EMAIL = 0
    NAME = 1
    LOCATION = 2
    BALANCE = 3


class LocationColumn(IntEnum):
    """Columns of the ``Locations`` sheet (0-based)."""

    NAME = 0
    PICKUP_DAY = 1
    HARVEST_DAY = 2
    PICKUP_INSTRUCTIONS = 3


class ErrorCode(str, Enum):
    """Stable error codes surfaced to API clients."""

    ORDERS_NOT_OPEN = "ordersNotOpen"
    NEGATIVE_QUANTITY = "negativeQuantity"
    PRODUCT_NOT_FOUND = "productNotFound"
    QUANTITY_NOT_AVAILABLE = "quantityNotAvailable"
    UNKNOWN_USER = "unknownUser"
    BAD_INPUT = "badInput"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "ORDER_SHEET_METADATA_KEY",
    "FIRST_USER_ROW_INDEX",
    "IDENTITY_COLUMN_INDEX",
    "UNLIMITED",
    "MAX_BULK_DESTINATIONS",
    "SheetName",
    "LedgerRow",
    "UserColumn",
    "LocationColumn",
    "ErrorCode",
]
