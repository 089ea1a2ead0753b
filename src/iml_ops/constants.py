"""Enumerations and labels shared across the IML operations modules.

Keeps storage keys, status vocabularies, and fallback group labels in one
place so the data access layer, the derived-state engines, and the CLI agree
on identifiers.
"""

from __future__ import annotations

from enum import Enum


# Layout version of the store workbook, checked against config.ini.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Payload version written inside every stored envelope.
CURRENT_PAYLOAD_VERSION = 3

STORE_SHEET = "Store"
STORE_COLUMNS = ("Key", "Version", "UpdatedAt", "Payload")

# Excel caps a cell at 32767 characters; longer payloads continue in the
# cells to the right of the Payload column.
PAYLOAD_CHUNK_SIZE = 32_000


class StorageKey(str, Enum):
    """Enumerate the record-store keys owned by each pipeline stage."""

    IML_ORDERS = "iml_orders"
    PURCHASE_ENTRIES = "iml_purchase_entries"
    PURCHASE_TRACKING_FOLLOWUPS = "iml_purchase_tracking_followups"
    PURCHASE_LABEL_FOLLOWUPS = "iml_purchase_label_followups"
    PRODUCTION_ENTRIES = "iml_production_entries"
    PRODUCTION_FOLLOWUPS = "iml_production_followups"
    INVENTORY_FOLLOWUPS = "iml_inventory_followups"
    SCREEN_PRINTING_ORDERS = "screen_printing_orders"


class DesignStatus(str, Enum):
    """Artwork status of a single order product."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    APPROVED = "approved"


class DispatchStatus(str, Enum):
    """Dispatch state of an order line."""

    PENDING = "pending"
    COMPLETED = "completed"


class IMLType(str, Enum):
    """Which container parts carry an in-mould label."""

    LID = "LID"
    TUB = "TUB"
    LID_TUB = "LID TUB"


UNKNOWN_COMPANY = "Unknown Company"
UNKNOWN_ORDER = "N/A"
UNCATEGORIZED = "Uncategorized"
NO_SIZE = "No Size"
NO_COLOR = "No Color"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "CURRENT_PAYLOAD_VERSION",
    "STORE_SHEET",
    "STORE_COLUMNS",
    "PAYLOAD_CHUNK_SIZE",
    "StorageKey",
    "DesignStatus",
    "DispatchStatus",
    "IMLType",
    "UNKNOWN_COMPANY",
    "UNKNOWN_ORDER",
    "UNCATEGORIZED",
    "NO_SIZE",
    "NO_COLOR",
]
