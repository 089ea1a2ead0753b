"""Utility for initializing the IML operations store workbook.

The module doubles as a script (``iml-ops-setup``) and as a library used by
tests or other tooling. Shared helpers keep the workbook bootstrap logic
consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log, migrations
from .constants import STORE_COLUMNS, STORE_SHEET, StorageKey

CONFIG_FILE = "config.ini"

# Demo data for trying out the views on a fresh store.
DEMO_ORDERS: List[Dict[str, Any]] = [
    {
        "id": "ORD-1001",
        "orderNumber": "IML-1001",
        "contact": {"company": "Acme Foods", "contactName": "R. Iyer", "phone": "9876543210"},
        "products": [
            {
                "id": "P1",
                "productName": "Round Container",
                "size": "500ml",
                "imlName": "Acme Mango",
                "imlType": "LID TUB",
                "lidLabelQty": "10,000",
                "tubLabelQty": "10,000",
                "lidProductionQty": "4,000",
                "tubProductionQty": "0",
                "designStatus": "approved",
                "moveToPurchase": False,
            }
        ],
        "createdAt": "2025-11-20T09:30:00Z",
        "updatedAt": "2025-11-21T11:00:00Z",
    },
    {
        "id": "ORD-1002",
        "orderNumber": "IML-1002",
        "contact": {"company": "Globex Dairy", "contactName": "S. Menon", "phone": "9123456780"},
        "products": [
            {
                "id": "P1",
                "productName": "Sweet Box",
                "size": "250g",
                "imlName": "Globex Kesar",
                "imlType": "LID",
                "lidLabelQty": "5,000",
                "designStatus": "in-progress",
            }
        ],
        "createdAt": "2025-11-22T14:00:00Z",
    },
]

DEMO_PURCHASE_ENTRIES: List[Dict[str, Any]] = [
    {
        "id": "PUR-1",
        "date": "25/11/2025",
        "company": "Acme Foods",
        "contact": "R. Iyer",
        "product": "Round Container",
        "size": "500ml",
        "quantity": "26,500",
        "supplier": "Printwell Labels",
    },
    {
        "id": "PUR-2",
        "date": "26/11/2025",
        "company": "Globex Dairy",
        "contact": "S. Menon",
        "product": "Sweet Box",
        "size": "250g",
        "quantity": "5,000",
        "supplier": "Labelcraft",
    },
]

DEMO_PRODUCTION_ENTRIES: List[Dict[str, Any]] = [
    {
        "id": "PRD-1",
        "date": "2025-11-28",
        "company": "Acme Foods",
        "product": "Round Container",
        "size": "500ml",
        "imlName": "Acme Mango",
        "machineNumber": "M-3",
        "noOfLabels": "20,000",
    }
]

DEMO_COLLECTIONS: Mapping[StorageKey, Any] = {
    StorageKey.IML_ORDERS: DEMO_ORDERS,
    StorageKey.PURCHASE_ENTRIES: DEMO_PURCHASE_ENTRIES,
    StorageKey.PRODUCTION_ENTRIES: DEMO_PRODUCTION_ENTRIES,
}


def create_store_workbook(
    destination: Path,
    *,
    overwrite: bool = False,
    seed: bool = False,
    columns: Sequence[str] = STORE_COLUMNS,
) -> Path:
    """Create the store workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists. With ``seed`` the demo
    orders, purchase entries and production jobs are written as current
    version envelopes.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing store workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    worksheet = workbook.create_sheet(title=STORE_SHEET)
    for column_index, column_name in enumerate(columns, start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font

    if seed:
        for key, payload in DEMO_COLLECTIONS.items():
            migrations.save_collection(workbook, key.value, payload, expected_version=0)
        log.info("Seeded %d demo collections", len(DEMO_COLLECTIONS))

    workbook.save(destination)
    log.info("Created store workbook '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False, seed: bool = False) -> Path:
    """Create the workbook named by ``config.ini``'s ``DataFile`` entry."""

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)
    return create_store_workbook(settings.data_file, overwrite=overwrite, seed=seed)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the IML operations store")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    parser.add_argument(
        "--seed",
        action="store_true",
        help="Populate the store with demo orders, purchases and production jobs.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- IML Ops Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force, seed=args.seed)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except (KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created store workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
