"""Shared pytest fixtures and utilities for IML operations tests."""

from __future__ import annotations

import argparse
import copy
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR,):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from iml_ops import cli, constants, core_logic, data_manager, migrations  # noqa: E402
from iml_ops.setup_store import create_store_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "PlantName = {plant_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Store]\n"
    "MaxWriteRetries = {max_write_retries}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    plant_name: str


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
    """Factory that creates an initialized store workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "iml_store.xlsx",
        seed: bool = False,
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_store_workbook(workbook_path, overwrite=True, seed=seed)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        plant_name: str = "Test Plant",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        max_write_retries: int = 3,
        seed: bool = False,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", seed=seed)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                plant_name=plant_name,
                schema_version=schema_version,
                max_write_retries=max_write_retries,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            plant_name=plant_name,
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


@pytest.fixture
def store_workbook(workbook_factory: Callable[..., Path]):
    """Return a live, empty store workbook."""

    return data_manager.open_workbook(workbook_factory(subdir=f"wb_{uuid.uuid4().hex}"))


# ---------------------------------------------------------------------------
# Sample payloads
# ---------------------------------------------------------------------------


_SAMPLE_ORDERS: List[Dict[str, Any]] = [
    {
        "id": "O1",
        "orderNumber": "ORD-1",
        "contact": {"company": "Acme", "contactName": "Asha Rao", "phone": "9800000001"},
        "products": [
            {
                "id": "P1",
                "productName": "Round Tub",
                "size": "500ml",
                "imlName": "Acme Mango",
                "imlType": "LID TUB",
                "lidLabelQty": "10,000",
                "tubLabelQty": "10,000",
                "lidProductionQty": "10,000",
                "tubProductionQty": "10,000",
                "designStatus": "approved",
            }
        ],
        "createdAt": "2025-11-01T08:00:00Z",
    },
    {
        "id": "O2",
        "orderNumber": "ORD-2",
        "contact": {"company": "Globex", "contactName": "Vikram", "phone": "9800000002"},
        "products": [
            {
                "id": "P1",
                "productName": "Sweet Box",
                "size": "250g",
                "imlName": "Globex Kesar",
                "imlType": "LID",
                "lidLabelQty": "5,000",
                "lidProductionQty": "1,000",
                "designStatus": "in-progress",
            },
            {
                "id": "P2",
                "productName": "Round Tub",
                "size": "1000ml",
                "imlName": "Globex Plain",
                "imlType": "TUB",
                "tubLabelQty": "2,000",
                "designStatus": "pending",
            },
        ],
        "createdAt": "2025-11-05T08:00:00Z",
    },
    {
        "id": "O3",
        "orderNumber": "ORD-3",
        "contact": {"company": "Acme", "contactName": "Asha Rao", "phone": "9800000001"},
        "products": [],
        "createdAt": "2025-11-03T08:00:00Z",
    },
]

_SAMPLE_PURCHASES: List[Dict[str, Any]] = [
    {
        "id": "E1",
        "date": "25/11/2025",
        "company": "Acme",
        "product": "Round Tub",
        "size": "500ml",
        "quantity": "10,000",
        "supplier": "Printwell",
    },
    {
        "id": "E2",
        "date": "27/11/2025",
        "company": "Globex",
        "product": "Sweet Box",
        "size": "250g",
        "quantity": "5,000",
        "supplier": "Labelcraft",
    },
    {
        "id": "E3",
        "date": "30/11/2025",
        "company": "Acme",
        "product": "round tub",
        "size": "",
        "quantity": "",
        "supplier": "Printwell",
    },
]


@pytest.fixture
def sample_orders() -> List[Dict[str, Any]]:
    """Three orders across two companies; O3 has no products."""

    return copy.deepcopy(_SAMPLE_ORDERS)


@pytest.fixture
def sample_purchases() -> List[Dict[str, Any]]:
    """Purchase entries with day-first dates and one blank size."""

    return copy.deepcopy(_SAMPLE_PURCHASES)


@pytest.fixture
def seeded_context(runtime_context, sample_orders, sample_purchases) -> core_logic.RuntimeContext:
    """Runtime context whose store holds the sample orders and purchases."""

    migrations.save_collection(runtime_context.workbook, constants.StorageKey.IML_ORDERS.value, sample_orders)
    migrations.save_collection(
        runtime_context.workbook, constants.StorageKey.PURCHASE_ENTRIES.value, sample_purchases
    )
    return runtime_context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="iml-ops", description="IML ops CLI")


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
