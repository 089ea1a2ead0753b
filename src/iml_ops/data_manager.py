"""Data access layer for the IML operations store.

This module provides low-level helpers that read from and write to the store
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Record store operations: a key-value view over the ``Store`` sheet where
   each row holds one JSON payload together with a monotonically increasing
   version used for compare-and-swap updates.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import PAYLOAD_CHUNK_SIZE, STORE_COLUMNS, STORE_SHEET
from .errors import StaleWriteError


CONFIG_FILE_NAME = "config.ini"
DEFAULT_MAX_WRITE_RETRIES = 3


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    plant_name: str
    schema_version: str
    max_write_retries: int = DEFAULT_MAX_WRITE_RETRIES


@dataclass(frozen=True)
class StoreRow:
    """In-memory view of a row from the ``Store`` sheet."""

    key: str
    version: int
    payload_json: str
    updated_at: Optional[str]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

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

    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback. The
    ``[Store]`` section is optional.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If ``MaxWriteRetries`` is not a positive integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        plant_name = parser.get("System", "PlantName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    max_write_retries = parser.getint("Store", "MaxWriteRetries", fallback=DEFAULT_MAX_WRITE_RETRIES)
    if max_write_retries < 1:
        raise ValueError(f"MaxWriteRetries must be at least 1, got {max_write_retries}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        plant_name=plant_name,
        schema_version=schema_version,
        max_write_retries=max_write_retries,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
        KeyError: If the workbook has no ``Store`` sheet.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    if STORE_SHEET not in wb.sheetnames:
        raise KeyError(f"Workbook {data_file} has no '{STORE_SHEET}' sheet")
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_payload(value: Any) -> str:
    """Serialize ``value`` to JSON; decimals become strings, dates ISO text."""
    return json.dumps(value, default=_json_default, ensure_ascii=False, separators=(",", ":"))


def decode_payload(text: Optional[str]) -> Any:
    """Inverse of :func:`encode_payload`; blank cells decode to ``None``."""
    if text is None or text == "":
        return None
    return json.loads(text)


_PAYLOAD_COLUMN = STORE_COLUMNS.index("Payload") + 1


def deserialize_store_row(raw_row: Sequence[object]) -> StoreRow:
    """Convert a raw worksheet row into a :class:`StoreRow`.

    Every cell from the ``Payload`` column onwards is a chunk of the JSON
    text; they are concatenated in column order until the first blank cell.
    """

    padded = list(raw_row) + [None] * len(STORE_COLUMNS)
    key, version, updated_at = padded[0], padded[1], padded[2]
    chunks = []
    for cell in padded[_PAYLOAD_COLUMN - 1:]:
        if cell is None or cell == "":
            break
        chunks.append(str(cell))
    return StoreRow(
        key=str(key),
        version=int(version) if version is not None else 0,
        payload_json="".join(chunks),
        updated_at=str(updated_at) if updated_at is not None else None,
    )


def serialize_store_row(record: StoreRow) -> list[object]:
    """Convert a :class:`StoreRow` into the ``Store`` sheet column ordering."""

    text = record.payload_json
    chunks = [text[start:start + PAYLOAD_CHUNK_SIZE] for start in range(0, len(text), PAYLOAD_CHUNK_SIZE)]
    return [record.key, record.version, record.updated_at, *(chunks or [""])]


def iter_store_rows(workbook: Workbook) -> Iterator[StoreRow]:
    """Yield every populated row of the ``Store`` sheet in sheet order."""

    sheet = workbook[STORE_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if raw and raw[0] is not None:
            yield deserialize_store_row(raw)


def locate_row(workbook: Workbook, key: str) -> Optional[int]:
    """Return the 1-based sheet row holding ``key``, or ``None``."""

    sheet = workbook[STORE_SHEET]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, max_col=1, values_only=True), start=2):
        if row[0] == key:
            return row_idx
    return None


def _read_row(workbook: Workbook, key: str) -> Tuple[Optional[int], Optional[StoreRow]]:
    row_index = locate_row(workbook, key)
    if row_index is None:
        return None, None
    sheet = workbook[STORE_SHEET]
    raw = next(sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True))
    return row_index, deserialize_store_row(raw)


def get_version(workbook: Workbook, key: str) -> int:
    """Current version of ``key``; ``0`` when the key is absent."""

    _, row = _read_row(workbook, key)
    return 0 if row is None else row.version


def get_value(workbook: Workbook, key: str) -> Any:
    """Return the decoded payload stored under ``key`` or ``None``."""

    _, row = _read_row(workbook, key)
    if row is None:
        return None
    return decode_payload(row.payload_json)


def _write(workbook: Workbook, row_index: Optional[int], record: StoreRow) -> None:
    sheet = workbook[STORE_SHEET]
    if row_index is None:
        sheet.append(serialize_store_row(record))
        return
    values = serialize_store_row(record)
    for col, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=col, value=value)
    # Blank out chunks left over from a longer previous payload.
    for col in range(len(values) + 1, sheet.max_column + 1):
        sheet.cell(row=row_index, column=col, value=None)


def update_if_unchanged(workbook: Workbook, key: str, expected_version: int, value: Any) -> int:
    """Write ``value`` only if ``key`` is still at ``expected_version``.

    A missing key is at version ``0``, so ``expected_version=0`` creates it.

    Args:
        workbook (Workbook): Workbook containing the ``Store`` sheet.
        key (str): Store key to write.
        expected_version (int): Version the caller read before computing
            ``value``.
        value (Any): JSON-serializable payload.

    Returns:
        int: The new version of ``key``.

    Raises:
        StaleWriteError: If another writer bumped the version in between.
    """

    row_index, row = _read_row(workbook, key)
    current = 0 if row is None else row.version
    if current != expected_version:
        log.warning("Stale write to '%s': expected v%d, found v%d", key, expected_version, current)
        raise StaleWriteError(key, expected_version, current)

    new_version = current + 1
    _write(
        workbook,
        row_index,
        StoreRow(
            key=key,
            version=new_version,
            payload_json=encode_payload(value),
            updated_at=datetime.now(timezone.utc).isoformat(),
        ),
    )
    log.debug("Stored '%s' at version %d", key, new_version)
    return new_version


def set_value(workbook: Workbook, key: str, value: Any) -> int:
    """Unconditionally store ``value`` under ``key``; returns the new version."""

    return update_if_unchanged(workbook, key, get_version(workbook, key), value)


def remove_value(workbook: Workbook, key: str) -> bool:
    """Delete ``key``; returns ``False`` when it was not stored."""

    row_index = locate_row(workbook, key)
    if row_index is None:
        return False
    workbook[STORE_SHEET].delete_rows(row_index)
    log.info("Removed store key '%s'", key)
    return True


def iter_prefix(workbook: Workbook, prefix: str) -> Iterator[Tuple[str, Any]]:
    """Yield ``(key, payload)`` for every key starting with ``prefix``."""

    for row in iter_store_rows(workbook):
        if row.key.startswith(prefix):
            yield row.key, decode_payload(row.payload_json)
