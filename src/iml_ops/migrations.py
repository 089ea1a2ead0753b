"""Versioned envelopes and forward migrations for stored payloads.

Every value the business layer writes to the record store is wrapped as
``{"schemaVersion": n, "payload": ...}``. When the payload layout changes, a
migration from ``n`` to ``n + 1`` is registered here and applied on load;
stored data is never discarded because of a version mismatch. Payloads
written before envelopes existed are read as version 1.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import CURRENT_PAYLOAD_VERSION, StorageKey
from .errors import MigrationError


VERSION_FIELD = "schemaVersion"
PAYLOAD_FIELD = "payload"
LEGACY_VERSION = 1

MigrationFn = Callable[[Any], Any]


@dataclass(frozen=True)
class Migration:
    """One ``from_version -> from_version + 1`` step for a set of keys.

    An empty ``keys`` tuple applies the step to every key.
    """

    from_version: int
    keys: Tuple[str, ...]
    apply: MigrationFn
    description: str = ""

    def applies_to(self, key: str) -> bool:
        return not self.keys or key in self.keys


class MigrationRegistry:
    """Ordered collection of migration steps up to ``target_version``."""

    def __init__(self, target_version: int = CURRENT_PAYLOAD_VERSION) -> None:
        self.target_version = target_version
        self._steps: Dict[int, List[Migration]] = {}

    def register(self, from_version: int, *, keys: Tuple[str, ...] = (), description: str = "") -> Callable[[MigrationFn], MigrationFn]:
        """Decorator registering ``fn`` as a step out of ``from_version``."""

        if from_version < LEGACY_VERSION or from_version >= self.target_version:
            raise ValueError(f"Migration from v{from_version} is outside 1..{self.target_version - 1}")

        def _decorator(fn: MigrationFn) -> MigrationFn:
            self._steps.setdefault(from_version, []).append(
                Migration(
                    from_version=from_version,
                    keys=tuple(str(key) for key in keys),
                    apply=fn,
                    description=description or fn.__name__,
                )
            )
            return fn

        return _decorator

    def steps_from(self, version: int) -> List[Migration]:
        return list(self._steps.get(version, ()))

    def migrate(self, key: str, envelope: Mapping[str, Any]) -> Tuple[Any, int]:
        """Bring ``envelope`` up to ``target_version``.

        Args:
            key (str): Store key the envelope was read from; steps may be
                restricted to specific keys.
            envelope (Mapping[str, Any]): Stored envelope.

        Returns:
            tuple[Any, int]: The migrated payload and the version it was
                stored at.

        Raises:
            MigrationError: If the envelope is newer than this code, or a
                version between it and the target has no registered step.
        """

        version = envelope_version(envelope, key=key)
        if version > self.target_version:
            raise MigrationError(
                f"stored at v{version}, newer than supported v{self.target_version}",
                key=key,
            )

        payload = copy.deepcopy(envelope.get(PAYLOAD_FIELD))
        start = version
        while version < self.target_version:
            steps = self._steps.get(version)
            if not steps:
                raise MigrationError(f"no migration registered from v{version}", key=key)
            for step in steps:
                if step.applies_to(key):
                    log.info("Migrating '%s' v%d -> v%d: %s", key, version, version + 1, step.description)
                    payload = step.apply(payload)
            version += 1
        return payload, start


def envelope_version(envelope: Mapping[str, Any], *, key: Optional[str] = None) -> int:
    raw = envelope.get(VERSION_FIELD)
    try:
        version = int(raw)
    except (TypeError, ValueError) as exc:
        raise MigrationError(f"invalid schema version {raw!r}", key=key) from exc
    if version < LEGACY_VERSION:
        raise MigrationError(f"invalid schema version {raw!r}", key=key)
    return version


def is_envelope(value: Any) -> bool:
    return isinstance(value, Mapping) and VERSION_FIELD in value and PAYLOAD_FIELD in value


def wrap(payload: Any, version: int = CURRENT_PAYLOAD_VERSION) -> Dict[str, Any]:
    """Wrap ``payload`` in a versioned envelope."""
    return {VERSION_FIELD: version, PAYLOAD_FIELD: payload}


def as_envelope(stored: Any) -> Dict[str, Any]:
    """Treat bare stored values as legacy version-1 envelopes."""
    if is_envelope(stored):
        return dict(stored)
    return wrap(stored, LEGACY_VERSION)


registry = MigrationRegistry()


@registry.register(1, keys=(StorageKey.PURCHASE_ENTRIES.value,), description="rename purchase 'qty' to 'quantity'")
def _purchase_qty_to_quantity(payload: Any) -> Any:
    if not isinstance(payload, list):
        return payload
    for entry in payload:
        if isinstance(entry, dict) and "qty" in entry:
            qty = entry.pop("qty")
            entry.setdefault("quantity", qty)
    return payload


@registry.register(
    2,
    keys=(StorageKey.IML_ORDERS.value, StorageKey.SCREEN_PRINTING_ORDERS.value),
    description="lower-case product designStatus, default 'pending'",
)
def _normalize_design_status(payload: Any) -> Any:
    if not isinstance(payload, list):
        return payload
    for order in payload:
        if not isinstance(order, dict):
            continue
        for product in order.get("products") or []:
            if isinstance(product, dict):
                status = str(product.get("designStatus") or "").strip().lower()
                product["designStatus"] = status or "pending"
    return payload


def load_collection(
    workbook: Workbook,
    key: str,
    *,
    default: Any = None,
    migrations: Optional[MigrationRegistry] = None,
) -> Tuple[Any, int]:
    """Read ``key`` from the store, migrating and re-saving it if outdated.

    Returns:
        tuple[Any, int]: The current-version payload (``default`` when the
            key is absent) and the store version to use for a subsequent
            compare-and-swap write.

    Raises:
        MigrationError: If the stored envelope cannot be migrated.
    """

    migrations = migrations or registry
    stored = data_manager.get_value(workbook, key)
    store_version = data_manager.get_version(workbook, key)
    if stored is None:
        return copy.deepcopy(default), store_version

    payload, stored_at = migrations.migrate(key, as_envelope(stored))
    if stored_at != migrations.target_version or not is_envelope(stored):
        store_version = data_manager.update_if_unchanged(
            workbook, key, store_version, wrap(payload, migrations.target_version)
        )
        log.info("Re-saved '%s' at payload v%d", key, migrations.target_version)
    return payload, store_version


def save_collection(
    workbook: Workbook,
    key: str,
    payload: Any,
    *,
    expected_version: Optional[int] = None,
    migrations: Optional[MigrationRegistry] = None,
) -> int:
    """Write ``payload`` wrapped at the current version.

    With ``expected_version`` the write is a compare-and-swap and raises
    :class:`~iml_ops.errors.StaleWriteError` on conflict.
    """

    migrations = migrations or registry
    envelope = wrap(payload, migrations.target_version)
    if expected_version is None:
        return data_manager.set_value(workbook, key, envelope)
    return data_manager.update_if_unchanged(workbook, key, expected_version, envelope)


__all__ = [
    "VERSION_FIELD",
    "PAYLOAD_FIELD",
    "Migration",
    "MigrationRegistry",
    "registry",
    "envelope_version",
    "is_envelope",
    "wrap",
    "as_envelope",
    "load_collection",
    "save_collection",
]
