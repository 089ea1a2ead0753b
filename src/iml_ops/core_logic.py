"""Business logic layer for the IML operations store.

This module wires the derived-state engines (ledger, hierarchy, facets,
status) to the record store. It consumes the Data Access Layer (DAL) for all
I/O, migrates payloads on load, and guards every ledger append with a
compare-and-swap write against the in-memory workbook. That protects writers
sharing one workbook object; :func:`persist_context` saves the whole workbook
without re-reading versions from disk, so between separate processes the last
save wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import adapters, data_manager, log, migrations
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    NO_SIZE,
    UNCATEGORIZED,
    UNKNOWN_COMPANY,
    UNKNOWN_ORDER,
    StorageKey,
)
from .errors import BusinessRuleViolation, StaleWriteError
from .facets import EMPTY_SPEC, FilterSpec, Predicate, filter_records
from .hierarchy import ChildOrder, GroupNode, by_attribute, by_group_key, distinct_values, group
from .ledger import (
    LedgerPolicy,
    append_entry,
    entries_from_followups,
    entry_from_followup,
    has_remaining,
    remaining,
)
from .models import LedgerEntry, Record, sort_newest_first
from .status import DESIGN_PRECEDENCE, derive_status, status_counts


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced order or entry is unknown."""


ORDER_SEARCH_FIELDS: Tuple[str, ...] = (
    "contact.company",
    "contact.contactName",
    "contact.phone",
    "products.imlName",
)
PURCHASE_SEARCH_FIELDS: Tuple[str, ...] = ("company",)
PRODUCTION_SEARCH_FIELDS: Tuple[str, ...] = ("company", "imlName", "machineNumber")

ORDER_LEVELS = (
    by_group_key(0, UNKNOWN_COMPANY, name="company"),
    by_group_key(1, UNKNOWN_ORDER, name="orderNumber"),
)
PURCHASE_LEVELS = (
    by_group_key(0, UNCATEGORIZED, name="product"),
    by_group_key(1, NO_SIZE, name="size"),
)
PRODUCTION_LEVELS = (
    by_attribute("product", UNCATEGORIZED),
    by_attribute("size", NO_SIZE),
)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class OrderQuery:
    """Facets of the order management view.

    ``product`` and ``size`` must match on the same product line;
    ``remaining_only`` keeps orders with labels still to produce.
    """

    spec: FilterSpec = EMPTY_SPEC
    artwork_status: Optional[str] = None
    product: Optional[str] = None
    size: Optional[str] = None
    remaining_only: bool = False


@dataclass(frozen=True)
class LedgerBalance:
    """Outcome of a successful follow-up append."""

    record: Record
    entries: Tuple[LedgerEntry, ...]
    remaining: Decimal


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets hold decoded collections per store key and memoized views, so
    repeated queries within one context do not rescan the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _key_name(key: Any) -> str:
    return key.value if isinstance(key, StorageKey) else str(key)


def _ensure_collection(context: RuntimeContext, key: Any, default: Any) -> Dict[str, Any]:
    """Populate the bucket for ``key`` with its migrated payload and version."""

    name = _key_name(key)
    bucket = _get_cache_bucket(context, name)
    if "payload" not in bucket:
        payload, version = migrations.load_collection(context.workbook, name, default=default)
        bucket["payload"] = payload
        bucket["version"] = version
        log.debug("Populated '%s' cache at store version %d", name, version)
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

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
    """Validate workbook layout compatibility before mutating state.

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
    """Save the context's workbook back to its configured data file."""

    data_manager.save_workbook(context.workbook, context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Return a new context over a freshly loaded workbook with empty caches."""

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def migrate_all(context: RuntimeContext) -> Dict[str, int]:
    """Load every known collection once so outdated payloads are re-saved.

    Returns:
        dict[str, int]: Store version of each key after migration.
    """

    versions: Dict[str, int] = {}
    for key in StorageKey:
        _invalidate_cache(context, key.value)
        bucket = _ensure_collection(context, key, default=None)
        versions[key.value] = bucket["version"]
    return versions


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------


def list_orders(context: RuntimeContext) -> List[Dict[str, Any]]:
    """Raw IML orders in stored order."""
    return list(_ensure_collection(context, StorageKey.IML_ORDERS, default=[])["payload"] or [])


def list_purchase_entries(context: RuntimeContext) -> List[Dict[str, Any]]:
    """Raw purchase entries in stored order."""
    return list(_ensure_collection(context, StorageKey.PURCHASE_ENTRIES, default=[])["payload"] or [])


def list_production_entries(context: RuntimeContext) -> List[Dict[str, Any]]:
    """Raw production jobs in stored order."""
    return list(_ensure_collection(context, StorageKey.PRODUCTION_ENTRIES, default=[])["payload"] or [])


def list_followups(context: RuntimeContext, ledger_key: Any, record_id: str) -> List[Dict[str, Any]]:
    """Follow-up rows recorded against ``record_id`` under ``ledger_key``."""
    payload = _ensure_collection(context, ledger_key, default={})["payload"] or {}
    return list(payload.get(str(record_id), []))


def _find(rows: Sequence[Mapping[str, Any]], record_id: str, label: str) -> Mapping[str, Any]:
    for row in rows:
        if str(row.get("id")) == str(record_id):
            return row
    log.warning("%s lookup failed for id '%s'", label, record_id)
    raise MissingReferenceError(f"Unknown {label.lower()} id: {record_id}")


def get_order(context: RuntimeContext, order_id: str) -> Mapping[str, Any]:
    """Raw order by id; raises :class:`MissingReferenceError` when unknown."""
    return _find(list_orders(context), order_id, "Order")


def get_purchase_record(context: RuntimeContext, entry_id: str) -> Record:
    """Purchase entry by id, normalized to a :class:`Record`."""
    return adapters.purchase_entry_to_record(_find(list_purchase_entries(context), entry_id, "Purchase entry"))


def get_production_record(context: RuntimeContext, entry_id: str) -> Record:
    """Production job by id, normalized to a :class:`Record`."""
    return adapters.production_entry_to_record(_find(list_production_entries(context), entry_id, "Production entry"))


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


def ledger_entries(context: RuntimeContext, ledger_key: Any, record: Record, policy: LedgerPolicy) -> List[LedgerEntry]:
    """Entries consumed so far from ``record`` under ``ledger_key``."""
    return entries_from_followups(list_followups(context, ledger_key, record.record_id), policy)


def remaining_for(context: RuntimeContext, ledger_key: Any, record: Record, policy: LedgerPolicy) -> Decimal:
    """Remaining balance of ``record`` given its stored follow-ups."""
    return remaining(record, ledger_entries(context, ledger_key, record, policy))


def record_followup(
    context: RuntimeContext,
    ledger_key: Any,
    record: Record,
    followup: Mapping[str, Any],
    policy: LedgerPolicy,
    *,
    timestamp: Optional[datetime] = None,
) -> LedgerBalance:
    """Validate and append one follow-up row to ``record``'s ledger.

    The ledger is read, validated, and written back with a compare-and-swap
    on its store version. If another writer got there first the whole
    read-validate-write cycle is retried, up to ``max_write_retries`` times,
    so the remaining-quantity check always runs against the latest history.

    Args:
        context (RuntimeContext): Runtime context.
        ledger_key (StorageKey | str): Store key holding the follow-up map.
        record (Record): Record being consumed.
        followup (Mapping[str, Any]): Submitted form values.
        policy (LedgerPolicy): How the follow-up feeds the ledger.
        timestamp (datetime | None): Submission time; defaults to now.

    Returns:
        LedgerBalance: Updated entries and remaining balance.

    Raises:
        InvalidAmountError: If the amount is missing, non-numeric, or not
            positive.
        MissingNoteError: If the policy requires a note and none was given.
        ExceedsRemainingError: If the amount exceeds the remaining balance.
        StaleWriteError: If every retry lost the race.
    """

    name = _key_name(ledger_key)
    moment = _resolve_timestamp(timestamp)
    row = dict(followup)
    row.setdefault("createdAt", moment.isoformat())
    row.setdefault("date", moment.date().isoformat())

    attempts = context.settings.max_write_retries
    for attempt in range(1, attempts + 1):
        _invalidate_cache(context, name)
        bucket = _ensure_collection(context, ledger_key, default={})
        ledger = dict(bucket["payload"] or {})
        history = list(ledger.get(record.record_id, []))

        entries = entries_from_followups(history, policy)
        new_entry = entry_from_followup(row, policy, strict=True)
        updated = append_entry(record, entries, new_entry, require_note=policy.require_note)

        ledger[record.record_id] = history + [row]
        try:
            migrations.save_collection(context.workbook, name, ledger, expected_version=bucket["version"])
        except StaleWriteError:
            log.warning("Ledger '%s' changed during append (attempt %d/%d)", name, attempt, attempts)
            if attempt == attempts:
                raise
            continue

        _invalidate_cache(context, name, "views")
        balance = remaining(record, updated)
        log.info(
            "Recorded %s follow-up for '%s' (amount=%s, remaining=%s)",
            policy.name,
            record.record_id,
            updated[-1].amount,
            balance,
        )
        return LedgerBalance(record=record, entries=tuple(updated), remaining=balance)

    raise RuntimeError("unreachable")  # pragma: no cover


# ---------------------------------------------------------------------------
# Order lifecycle
# ---------------------------------------------------------------------------


def _save_orders(context: RuntimeContext, orders: List[Dict[str, Any]]) -> None:
    bucket = _ensure_collection(context, StorageKey.IML_ORDERS, default=[])
    migrations.save_collection(
        context.workbook,
        StorageKey.IML_ORDERS.value,
        orders,
        expected_version=bucket["version"],
    )
    _invalidate_cache(context, StorageKey.IML_ORDERS.value, "views")


def move_order_to_purchase(context: RuntimeContext, order_id: str, *, timestamp: Optional[datetime] = None) -> Dict[str, Any]:
    """Flag every product of an order as handed over to purchasing.

    Raises:
        MissingReferenceError: If the order is unknown.
        BusinessRuleViolation: If the order has no products or every product
            was already moved.
    """

    orders = [dict(order) for order in list_orders(context)]
    target = _find(orders, order_id, "Order")
    products = list(target.get("products") or [])
    if not products:
        log.warning("Order '%s' has no products to move", order_id)
        raise BusinessRuleViolation("This order has no products to move")
    if all(product.get("moveToPurchase") is True for product in products):
        log.warning("Order '%s' was already moved to purchase", order_id)
        raise BusinessRuleViolation("This order has already been moved to Purchase Management")

    moved = dict(target)
    moved["products"] = [{**product, "moveToPurchase": True} for product in products]
    moved["updatedAt"] = _resolve_timestamp(timestamp).isoformat()
    orders = [moved if order is target else order for order in orders]
    _save_orders(context, orders)
    log.info("Moved order '%s' (%d products) to purchase", order_id, len(products))
    return moved


def delete_order(context: RuntimeContext, order_id: str) -> None:
    """Remove an order on explicit user request.

    Raises:
        MissingReferenceError: If the order is unknown.
    """

    orders = list_orders(context)
    target = _find(orders, order_id, "Order")
    _save_orders(context, [order for order in orders if order is not target])
    log.info("Deleted order '%s'", order_id)


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


def order_artwork_status(record: Record) -> str:
    """Artwork status of an order derived from its products' design statuses."""
    return derive_status(record.child_statuses, DESIGN_PRECEDENCE)


def _order_predicates(query: OrderQuery) -> List[Predicate]:
    predicates: List[Predicate] = []
    if query.artwork_status:
        wanted = query.artwork_status.strip().lower()
        predicates.append(lambda record: order_artwork_status(record) == wanted)
    if query.product:

        def _product_line(record: Record) -> bool:
            for product in record.attributes.get("products") or []:
                if product.get("productName") != query.product:
                    continue
                if not query.size or product.get("size") == query.size:
                    return True
            return False

        predicates.append(_product_line)
    if query.remaining_only:
        predicates.append(lambda record: has_remaining(adapters.order_product_ledgers(record.attributes)))
    return predicates


def order_records(context: RuntimeContext) -> List[Record]:
    """Orders as records, newest first."""
    return sort_newest_first([adapters.order_to_record(order) for order in list_orders(context)])


def order_view(context: RuntimeContext, query: OrderQuery = OrderQuery()) -> GroupNode:
    """Orders filtered by ``query`` and grouped company -> order number.

    Views are memoized per context, keyed on the query and the store version
    of the orders collection; any write through this module invalidates them.

    Raises:
        InvalidDateRangeError: If the query's date range is inverted.
    """

    query.spec.validate()
    views = _get_cache_bucket(context, "views")
    version = _ensure_collection(context, StorageKey.IML_ORDERS, default=[])["version"]
    cache_key = ("orders", version, query)
    cached = views.get(cache_key)
    if cached is not None:
        log.debug("Serving order view from cache")
        return cached

    filtered = filter_records(
        order_records(context),
        query.spec,
        search_fields=ORDER_SEARCH_FIELDS,
        date_field="createdAt",
        extra_predicates=_order_predicates(query),
    )
    tree = group(filtered, ORDER_LEVELS, order=ChildOrder.FIRST_SEEN)
    views[cache_key] = tree
    return tree


def purchase_records(context: RuntimeContext) -> List[Record]:
    return [adapters.purchase_entry_to_record(entry) for entry in list_purchase_entries(context)]


def purchase_view(context: RuntimeContext, spec: FilterSpec = EMPTY_SPEC) -> GroupNode:
    """Purchase entries filtered by ``spec`` and grouped product -> size.

    ``spec.exact_match`` accepts ``product``, ``size``, and ``supplier``
    selects; the search text matches the company name; dates are the entry
    date.
    """

    spec.validate()
    views = _get_cache_bucket(context, "views")
    version = _ensure_collection(context, StorageKey.PURCHASE_ENTRIES, default=[])["version"]
    cache_key = ("purchases", version, spec)
    cached = views.get(cache_key)
    if cached is not None:
        return cached

    filtered = filter_records(
        purchase_records(context),
        spec,
        search_fields=PURCHASE_SEARCH_FIELDS,
        date_field="date",
    )
    tree = group(filtered, PURCHASE_LEVELS, order=ChildOrder.ALPHABETICAL)
    views[cache_key] = tree
    return tree


def production_view(context: RuntimeContext, spec: FilterSpec = EMPTY_SPEC) -> GroupNode:
    """Production jobs filtered by ``spec`` and grouped product -> size."""

    spec.validate()
    records = [adapters.production_entry_to_record(entry) for entry in list_production_entries(context)]
    filtered = filter_records(records, spec, search_fields=PRODUCTION_SEARCH_FIELDS, date_field="date")
    return group(filtered, PRODUCTION_LEVELS, order=ChildOrder.ALPHABETICAL)


def purchase_facet_options(context: RuntimeContext, *, product: Optional[str] = None) -> Dict[str, List[str]]:
    """Dropdown values for the purchase view; sizes narrow to ``product``."""

    records = purchase_records(context)
    sized = [record for record in records if not product or record.group_keys[0] == product]
    return {
        "product": distinct_values(records, PURCHASE_LEVELS[0], include_fallback=False),
        "size": distinct_values(sized, PURCHASE_LEVELS[1], include_fallback=False),
        "supplier": distinct_values(records, by_attribute("supplier", ""), include_fallback=False),
    }


def order_remaining_labels(order: Mapping[str, Any]) -> List[Tuple[Record, Decimal]]:
    """``(product record, labels still to produce)`` for every order product."""
    return [(record, remaining(record, entries)) for record, entries in adapters.order_product_ledgers(order)]


def dashboard_stats(context: RuntimeContext) -> Dict[str, int]:
    """Headline counts for the order dashboard."""

    orders = list_orders(context)
    records = [adapters.order_to_record(order) for order in orders]
    artwork = status_counts((record.child_statuses for record in records), DESIGN_PRECEDENCE)
    return {
        "total": len(orders),
        "moved_to_purchase": sum(
            1 for order in orders if any(product.get("moveToPurchase") is True for product in order.get("products") or [])
        ),
        "with_remaining_labels": sum(1 for order in orders if has_remaining(adapters.order_product_ledgers(order))),
        "artwork_pending": artwork["pending"],
        "artwork_in_progress": artwork["in-progress"],
        "artwork_approved": artwork["approved"],
    }
