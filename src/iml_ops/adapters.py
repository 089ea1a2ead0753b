"""Normalize stage-specific payloads into canonical records.

Each pipeline stage names its "ordered amount" differently: an IML order
product carries ``lidLabelQty`` and/or ``tubLabelQty`` depending on its IML
type, a purchase entry carries ``quantity`` (older rows: ``qty``), a
production job carries ``noOfLabels``, and a screen-printing product carries
``quantity``. The adapters below fold all of them into
:attr:`Record.quantity_total` so the ledger, grouping, and filtering code never
branches on field names.

Adapters are lenient: missing fields become empty keys or zero quantities,
never exceptions.
"""

from __future__ import annotations

from typing import Any, List, Mapping, Optional, Sequence, Tuple

from .constants import IMLType
from .ledger import ZERO, parse_quantity
from .models import LedgerEntry, Record


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _stamps(payload: Mapping[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    return _text(payload.get("createdAt")), _text(payload.get("updatedAt"))


def _contact(order: Mapping[str, Any]) -> Mapping[str, Any]:
    contact = order.get("contact")
    return contact if isinstance(contact, Mapping) else {}


def _products(order: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
    products = order.get("products")
    if not isinstance(products, (list, tuple)):
        return []
    return [product for product in products if isinstance(product, Mapping)]


def label_parts(product: Mapping[str, Any]) -> Tuple[str, ...]:
    """Return which label parts (``"lid"``, ``"tub"``) an IML product uses."""
    iml_type = (_text(product.get("imlType")) or "").upper()
    if iml_type == IMLType.LID_TUB.value:
        return ("lid", "tub")
    if iml_type == IMLType.LID.value:
        return ("lid",)
    if iml_type == IMLType.TUB.value:
        return ("tub",)
    return ()


def order_product_to_record(order: Mapping[str, Any], product: Mapping[str, Any]) -> Record:
    """One record per order product, totalling the labels its IML type needs."""

    contact = _contact(order)
    total = sum((parse_quantity(product.get(f"{part}LabelQty")) for part in label_parts(product)), ZERO)
    created_at, updated_at = _stamps(order)
    return Record(
        record_id=f"{order.get('id')}:{product.get('id')}",
        quantity_total=total,
        group_keys=(
            _text(contact.get("company")),
            _text(order.get("orderNumber")),
            _text(product.get("productName")),
        ),
        child_statuses=(_text(product.get("designStatus")),),
        created_at=created_at,
        updated_at=updated_at,
        attributes={**product, "order": order},
    )


def order_product_production(product: Mapping[str, Any]) -> List[LedgerEntry]:
    """Produced label quantities of an order product, as ledger entries."""
    return [
        LedgerEntry(amount=parse_quantity(product.get(f"{part}ProductionQty")), note=f"{part} production")
        for part in label_parts(product)
    ]


def order_product_ledgers(order: Mapping[str, Any]) -> List[Tuple[Record, List[LedgerEntry]]]:
    """``(record, entries)`` pairs for every product of ``order``."""
    return [
        (order_product_to_record(order, product), order_product_production(product))
        for product in _products(order)
    ]


def order_to_record(order: Mapping[str, Any]) -> Record:
    """Whole-order record grouped by company then order number.

    ``child_statuses`` carries every product's design status so the order's
    artwork status can be derived.
    """

    contact = _contact(order)
    products = _products(order)
    total = sum(
        (
            parse_quantity(product.get(f"{part}LabelQty"))
            for product in products
            for part in label_parts(product)
        ),
        ZERO,
    )
    created_at, updated_at = _stamps(order)
    return Record(
        record_id=str(order.get("id")),
        quantity_total=total,
        group_keys=(_text(contact.get("company")), _text(order.get("orderNumber"))),
        child_statuses=tuple(_text(product.get("designStatus")) for product in products),
        created_at=created_at,
        updated_at=updated_at,
        attributes=order,
    )


def purchase_entry_to_record(entry: Mapping[str, Any]) -> Record:
    """Purchase entry grouped by product then size."""

    quantity = entry.get("quantity")
    if _text(quantity) is None:
        quantity = entry.get("qty")
    created_at, updated_at = _stamps(entry)
    return Record(
        record_id=str(entry.get("id")),
        quantity_total=parse_quantity(quantity),
        group_keys=(_text(entry.get("product")), _text(entry.get("size"))),
        created_at=created_at or _text(entry.get("date")),
        updated_at=updated_at,
        attributes=entry,
    )


def production_entry_to_record(entry: Mapping[str, Any]) -> Record:
    """Production job keyed by the labels received for it."""

    created_at, updated_at = _stamps(entry)
    return Record(
        record_id=str(entry.get("id")),
        quantity_total=parse_quantity(entry.get("noOfLabels")),
        group_keys=(_text(entry.get("company")), _text(entry.get("product")), _text(entry.get("size"))),
        created_at=created_at,
        updated_at=updated_at,
        attributes=entry,
    )


def screen_printing_product_to_record(order: Mapping[str, Any], product: Mapping[str, Any]) -> Record:
    """Screen-printing product grouped by product, size, then colour set."""

    colors = product.get("colors")
    color_key = " / ".join(str(color) for color in colors) if isinstance(colors, (list, tuple)) and colors else None
    created_at, updated_at = _stamps(order)
    return Record(
        record_id=f"{order.get('id')}:{product.get('id')}",
        quantity_total=parse_quantity(product.get("quantity")),
        group_keys=(_text(product.get("productName")), _text(product.get("size")), color_key),
        child_statuses=(_text(product.get("designStatus")),),
        created_at=created_at,
        updated_at=updated_at,
        attributes={**product, "order": order},
    )


def screen_printing_ledgers(order: Mapping[str, Any]) -> List[Tuple[Record, List[LedgerEntry]]]:
    """``(record, entries)`` pairs where printed quantity consumes the order."""
    return [
        (
            screen_printing_product_to_record(order, product),
            [LedgerEntry(amount=parse_quantity(product.get("printedQuantity")), note="printed")],
        )
        for product in _products(order)
    ]


__all__ = [
    "label_parts",
    "order_product_to_record",
    "order_product_production",
    "order_product_ledgers",
    "order_to_record",
    "purchase_entry_to_record",
    "production_entry_to_record",
    "screen_printing_product_to_record",
    "screen_printing_ledgers",
]
