"""Canonical in-memory shapes consumed by the derived-state engines."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Tuple


@dataclass(frozen=True)
class Record:
    """A pipeline entity (order, purchase entry, production entry, bill).

    ``group_keys`` holds the attributes extracted for hierarchical grouping in
    their grouping order. ``attributes`` keeps the untouched source payload so
    search and select facets can reach nested fields.
    """

    record_id: str
    quantity_total: Decimal = Decimal("0")
    group_keys: Tuple[Optional[str], ...] = ()
    child_statuses: Tuple[Optional[str], ...] = ()
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    attributes: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @property
    def last_touched(self) -> Optional[str]:
        """Most recent timestamp, used for newest-first ordering."""
        return self.updated_at or self.created_at


@dataclass(frozen=True)
class LedgerEntry:
    """An append-only consumption event against a record's total quantity."""

    amount: Any
    note: Optional[str] = None
    occurred_at: Optional[str] = None
    details: Mapping[str, Any] = field(default_factory=dict, compare=False)


_RECORD_FIELDS = frozenset({"record_id", "quantity_total", "created_at", "updated_at"})


def field_values(record: Record, path: str) -> List[Any]:
    """Resolve a dotted ``path`` against a record and return every match.

    Top-level record fields (``record_id``, ``created_at``...) are read from
    the dataclass; anything else is looked up in ``attributes``. Lists met
    along the way fan out, so ``products.imlName`` yields the IML name of
    every product. Missing segments simply produce no values.
    """

    head, _, rest = path.partition(".")
    if head in _RECORD_FIELDS and not rest:
        value = getattr(record, head)
        return [] if value is None else [value]

    current: List[Any] = [record.attributes]
    for segment in path.split("."):
        found: List[Any] = []
        for node in current:
            if isinstance(node, Mapping) and segment in node:
                child = node[segment]
                if isinstance(child, (list, tuple)):
                    found.extend(child)
                else:
                    found.append(child)
        current = found
    return [value for value in current if value is not None]


def sort_newest_first(records: List[Record]) -> List[Record]:
    """Order records by last update (falling back to creation), newest first.

    Records without a parseable timestamp keep their relative order at the
    end of the list.
    """

    def _key(record: Record) -> float:
        stamp = record.last_touched
        if not stamp:
            return float("inf")
        try:
            moment = datetime.fromisoformat(stamp.replace("Z", "+00:00"))
        except ValueError:
            return float("inf")
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return -moment.timestamp()

    return sorted(records, key=_key)


__all__ = ["Record", "LedgerEntry", "field_values", "sort_newest_first"]
