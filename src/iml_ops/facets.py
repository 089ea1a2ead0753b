"""Multi-facet filtering of flat record lists.

A :class:`FilterSpec` combines three facets, all of which must pass:

* free-text search, matched case-insensitively as a substring of any of the
  caller's searchable fields;
* exact-match selects (product, size, supplier...), ANDed together;
* an inclusive, day-granular date range on one designated date field.

Filtering never mutates its input and always returns records in their
original relative order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import log
from .errors import InvalidDateError, InvalidDateRangeError
from .models import Record, field_values


Predicate = Callable[[Record], bool]

_DAY_FIRST_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y")


def parse_day(value: Any) -> Optional[date]:
    """Reduce ``value`` to a calendar day, or ``None`` when it is not a date.

    Accepts :class:`~datetime.date` and :class:`~datetime.datetime` objects,
    ISO-8601 strings (with or without a time part and a trailing ``Z``), and
    the day-first ``dd/mm/yyyy`` strings that Indian-locale forms produce.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DAY_FIRST_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _parse_bound(bound: str, value: Any) -> Optional[date]:
    day = parse_day(value)
    if day is None and value is not None and str(value).strip():
        raise InvalidDateError(bound, value)
    return day


def _freeze_matches(exact_match: Any) -> Tuple[Tuple[str, str], ...]:
    if not exact_match:
        return ()
    items = exact_match.items() if isinstance(exact_match, Mapping) else exact_match
    return tuple(sorted((str(name), str(value)) for name, value in items if value not in (None, "")))


@dataclass(frozen=True)
class FilterSpec:
    """Declarative filter configuration.

    ``exact_match`` may be given as a mapping; it is stored as a sorted tuple
    of ``(field, value)`` pairs so specs are hashable and can key a cache.
    Blank select values are dropped, matching an "All" option in a dropdown.
    Blank date bounds mean "unbounded"; a non-blank bound that does not parse
    raises :class:`InvalidDateError`.
    """

    search_text: Optional[str] = None
    exact_match: Tuple[Tuple[str, str], ...] = field(default=())
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "exact_match", _freeze_matches(self.exact_match))
        object.__setattr__(self, "date_from", _parse_bound("from", self.date_from))
        object.__setattr__(self, "date_to", _parse_bound("to", self.date_to))

    @property
    def needle(self) -> str:
        return (self.search_text or "").strip().casefold()

    @property
    def has_date_range(self) -> bool:
        return self.date_from is not None or self.date_to is not None

    @property
    def is_empty(self) -> bool:
        return not self.needle and not self.exact_match and not self.has_date_range

    def validate(self) -> None:
        """Raise :class:`InvalidDateRangeError` when the range is inverted."""
        if self.date_from is not None and self.date_to is not None and self.date_from > self.date_to:
            raise InvalidDateRangeError(self.date_from, self.date_to)


EMPTY_SPEC = FilterSpec()


def matches_search(record: Record, needle: str, search_fields: Sequence[str]) -> bool:
    """OR across ``search_fields``: any value containing ``needle`` passes."""
    if not needle:
        return True
    for path in search_fields:
        for value in field_values(record, path):
            if needle in str(value).casefold():
                return True
    return False


def matches_exact(record: Record, exact_match: Iterable[Tuple[str, str]]) -> bool:
    """AND across selects; a fanned-out path passes if any element equals."""
    for path, expected in exact_match:
        if not any(str(value) == expected for value in field_values(record, path)):
            return False
    return True


def matches_date(record: Record, spec: FilterSpec, date_field: Optional[str]) -> bool:
    """Inclusive day-range check; records without a usable date fail closed."""
    if not spec.has_date_range:
        return True
    if date_field is None:
        return False
    values = field_values(record, date_field)
    day = parse_day(values[0]) if values else None
    if day is None:
        return False
    if spec.date_from is not None and day < spec.date_from:
        return False
    if spec.date_to is not None and day > spec.date_to:
        return False
    return True


def filter_records(
    records: Sequence[Record],
    spec: FilterSpec = EMPTY_SPEC,
    *,
    search_fields: Sequence[str] = (),
    date_field: Optional[str] = None,
    extra_predicates: Sequence[Predicate] = (),
) -> List[Record]:
    """Return the subsequence of ``records`` that passes every facet.

    Args:
        records (Sequence[Record]): Source records; neither the list nor the
            records are modified.
        spec (FilterSpec): Facet configuration. The empty spec keeps every
            record.
        search_fields (Sequence[str]): Dotted attribute paths searched by
            ``spec.search_text``.
        date_field (str | None): Dotted path of the date checked against the
            spec's range.
        extra_predicates (Sequence[Callable[[Record], bool]]): Additional
            view-specific conditions, ANDed with the facets.

    Returns:
        list[Record]: Matching records in their original order.

    Raises:
        InvalidDateRangeError: If ``spec.date_from`` is after ``spec.date_to``.
    """

    spec.validate()
    if spec.is_empty and not extra_predicates:
        return list(records)

    needle = spec.needle
    result = [
        record
        for record in records
        if matches_search(record, needle, search_fields)
        and matches_exact(record, spec.exact_match)
        and matches_date(record, spec, date_field)
        and all(predicate(record) for predicate in extra_predicates)
    ]
    log.debug("Filtered %d records down to %d", len(records), len(result))
    return result


__all__ = [
    "Predicate",
    "FilterSpec",
    "EMPTY_SPEC",
    "parse_day",
    "matches_search",
    "matches_exact",
    "matches_date",
    "filter_records",
]
