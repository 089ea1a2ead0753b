"""Remaining-quantity ledger arithmetic.

A record carries a nominal ``quantity_total``; follow-up entries (purchase
receipts, production runs, inventory verifications) consume it. The balance
is always recomputed from the full entry history and floored at zero.

Summation is lenient: historical entries with blank or malformed amounts
count as zero so a single bad row never breaks a page. Appending is strict:
the new entry must carry a positive, parseable amount that fits within the
current balance.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import log
from .errors import ExceedsRemainingError, InvalidAmountError, MissingNoteError
from .models import LedgerEntry, Record


ZERO = Decimal("0")

# Grouping separators accepted in typed quantities ("10,000", "1,00,000",
# "10 000", "10_000").
_GROUPING_SEPARATORS = (",", "_", " ", "\u00a0", "\u202f")


@dataclass(frozen=True)
class LedgerPolicy:
    """Describe how one kind of follow-up feeds a ledger.

    ``amount_fields`` are summed to obtain the consumed amount of an entry, so
    a production run consumes accepted plus rejected plus wasted labels while
    a purchase receipt consumes only its quantity. ``note_fields`` are checked
    in order for the entry's free-text annotation.
    """

    name: str
    amount_fields: Tuple[str, ...]
    note_fields: Tuple[str, ...] = ("comment", "remarks", "note")
    date_fields: Tuple[str, ...] = ("date", "occurredAt", "createdAt")
    require_note: bool = False


PURCHASE_TRACKING = LedgerPolicy(
    name="purchase-tracking",
    amount_fields=("quantity",),
    require_note=True,
)
PURCHASE_LABEL = LedgerPolicy(
    name="purchase-label",
    amount_fields=("quantity",),
    require_note=True,
)
PRODUCTION = LedgerPolicy(
    name="production",
    amount_fields=("acceptedComponents", "rejectedComponents", "labelWastage"),
    note_fields=("remarks", "comment"),
)
INVENTORY_VERIFICATION = LedgerPolicy(
    name="inventory-verification",
    amount_fields=("finalQty",),
    note_fields=("remarks",),
    require_note=True,
)

POLICIES: Mapping[str, LedgerPolicy] = {
    policy.name: policy
    for policy in (PURCHASE_TRACKING, PURCHASE_LABEL, PRODUCTION, INVENTORY_VERIFICATION)
}


def _strip_separators(text: str) -> str:
    for separator in _GROUPING_SEPARATORS:
        text = text.replace(separator, "")
    return text


def _to_decimal(value: Any) -> Optional[Decimal]:
    """Convert ``value`` to a finite Decimal, or ``None`` if it is not one."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        candidate = value
    elif isinstance(value, (int, float)):
        candidate = Decimal(str(value))
    else:
        text = _strip_separators(str(value).strip())
        if not text:
            return None
        try:
            candidate = Decimal(text)
        except InvalidOperation:
            return None
    if not candidate.is_finite():
        return None
    return candidate


def parse_quantity(value: Any) -> Decimal:
    """Parse a quantity for summation, treating anything unusable as zero.

    Args:
        value (Any): Raw quantity as typed by a user or stored in a payload;
            may be a number, a string with grouping separators, blank, or
            ``None``.

    Returns:
        Decimal: The parsed value, or ``Decimal("0")`` when ``value`` is
            missing, empty, or not numeric.
    """

    parsed = _to_decimal(value)
    return ZERO if parsed is None else parsed


def parse_amount(value: Any) -> Decimal:
    """Parse the amount of a new entry, rejecting anything but a positive number.

    Args:
        value (Any): Raw amount for the entry being appended.

    Returns:
        Decimal: The parsed, strictly positive amount.

    Raises:
        InvalidAmountError: If ``value`` is missing, empty, non-numeric,
            non-finite, zero, or negative.
    """

    parsed = _to_decimal(value)
    if parsed is None or parsed <= ZERO:
        raise InvalidAmountError(value)
    return parsed


def consumed(entries: Iterable[LedgerEntry]) -> Decimal:
    """Sum the amounts of ``entries`` leniently."""
    total = ZERO
    for entry in entries:
        total += parse_quantity(entry.amount)
    return total


def remaining(record: Record, entries: Iterable[LedgerEntry]) -> Decimal:
    """Return ``quantity_total`` minus everything consumed, floored at zero.

    Args:
        record (Record): Record whose nominal quantity is being consumed.
        entries (Iterable[LedgerEntry]): Every entry appended so far.

    Returns:
        Decimal: Non-negative remaining balance.
    """

    balance = parse_quantity(record.quantity_total) - consumed(entries)
    return balance if balance > ZERO else ZERO


def append_entry(
    record: Record,
    entries: Sequence[LedgerEntry],
    new_entry: LedgerEntry,
    *,
    require_note: bool = False,
) -> List[LedgerEntry]:
    """Validate ``new_entry`` and return a new list with it appended.

    Validation runs in a fixed order: the amount must be a positive number,
    then the note must be present when ``require_note`` is set, and finally
    the amount must fit within the current remaining balance. The input list
    is never modified, so a rejected append leaves the caller's history
    untouched.

    Args:
        record (Record): Record the ledger belongs to.
        entries (Sequence[LedgerEntry]): Existing entries in insertion order.
        new_entry (LedgerEntry): Entry to append; its amount may still be raw
            user input.
        require_note (bool): Whether this ledger demands a note on every
            entry.

    Returns:
        list[LedgerEntry]: Copy of ``entries`` followed by ``new_entry`` with a
            normalized :class:`~decimal.Decimal` amount.

    Raises:
        InvalidAmountError: If the amount is missing, non-numeric, or not
            positive.
        MissingNoteError: If ``require_note`` is set and the note is blank.
        ExceedsRemainingError: If the amount is larger than the remaining
            balance.
    """

    amount = parse_amount(new_entry.amount)
    if require_note and not (new_entry.note or "").strip():
        log.warning("Rejected ledger entry for '%s': note required", record.record_id)
        raise MissingNoteError()

    balance = remaining(record, entries)
    if amount > balance:
        log.warning(
            "Rejected ledger entry for '%s': amount %s exceeds remaining %s",
            record.record_id,
            amount,
            balance,
        )
        raise ExceedsRemainingError(attempted=amount, remaining=balance)

    appended = list(entries)
    appended.append(replace(new_entry, amount=amount))
    log.debug(
        "Appended ledger entry for '%s': amount=%s remaining=%s",
        record.record_id,
        amount,
        balance - amount,
    )
    return appended


def _first_text(raw: Mapping[str, Any], fields: Sequence[str]) -> Optional[str]:
    for name in fields:
        value = raw.get(name)
        if value is not None and str(value).strip():
            return str(value)
    return None


def entry_from_followup(raw: Mapping[str, Any], policy: LedgerPolicy, *, strict: bool = False) -> LedgerEntry:
    """Build a :class:`LedgerEntry` from a stored or submitted follow-up row.

    The entry amount is the sum of the policy's ``amount_fields``. Historical
    rows (``strict=False``) sum leniently. New submissions (``strict=True``)
    reject any component that is filled in but not numeric; blank components
    count as zero and the positivity check is left to :func:`append_entry`.

    Raises:
        InvalidAmountError: In strict mode, when a component is not numeric.
    """

    total = ZERO
    for name in policy.amount_fields:
        value = raw.get(name)
        if strict and value is not None and str(value).strip() and _to_decimal(value) is None:
            raise InvalidAmountError(value)
        total += parse_quantity(value)

    return LedgerEntry(
        amount=total,
        note=_first_text(raw, policy.note_fields),
        occurred_at=_first_text(raw, policy.date_fields),
        details=dict(raw),
    )


def entries_from_followups(rows: Iterable[Mapping[str, Any]], policy: LedgerPolicy) -> List[LedgerEntry]:
    """Convert stored follow-up rows into ledger entries, in order."""
    return [entry_from_followup(row, policy) for row in rows]


def has_remaining(ledgers: Iterable[Tuple[Record, Sequence[LedgerEntry]]]) -> bool:
    """Return ``True`` if any ``(record, entries)`` pair still has a balance."""
    return any(remaining(record, entries) > ZERO for record, entries in ledgers)


__all__ = [
    "LedgerPolicy",
    "PURCHASE_TRACKING",
    "PURCHASE_LABEL",
    "PRODUCTION",
    "INVENTORY_VERIFICATION",
    "POLICIES",
    "parse_quantity",
    "parse_amount",
    "consumed",
    "remaining",
    "append_entry",
    "entry_from_followup",
    "entries_from_followups",
    "has_remaining",
]
