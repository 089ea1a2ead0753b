"""Exception hierarchy for the IML operations core.

Every failure raised by the derived-state engines is a
:class:`BusinessRuleViolation`. None of them is fatal: callers catch the
specific subclass, build a message from the attached context, and re-prompt.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class LedgerError(BusinessRuleViolation):
    """Base class for rejected ledger appends."""


class InvalidAmountError(LedgerError):
    """Raised when an entry amount is missing, non-numeric, or not positive."""

    def __init__(self, raw_amount: Any) -> None:
        self.raw_amount = raw_amount
        super().__init__(f"Quantity must be a number greater than zero (got {raw_amount!r})")


class MissingNoteError(LedgerError):
    """Raised when the ledger policy requires a note and none was given."""

    def __init__(self) -> None:
        super().__init__("A note is required for this entry")


class ExceedsRemainingError(LedgerError):
    """Raised when an entry would consume more than the remaining balance."""

    def __init__(self, attempted: Decimal, remaining: Decimal) -> None:
        self.attempted = attempted
        self.remaining = remaining
        super().__init__(f"Quantity {attempted} cannot exceed remaining quantity {remaining}")


class FilterError(BusinessRuleViolation):
    """Base class for invalid filter configurations."""


class InvalidDateError(FilterError):
    """Raised when a date bound is given but is not a recognizable date."""

    def __init__(self, bound: str, raw_value: Any) -> None:
        self.bound = bound
        self.raw_value = raw_value
        super().__init__(f"Unrecognized {bound} date {raw_value!r}")


class InvalidDateRangeError(FilterError):
    """Raised when a date range starts after it ends."""

    def __init__(self, date_from: Any, date_to: Any) -> None:
        self.date_from = date_from
        self.date_to = date_to
        super().__init__(f"Date range start {date_from} is after end {date_to}")


class StaleWriteError(BusinessRuleViolation):
    """Raised when a compare-and-swap write finds a newer stored version."""

    def __init__(self, key: str, expected: int, actual: int) -> None:
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(f"Stale write to '{key}': expected version {expected}, found {actual}")


class MigrationError(BusinessRuleViolation):
    """Raised when a stored payload cannot be brought to the current version."""

    def __init__(self, message: str, *, key: Optional[str] = None) -> None:
        self.key = key
        super().__init__(message if key is None else f"{key}: {message}")


__all__ = [
    "BusinessRuleViolation",
    "LedgerError",
    "InvalidAmountError",
    "MissingNoteError",
    "ExceedsRemainingError",
    "FilterError",
    "InvalidDateError",
    "InvalidDateRangeError",
    "StaleWriteError",
    "MigrationError",
]
