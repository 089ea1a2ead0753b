"""Aggregate statuses derived from child line items."""

from __future__ import annotations

from collections import Counter
from typing import Iterable, Optional, Sequence

from . import log
from .constants import DesignStatus, DispatchStatus


# Highest precedence first; the last entry is the default.
DESIGN_PRECEDENCE: tuple[str, ...] = (
    DesignStatus.IN_PROGRESS.value,
    DesignStatus.APPROVED.value,
    DesignStatus.PENDING.value,
)
DISPATCH_PRECEDENCE: tuple[str, ...] = (
    DispatchStatus.PENDING.value,
    DispatchStatus.COMPLETED.value,
)


def normalize_status(status: Optional[str], default: str) -> str:
    """Lower-case and strip ``status``; blank or ``None`` becomes ``default``."""
    if status is None:
        return default
    text = str(status).strip().lower()
    return text or default


def derive_status(child_statuses: Iterable[Optional[str]], precedence: Sequence[str]) -> str:
    """Collapse child statuses into one aggregate status.

    The first entry of ``precedence`` present among the children wins; when
    none is present (including when there are no children at all) the last
    entry is returned. Values outside ``precedence`` count as the default and
    are logged so bad upstream data can be traced.

    Matching ignores case and surrounding whitespace on both sides; the result
    keeps the spelling used in ``precedence``.

    Args:
        child_statuses (Iterable[str | None]): Per-line-item statuses.
        precedence (Sequence[str]): Statuses ordered from highest to lowest
            precedence; must not be empty.

    Returns:
        str: The derived status, always a member of ``precedence``.
    """

    if not precedence:
        raise ValueError("precedence must list at least one status")

    default = precedence[-1]
    normalized = [normalize_status(candidate, candidate) for candidate in precedence]
    fallback = normalized[-1]
    known = set(normalized)
    present = set()
    for raw in child_statuses:
        status = normalize_status(raw, fallback)
        if status not in known:
            log.warning("Unrecognized status %r treated as '%s'", raw, default)
            status = fallback
        present.add(status)

    for candidate, spelling in zip(normalized, precedence):
        if candidate in present:
            return spelling
    return default


def status_counts(groups: Iterable[Iterable[Optional[str]]], precedence: Sequence[str]) -> Counter:
    """Count derived statuses over many groups, with a zero for every status."""
    counts: Counter = Counter({status: 0 for status in precedence})
    for child_statuses in groups:
        counts[derive_status(child_statuses, precedence)] += 1
    return counts


__all__ = [
    "DESIGN_PRECEDENCE",
    "DISPATCH_PRECEDENCE",
    "normalize_status",
    "derive_status",
    "status_counts",
]
