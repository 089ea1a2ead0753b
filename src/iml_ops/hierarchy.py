"""Group flat record lists into multi-level trees.

Management views show orders as company -> order number -> product, and
purchase entries as product -> size. Every view builds its tree the same way:
walk the records once, extract one key per level, and append the record to
the leaf at the end of that path. Records with a blank key land in a named
fallback group, so nothing is ever dropped from a view.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from . import log
from .models import Record, field_values


class ChildOrder(str, Enum):
    """How the children of every node are ordered."""

    FIRST_SEEN = "first-seen"
    ALPHABETICAL = "alphabetical"


@dataclass(frozen=True)
class KeyExtractor:
    """Extract one grouping level from a record.

    ``getter`` may return ``None`` or a blank string; such records are filed
    under ``fallback`` instead.
    """

    name: str
    getter: Callable[[Record], Optional[Any]]
    fallback: str

    def __call__(self, record: Record) -> str:
        value = self.getter(record)
        if value is None:
            return self.fallback
        text = str(value).strip()
        return text if text else self.fallback


def by_attribute(path: str, fallback: str, *, name: Optional[str] = None) -> KeyExtractor:
    """Extractor reading the first value found at a dotted attribute path."""

    def _get(record: Record) -> Optional[Any]:
        values = field_values(record, path)
        return values[0] if values else None

    return KeyExtractor(name=name or path, getter=_get, fallback=fallback)


def by_group_key(index: int, fallback: str, *, name: Optional[str] = None) -> KeyExtractor:
    """Extractor reading ``record.group_keys[index]``."""

    def _get(record: Record) -> Optional[Any]:
        if index < len(record.group_keys):
            return record.group_keys[index]
        return None

    return KeyExtractor(name=name or f"group_keys[{index}]", getter=_get, fallback=fallback)


@dataclass
class GroupNode:
    """A node of the grouped tree.

    Interior nodes hold ``children`` keyed by the next level's value; leaves
    hold the grouped ``records`` in their original relative order.
    """

    key: str
    depth: int = 0
    children: Dict[str, "GroupNode"] = field(default_factory=dict)
    records: List[Record] = field(default_factory=list)
    leaf: bool = False

    @property
    def is_leaf(self) -> bool:
        return self.leaf

    def keys(self) -> List[str]:
        return list(self.children)

    def child(self, key: str) -> "GroupNode":
        return self.children[key]

    def find(self, *path: str) -> Optional["GroupNode"]:
        """Return the node reached by following ``path``, or ``None``."""
        node: GroupNode = self
        for key in path:
            nxt = node.children.get(key)
            if nxt is None:
                return None
            node = nxt
        return node

    def iter_leaves(self, _prefix: Tuple[str, ...] = ()) -> Iterator[Tuple[Tuple[str, ...], List[Record]]]:
        """Yield ``(path, records)`` for every leaf, in child order."""
        if self.leaf:
            yield _prefix, self.records
            return
        for key, node in self.children.items():
            yield from node.iter_leaves(_prefix + (key,))

    def all_records(self) -> List[Record]:
        collected: List[Record] = []
        for _, records in self.iter_leaves():
            collected.extend(records)
        return collected

    def count(self) -> int:
        """Number of records below this node."""
        return sum(len(records) for _, records in self.iter_leaves())


ROOT_KEY = ""


def _sorted_children(node: GroupNode) -> None:
    node.children = dict(sorted(node.children.items(), key=lambda item: (item[0].casefold(), item[0])))
    for child in node.children.values():
        if not child.leaf:
            _sorted_children(child)


def group(
    records: Iterable[Record],
    extractors: Sequence[KeyExtractor],
    *,
    order: ChildOrder = ChildOrder.FIRST_SEEN,
) -> GroupNode:
    """Build a tree of depth ``len(extractors)`` over ``records``.

    Records sharing the same key tuple end up in the same leaf, in the order
    they appear in ``records``. With ``ChildOrder.FIRST_SEEN`` children are
    ordered by the first record that introduced them; with
    ``ChildOrder.ALPHABETICAL`` they are sorted case-insensitively, ties
    broken by the raw key. With no extractors the root itself is the single
    leaf.

    Args:
        records (Iterable[Record]): Flat, typically already filtered, records.
        extractors (Sequence[KeyExtractor]): One extractor per tree level,
            outermost first.
        order (ChildOrder): Child ordering applied at every level.

    Returns:
        GroupNode: Root node whose key is the empty string.
    """

    depth = len(extractors)
    root = GroupNode(key=ROOT_KEY, depth=0, leaf=depth == 0)
    total = 0
    for record in records:
        total += 1
        node = root
        for level, extractor in enumerate(extractors, start=1):
            key = extractor(record)
            child = node.children.get(key)
            if child is None:
                child = GroupNode(key=key, depth=level, leaf=level == depth)
                node.children[key] = child
            node = child
        node.records.append(record)

    if order is ChildOrder.ALPHABETICAL and depth:
        _sorted_children(root)

    log.debug(
        "Grouped %d records by [%s] into %d top-level groups",
        total,
        ", ".join(extractor.name for extractor in extractors),
        len(root.children),
    )
    return root


def distinct_values(records: Iterable[Record], extractor: KeyExtractor, *, include_fallback: bool = True) -> List[str]:
    """Sorted distinct keys produced by ``extractor`` over ``records``.

    Backs the product, size, and supplier dropdowns of the management views.
    """

    values = set()
    for record in records:
        key = extractor(record)
        if key == extractor.fallback and not include_fallback:
            continue
        values.add(key)
    return sorted(values, key=lambda value: (value.casefold(), value))


__all__ = [
    "ChildOrder",
    "KeyExtractor",
    "GroupNode",
    "ROOT_KEY",
    "by_attribute",
    "by_group_key",
    "group",
    "distinct_values",
]
