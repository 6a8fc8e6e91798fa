"""Hierarchy-position tags derived from parent/child relation edges.

Hierarchy tags (``orphan``, ``has-parent``, ``top-level-*``, ``child-of-*``)
describe where an item sits in the work-item tree. They are kept apart from
content-derived tags: re-tagging can preserve them, and they never count as
a completed enrichment pass on their own.
"""
from __future__ import annotations

import re
from typing import Iterable, Optional

ORPHAN_TAG = "orphan"
HAS_PARENT_TAG = "has-parent"
TOP_LEVEL_PREFIX = "top-level-"
CHILD_OF_PREFIX = "child-of-"

# Azure DevOps link type for "this item points at its parent".
REVERSE_HIERARCHY_MARKER = "System.LinkTypes.Hierarchy-Reverse"
_REVERSE_HIERARCHY_MARKERS = {REVERSE_HIERARCHY_MARKER, "Hierarchy-Reverse"}

CONTAINER_TYPES = frozenset({"Epic", "Feature"})
LEAF_TYPES = frozenset({"User Story", "Product Backlog Item", "Task", "Bug", "Issue"})

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def type_slug(work_item_type: str) -> str:
    return _SLUG_RE.sub("-", (work_item_type or "").strip().lower()).strip("-")


def is_parent_relation(relation_type: str | None) -> bool:
    """Return True when an outgoing edge points at the item's parent.

    Either the type mentions "parent" (free-text link naming) or it is the
    reverse-hierarchy link type. Upstream data uses both.
    """
    if not relation_type:
        return False
    return _mentions_parent(relation_type) or _is_reverse_hierarchy(relation_type)


def _mentions_parent(relation_type: str) -> bool:
    return "parent" in relation_type.lower()


def _is_reverse_hierarchy(relation_type: str) -> bool:
    return relation_type.strip() in _REVERSE_HIERARCHY_MARKERS


def is_container_type(work_item_type: str) -> bool:
    return (work_item_type or "").strip() in CONTAINER_TYPES


def is_hierarchy_tag(tag: str) -> bool:
    return (
        tag in (ORPHAN_TAG, HAS_PARENT_TAG)
        or tag.startswith(TOP_LEVEL_PREFIX)
        or tag.startswith(CHILD_OF_PREFIX)
    )


def split_hierarchy_tags(tags: Iterable[str]) -> tuple[set[str], set[str]]:
    """Split a tag set into (hierarchy tags, other tags)."""
    hierarchy: set[str] = set()
    other: set[str] = set()
    for tag in tags:
        (hierarchy if is_hierarchy_tag(tag) else other).add(tag)
    return hierarchy, other


def derive_hierarchy_tags(
    work_item_type: str,
    has_parent: bool,
    parent_type: Optional[str] = None,
) -> set[str]:
    if has_parent:
        tags = {HAS_PARENT_TAG}
        slug = type_slug(parent_type or "")
        if slug:
            tags.add(f"{CHILD_OF_PREFIX}{slug}")
        return tags
    if is_container_type(work_item_type):
        return {f"{TOP_LEVEL_PREFIX}{type_slug(work_item_type)}"}
    return {ORPHAN_TAG}
