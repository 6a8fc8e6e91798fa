"""Reconcile fetched Azure DevOps records against the local snapshot.

Pure functions: no I/O happens here. The sync service feeds one batch at a
time and flushes the result to the store before the next batch.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional

from adotracker.connectors.azure_devops import extract_work_item_id, parse_work_item
from adotracker.hierarchy import derive_hierarchy_tags, is_parent_relation, split_hierarchy_tags
from adotracker.models import ItemError, RelationEdge, WorkItem

logger = logging.getLogger("adotracker.sync")

ADD = "add"
UPDATE = "update"
SKIP = "skip"
EXCLUDED = "excluded"


@dataclass
class ItemDecision:
    action: str
    item: WorkItem
    edges: list[RelationEdge] = field(default_factory=list)


@dataclass
class ReconcileStats:
    added: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    def merge(self, other: "ReconcileStats") -> None:
        self.added += other.added
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed


@dataclass
class ReconcileResult:
    to_upsert: list[WorkItem] = field(default_factory=list)
    edges: list[RelationEdge] = field(default_factory=list)
    stats: ReconcileStats = field(default_factory=ReconcileStats)
    errors: list[ItemError] = field(default_factory=list)


def _raw_type(raw: Mapping[str, Any]) -> str:
    fields = raw.get("fields") or {}
    return str(fields.get("System.WorkItemType") or "")


def build_type_index(
    remote_items: Iterable[Mapping[str, Any]],
    local_snapshot: Mapping[str, WorkItem],
) -> dict[str, str]:
    """Map external id -> work item type; freshly fetched records win over local rows."""
    index = {external_id: item.type for external_id, item in local_snapshot.items() if item.type}
    for raw in remote_items:
        if raw.get("id") is None:
            continue
        item_type = _raw_type(raw)
        if item_type:
            index[str(raw["id"])] = item_type
    return index


def _relation_edges(
    item: WorkItem,
    relations: Any,
    type_index: Mapping[str, str],
) -> tuple[list[RelationEdge], bool, Optional[str]]:
    if relations is None:
        return [], False, None
    if not isinstance(relations, list):
        raise ValueError(f"relations must be a list, got {type(relations).__name__}")

    edges: list[RelationEdge] = []
    has_parent = False
    parent_type: Optional[str] = None
    for relation in relations:
        if not isinstance(relation, dict):
            continue
        rel = relation.get("rel")
        url = relation.get("url")
        if not rel or not url:
            continue
        target_id = extract_work_item_id(url)
        # Hyperlinks and artifact links carry no work-item target.
        if not target_id:
            continue
        edges.append(RelationEdge(sourceId=item.externalId, targetId=target_id, relationType=rel))
        if is_parent_relation(rel):
            has_parent = True
            if parent_type is None:
                attributes = relation.get("attributes") or {}
                parent_type = type_index.get(target_id) or attributes.get("workItemType") or None
    return edges, has_parent, parent_type


def reconcile_item(
    raw: Mapping[str, Any],
    local: Optional[WorkItem],
    *,
    excluded_types: Iterable[str] = (),
    type_index: Optional[Mapping[str, str]] = None,
) -> ItemDecision:
    """Decide add / update / skip / excluded for one fetched record.

    Raises ValueError for malformed records; the caller isolates it.
    """
    item = parse_work_item(dict(raw))
    if item.type in set(excluded_types):
        return ItemDecision(EXCLUDED, item)

    edges, has_parent, parent_type = _relation_edges(item, raw.get("relations"), type_index or {})

    if local is None:
        action = ADD
        item.needsTagging = True
    elif local.modifiedAt != item.modifiedAt:
        action = UPDATE
        item.tags = set(local.tags)
        item.confidenceScores = dict(local.confidenceScores)
        _, content_tags = split_hierarchy_tags(local.tags)
        # Hierarchy tags alone never count as a completed tagging pass.
        item.needsTagging = not (content_tags and not local.needsTagging)
        item.lastRetaggedAt = local.lastRetaggedAt
    else:
        return ItemDecision(SKIP, local, edges)

    if item.needsTagging:
        _, other_tags = split_hierarchy_tags(item.tags)
        item.tags = other_tags | derive_hierarchy_tags(item.type, has_parent, parent_type)
        item.confidenceScores = {
            tag: score for tag, score in item.confidenceScores.items() if tag in item.tags
        }

    return ItemDecision(action, item, edges)


def reconcile(
    remote_items: list[Mapping[str, Any]],
    local_snapshot: Mapping[str, WorkItem],
    *,
    excluded_types: Iterable[str] = (),
    type_index: Optional[Mapping[str, str]] = None,
    on_item: Optional[Callable[[str, bool], None]] = None,
) -> ReconcileResult:
    """Reconcile a batch of fetched records.

    ``on_item(label, ok)`` is called once per record, in order.
    """
    excluded = set(excluded_types)
    if type_index is None:
        type_index = build_type_index(remote_items, local_snapshot)

    result = ReconcileResult()
    for raw in remote_items:
        external_id = str(raw.get("id") or "")
        try:
            decision = reconcile_item(
                raw,
                local_snapshot.get(external_id),
                excluded_types=excluded,
                type_index=type_index,
            )
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            logger.warning("Failed to reconcile work item %s: %s", external_id or "<unknown>", exc)
            result.errors.append(ItemError(externalId=external_id, error=str(exc)))
            result.stats.failed += 1
            if on_item:
                on_item(f"#{external_id}", False)
            continue

        if decision.action == ADD:
            result.stats.added += 1
            result.to_upsert.append(decision.item)
        elif decision.action == UPDATE:
            result.stats.updated += 1
            result.to_upsert.append(decision.item)
        else:
            result.stats.skipped += 1
        result.edges.extend(decision.edges)
        if on_item:
            on_item(decision.item.label, True)
    return result
