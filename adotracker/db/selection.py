"""SQL predicates for re-tag selection modes.

Counting and selecting share one predicate so an estimate always matches
the set a run would actually touch.
"""
from __future__ import annotations

from adotracker import config
from adotracker.errors import InvalidCriteriaError
from adotracker.models import RetagCriteria


def selection_predicate(criteria: RetagCriteria) -> tuple[str, tuple]:
    """Return a (WHERE clause, params) pair for ``work_items``."""
    mode = criteria.mode
    if mode == "all":
        return "1 = 1", ()
    if mode == "pending":
        return "needs_tagging = 1", ()
    if mode == "untagged":
        return "(tags_json IS NULL OR tags_json = '' OR tags_json = '[]')", ()
    if mode == "lowConfidence":
        threshold = criteria.confidenceThreshold
        if threshold is None:
            threshold = config.RETAG_CONFIDENCE_THRESHOLD
        if not 0.0 <= threshold <= 1.0:
            raise InvalidCriteriaError("confidenceThreshold must be between 0 and 1")
        return (
            "EXISTS (SELECT 1 FROM json_each(work_items.confidence_json) cs "
            "WHERE CAST(cs.value AS REAL) < ?)",
            (float(threshold),),
        )
    if mode == "dateRange":
        if not criteria.fromDate or not criteria.toDate:
            raise InvalidCriteriaError("dateRange mode requires fromDate and toDate")
        if criteria.fromDate > criteria.toDate:
            raise InvalidCriteriaError("fromDate must not be after toDate")
        return "modified_at >= ? AND modified_at <= ?", (criteria.fromDate, criteria.toDate)
    if mode == "byProject":
        if not criteria.projectName:
            raise InvalidCriteriaError("byProject mode requires projectName")
        return "project_name = ?", (criteria.projectName,)
    raise InvalidCriteriaError(f"Invalid re-tag mode: {mode}")
