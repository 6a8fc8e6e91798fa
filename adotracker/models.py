"""Pydantic models shared by the sync pipeline, tagging engine and API."""
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

# ── Work items ─────────────────────────────────────────────────────


class WorkItem(BaseModel):
    externalId: str
    title: str = ""
    description: str = ""
    type: str = ""
    state: str = ""
    areaPath: str = ""
    iterationPath: str = ""
    assignedTo: str = ""
    createdBy: str = ""
    createdAt: str = ""
    modifiedAt: str = ""
    projectName: str = ""
    tags: set[str] = Field(default_factory=set)
    confidenceScores: dict[str, float] = Field(default_factory=dict)
    needsTagging: bool = True
    fields: dict[str, Any] = Field(default_factory=dict)  # opaque pass-through domain fields
    rawData: dict[str, Any] = Field(default_factory=dict)
    syncedAt: str = ""
    lastRetaggedAt: Optional[str] = None

    @property
    def label(self) -> str:
        return f"#{self.externalId} - {self.title}"


class RelationEdge(BaseModel):
    sourceId: str
    targetId: str
    relationType: str
    createdAt: str = ""


class TagBackup(BaseModel):
    externalId: str
    tags: set[str] = Field(default_factory=set)
    confidenceScores: dict[str, float] = Field(default_factory=dict)
    backupTimestamp: str = ""


class TagResult(BaseModel):
    """Output of a tag generator for one work item."""

    tags: set[str] = Field(default_factory=set)
    confidenceScores: dict[str, float] = Field(default_factory=dict)

    def normalized(self, default_confidence: float = 1.0) -> "TagResult":
        """Return a copy whose score keys are exactly the tag set."""
        scores = {tag: float(self.confidenceScores.get(tag, default_confidence)) for tag in self.tags}
        return TagResult(tags=set(self.tags), confidenceScores=scores)


# ── Runs / audit log ───────────────────────────────────────────────


class ItemError(BaseModel):
    externalId: str = ""
    error: str


class RunRecord(BaseModel):
    id: Optional[int] = None
    kind: str
    timestamp: str = ""
    status: str = "success"  # "success" | "failed" | "running"
    errors: list[ItemError] = Field(default_factory=list)
    durationMs: int = 0
    trigger: str = "api"


class SyncRun(RunRecord):
    kind: str = "sync"
    projectName: str = ""
    itemsFetched: int = 0
    itemsAdded: int = 0
    itemsUpdated: int = 0
    itemsSkipped: int = 0
    itemsFailed: int = 0
    edgesRecorded: int = 0


class TagRunResult(RunRecord):
    kind: str = "tag"
    mode: str = "pending"
    itemsSelected: int = 0
    itemsProcessed: int = 0
    tagged: int = 0
    failed: int = 0
    cancelled: bool = False


class SyncStatus(BaseModel):
    lastSync: Optional[SyncRun] = None
    status: str = "never"  # "never" | "success" | "failed"
    inProgress: bool = False


# ── Re-tag selection ───────────────────────────────────────────────

RetagMode = Literal["all", "lowConfidence", "dateRange", "byProject", "untagged", "pending"]

_MODE_ALIASES = {
    "confidence": "lowConfidence",
    "low_confidence": "lowConfidence",
    "project": "byProject",
    "by_project": "byProject",
    "date_range": "dateRange",
}


class RetagCriteria(BaseModel):
    mode: RetagMode = "pending"
    confidenceThreshold: Optional[float] = None
    fromDate: Optional[str] = None
    toDate: Optional[str] = None
    projectName: Optional[str] = None
    preserveHierarchyTags: bool = True
    batchSize: Optional[int] = Field(default=None, ge=1)
    concurrency: Optional[int] = Field(default=None, ge=1)

    @field_validator("mode", mode="before")
    @classmethod
    def _resolve_mode_alias(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _MODE_ALIASES.get(value.strip(), value.strip())
        return value


class RetagEstimate(BaseModel):
    estimatedCount: int
    mode: str
    criteria: RetagCriteria


class RetaggedItem(BaseModel):
    externalId: str
    title: str = ""
    type: str = ""
    oldTags: set[str] = Field(default_factory=set)
    newTags: set[str] = Field(default_factory=set)
    backupTimestamp: Optional[str] = None
    lastRetaggedAt: Optional[str] = None


# ── Progress ───────────────────────────────────────────────────────


class ProgressSnapshot(BaseModel):
    operation: str = ""  # "sync" | "tag" | "retag"
    phase: str = "idle"  # "idle" | "fetching" | "processing" | "tagging"
    current: int = 0
    total: int = 0
    percentage: int = 0
    currentItemLabel: Optional[str] = None
    inProgress: bool = False
    successCount: int = 0
    failureCount: int = 0
    startedAt: str = ""
    lastResult: Optional[dict[str, Any]] = None


class PipelineProgress(BaseModel):
    sync: ProgressSnapshot
    tagging: ProgressSnapshot
    recentOperations: list[dict[str, Any]] = Field(default_factory=list)


class StoreStats(BaseModel):
    totalItems: int = 0
    pendingTagging: int = 0
    taggedItems: int = 0
    orphanItems: int = 0
    totalLinks: int = 0
    byType: dict[str, int] = Field(default_factory=dict)
    byState: dict[str, int] = Field(default_factory=dict)
