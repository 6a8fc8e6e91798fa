"""Repository protocols for the local work-item store."""
from __future__ import annotations

from typing import Iterable, Optional, Protocol, runtime_checkable

from adotracker.models import (
    RelationEdge,
    RetagCriteria,
    RetaggedItem,
    RunRecord,
    StoreStats,
    TagBackup,
    WorkItem,
)


@runtime_checkable
class WorkItemRepository(Protocol):
    async def upsert_many(self, items: Iterable[WorkItem], *, commit: bool = True) -> int: ...

    async def flush(self) -> None: ...

    async def rollback(self) -> None: ...

    async def get(self, external_id: str) -> Optional[WorkItem]: ...

    async def get_many(self, external_ids: Iterable[str]) -> dict[str, WorkItem]: ...

    async def snapshot(self) -> dict[str, WorkItem]: ...

    async def list_needing_tags(self, limit: int) -> list[WorkItem]: ...

    async def pending_count(self) -> int: ...

    async def count_by_criteria(self, criteria: RetagCriteria) -> int: ...

    async def list_by_criteria(self, criteria: RetagCriteria) -> list[WorkItem]: ...

    async def backup_tags(self, items: Iterable[WorkItem], *, commit: bool = True) -> str: ...

    async def apply_tags(
        self, items: Iterable[WorkItem], *, retagged_at: Optional[str] = None, commit: bool = True,
    ) -> int: ...

    async def get_backup(self, external_id: str) -> Optional[TagBackup]: ...

    async def restore_backup(self, external_id: str) -> bool: ...

    async def retagged_items(self, limit: int = 20) -> list[RetaggedItem]: ...

    async def delete_by_types(self, types: Iterable[str], *, commit: bool = True) -> list[str]: ...

    async def stats(self) -> StoreStats: ...

    async def tag_usage(self, limit: int = 200) -> list[dict]: ...


@runtime_checkable
class RelationRepository(Protocol):
    async def add_many(self, edges: Iterable[RelationEdge], *, commit: bool = True) -> int: ...

    async def flush(self) -> None: ...

    async def links_for(self, external_id: str) -> list[RelationEdge]: ...

    async def count(self) -> int: ...

    async def delete_referencing(self, external_ids: Iterable[str], *, commit: bool = True) -> int: ...


@runtime_checkable
class RunLogRepository(Protocol):
    async def record(self, run: RunRecord) -> int: ...

    async def history(self, kind: str, limit: int = 10) -> list[dict]: ...

    async def latest(self, kind: str) -> Optional[dict]: ...
