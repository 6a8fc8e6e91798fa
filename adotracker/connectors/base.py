"""Remote source contract consumed by the sync service."""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class RemoteSource(Protocol):
    async def fetch_remote_items(
        self,
        project: str,
        *,
        from_date: Optional[str] = None,
        max_items: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Return raw work-item records with their relations attached."""
        ...
