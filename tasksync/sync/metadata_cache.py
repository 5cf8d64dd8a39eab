"""Per-source cache for slow-changing remote metadata (pipelines, stages)."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class MetadataCache:
    """Lazily populated metadata keyed by (source id, key).

    Entries live until ``invalidate`` is called, which the sync manager does
    when a user asks to refresh a source's metadata.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], Any] = {}

    def get(self, source_id: str, key: str) -> Any | None:
        return self._entries.get((source_id, key))

    def set(self, source_id: str, key: str, value: Any) -> None:
        self._entries[(source_id, key)] = value

    async def get_or_load(
        self, source_id: str, key: str, loader: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Return the cached value, loading and storing it on a miss."""
        cache_key = (source_id, key)
        if cache_key not in self._entries:
            self._entries[cache_key] = await loader()
            logger.debug(f"Cached {key} metadata for source {source_id}")
        return self._entries[cache_key]

    def invalidate(self, source_id: str | None = None) -> None:
        """Drop cached metadata for one source, or for all sources."""
        if source_id is None:
            self._entries.clear()
        else:
            for cache_key in [k for k in self._entries if k[0] == source_id]:
                del self._entries[cache_key]
