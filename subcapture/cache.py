"""
Two-tier subtitle cache.

This module keeps the most recent subtitle of every tab in memory and
persists it per page in the durable store, so a revisit of the same page
(from any tab, in any session) finds it again without re-capturing.

Per tab the cache moves through Empty -> Cached -> (Superseded | Stale-evicted):
a new capture overwrites in place, and a durable entry older than the TTL is
deleted the first time it is read.
"""

import logging
from collections.abc import Callable
from typing import Any

from cachetools import LRUCache
from pydantic import ValidationError

from subcapture.config import Settings, settings
from subcapture.models import CacheEntry
from subcapture.storage import KeyValueStore
from subcapture.utils import get_subtitle_storage_key, hash_source_url, now_ms, sanitize_for_log

logger = logging.getLogger(__name__)


class SubtitleCacheManager:
    """
    In-memory plus durable cache for captured subtitles.

    The in-memory map is keyed by tab id and bounded by
    ``memory_cache_maxsize`` (least recently used tabs are dropped first). The
    durable store is keyed by ``subtitle_<base64(normalized page url)>``.
    Durable failures are logged and the operation continues in memory only.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: Settings | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize the cache manager.

        Args:
            store: Durable key-value store
            config: Settings instance. Uses global settings if None.
            clock: Returns the current time in epoch milliseconds
        """
        self.config = config or settings
        self._store = store
        self._clock = clock
        self._memory: LRUCache = LRUCache(maxsize=self.config.memory_cache_maxsize)
        self._hits = 0
        self._misses = 0
        self._promotions = 0

    @property
    def ttl_ms(self) -> int:
        return self.config.subtitle_ttl_ms

    async def store(
        self, tab_id: int, source_url: str, content: str, page_url: str | None = None
    ) -> bool:
        """
        Cache subtitle content for a tab and, when known, its page.

        Args:
            tab_id: Browser tab id
            source_url: URL the subtitle was fetched from
            content: Canonical subtitle text
            page_url: URL of the page hosting the video

        Returns:
            False if the content is empty, True otherwise
        """
        if not content:
            logger.warning(f"Empty subtitle content for tab {tab_id}, skipping")
            return False

        source_hash = hash_source_url(source_url)
        entry = CacheEntry(
            source_url=source_url,
            content=content,
            source_url_hash=source_hash,
            cached_at=self._clock(),
            page_url=page_url,
        )

        previous = self._memory.get(tab_id)
        if previous is not None and previous.source_url_hash != source_hash:
            logger.info(
                f"Subtitle source changed for tab {tab_id}: "
                f"{previous.source_url_hash} -> {source_hash}"
            )
        self._memory[tab_id] = entry
        logger.info(f"Stored subtitle for tab {tab_id} ({len(content)} chars, source {source_hash})")

        if page_url:
            key = get_subtitle_storage_key(page_url)
            try:
                existing = await self._store.get(key)
                if isinstance(existing, dict) and existing.get("sourceUrlHash") not in (None, source_hash):
                    logger.info(f"Superseding durable subtitle for {sanitize_for_log(page_url)}")
                await self._store.set(key, entry.to_wire())
            except Exception as e:
                logger.error(f"Failed to persist subtitle for {sanitize_for_log(page_url)}: {e}")

        return True

    async def get(self, tab_id: int, page_url: str | None = None) -> CacheEntry | None:
        """
        Get the cached subtitle for a tab.

        Checks memory first; on a miss with a page URL, loads the durable
        entry, validates its age and promotes it into memory.

        Args:
            tab_id: Browser tab id
            page_url: Page URL for the durable lookup

        Returns:
            CacheEntry if found and not expired, None otherwise
        """
        entry = self._memory.get(tab_id)
        if entry is not None:
            self._hits += 1
            return entry

        if page_url:
            entry = await self._load_from_storage(tab_id, page_url)
            if entry is not None:
                self._hits += 1
                return entry

        self._misses += 1
        return None

    async def has(self, tab_id: int, page_url: str | None = None) -> bool:
        """Whether a subtitle is available for a tab; promotes like get()."""
        return await self.get(tab_id, page_url) is not None

    async def auto_load_for_tab(self, tab_id: int, page_url: str) -> bool:
        """
        Warm the in-memory cache for a reloaded or navigated tab.

        Args:
            tab_id: Browser tab id
            page_url: Current page URL of the tab

        Returns:
            True if an entry was restored from durable storage
        """
        if tab_id in self._memory or not page_url:
            return False
        return await self._load_from_storage(tab_id, page_url) is not None

    def clear(self, tab_id: int) -> None:
        """Forget a tab's in-memory entry; durable entries are kept for revisits."""
        self._memory.pop(tab_id, None)
        logger.info(f"Cleared cache for tab {tab_id}")

    def peek(self, tab_id: int) -> CacheEntry | None:
        """In-memory entry for a tab, without counting a hit or miss."""
        return self._memory.get(tab_id)

    def cached_tab_ids(self) -> list[int]:
        return list(self._memory.keys())

    async def get_stats(self) -> dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dictionary with in-memory size, hits, misses, promotions and hit rate
        """
        total = self._hits + self._misses
        return {
            "size": len(self._memory),
            "hits": self._hits,
            "misses": self._misses,
            "promotions": self._promotions,
            "hit_rate": self._hits / total if total > 0 else 0,
        }

    async def get_for_page(self, page_url: str) -> CacheEntry | None:
        """Durable lookup by page URL alone, without touching the in-memory map."""
        if not page_url:
            return None
        return await self._read_durable(page_url)

    async def _load_from_storage(self, tab_id: int, page_url: str) -> CacheEntry | None:
        entry = await self._read_durable(page_url)
        if entry is None:
            return None

        self._memory[tab_id] = entry
        self._promotions += 1
        logger.info(f"Restored cached subtitle for tab {tab_id} from storage")
        return entry

    async def _read_durable(self, page_url: str) -> CacheEntry | None:
        key = get_subtitle_storage_key(page_url)
        try:
            raw = await self._store.get(key)
        except Exception as e:
            logger.error(f"Failed to read cached subtitle for {sanitize_for_log(page_url)}: {e}")
            return None

        if not isinstance(raw, dict) or not raw.get("content"):
            return None

        age = self._clock() - int(raw.get("cachedAt") or 0)
        if age > self.ttl_ms:
            logger.info(f"Cached subtitle expired for {sanitize_for_log(page_url)}, removing")
            try:
                await self._store.remove(key)
            except Exception as e:
                logger.error(f"Failed to remove expired subtitle for {sanitize_for_log(page_url)}: {e}")
            return None

        try:
            return CacheEntry.model_validate(
                {
                    "sourceUrl": raw.get("sourceUrl") or page_url,
                    "content": raw["content"],
                    "sourceUrlHash": raw.get("sourceUrlHash") or "",
                    "cachedAt": int(raw.get("cachedAt") or 0),
                    "pageUrl": page_url,
                }
            )
        except ValidationError as e:
            logger.error(f"Malformed cached subtitle for {sanitize_for_log(page_url)}: {e}")
            return None
