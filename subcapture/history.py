"""
Capture history.

A bounded, most-recent-first list of pages whose subtitles were captured,
independent of tab lifecycle. The whole list lives under one durable key;
each page appears at most once, and a repeat capture moves it to the front.
"""

import asyncio
import hashlib
import logging
from collections.abc import Callable

from pydantic import ValidationError

from subcapture.config import Settings, settings
from subcapture.models import HistoryConfig, HistoryItem
from subcapture.storage import KeyValueStore
from subcapture.utils import get_favicon_url, now_ms, sanitize_for_log
from subcapture.vtt import extract_title

logger = logging.getLogger(__name__)

HISTORY_KEY = "capture_history"
HISTORY_CONFIG_KEY = "history_config"


def generate_history_id(page_url: str, captured_at: int) -> str:
    """Build an opaque history id from the page URL and capture time."""
    digest = hashlib.sha256(page_url.encode("utf-8")).hexdigest()[:10]
    return f"{digest}_{captured_at}"


class HistoryManager:
    """Bounded, deduplicated, most-recent-first capture history."""

    def __init__(
        self,
        store: KeyValueStore,
        config: Settings | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or settings
        self._store = store
        self._clock = clock
        # Guards every read-modify-write of the stored list and config
        self._lock = asyncio.Lock()

    async def get_config(self) -> HistoryConfig:
        """Return the persisted history configuration, or the defaults."""
        try:
            raw = await self._store.get(HISTORY_CONFIG_KEY)
            if raw:
                return HistoryConfig.model_validate(raw)
        except Exception as e:
            logger.error(f"Failed to read history config: {e}")
        return HistoryConfig(max_size=self.config.history_max_size)

    async def update_config(self, max_size: int) -> HistoryConfig:
        """
        Persist a new maximum size and trim the history to it.

        Raises:
            ValidationError: If max_size is smaller than 1
        """
        config = HistoryConfig(max_size=max_size)
        async with self._lock:
            await self._store.set(HISTORY_CONFIG_KEY, config.to_wire())

            history = await self.summary()
            if len(history) > config.max_size:
                await self._save(history[: config.max_size])
        return config

    async def add(self, page_url: str, source_url: str, content: str) -> HistoryItem:
        """
        Add a capture to the front of the history.

        An existing entry for the same page is removed first, so the new
        capture's timestamp decides its position. The list is then truncated
        to the configured maximum size.

        Args:
            page_url: URL of the page hosting the video
            source_url: URL the subtitle was fetched from
            content: Canonical subtitle text

        Returns:
            The new history item
        """
        captured_at = self._clock()
        item = HistoryItem(
            id=generate_history_id(page_url, captured_at),
            title=extract_title(content, self.config.history_title_words),
            page_url=page_url,
            source_url=source_url,
            content=content,
            captured_at=captured_at,
            favicon_url=get_favicon_url(page_url),
        )

        async with self._lock:
            config = await self.get_config()
            history = await self.summary()

            history = [existing for existing in history if existing.page_url != page_url]
            history.insert(0, item)
            del history[config.max_size:]

            await self._save(history)
        logger.info(f"Added {sanitize_for_log(page_url)} to history as {item.id}")
        return item

    async def get(self, item_id: str) -> HistoryItem | None:
        for item in await self.summary():
            if item.id == item_id:
                return item
        return None

    async def summary(self) -> list[HistoryItem]:
        """
        Return the full history, most recent first.

        Content is included so callers can build previews; read failures
        yield an empty list.
        """
        try:
            raw = await self._store.get(HISTORY_KEY)
        except Exception as e:
            logger.error(f"Failed to read history: {e}")
            return []

        items = []
        for entry in raw or []:
            try:
                items.append(HistoryItem.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"Dropping malformed history entry: {e}")
        return items

    async def remove(self, item_id: str) -> None:
        async with self._lock:
            history = await self.summary()
            await self._save([item for item in history if item.id != item_id])

    async def clear(self) -> None:
        async with self._lock:
            await self._save([])
        logger.info("History cleared")

    async def _save(self, history: list[HistoryItem]) -> None:
        await self._store.set(HISTORY_KEY, [item.to_wire() for item in history])
