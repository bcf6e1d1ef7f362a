"""
Message router.

Owns the cache and history managers and answers the request/response
message protocol used by capture bridges and consumers. Every message is a
plain dict with an ``action`` key; every response is a plain dict using
camelCase field names.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from subcapture.cache import SubtitleCacheManager
from subcapture.history import HistoryManager
from subcapture.utils import normalize_url, sanitize_for_log
from subcapture.vtt import is_thumbnail_vtt

logger = logging.getLogger(__name__)

HISTORY_UPDATED = "historyUpdated"

HistoryListener = Callable[[dict], Awaitable[None] | None]


class MessageAction(str, Enum):
    SUBTITLE_FOUND = "subtitleFound"
    GET_STATUS = "getStatus"
    GET_CONTENT = "getContent"
    GET_HISTORY = "getHistory"
    GET_HISTORY_ITEM = "getHistoryItem"
    CLEAR_HISTORY = "clearHistory"
    REMOVE_HISTORY_ITEM = "removeHistoryItem"
    GET_HISTORY_CONFIG = "getHistoryConfig"
    UPDATE_HISTORY_CONFIG = "updateHistoryConfig"
    TAB_UPDATED = "tabUpdated"
    TAB_REMOVED = "tabRemoved"


class MessageRouter:
    """
    Dispatches protocol messages to the cache and history managers.

    The router remembers the last page URL reported for each tab so status
    queries can fall back to the durable cache after the in-memory entry is
    gone.
    """

    def __init__(self, cache: SubtitleCacheManager, history: HistoryManager):
        self.cache = cache
        self.history = history
        self._tab_pages: dict[int, str] = {}
        self._history_listeners: list[HistoryListener] = []
        self._handlers = {
            MessageAction.SUBTITLE_FOUND: self._handle_subtitle_found,
            MessageAction.GET_STATUS: self._handle_get_status,
            MessageAction.GET_CONTENT: self._handle_get_content,
            MessageAction.GET_HISTORY: self._handle_get_history,
            MessageAction.GET_HISTORY_ITEM: self._handle_get_history_item,
            MessageAction.CLEAR_HISTORY: self._handle_clear_history,
            MessageAction.REMOVE_HISTORY_ITEM: self._handle_remove_history_item,
            MessageAction.GET_HISTORY_CONFIG: self._handle_get_history_config,
            MessageAction.UPDATE_HISTORY_CONFIG: self._handle_update_history_config,
            MessageAction.TAB_UPDATED: self._handle_tab_updated,
            MessageAction.TAB_REMOVED: self._handle_tab_removed,
        }

    def add_history_listener(self, listener: HistoryListener) -> None:
        """Register a callback for ``historyUpdated`` notifications."""
        self._history_listeners.append(listener)

    def page_url_for(self, tab_id: int) -> str | None:
        return self._tab_pages.get(tab_id)

    async def dispatch(self, message: Any, sender_tab_id: int | None = None) -> dict:
        """
        Handle one protocol message.

        Args:
            message: Message dict with an ``action`` key
            sender_tab_id: Tab the message came from, used when the message
                carries no ``tabId`` of its own

        Returns:
            Response dict. Handler failures are reported as
            ``{"success": False, "error": ...}`` and never raised.
        """
        if not isinstance(message, dict):
            return {"success": False, "error": "Invalid message"}

        action = message.get("action")
        try:
            handler = self._handlers[MessageAction(action)]
        except ValueError:
            logger.warning(f"Unknown action: {sanitize_for_log(str(action))}")
            return {"success": False, "error": f"Unknown action: {action}"}

        tab_id = message.get("tabId")
        if tab_id is None:
            tab_id = sender_tab_id

        try:
            return await handler(message, tab_id)
        except Exception as e:
            logger.error(f"Error handling {action}: {e}")
            return {"success": False, "error": str(e)}

    async def _handle_subtitle_found(self, message: dict, tab_id: int | None) -> dict:
        url = message.get("url") or ""
        content = message.get("content") or ""
        page_url = message.get("pageUrl")

        if not content.strip():
            logger.info("Empty subtitle content received, ignoring")
            return {"success": False, "error": "Empty subtitle content"}
        if tab_id is None:
            return {"success": False, "error": "No tab context"}

        config = self.cache.config
        if is_thumbnail_vtt(content, config.thumbnail_sample_lines, config.thumbnail_min_sprite_lines):
            logger.info(f"Rejected thumbnail sprite sheet for tab {tab_id}")
            return {"success": False, "error": "Thumbnail sprite sheet rejected"}

        if page_url:
            self._tab_pages[tab_id] = page_url

        success = await self.cache.store(tab_id, url, content, page_url)

        if page_url:
            try:
                item = await self.history.add(page_url, url, content)
            except Exception as e:
                logger.error(f"Failed to add {sanitize_for_log(page_url)} to history: {e}")
            else:
                await self._notify_history_listeners(
                    {
                        "action": HISTORY_UPDATED,
                        "historyItem": {
                            "id": item.id,
                            "title": item.title,
                            "pageUrl": item.page_url,
                            "capturedAt": item.captured_at,
                            "faviconUrl": item.favicon_url,
                        },
                    }
                )

        return {"success": success}

    async def _handle_get_status(self, message: dict, tab_id: int | None) -> dict:
        if tab_id is None:
            return {"hasSubtitle": False}
        page_url = message.get("pageUrl") or self._tab_pages.get(tab_id)
        return {"hasSubtitle": await self.cache.has(tab_id, page_url)}

    async def _handle_get_content(self, message: dict, tab_id: int | None) -> dict:
        page_url = message.get("pageUrl") or (self._tab_pages.get(tab_id) if tab_id is not None else None)
        if tab_id is None and not page_url:
            return {"success": False, "error": "No tab context"}

        if tab_id is not None:
            entry = await self.cache.get(tab_id, page_url)
        else:
            entry = await self.cache.get_for_page(page_url)

        if entry is None:
            return {"success": False, "error": "No subtitle found"}
        return {"success": True, "content": entry.content, "url": page_url or entry.page_url}

    async def _handle_get_history(self, message: dict, tab_id: int | None) -> dict:
        history = await self.history.summary()
        return {"success": True, "history": [item.to_wire() for item in history]}

    async def _handle_get_history_item(self, message: dict, tab_id: int | None) -> dict:
        item = await self.history.get(message.get("id") or "")
        if item is None:
            return {"success": False, "error": "History item not found"}
        return {"success": True, **item.to_wire()}

    async def _handle_clear_history(self, message: dict, tab_id: int | None) -> dict:
        await self.history.clear()
        return {"success": True}

    async def _handle_remove_history_item(self, message: dict, tab_id: int | None) -> dict:
        item_id = message.get("id")
        if not item_id:
            return {"success": False, "error": "Missing history id"}
        await self.history.remove(item_id)
        return {"success": True}

    async def _handle_get_history_config(self, message: dict, tab_id: int | None) -> dict:
        config = await self.history.get_config()
        return {"success": True, **config.to_wire()}

    async def _handle_update_history_config(self, message: dict, tab_id: int | None) -> dict:
        max_size = message.get("maxSize")
        if not isinstance(max_size, int) or isinstance(max_size, bool):
            return {"success": False, "error": "maxSize must be an integer"}
        config = await self.history.update_config(max_size)
        return {"success": True, **config.to_wire()}

    async def _handle_tab_updated(self, message: dict, tab_id: int | None) -> dict:
        page_url = message.get("pageUrl")
        if tab_id is None or not page_url:
            return {"success": False, "error": "tabId and pageUrl are required"}

        # A tab that navigated away must not keep serving the previous page
        current = self.cache.peek(tab_id)
        if current is not None and current.page_url and normalize_url(current.page_url) != normalize_url(page_url):
            self.cache.clear(tab_id)

        self._tab_pages[tab_id] = page_url
        loaded = await self.cache.auto_load_for_tab(tab_id, page_url)
        return {"success": True, "loaded": loaded}

    async def _handle_tab_removed(self, message: dict, tab_id: int | None) -> dict:
        if tab_id is None:
            return {"success": False, "error": "No tab context"}
        self.cache.clear(tab_id)
        self._tab_pages.pop(tab_id, None)
        return {"success": True}

    async def _notify_history_listeners(self, notification: dict) -> None:
        for listener in self._history_listeners:
            try:
                result = listener(notification)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"History listener failed: {e}")
