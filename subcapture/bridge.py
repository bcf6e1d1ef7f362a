"""
Content bridge between the interception layer and the message router.

Runs on the receiving side of CaptureNotifier: it accepts only capture
messages, rejects sprite sheets a second time, attaches the URL of the page
the capture happened on, and forwards a ``subtitleFound`` message.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from subcapture.config import Settings, settings
from subcapture.connectors import ConnectorRegistry, default_registry
from subcapture.interceptor import SUBTITLE_FOUND_TYPE, CaptureNotifier, SubtitleInterceptor
from subcapture.utils import sanitize_for_log
from subcapture.vtt import is_thumbnail_vtt

logger = logging.getLogger(__name__)

Forward = Callable[[dict], Awaitable[Any]]


class ContentBridge:
    """
    Receives capture messages and forwards them as ``subtitleFound``.

    Args:
        forward: Awaitable callable delivering a message to the router
        page_url_provider: Returns the current page URL (or None)
        config: Settings instance. Uses global settings if None.
    """

    def __init__(
        self,
        forward: Forward,
        page_url_provider: Callable[[], str | None],
        config: Settings | None = None,
    ):
        self.config = config or settings
        self._forward = forward
        self._page_url = page_url_provider

    async def on_message(self, data: Any) -> Any | None:
        """
        Handle one message from the interception layer.

        Returns:
            The router's response, or None if nothing was forwarded
        """
        if not isinstance(data, dict) or data.get("type") != SUBTITLE_FOUND_TYPE:
            return None

        url = data.get("url")
        content = data.get("content")
        if not url or not content:
            return None

        if is_thumbnail_vtt(
            content,
            self.config.thumbnail_sample_lines,
            self.config.thumbnail_min_sprite_lines,
        ):
            logger.info(f"Rejected thumbnail sprite sheet from {sanitize_for_log(url)}")
            return None

        message = {
            "action": "subtitleFound",
            "url": url,
            "content": content,
            "pageUrl": self._page_url(),
        }
        try:
            return await self._forward(message)
        except Exception as e:
            logger.error(f"Failed to forward subtitle from {sanitize_for_log(url)}: {e}")
            return None


def build_interceptor(
    forward: Forward,
    page_url_provider: Callable[[], str | None],
    registry: ConnectorRegistry | None = None,
    config: Settings | None = None,
) -> SubtitleInterceptor:
    """
    Wire interceptor, notifier and bridge together.

    Args:
        forward: Delivers ``subtitleFound`` messages, typically
            ``lambda m: router.dispatch(m, sender_tab_id=tab_id)``
        page_url_provider: Returns the current page URL
        registry: Connector registry (default: default_registry())
        config: Settings instance. Uses global settings if None.

    Returns:
        An interceptor ready to wrap a transport or install on a client
    """
    bridge = ContentBridge(forward, page_url_provider, config)
    notifier = CaptureNotifier(bridge.on_message, config)
    return SubtitleInterceptor(registry or default_registry(), notifier, config)
