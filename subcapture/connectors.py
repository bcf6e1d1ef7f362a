"""
Subtitle format connectors.

A connector recognises one subtitle wire format by URL and converts its
payload into canonical WebVTT text. The registry keeps connectors in order
and hands out the first one that claims a URL, so platform specific
connectors must be registered before generic fallbacks.

Supported formats:
    - YouTube timedtext JSON (``events`` with ``tStartMs``/``dDurationMs``/``segs``)
    - SubRip (``.srt``)
    - Standard WebVTT, including per-word timing tags
"""

import json
import logging
import re
from typing import Protocol

from subcapture.utils import sanitize_for_log
from subcapture.vtt import VTT_HEADER, format_timestamp

logger = logging.getLogger(__name__)

# Header-only canonical document returned when a payload cannot be converted
EMPTY_DOCUMENT = f"{VTT_HEADER}\n\n"


class SubtitleConnector(Protocol):
    """Protocol for subtitle format connectors."""

    name: str

    def can_handle(self, url: str) -> bool: ...
    def is_json_format(self) -> bool: ...
    def convert(self, content: str, url: str) -> str: ...


class TimedTextConnector:
    """
    Connector for YouTube's timedtext API.

    JSON structure:
        {"events": [{"tStartMs": 0, "dDurationMs": 2000, "segs": [{"utf8": "Caption text"}]}]}

    Each event becomes one numbered cue. Events without segments are skipped
    but still consume an index.
    """

    name = "YouTube"
    URL_PATTERN = re.compile(r"timedtext", re.IGNORECASE)

    def can_handle(self, url: str) -> bool:
        if not url or not isinstance(url, str):
            return False
        return bool(self.URL_PATTERN.search(url))

    def is_json_format(self) -> bool:
        return True

    def convert(self, content: str, url: str) -> str:
        try:
            data = json.loads(content)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error(f"[{self.name}] Conversion error for {sanitize_for_log(url)}: {e}")
            return EMPTY_DOCUMENT

        events = data.get("events") if isinstance(data, dict) else None
        if not isinstance(events, list):
            logger.warning(f"[{self.name}] Invalid JSON structure: {sanitize_for_log(url)}")
            return EMPTY_DOCUMENT

        parts = [EMPTY_DOCUMENT]
        for index, event in enumerate(events, start=1):
            if not isinstance(event, dict):
                continue
            segments = event.get("segs")
            if not isinstance(segments, list):
                continue

            start_ms = event.get("tStartMs") or 0
            end_ms = start_ms + (event.get("dDurationMs") or 0)

            parts.append(f"{index}\n")
            parts.append(f"{format_timestamp(start_ms)} --> {format_timestamp(end_ms)}\n")
            for segment in segments:
                text = segment.get("utf8") if isinstance(segment, dict) else None
                if text:
                    parts.append(text.replace("\n", " ") + "\n")
            parts.append("\n")

        return "".join(parts)


class SrtConnector:
    """Connector for SubRip files, rewritten to WebVTT timing."""

    name = "SubRip"
    URL_PATTERN = re.compile(r"\.srt(\?|$)", re.IGNORECASE)
    SRT_TIME_PATTERN = re.compile(r"(\d{2}:\d{2}:\d{2}),(\d{3})")

    def can_handle(self, url: str) -> bool:
        if not url or not isinstance(url, str):
            return False
        return bool(self.URL_PATTERN.search(url))

    def is_json_format(self) -> bool:
        return False

    def convert(self, content: str, url: str) -> str:
        body = content.lstrip("\ufeff").replace("\r\n", "\n").strip()
        if body.startswith(VTT_HEADER):
            return body + "\n"
        body = self.SRT_TIME_PATTERN.sub(r"\1.\2", body)
        return f"{EMPTY_DOCUMENT}{body}\n" if body else EMPTY_DOCUMENT


class StandardVTTConnector:
    """
    Connector for plain WebVTT files.

    Content is already canonical; only platform specific per-word timing
    tags are unwrapped.
    """

    name = "Standard"
    VTT_EXTENSION_PATTERN = re.compile(r"\.vtt(\?|$)", re.IGNORECASE)
    ENDPOINT_PATTERN = re.compile(r"/(subtitles|captions|cc|subtitle|caption)", re.IGNORECASE)
    # LinkedIn Learning serves captions from its ambry store
    AMBRY_PATTERN = re.compile(r"/ambry", re.IGNORECASE)
    WORD_TIMING_PATTERN = re.compile(r"<X-word-ms[^>]*>(.*?)</X-word-ms>")

    def can_handle(self, url: str) -> bool:
        if not url or not isinstance(url, str):
            return False
        if self.VTT_EXTENSION_PATTERN.search(url):
            return True
        if self.ENDPOINT_PATTERN.search(url):
            return True
        if "text/vtt" in url or "application/vtt" in url:
            return True
        return bool(self.AMBRY_PATTERN.search(url))

    def is_json_format(self) -> bool:
        return False

    def convert(self, content: str, url: str) -> str:
        return self.WORD_TIMING_PATTERN.sub(r"\1", content)


class ConnectorRegistry:
    """
    Ordered registry of subtitle connectors.

    Lookup returns the first registered connector that claims a URL.
    """

    def __init__(self, connectors: list[SubtitleConnector] | None = None):
        self._connectors: list[SubtitleConnector] = []
        for connector in connectors or []:
            self.register(connector)

    @property
    def connectors(self) -> list[SubtitleConnector]:
        return list(self._connectors)

    def register(self, connector: SubtitleConnector) -> None:
        """Append a connector; it is consulted after those already registered."""
        self._connectors.append(connector)
        logger.debug(f"Registered connector: {connector.name}")

    def find_connector(self, url: str) -> SubtitleConnector | None:
        for connector in self._connectors:
            if connector.can_handle(url):
                return connector
        return None

    def can_handle(self, url: str) -> bool:
        return self.find_connector(url) is not None

    def convert(self, connector: SubtitleConnector, content: str, url: str) -> str:
        """
        Convert a payload with the given connector without ever raising.

        JSON connectors receive the payload parsed and re-serialized so they
        always see well-formed JSON text. Any failure is logged and yields the
        header-only document.

        Args:
            connector: Connector returned by find_connector
            content: Raw payload text
            url: Source URL, used for logging

        Returns:
            Canonical subtitle text
        """
        try:
            if connector.is_json_format():
                content = json.dumps(json.loads(content))
            return connector.convert(content, url)
        except Exception as e:
            logger.error(f"[{connector.name}] Failed to convert {sanitize_for_log(url)}: {e}")
            return EMPTY_DOCUMENT


def default_registry() -> ConnectorRegistry:
    """Build the registry with the built-in connectors, most specific first."""
    return ConnectorRegistry([TimedTextConnector(), SrtConnector(), StandardVTTConnector()])
