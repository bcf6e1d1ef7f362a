"""
Subtitle network interceptor.

Observes the HTTP traffic of a client it does not own and extracts subtitle
payloads from it, without changing what the client receives.

Two interception points are provided, mirroring the two request styles a
page uses:
    1. InterceptingTransport wraps an httpx.AsyncBaseTransport. Every request
       goes through it; subtitle responses are buffered, inspected, and
       replayed to the caller byte for byte.
    2. SubtitleInterceptor.response_hook is an httpx "response" event hook for
       clients that are already constructed.

Requests issued by the interceptor itself carry a skip marker (a request
header, or the bypass_interception() context flag) and are never inspected.
Without it the interceptor's own re-fetch would re-trigger interception.

Failures while extracting or classifying are logged and swallowed; a
subtitle capture must never break the caller's request.
"""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import httpx

from subcapture.config import Settings, settings
from subcapture.connectors import ConnectorRegistry
from subcapture.exceptions import ExtractionError
from subcapture.models import CapturedSubtitle
from subcapture.utils import now_ms, sanitize_for_log
from subcapture.vtt import extract_text_from_vtt, is_thumbnail_vtt, sanitize_vtt_content

logger = logging.getLogger(__name__)

# Message type posted from the interception layer to the content bridge
SUBTITLE_FOUND_TYPE = "VTT_INTERCEPTOR_FOUND"

# Hover-preview sprite sheets are named like subtitles but never carry dialogue
THUMBNAIL_URL_PATTERN = re.compile(r"thumb|sprite|preview|tile|vtt-thumb|thumbnails", re.IGNORECASE)
VTT_MIME_PATTERN = re.compile(r"text/vtt|application/vtt|vtt", re.IGNORECASE)

_bypass: ContextVar[bool] = ContextVar("subcapture_bypass", default=False)


@contextmanager
def bypass_interception() -> Iterator[None]:
    """Mark every request issued in this context as internal."""
    token = _bypass.set(True)
    try:
        yield
    finally:
        _bypass.reset(token)


def coerce_body(body: Any) -> str:
    """
    Read a response body as text.

    Accepts the three shapes a response body comes in: text, a binary
    buffer, or a response object exposing ``.text`` or ``.content``.

    Raises:
        ExtractionError: If the body has none of these shapes
    """
    if isinstance(body, str):
        return body
    if isinstance(body, (bytes, bytearray, memoryview)):
        return bytes(body).decode("utf-8", errors="replace")

    text = getattr(body, "text", None)
    if isinstance(text, str):
        return text
    content = getattr(body, "content", None)
    if isinstance(content, (bytes, bytearray, memoryview)):
        return bytes(content).decode("utf-8", errors="replace")

    raise ExtractionError(f"Unsupported response body type: {type(body).__name__}")


class CaptureNotifier:
    """
    One-way, best-effort notification of captured subtitles.

    Content is sanitized before sending. Delivery runs as a background task,
    so the response that carried the subtitle is never held up by the
    receiving side. A repeat of the last sent ``(url, content)`` pair is
    suppressed, and failures of the send callable are logged, never raised.
    """

    def __init__(self, send: Callable[[dict], Awaitable[Any]], config: Settings | None = None):
        self.config = config or settings
        self._send = send
        self._last_sent: tuple[str, str] | None = None
        self._pending: set[asyncio.Task] = set()

    async def notify(self, capture: CapturedSubtitle) -> bool:
        """
        Schedule delivery of a capture to the receiving side.

        Returns:
            True if a delivery was scheduled
        """
        content = sanitize_vtt_content(capture.canonical_text, self.config.max_content_chars)
        if not content:
            logger.debug("Subtitle content empty after sanitization, skipping")
            return False

        key = (capture.source_url, content)
        if self._last_sent == key:
            logger.debug(f"Duplicate subtitle for {sanitize_for_log(capture.source_url)}, skipping")
            return False
        self._last_sent = key

        message = {"type": SUBTITLE_FOUND_TYPE, "url": capture.source_url, "content": content}
        task = asyncio.create_task(self._deliver(key, message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def drain(self) -> None:
        """Wait until every scheduled delivery has finished."""
        while self._pending:
            await asyncio.gather(*self._pending)

    async def _deliver(self, key: tuple[str, str], message: dict) -> None:
        try:
            await self._send(message)
        except Exception as e:
            logger.error(f"Failed to deliver subtitle for {sanitize_for_log(key[0])}: {e}")
            # Let a redelivery of the same pair through
            if self._last_sent == key:
                self._last_sent = None


class SubtitleInterceptor:
    """
    Detects subtitle traffic and turns it into captures.

    Args:
        registry: Connector registry used to qualify URLs and convert payloads
        notifier: Receives every capture that survives classification
        config: Settings instance. Uses global settings if None.
        clock: Returns the current time in epoch milliseconds
    """

    def __init__(
        self,
        registry: ConnectorRegistry,
        notifier: CaptureNotifier,
        config: Settings | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.registry = registry
        self.notifier = notifier
        self.config = config or settings
        self._clock = clock

    @property
    def skip_header(self) -> str:
        return self.config.skip_header

    def is_subtitle_url(self, url: str | None) -> bool:
        if not url or not isinstance(url, str):
            return False
        if THUMBNAIL_URL_PATTERN.search(url):
            logger.debug(f"Skipping thumbnail URL: {sanitize_for_log(url)}")
            return False
        return self.registry.can_handle(url)

    @staticmethod
    def is_vtt_mime(content_type: str | None) -> bool:
        return bool(content_type) and bool(VTT_MIME_PATTERN.search(content_type))

    def has_skip_marker(self, request: httpx.Request | None) -> bool:
        if _bypass.get():
            return True
        return request is not None and self.skip_header in request.headers

    async def process(self, url: str, body: Any) -> bool:
        """
        Convert, classify and forward one subtitle response.

        Args:
            url: Final URL of the response
            body: Response body as text, bytes, or a response object

        Returns:
            True if a capture was handed to the notifier
        """
        try:
            connector = self.registry.find_connector(url)
            if connector is None:
                logger.debug(f"No connector for {sanitize_for_log(url)}")
                return False

            raw = coerce_body(body)
            if not raw:
                logger.debug(f"Empty subtitle response from {sanitize_for_log(url)}")
                return False

            canonical = self.registry.convert(connector, raw, url)
            if is_thumbnail_vtt(
                canonical,
                self.config.thumbnail_sample_lines,
                self.config.thumbnail_min_sprite_lines,
            ):
                logger.info(f"Skipped thumbnail sprite sheet from {sanitize_for_log(url)}")
                return False
            if not extract_text_from_vtt(canonical, remove_timestamps=True):
                logger.debug(f"No cue text in subtitle from {sanitize_for_log(url)}")
                return False

            capture = CapturedSubtitle(
                source_url=url,
                canonical_text=canonical,
                captured_at=self._clock(),
            )
            logger.info(f"Captured {connector.name} subtitle from {sanitize_for_log(url)}")
            return await self.notifier.notify(capture)
        except Exception as e:
            logger.error(f"Error processing subtitle response from {sanitize_for_log(url)}: {e}")
            return False

    def wrap(self, transport: httpx.AsyncBaseTransport) -> "InterceptingTransport":
        return InterceptingTransport(transport, self)

    def install(self, client: httpx.AsyncClient) -> None:
        """Attach the response hook to an existing client."""
        client.event_hooks["response"].append(self.response_hook)

    async def response_hook(self, response: httpx.Response) -> None:
        """
        Inspect a completed response (httpx "response" event hook).

        Redirect hops, failed responses and skip-marked requests are ignored.
        Responses qualify by final URL or by a WebVTT content type.
        """
        try:
            if self.has_skip_marker(response.request):
                return
            if response.is_redirect or not response.is_success:
                return

            url = str(response.url)
            # A VTT content type qualifies even a blacklisted URL; sprite content is
            # still vetoed by the classifier in process()
            if not (self.is_subtitle_url(url) or self.is_vtt_mime(response.headers.get("content-type"))):
                return

            await response.aread()
            await self.process(url, response)
        except Exception as e:
            logger.error(f"Error reading subtitle response: {e}")

    async def fetch_subtitle(
        self, client: httpx.AsyncClient, url: str, headers: dict[str, str] | None = None
    ) -> httpx.Response:
        """
        Fetch a subtitle URL without triggering interception.

        Args:
            client: Client to issue the request with (may be intercepted)
            url: Subtitle URL
            headers: Extra request headers

        Returns:
            The response
        """
        request_headers = dict(headers or {})
        request_headers[self.skip_header] = "1"
        with bypass_interception():
            return await client.get(url, headers=request_headers)


class InterceptingTransport(httpx.AsyncBaseTransport):
    """
    Transport wrapper that observes subtitle responses.

    Requests are forwarded unchanged. For subtitle URLs with a successful
    status the raw body is buffered, a decoded copy is handed to the
    interceptor, and an identical response is returned to the caller.
    """

    def __init__(self, transport: httpx.AsyncBaseTransport, interceptor: SubtitleInterceptor):
        self._transport = transport
        self._interceptor = interceptor

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if self._interceptor.has_skip_marker(request):
            return await self._transport.handle_async_request(request)

        url = str(request.url)
        if not self._interceptor.is_subtitle_url(url):
            return await self._transport.handle_async_request(request)

        response = await self._transport.handle_async_request(request)
        if not response.is_success:
            return response

        try:
            raw = b"".join([chunk async for chunk in response.stream])
        finally:
            await response.aclose()

        # Raw bytes and original headers; the caller decodes them as it would have
        replay = httpx.Response(
            status_code=response.status_code,
            headers=response.headers,
            stream=httpx.ByteStream(raw),
            extensions=response.extensions,
            request=request,
        )

        try:
            decoded = httpx.Response(response.status_code, headers=response.headers, content=raw)
            decoded.read()
        except httpx.DecodingError as e:
            logger.error(f"Could not decode subtitle response from {sanitize_for_log(url)}: {e}")
            return replay

        await self._interceptor.process(url, decoded)
        return replay

    async def aclose(self) -> None:
        await self._transport.aclose()


def create_intercepting_client(
    interceptor: SubtitleInterceptor,
    transport: httpx.AsyncBaseTransport | None = None,
    **kwargs: Any,
) -> httpx.AsyncClient:
    """
    Build an AsyncClient whose traffic passes through the interceptor.

    Args:
        interceptor: Interceptor to install
        transport: Underlying transport (default: httpx.AsyncHTTPTransport())
        **kwargs: Passed through to httpx.AsyncClient

    Returns:
        Configured client
    """
    inner = transport or httpx.AsyncHTTPTransport()
    return httpx.AsyncClient(transport=interceptor.wrap(inner), **kwargs)
