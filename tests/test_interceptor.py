"""
Tests for the network interceptor in subcapture/interceptor.py.

Network traffic is simulated with httpx.MockTransport. Each test records the
messages the interceptor would post to the content bridge.
"""

import asyncio
import gzip

import httpx
import pytest

from subcapture.connectors import default_registry
from subcapture.exceptions import ExtractionError
from subcapture.interceptor import (
    SUBTITLE_FOUND_TYPE,
    CaptureNotifier,
    SubtitleInterceptor,
    bypass_interception,
    coerce_body,
    create_intercepting_client,
)
from subcapture.models import CapturedSubtitle

VTT_URL = "https://cdn.example.com/video/en.vtt"
TIMEDTEXT_URL = "https://www.youtube.com/api/timedtext?v=abc&lang=en&fmt=json3"


class Recorder:
    """Collects messages passed to the notifier's send callable."""

    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def interceptor(recorder, config, clock):
    return SubtitleInterceptor(default_registry(), CaptureNotifier(recorder, config), config, clock=clock)


def make_transport(routes, calls=None):
    """MockTransport serving ``routes`` (url -> httpx.Response factory)."""

    def handler(request):
        if calls is not None:
            calls.append(request)
        factory = routes.get(str(request.url))
        if factory is None:
            return httpx.Response(404, text="not found")
        return factory()

    return httpx.MockTransport(handler)


class TestUrlQualification:
    """Tests for is_subtitle_url() and is_vtt_mime()."""

    def test_subtitle_urls(self, interceptor):
        assert interceptor.is_subtitle_url(VTT_URL)
        assert interceptor.is_subtitle_url(TIMEDTEXT_URL)
        assert interceptor.is_subtitle_url("https://cdn.example.com/en.srt")

    def test_blacklisted_names(self, interceptor):
        assert not interceptor.is_subtitle_url("https://cdn.example.com/thumbnails/en.vtt")
        assert not interceptor.is_subtitle_url("https://cdn.example.com/storyboard-SPRITE.vtt")
        assert not interceptor.is_subtitle_url("https://cdn.example.com/preview.vtt")

    def test_non_subtitle(self, interceptor):
        assert not interceptor.is_subtitle_url("https://example.com/app.js")
        assert not interceptor.is_subtitle_url("")
        assert not interceptor.is_subtitle_url(None)

    def test_vtt_mime(self):
        assert SubtitleInterceptor.is_vtt_mime("text/vtt; charset=utf-8")
        assert SubtitleInterceptor.is_vtt_mime("application/vtt")
        assert not SubtitleInterceptor.is_vtt_mime("application/json")
        assert not SubtitleInterceptor.is_vtt_mime(None)


class TestCoerceBody:
    """Tests for coerce_body()."""

    def test_text(self):
        assert coerce_body("WEBVTT") == "WEBVTT"

    def test_binary(self):
        assert coerce_body(b"WEBVTT") == "WEBVTT"
        assert coerce_body(bytearray(b"WEBVTT")) == "WEBVTT"
        assert coerce_body(memoryview(b"WEBVTT")) == "WEBVTT"

    def test_response_object(self):
        assert coerce_body(httpx.Response(200, text="WEBVTT")) == "WEBVTT"

    def test_unsupported(self):
        with pytest.raises(ExtractionError):
            coerce_body(12345)


class TestTransportInterception:
    """Tests for the wrapped transport path."""

    @pytest.mark.asyncio
    async def test_capture_forwarded_and_response_unchanged(self, interceptor, recorder, sample_vtt):
        transport = make_transport(
            {VTT_URL: lambda: httpx.Response(200, headers={"Content-Type": "text/vtt"}, text=sample_vtt)}
        )
        async with create_intercepting_client(interceptor, transport=transport) as client:
            response = await client.get(VTT_URL)

        await interceptor.notifier.drain()
        assert response.status_code == 200
        assert response.text == sample_vtt
        assert response.headers["content-type"] == "text/vtt"

        assert len(recorder.messages) == 1
        message = recorder.messages[0]
        assert message["type"] == SUBTITLE_FOUND_TYPE
        assert message["url"] == VTT_URL
        assert "Hello world" in message["content"]

    @pytest.mark.asyncio
    async def test_timedtext_converted(self, interceptor, recorder):
        payload = {"events": [{"tStartMs": 0, "dDurationMs": 2000, "segs": [{"utf8": "Hello"}]}]}
        transport = make_transport({TIMEDTEXT_URL: lambda: httpx.Response(200, json=payload)})
        async with create_intercepting_client(interceptor, transport=transport) as client:
            response = await client.get(TIMEDTEXT_URL)

        await interceptor.notifier.drain()
        assert response.json() == payload
        assert recorder.messages[0]["content"] == "WEBVTT\n\n1\n00:00:00.000 --> 00:00:02.000\nHello"

    @pytest.mark.asyncio
    async def test_malformed_json_yields_nothing(self, interceptor, recorder):
        transport = make_transport({TIMEDTEXT_URL: lambda: httpx.Response(200, text="{broken")})
        async with create_intercepting_client(interceptor, transport=transport) as client:
            response = await client.get(TIMEDTEXT_URL)

        assert response.text == "{broken"
        assert recorder.messages == []

    @pytest.mark.asyncio
    async def test_gzip_body_replayed_and_decoded(self, interceptor, recorder, sample_vtt):
        compressed = gzip.compress(sample_vtt.encode("utf-8"))
        transport = make_transport(
            {VTT_URL: lambda: httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=compressed)}
        )
        async with create_intercepting_client(interceptor, transport=transport) as client:
            response = await client.get(VTT_URL)

        await interceptor.notifier.drain()
        assert response.text == sample_vtt
        assert "Hello world" in recorder.messages[0]["content"]

    @pytest.mark.asyncio
    async def test_non_subtitle_passthrough(self, interceptor, recorder):
        url = "https://example.com/app.js"
        transport = make_transport({url: lambda: httpx.Response(200, text="console.log(1)")})
        async with create_intercepting_client(interceptor, transport=transport) as client:
            response = await client.get(url)

        assert response.text == "console.log(1)"
        assert recorder.messages == []

    @pytest.mark.asyncio
    async def test_error_status_ignored(self, interceptor, recorder):
        async with create_intercepting_client(interceptor, transport=make_transport({})) as client:
            response = await client.get(VTT_URL)

        assert response.status_code == 404
        assert recorder.messages == []

    @pytest.mark.asyncio
    async def test_thumbnail_content_vetoed(self, interceptor, recorder, thumbnail_vtt):
        transport = make_transport({VTT_URL: lambda: httpx.Response(200, text=thumbnail_vtt)})
        async with create_intercepting_client(interceptor, transport=transport) as client:
            response = await client.get(VTT_URL)

        assert response.text == thumbnail_vtt
        assert recorder.messages == []

    @pytest.mark.asyncio
    async def test_duplicate_capture_forwarded_once(self, interceptor, recorder, sample_vtt):
        transport = make_transport({VTT_URL: lambda: httpx.Response(200, text=sample_vtt)})
        async with create_intercepting_client(interceptor, transport=transport) as client:
            await client.get(VTT_URL)
            await client.get(VTT_URL)

        await interceptor.notifier.drain()
        assert len(recorder.messages) == 1

    @pytest.mark.asyncio
    async def test_slow_receiver_does_not_delay_response(self, config, sample_vtt):
        """The caller gets its response while delivery is still pending."""
        released = asyncio.Event()
        received = []

        async def slow_send(message):
            await released.wait()
            received.append(message)

        interceptor = SubtitleInterceptor(default_registry(), CaptureNotifier(slow_send, config), config)
        transport = make_transport({VTT_URL: lambda: httpx.Response(200, text=sample_vtt)})
        async with create_intercepting_client(interceptor, transport=transport) as client:
            response = await asyncio.wait_for(client.get(VTT_URL), timeout=1.0)

        assert response.text == sample_vtt
        assert received == []

        released.set()
        await interceptor.notifier.drain()
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_network_error_propagates(self, interceptor, recorder):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        async with create_intercepting_client(interceptor, transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(httpx.ConnectError):
                await client.get(VTT_URL)

        assert recorder.messages == []


class TestRecursionGuard:
    """Requests carrying the skip marker are never inspected."""

    @pytest.mark.asyncio
    async def test_skip_header(self, interceptor, recorder, sample_vtt):
        calls = []
        transport = make_transport({VTT_URL: lambda: httpx.Response(200, text=sample_vtt)}, calls)
        async with create_intercepting_client(interceptor, transport=transport) as client:
            response = await client.get(VTT_URL, headers={interceptor.skip_header: "1"})

        assert response.text == sample_vtt
        assert len(calls) == 1
        assert recorder.messages == []

    @pytest.mark.asyncio
    async def test_bypass_context(self, interceptor, recorder, sample_vtt):
        transport = make_transport({VTT_URL: lambda: httpx.Response(200, text=sample_vtt)})
        async with create_intercepting_client(interceptor, transport=transport) as client:
            with bypass_interception():
                await client.get(VTT_URL)

        assert recorder.messages == []

    @pytest.mark.asyncio
    async def test_fetch_subtitle_not_reintercepted(self, interceptor, recorder, sample_vtt):
        calls = []
        transport = make_transport({VTT_URL: lambda: httpx.Response(200, text=sample_vtt)}, calls)
        async with create_intercepting_client(interceptor, transport=transport) as client:
            response = await interceptor.fetch_subtitle(client, VTT_URL)

        assert response.text == sample_vtt
        assert calls[0].headers[interceptor.skip_header] == "1"
        assert recorder.messages == []

    @pytest.mark.asyncio
    async def test_bypass_resets_after_context(self, interceptor, recorder, sample_vtt):
        transport = make_transport({VTT_URL: lambda: httpx.Response(200, text=sample_vtt)})
        async with create_intercepting_client(interceptor, transport=transport) as client:
            with bypass_interception():
                await client.get(VTT_URL)
            await client.get(VTT_URL)

        await interceptor.notifier.drain()
        assert len(recorder.messages) == 1


class TestResponseHook:
    """Tests for the event hook path on an existing client."""

    @pytest.mark.asyncio
    async def test_hook_captures(self, interceptor, recorder, sample_vtt):
        transport = make_transport({VTT_URL: lambda: httpx.Response(200, text=sample_vtt)})
        async with httpx.AsyncClient(transport=transport) as client:
            interceptor.install(client)
            response = await client.get(VTT_URL)

        await interceptor.notifier.drain()
        assert response.text == sample_vtt
        assert len(recorder.messages) == 1

    @pytest.mark.asyncio
    async def test_hook_qualifies_by_content_type(self, interceptor, recorder, sample_vtt):
        """A WebVTT content type qualifies a response whose URL alone would not."""
        typed = "https://cdn.example.com/preview/en.vtt"
        untyped = "https://cdn.example.com/preview/fr.vtt"
        transport = make_transport(
            {
                typed: lambda: httpx.Response(200, headers={"Content-Type": "text/vtt"}, text=sample_vtt),
                untyped: lambda: httpx.Response(200, headers={"Content-Type": "text/plain"}, text=sample_vtt),
            }
        )
        async with httpx.AsyncClient(transport=transport) as client:
            interceptor.install(client)
            await client.get(typed)
            await client.get(untyped)

        await interceptor.notifier.drain()
        assert len(recorder.messages) == 1
        assert recorder.messages[0]["url"] == typed

    @pytest.mark.asyncio
    async def test_hook_follows_redirect_to_final_url(self, interceptor, recorder, sample_vtt):
        start = "https://example.com/redirect"
        transport = make_transport(
            {
                start: lambda: httpx.Response(302, headers={"Location": VTT_URL}),
                VTT_URL: lambda: httpx.Response(200, text=sample_vtt),
            }
        )
        async with httpx.AsyncClient(transport=transport, follow_redirects=True) as client:
            interceptor.install(client)
            await client.get(start)

        await interceptor.notifier.drain()
        assert len(recorder.messages) == 1
        assert recorder.messages[0]["url"] == VTT_URL

    @pytest.mark.asyncio
    async def test_hook_respects_skip_header(self, interceptor, recorder, sample_vtt):
        transport = make_transport({VTT_URL: lambda: httpx.Response(200, text=sample_vtt)})
        async with httpx.AsyncClient(transport=transport) as client:
            interceptor.install(client)
            await client.get(VTT_URL, headers={interceptor.skip_header: "1"})

        assert recorder.messages == []


class TestCaptureNotifier:
    """Tests for CaptureNotifier."""

    def capture(self, url="a.vtt", text="WEBVTT\n\n00:00:00.000 --> 00:00:01.000\nHi\n"):
        return CapturedSubtitle(source_url=url, canonical_text=text, captured_at=0)

    @pytest.mark.asyncio
    async def test_same_pair_sent_once(self, recorder, config):
        notifier = CaptureNotifier(recorder, config)
        assert await notifier.notify(self.capture()) is True
        assert await notifier.notify(self.capture()) is False
        await notifier.drain()
        assert len(recorder.messages) == 1

    @pytest.mark.asyncio
    async def test_changed_content_sent_again(self, recorder, config):
        notifier = CaptureNotifier(recorder, config)
        await notifier.notify(self.capture())
        await notifier.notify(self.capture(text="WEBVTT\n\n00:00:00.000 --> 00:00:01.000\nBye\n"))
        await notifier.notify(self.capture())
        await notifier.drain()
        assert len(recorder.messages) == 3

    @pytest.mark.asyncio
    async def test_content_sanitized(self, recorder, config):
        notifier = CaptureNotifier(recorder, config)
        await notifier.notify(self.capture(text="WEBVTT\n\n00:00:00.000 --> 00:00:01.000\n<b>Hi</b>\n"))
        await notifier.drain()
        assert recorder.messages[0]["content"] == "WEBVTT\n\n00:00:00.000 --> 00:00:01.000\nHi"

    @pytest.mark.asyncio
    async def test_send_failure_swallowed(self, config):
        async def failing_send(message):
            raise RuntimeError("channel closed")

        notifier = CaptureNotifier(failing_send, config)
        assert await notifier.notify(self.capture()) is True
        await notifier.drain()

    @pytest.mark.asyncio
    async def test_failed_delivery_can_be_retried(self, config):
        """A pair whose delivery failed is not treated as already sent."""
        delivered = []

        async def flaky_send(message):
            if not delivered:
                delivered.append(None)
                raise RuntimeError("receiver not ready")
            delivered.append(message)

        notifier = CaptureNotifier(flaky_send, config)
        await notifier.notify(self.capture())
        await notifier.drain()

        assert await notifier.notify(self.capture()) is True
        await notifier.drain()
        assert delivered[1]["url"] == "a.vtt"

    @pytest.mark.asyncio
    async def test_notify_does_not_wait_for_delivery(self, config):
        released = asyncio.Event()
        received = []

        async def slow_send(message):
            await released.wait()
            received.append(message)

        notifier = CaptureNotifier(slow_send, config)
        assert await asyncio.wait_for(notifier.notify(self.capture()), timeout=1.0) is True
        assert received == []

        released.set()
        await notifier.drain()
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_process_swallows_notifier_errors(self, config, sample_vtt):
        class ExplodingNotifier:
            async def notify(self, capture):
                raise RuntimeError("boom")

        interceptor = SubtitleInterceptor(default_registry(), ExplodingNotifier(), config)
        assert await interceptor.process(VTT_URL, sample_vtt) is False

    @pytest.mark.asyncio
    async def test_process_unreadable_body(self, interceptor, recorder):
        assert await interceptor.process(VTT_URL, object()) is False
        assert recorder.messages == []

    @pytest.mark.asyncio
    async def test_process_uses_clock(self, recorder, config, clock, sample_vtt):
        captured = []

        class RecordingNotifier:
            async def notify(self, capture):
                captured.append(capture)
                return True

        interceptor = SubtitleInterceptor(default_registry(), RecordingNotifier(), config, clock=clock)
        await interceptor.process(VTT_URL, sample_vtt)
        assert captured[0].captured_at == clock.now
        assert captured[0].source_url == VTT_URL
