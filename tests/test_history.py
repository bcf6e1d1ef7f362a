"""
Tests for the capture history in subcapture/history.py.

This module tests bounding, deduplication by page, lookup by id and
configuration persistence.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from subcapture.exceptions import StorageError
from subcapture.history import HISTORY_KEY, HistoryManager, generate_history_id
from subcapture.storage import MemoryStore

CONTENT = "WEBVTT\n\n00:00:00.000 --> 00:00:01.000\nWelcome to the show\n"


async def add_pages(history, clock, count, start=0):
    items = []
    for i in range(start, start + count):
        clock.advance(1000)
        items.append(await history.add(f"https://example.com/v/{i}", f"https://cdn.example.com/{i}.vtt", CONTENT))
    return items


class TestHistoryAdd:
    """Tests for HistoryManager.add()."""

    @pytest.mark.asyncio
    async def test_item_fields(self, history, clock):
        item = await history.add("https://www.example.com/v/1?t=3", "https://cdn.example.com/1.vtt", CONTENT)

        assert item.id == generate_history_id("https://www.example.com/v/1?t=3", clock.now)
        assert item.title == "Welcome to the show"
        assert item.captured_at == clock.now
        assert item.favicon_url == "https://www.example.com/favicon.ico"
        assert item.content == CONTENT

    @pytest.mark.asyncio
    async def test_most_recent_first(self, history, clock):
        await add_pages(history, clock, 3)
        pages = [item.page_url for item in await history.summary()]
        assert pages == [f"https://example.com/v/{i}" for i in (2, 1, 0)]

    @pytest.mark.asyncio
    async def test_bounded_to_ten(self, history, clock):
        """Adding 11 distinct pages keeps exactly the 10 most recent."""
        await add_pages(history, clock, 11)

        summary = await history.summary()
        assert len(summary) == 10
        assert summary[0].page_url == "https://example.com/v/10"
        assert "https://example.com/v/0" not in {item.page_url for item in summary}

    @pytest.mark.asyncio
    async def test_readd_moves_to_front(self, history, clock):
        await add_pages(history, clock, 3)

        clock.advance(1000)
        readded = await history.add("https://example.com/v/0", "https://cdn.example.com/new.vtt", CONTENT)

        summary = await history.summary()
        assert len(summary) == 3
        assert summary[0].id == readded.id
        assert summary[0].source_url == "https://cdn.example.com/new.vtt"
        assert [item.page_url for item in summary].count("https://example.com/v/0") == 1

    @pytest.mark.asyncio
    async def test_stored_under_fixed_key_with_wire_names(self, history, store):
        await history.add("https://example.com/v/1", "https://cdn.example.com/1.vtt", CONTENT)
        raw = await store.get(HISTORY_KEY)
        assert isinstance(raw, list)
        assert set(raw[0]) == {"id", "title", "pageUrl", "sourceUrl", "content", "capturedAt", "faviconUrl"}


class TestHistoryLookup:
    """Tests for get(), remove() and clear()."""

    @pytest.mark.asyncio
    async def test_get_by_id(self, history, clock):
        items = await add_pages(history, clock, 2)
        found = await history.get(items[0].id)
        assert found is not None
        assert found.page_url == items[0].page_url

    @pytest.mark.asyncio
    async def test_get_missing(self, history):
        assert await history.get("nope") is None

    @pytest.mark.asyncio
    async def test_remove(self, history, clock):
        items = await add_pages(history, clock, 2)
        await history.remove(items[0].id)
        assert [item.id for item in await history.summary()] == [items[1].id]

    @pytest.mark.asyncio
    async def test_clear(self, history, clock):
        await add_pages(history, clock, 2)
        await history.clear()
        assert await history.summary() == []

    @pytest.mark.asyncio
    async def test_read_failure_yields_empty(self, config):
        store = AsyncMock()
        store.get.side_effect = StorageError("down")
        assert await HistoryManager(store, config).summary() == []

    @pytest.mark.asyncio
    async def test_malformed_entries_dropped(self, history, store, clock):
        item = (await add_pages(history, clock, 1))[0]
        raw = await store.get(HISTORY_KEY)
        await store.set(HISTORY_KEY, raw + [{"id": "broken"}])

        assert [entry.id for entry in await history.summary()] == [item.id]


class TestHistoryConfig:
    """Tests for the persisted maximum size."""

    @pytest.mark.asyncio
    async def test_default_max_size(self, history):
        assert (await history.get_config()).max_size == 10

    @pytest.mark.asyncio
    async def test_update_trims(self, history, clock):
        await add_pages(history, clock, 5)
        config = await history.update_config(2)

        assert config.max_size == 2
        assert len(await history.summary()) == 2
        assert (await history.get_config()).max_size == 2

    @pytest.mark.asyncio
    async def test_new_bound_applies_to_add(self, history, clock):
        await history.update_config(3)
        await add_pages(history, clock, 5)
        assert len(await history.summary()) == 3

    @pytest.mark.asyncio
    async def test_invalid_max_size(self, history):
        with pytest.raises(ValidationError):
            await history.update_config(0)


class SlowStore(MemoryStore):
    """MemoryStore that yields to the event loop on every read and write."""

    async def get(self, key):
        await asyncio.sleep(0.01)
        return await super().get(key)

    async def set(self, key, value):
        await asyncio.sleep(0.01)
        await super().set(key, value)


class TestHistoryConcurrency:
    """Concurrent mutations must not lose updates."""

    @pytest.mark.asyncio
    async def test_concurrent_adds_both_kept(self, config, clock):
        history = HistoryManager(SlowStore(), config, clock=clock)

        await asyncio.gather(
            history.add("https://a.example.com/1", "https://cdn.example.com/1.vtt", CONTENT),
            history.add("https://b.example.com/2", "https://cdn.example.com/2.vtt", CONTENT),
        )

        pages = {item.page_url for item in await history.summary()}
        assert pages == {"https://a.example.com/1", "https://b.example.com/2"}

    @pytest.mark.asyncio
    async def test_concurrent_add_and_remove(self, config, clock):
        history = HistoryManager(SlowStore(), config, clock=clock)
        first = await history.add("https://a.example.com/1", "https://cdn.example.com/1.vtt", CONTENT)
        clock.advance(1000)

        await asyncio.gather(
            history.remove(first.id),
            history.add("https://b.example.com/2", "https://cdn.example.com/2.vtt", CONTENT),
        )

        assert [item.page_url for item in await history.summary()] == ["https://b.example.com/2"]
