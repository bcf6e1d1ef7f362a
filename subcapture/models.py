"""
Data models for subtitle capture.

The SQLModel table backs the durable key-value store. The pydantic models
describe captures, cache entries and history items; they serialize with the
camelCase field names used on the message channel.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field as PydanticField
from pydantic.alias_generators import to_camel
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Return current UTC time as naive datetime for SQLite compatibility.

    SQLite stores datetimes as strings without timezone info. When retrieved,
    they become timezone-naive datetimes. Using naive datetimes consistently
    prevents comparison errors between aware and naive datetimes.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


class StorageItem(SQLModel, table=True):
    """
    One entry of the durable key-value store.

    Keys are namespaced by their owners (``subtitle_<...>``,
    ``capture_history``, ``history_config``) because the table is shared.
    """

    __tablename__ = "storage_items"

    key: str = Field(primary_key=True, max_length=2048, description="Namespaced storage key")
    value: str = Field(description="JSON encoded value")
    updated_at: datetime = Field(default_factory=utcnow, index=True, description="Last write time")


class WireModel(BaseModel):
    """Base for models exchanged over the message channel."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class CapturedSubtitle(WireModel):
    """One detection event, immutable once created."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    source_url: str
    canonical_text: str
    captured_at: int = PydanticField(description="Unix epoch milliseconds")
    page_url: str | None = None


class CacheEntry(WireModel):
    """
    Cached subtitle for a tab or page.

    The durable form is keyed by the page key; the in-memory form by tab id.
    """

    source_url: str
    content: str
    source_url_hash: str
    cached_at: int = PydanticField(description="Unix epoch milliseconds")
    page_url: str | None = None


class HistoryItem(WireModel):
    """A previously captured subtitle set shown in the history list."""

    id: str
    title: str
    page_url: str
    source_url: str
    content: str
    captured_at: int = PydanticField(description="Unix epoch milliseconds")
    favicon_url: str | None = None


class HistoryConfig(WireModel):
    """Persisted history configuration."""

    max_size: int = PydanticField(ge=1)
