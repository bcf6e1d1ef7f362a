"""
Durable key-value storage backends.

The cache and history managers persist through the KeyValueStore protocol.
Values are JSON-compatible Python objects. Three implementations exist:

- DatabaseEngine (subcapture.database): SQLite through SQLModel, the default
- RedisStore: Redis, for deployments sharing state across processes
- MemoryStore: process-local dict, for tests and ephemeral runs

The store is shared with unrelated subsystems, so every caller must use
namespaced keys.
"""

import json
import logging
from typing import TYPE_CHECKING, Any, Protocol

from subcapture.config import Settings, settings
from subcapture.exceptions import StorageError

if TYPE_CHECKING:
    import redis.asyncio as redis

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Protocol for durable key-value stores."""

    async def get(self, key: str) -> Any | None: ...
    async def set(self, key: str, value: Any) -> None: ...
    async def remove(self, key: str) -> None: ...
    async def keys(self, prefix: str = "") -> list[str]: ...
    async def health_check(self) -> dict[str, str]: ...
    async def close(self) -> None: ...


class MemoryStore:
    """
    In-process key-value store.

    Values are stored JSON encoded so callers get the same copy semantics as
    with the persistent backends.
    """

    def __init__(self):
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._data if key.startswith(prefix)]

    async def health_check(self) -> dict[str, str]:
        return {"status": "healthy", "storage": "memory"}

    async def close(self) -> None:
        self._data.clear()


class RedisStore:
    """
    Redis-backed key-value store.

    All keys are stored under the ``subcapture:`` namespace so the store can
    share a Redis database with other applications. Failures are raised as
    StorageError for callers to recover from.
    """

    NAMESPACE = "subcapture:"

    def __init__(self, redis_url: str | None = None, client: "redis.Redis | None" = None):
        """
        Initialize the store.

        Args:
            redis_url: Redis URL, defaults to settings.redis_url
            client: Pre-built client, used instead of redis_url when given
        """
        self._redis_url = redis_url or settings.redis_url
        self._client = client

    @property
    def client(self) -> "redis.Redis":
        """Get or create the Redis client."""
        if self._client is None:
            if not self._redis_url:
                raise StorageError("Redis backend selected but no redis_url configured")
            import redis.asyncio as redis

            self._client = redis.Redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=20,
            )
            logger.info(f"Created Redis client for {self._redis_url}")
        return self._client

    def _namespaced(self, key: str) -> str:
        return f"{self.NAMESPACE}{key}"

    async def get(self, key: str) -> Any | None:
        try:
            data = await self.client.get(self._namespaced(key))
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Redis get failed for {key}: {e}") from e
        if data is None:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            raise StorageError(f"Stored value for {key} is not valid JSON: {e}") from e

    async def set(self, key: str, value: Any) -> None:
        try:
            await self.client.set(self._namespaced(key), json.dumps(value))
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Redis set failed for {key}: {e}") from e

    async def remove(self, key: str) -> None:
        try:
            await self.client.delete(self._namespaced(key))
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Redis delete failed for {key}: {e}") from e

    async def keys(self, prefix: str = "") -> list[str]:
        try:
            found = []
            async for key in self.client.scan_iter(match=f"{self._namespaced(prefix)}*", count=100):
                found.append(key[len(self.NAMESPACE):])
            return found
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Redis scan failed for prefix {prefix}: {e}") from e

    async def health_check(self) -> dict[str, str]:
        try:
            await self.client.ping()
            return {"status": "healthy", "storage": "redis"}
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return {"status": "unhealthy", "storage": str(e)}

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Redis client closed")


def create_store(config: Settings | None = None) -> KeyValueStore:
    """
    Build the durable store selected by ``storage_backend``.

    Args:
        config: Settings instance. Uses global settings if None.

    Returns:
        A KeyValueStore implementation
    """
    config = config or settings
    if config.storage_backend == "redis":
        return RedisStore(config.redis_url)
    if config.storage_backend == "memory":
        return MemoryStore()

    from subcapture.database import DatabaseEngine, get_database_url

    return DatabaseEngine(database_url=get_database_url(config.database_path))
