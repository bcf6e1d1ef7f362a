"""
Async database module for SQLite using SQLModel.

This module provides the default durable key-value store, with lifecycle
management and a background sweep of expired subtitle entries.
"""

import asyncio
import json
import logging
import threading
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel, delete, select, text

from subcapture.exceptions import StorageError
from subcapture.models import StorageItem, utcnow
from subcapture.utils import SUBTITLE_KEY_PREFIX, now_ms

logger = logging.getLogger(__name__)


def get_database_url(database_path: str | None = None) -> str:
    """
    Get the database URL, converting relative paths to absolute.

    Args:
        database_path: Path to database file (relative or absolute). If None, uses settings.

    Returns:
        SQLite database URL with absolute path
    """
    if database_path is None:
        from subcapture.config import settings
        database_path = settings.database_path

    if not Path(database_path).is_absolute():
        # Make path relative to the project directory
        project_dir = Path(__file__).parent.parent
        database_path = str(project_dir / database_path)
    return f"sqlite+aiosqlite:///{database_path}"


class DatabaseEngine:
    """
    Async SQLite key-value store.

    Values are stored JSON encoded in the ``storage_items`` table. Tables are
    created lazily on first use, so the engine works without an explicit
    init_db() call. SQLAlchemy failures are raised as StorageError.
    """

    def __init__(self, database_url: str | None = None, echo: bool = False):
        """
        Initialize the database engine.

        Args:
            database_url: SQLAlchemy database URL for async SQLite. If None, uses settings.
            echo: Whether to echo SQL statements (for debugging)
        """
        self._engine = None
        self._session_factory = None
        self._database_url = database_url
        self._echo = echo
        self._lock = threading.Lock()
        self._initialized = False

    @property
    def database_url(self) -> str:
        """Get the database URL, resolving from settings if not set."""
        if self._database_url is None:
            self._database_url = get_database_url()
        return self._database_url

    @property
    def engine(self):
        """Get or create the async engine."""
        if self._engine is None:
            with self._lock:
                # Double-check after acquiring lock
                if self._engine is None:
                    self._engine = create_async_engine(
                        self.database_url,
                        echo=self._echo,
                        connect_args={"check_same_thread": False},
                        poolclass=NullPool,  # Better for SQLite
                    )
                    logger.info(f"Created async database engine: {self.database_url}")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get or create the async session factory."""
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._session_factory

    async def init_db(self) -> None:
        """
        Initialize database tables.

        Creates all tables defined in SQLModel metadata.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True
        logger.info("Database tables initialized")

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.init_db()

    async def close(self) -> None:
        """Close the database engine and cleanup resources."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._initialized = False
            logger.info("Database engine closed")

    async def get(self, key: str) -> Any | None:
        """
        Read a value.

        Args:
            key: Namespaced storage key

        Returns:
            Decoded value, or None if the key is absent

        Raises:
            StorageError: If the database cannot be read or the value cannot be decoded
        """
        try:
            await self._ensure_initialized()
            async with self.session_factory() as session:
                item = await session.get(StorageItem, key)
        except SQLAlchemyError as e:
            raise StorageError(f"Database read failed for {key}: {e}") from e

        if item is None:
            return None
        try:
            return json.loads(item.value)
        except json.JSONDecodeError as e:
            raise StorageError(f"Stored value for {key} is not valid JSON: {e}") from e

    async def set(self, key: str, value: Any) -> None:
        """
        Write a value, replacing any existing one (last write wins).

        Raises:
            StorageError: If the database cannot be written
        """
        try:
            await self._ensure_initialized()
            async with self.session_factory() as session:
                item = await session.get(StorageItem, key)
                if item is None:
                    session.add(StorageItem(key=key, value=json.dumps(value)))
                else:
                    item.value = json.dumps(value)
                    item.updated_at = utcnow()
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Database write failed for {key}: {e}") from e

    async def remove(self, key: str) -> None:
        """Delete a key; deleting an absent key is a no-op."""
        try:
            await self._ensure_initialized()
            async with self.session_factory() as session:
                await session.execute(delete(StorageItem).where(StorageItem.key == key))
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Database delete failed for {key}: {e}") from e

    async def keys(self, prefix: str = "") -> list[str]:
        """List keys starting with a prefix."""
        try:
            await self._ensure_initialized()
            async with self.session_factory() as session:
                result = await session.execute(
                    select(StorageItem.key).where(StorageItem.key.startswith(prefix, autoescape=True))
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageError(f"Database key scan failed for prefix {prefix}: {e}") from e

    async def cleanup_expired(self, max_age_ms: int) -> int:
        """
        Delete durable subtitle entries older than ``max_age_ms``.

        Args:
            max_age_ms: Maximum entry age in milliseconds

        Returns:
            Number of entries deleted
        """
        now = now_ms()
        expired: list[str] = []
        for key in await self.keys(SUBTITLE_KEY_PREFIX):
            try:
                entry = await self.get(key)
                cached_at = int(entry.get("cachedAt") or 0) if isinstance(entry, dict) else None
            except (StorageError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable entry {key} during cleanup: {e}")
                continue
            if cached_at is not None and now - cached_at > max_age_ms:
                expired.append(key)

        for key in expired:
            await self.remove(key)

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired subtitle entries")
        return len(expired)

    async def health_check(self) -> dict[str, str]:
        """
        Check database health.

        Returns:
            Dictionary with status and message
        """
        try:
            async with self.session_factory() as session:
                # Execute a simple query to check connectivity
                await session.execute(text("SELECT 1"))
            return {"status": "healthy", "storage": "sqlite"}
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {"status": "unhealthy", "storage": str(e)}


class DatabaseLifecycle:
    """
    Storage lifecycle manager for the FastAPI application.

    Handles startup and shutdown of the durable store and runs the
    background sweep of expired subtitle entries.
    """

    def __init__(self, store, max_age_ms: int, poll_interval: float):
        """
        Initialize the lifecycle manager.

        Args:
            store: Durable store to manage
            max_age_ms: Age after which subtitle entries are swept
            poll_interval: Seconds between sweeps
        """
        self._store = store
        self._max_age_ms = max_age_ms
        self._poll_interval = poll_interval
        self._cleanup_task: asyncio.Task | None = None
        self._shutdown_event: asyncio.Event | None = None

    async def startup(self) -> None:
        """Initialize storage on application startup."""
        logger.info("Initializing storage...")
        if isinstance(self._store, DatabaseEngine):
            await self._store.init_db()
            await self.start_background_cleanup()
        logger.info("Storage initialized successfully")

    async def shutdown(self) -> None:
        """Cleanup storage on application shutdown."""
        logger.info("Shutting down storage...")
        await self.stop_background_cleanup()
        await self._store.close()
        logger.info("Storage shutdown complete")

    async def start_background_cleanup(self) -> None:
        """Start the background sweep of expired subtitle entries."""
        self._shutdown_event = asyncio.Event()

        async def cleanup_loop():
            """Background task that periodically removes expired entries."""
            logger.info("Started background subtitle cleanup task")
            while not self._shutdown_event.is_set():
                try:
                    await self._store.cleanup_expired(self._max_age_ms)
                except Exception as e:
                    logger.error(f"Error during subtitle cleanup: {e}")

                # Wait for next poll interval or until shutdown
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._poll_interval)
                    break  # Shutdown was signaled
                except asyncio.TimeoutError:
                    continue
            logger.info("Background subtitle cleanup task stopped")

        self._cleanup_task = asyncio.create_task(cleanup_loop())
        logger.info(f"Background cleanup task started (poll interval: {self._poll_interval}s)")

    async def stop_background_cleanup(self) -> None:
        """Stop the background cleanup task."""
        if self._cleanup_task is not None:
            if self._shutdown_event is not None:
                self._shutdown_event.set()
            try:
                await asyncio.wait_for(self._cleanup_task, timeout=5.0)
            except asyncio.TimeoutError:
                self._cleanup_task.cancel()
                logger.warning("Background cleanup task did not stop in time, cancelled")
            self._cleanup_task = None
            self._shutdown_event = None
