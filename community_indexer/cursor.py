"""
Cursor persistence for restart recovery.

The engine checkpoints the cursor of the last fully handled envelope. Three
backends share one small interface: the mirror database (default), Redis, or a
plain file.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class CursorStore:

    async def load(self) -> Optional[int]:
        raise NotImplementedError

    async def save(self, cursor: int) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class PostgresCursorStore(CursorStore):
    """Stores the cursor in the firehose_cursor table, one row per service"""

    def __init__(self, db_pool, service: str = "community_indexer"):
        self.db = db_pool
        self.service = service

    async def load(self) -> Optional[int]:
        async with self.db.session() as store:
            return await store.load_cursor(self.service)

    async def save(self, cursor: int) -> None:
        async with self.db.session() as store:
            await store.save_cursor(
                self.service, cursor, datetime.now(timezone.utc).replace(tzinfo=None)
            )


class RedisCursorStore(CursorStore):

    def __init__(self, redis_url: str, key: str = "community_indexer:cursor"):
        self.redis_url = redis_url
        self.key = key
        self.redis: Optional[aioredis.Redis] = None

    async def connect(self) -> None:
        logger.info(f"Connecting to Redis at {self.redis_url}...")
        self.redis = aioredis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_keepalive=True,
        )
        await self.redis.ping()
        logger.info("Connected to Redis successfully")

    async def load(self) -> Optional[int]:
        if self.redis is None:
            await self.connect()
        saved = await self.redis.get(self.key)
        if not saved:
            return None
        try:
            return int(saved)
        except ValueError:
            logger.warning(f"[CURSOR] Ignoring unparseable cursor in Redis: {saved!r}")
            return None

    async def save(self, cursor: int) -> None:
        if self.redis is None:
            await self.connect()
        await self.redis.set(self.key, str(cursor))

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None


class FileCursorStore(CursorStore):
    """Cursor in a text file; written via a temp file and rename"""

    def __init__(self, path: str):
        self.path = Path(path)

    async def load(self) -> Optional[int]:
        return await asyncio.to_thread(self._read)

    async def save(self, cursor: int) -> None:
        await asyncio.to_thread(self._write, cursor)

    def _read(self) -> Optional[int]:
        if not self.path.exists():
            return None
        data = self.path.read_text().strip()
        try:
            return int(data)
        except ValueError:
            logger.warning(f"[CURSOR] Ignoring unparseable cursor file {self.path}: {data!r}")
            return None

    def _write(self, cursor: int) -> None:
        tmp = self.path.with_name(self.path.name + '.tmp')
        tmp.write_text(str(cursor))
        tmp.replace(self.path)


def make_cursor_store(settings, db_pool) -> CursorStore:
    """Redis if REDIS_URL is set, else CURSOR_FILE if set, else the mirror database"""
    if settings.redis_url:
        return RedisCursorStore(settings.redis_url, settings.redis_cursor_key)
    if settings.cursor_file:
        return FileCursorStore(settings.cursor_file)
    return PostgresCursorStore(db_pool, settings.cursor_service)
