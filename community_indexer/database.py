"""
PostgreSQL access for the relational mirror.

DatabasePool owns the asyncpg pool. Handlers never see the pool directly; they
receive a MirrorStore bound to one connection inside one transaction, so every
envelope's row writes and counter adjustments land (or roll back) together.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any

import asyncpg

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name('schema.sql')


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as 'INSERT 0 1'"""
    try:
        return int(status.rsplit(' ', 1)[-1])
    except (AttributeError, ValueError):
        return 0


class MirrorStore:
    """Mirror reads and writes on a single connection"""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    # ===== Actor Operations =====

    async def actor_exists(self, actor_id: str) -> bool:
        return await self.conn.fetchval(
            'SELECT EXISTS(SELECT 1 FROM users WHERE id = $1)', actor_id
        )

    async def insert_actor(self, actor_id: str) -> bool:
        """Insert a stub user row; False if it already existed"""
        status = await self.conn.execute(
            """
            INSERT INTO users (id, created_at, updated_at)
            VALUES ($1, NOW(), NOW())
            ON CONFLICT (id) DO NOTHING
            """,
            actor_id
        )
        return _affected(status) == 1

    # ===== Community Operations =====

    async def find_community(self, atproto_uri: str) -> Optional[Dict[str, Any]]:
        row = await self.conn.fetchrow(
            """
            SELECT id, name, display_name, description, avatar, banner,
                   atproto_uri, atproto_cid, member_count, post_count
            FROM communities
            WHERE atproto_uri = $1
            """,
            atproto_uri
        )
        return dict(row) if row else None

    async def insert_community(self, data: Dict[str, Any]) -> bool:
        status = await self.conn.execute(
            """
            INSERT INTO communities (
                id, creator_did, name, display_name, description, avatar, banner,
                atproto_uri, atproto_cid, atproto_rkey, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, NOW(), NOW())
            ON CONFLICT DO NOTHING
            """,
            data['id'],
            data['creator_did'],
            data['name'],
            data['display_name'],
            data.get('description'),
            data.get('avatar'),
            data.get('banner'),
            data['atproto_uri'],
            data.get('atproto_cid'),
            data.get('atproto_rkey'),
        )
        return _affected(status) == 1

    async def update_community(self, community_id: str, data: Dict[str, Any]) -> bool:
        status = await self.conn.execute(
            """
            UPDATE communities
            SET
                display_name = $2,
                description = $3,
                avatar = $4,
                banner = $5,
                atproto_cid = $6,
                updated_at = NOW()
            WHERE id = $1
            """,
            community_id,
            data['display_name'],
            data.get('description'),
            data.get('avatar'),
            data.get('banner'),
            data.get('atproto_cid'),
        )
        return _affected(status) == 1

    async def adjust_post_count(self, community_id: str, delta: int) -> None:
        await self.conn.execute(
            'UPDATE communities SET post_count = post_count + $2 WHERE id = $1',
            community_id, delta
        )

    # ===== Post Operations =====

    async def get_post(self, uri: str) -> Optional[Dict[str, Any]]:
        row = await self.conn.fetchrow(
            """
            SELECT uri, author_did, community_id, reply_parent, reply_root,
                   vote_count, comment_count
            FROM posts
            WHERE uri = $1
            """,
            uri
        )
        return dict(row) if row else None

    async def post_exists(self, uri: str) -> bool:
        return await self.conn.fetchval(
            'SELECT EXISTS(SELECT 1 FROM posts WHERE uri = $1)', uri
        )

    async def insert_post(self, data: Dict[str, Any]) -> bool:
        """Insert a post; False when the uri was already mirrored"""
        status = await self.conn.execute(
            """
            INSERT INTO posts (
                uri, rkey, cid, author_did, community_id, title, text,
                embed_type, embed_data, tags, lang, reply_parent, reply_root,
                created_at, indexed_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, NOW())
            ON CONFLICT (uri) DO NOTHING
            """,
            data['uri'],
            data['rkey'],
            data['cid'],
            data['author_did'],
            data['community_id'],
            data.get('title'),
            data['text'],
            data.get('embed_type'),
            data.get('embed_data'),
            data.get('tags'),
            data.get('lang'),
            data.get('reply_parent'),
            data.get('reply_root'),
            data['created_at'],
        )
        return _affected(status) == 1

    async def update_post(self, uri: str, data: Dict[str, Any]) -> bool:
        status = await self.conn.execute(
            """
            UPDATE posts
            SET
                cid = $2,
                title = $3,
                text = $4,
                embed_type = $5,
                embed_data = $6,
                tags = $7,
                indexed_at = NOW()
            WHERE uri = $1
            """,
            uri,
            data['cid'],
            data.get('title'),
            data['text'],
            data.get('embed_type'),
            data.get('embed_data'),
            data.get('tags'),
        )
        return _affected(status) == 1

    async def delete_post(self, uri: str) -> bool:
        status = await self.conn.execute('DELETE FROM posts WHERE uri = $1', uri)
        return _affected(status) == 1

    async def adjust_comment_count(self, uri: str, delta: int) -> None:
        await self.conn.execute(
            'UPDATE posts SET comment_count = comment_count + $2 WHERE uri = $1',
            uri, delta
        )

    async def adjust_vote_count(self, uri: str, delta: int) -> None:
        await self.conn.execute(
            'UPDATE posts SET vote_count = vote_count + $2 WHERE uri = $1',
            uri, delta
        )

    # ===== Vote Operations =====

    async def get_vote(self, uri: str) -> Optional[Dict[str, Any]]:
        row = await self.conn.fetchrow(
            'SELECT uri, author_did, subject_uri, direction FROM votes WHERE uri = $1',
            uri
        )
        return dict(row) if row else None

    async def find_vote(self, author_did: str, subject_uri: str) -> Optional[Dict[str, Any]]:
        row = await self.conn.fetchrow(
            """
            SELECT uri, author_did, subject_uri, direction
            FROM votes
            WHERE author_did = $1 AND subject_uri = $2
            """,
            author_did, subject_uri
        )
        return dict(row) if row else None

    async def insert_vote(self, data: Dict[str, Any]) -> bool:
        status = await self.conn.execute(
            """
            INSERT INTO votes (uri, rkey, author_did, subject_uri, direction, created_at, indexed_at)
            VALUES ($1, $2, $3, $4, $5, $6, NOW())
            ON CONFLICT DO NOTHING
            """,
            data['uri'],
            data['rkey'],
            data['author_did'],
            data['subject_uri'],
            data['direction'],
            data['created_at'],
        )
        return _affected(status) == 1

    async def delete_vote(self, uri: str) -> bool:
        status = await self.conn.execute('DELETE FROM votes WHERE uri = $1', uri)
        return _affected(status) == 1

    # ===== Cursor Operations =====

    async def load_cursor(self, service: str) -> Optional[int]:
        value = await self.conn.fetchval(
            'SELECT cursor FROM firehose_cursor WHERE service = $1', service
        )
        if not value:
            return None
        try:
            return int(value)
        except ValueError:
            logger.warning(f"[CURSOR] Ignoring unparseable stored cursor {value!r}")
            return None

    async def save_cursor(self, service: str, cursor: int, last_event_time: datetime) -> None:
        await self.conn.execute(
            """
            INSERT INTO firehose_cursor (service, cursor, last_event_time)
            VALUES ($1, $2, $3)
            ON CONFLICT (service)
            DO UPDATE SET cursor = $2, last_event_time = $3
            """,
            service, str(cursor), last_event_time
        )


class DatabasePool:
    """PostgreSQL connection pool manager"""

    def __init__(self, database_url: str, pool_size: int = 10):
        self.database_url = database_url
        self.pool_size = pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self, verify_schema: bool = True, max_retries: int = 30, retry_delay: float = 2):
        """Create the pool, waiting for the mirror schema to exist"""
        logger.info(f"Creating database pool with {self.pool_size} connections...")

        for attempt in range(max_retries):
            try:
                self.pool = await asyncpg.create_pool(
                    self.database_url,
                    min_size=min(2, self.pool_size),
                    max_size=self.pool_size,
                    command_timeout=60,
                    max_inactive_connection_lifetime=300,
                )

                if verify_schema:
                    async with self.pool.acquire() as conn:
                        await conn.fetchval("SELECT COUNT(*) FROM communities LIMIT 1")

                logger.info("Database pool created successfully")
                return

            except asyncpg.exceptions.UndefinedTableError:
                logger.warning(
                    f"Mirror schema not ready (attempt {attempt + 1}/{max_retries}). "
                    "Run migrations or `community-indexer init-db`."
                )
                await self._discard_pool()
                if attempt < max_retries - 1:
                    await asyncio.sleep(retry_delay)
                else:
                    raise
            except (OSError, asyncpg.PostgresError) as e:
                logger.error(f"Error creating database pool (attempt {attempt + 1}/{max_retries}): {e}")
                await self._discard_pool()
                if attempt < max_retries - 1:
                    await asyncio.sleep(retry_delay)
                else:
                    raise

    async def _discard_pool(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def close(self):
        """Close database connection pool"""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database pool closed")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a database connection from the pool"""
        if not self.pool:
            raise RuntimeError("Database pool not initialized")

        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def session(self):
        """Yield a MirrorStore whose writes commit together or not at all"""
        async with self.acquire() as conn:
            async with conn.transaction():
                yield MirrorStore(conn)

    async def init_schema(self):
        """Create mirror tables if they do not exist"""
        sql = SCHEMA_PATH.read_text()
        async with self.acquire() as conn:
            await conn.execute(sql)
        logger.info("Mirror schema ready")
