"""Lazy creation of stub user rows for actors seen on the firehose."""

import asyncio
import logging
from typing import Dict

logger = logging.getLogger(__name__)


class ActorProvisioner:
    """
    Ensures a minimal users row exists before a record referencing the actor
    is written.

    Profile data is never fetched here; the row only satisfies the foreign keys
    on communities, posts and votes. Concurrent calls for the same actor wait
    for the first in-flight creation, and the insert itself tolerates a row
    created by another process in the meantime.
    """

    BATCH_LOG_SIZE = 1000

    def __init__(self):
        self.pending: Dict[str, asyncio.Task] = {}
        self.created_count = 0

    async def ensure(self, store, actor_id: str) -> bool:
        """Ensure the actor exists; True if this call created the row"""
        existing = self.pending.get(actor_id)
        if existing and not existing.done():
            # Let the first creation finish; its outcome belongs to its own
            # envelope, so this caller still checks through its own store.
            await asyncio.wait([existing])
            return await self._ensure(store, actor_id)

        task = asyncio.ensure_future(self._ensure(store, actor_id))
        self.pending[actor_id] = task

        def cleanup(finished):
            if self.pending.get(actor_id) is finished:
                del self.pending[actor_id]

        task.add_done_callback(cleanup)
        return await task

    async def _ensure(self, store, actor_id: str) -> bool:
        if await store.actor_exists(actor_id):
            return False

        created = await store.insert_actor(actor_id)
        if created:
            self.created_count += 1
            logger.debug(f"[ACTOR] Created stub user {actor_id}")
            if self.created_count % self.BATCH_LOG_SIZE == 0:
                logger.info(f"[ACTOR] Created {self.created_count} stub users so far")
        return created
