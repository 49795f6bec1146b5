"""
Sync engine: serializes envelope handling and owns the processed cursor.

The stream client only enqueues. A single worker drains the bounded queue and
handles each envelope in its own database transaction, so counter updates for
one envelope never interleave with another's. The cursor moves after the
handler finishes, never before.

Write-failure policy:
    skip  log the failure, roll back that envelope, advance past it
    halt  log the failure, keep the cursor before it, stop with SyncHalted

Shutdown drains: reading stops first, envelopes already queued are handled
(up to drain_timeout), then the final cursor is checkpointed.
"""

import asyncio
import logging
import time
from typing import Optional, Dict, Any

from .config import WRITE_FAILURE_POLICIES
from .cursor import CursorStore
from .envelope import Envelope
from .router import EventRouter
from .stream import StreamClient

logger = logging.getLogger(__name__)


class SyncHalted(RuntimeError):
    """Raised by run() when the halt policy stopped on a failed envelope"""

    def __init__(self, envelope: Envelope, error: BaseException):
        super().__init__(f"Halted on {envelope.operation} {envelope.uri}: {error}")
        self.envelope = envelope
        self.error = error


class SyncEngine:

    STATS_EVERY_EVENTS = 1000

    def __init__(
        self,
        client: StreamClient,
        db_pool,
        router: EventRouter,
        cursor_store: Optional[CursorStore] = None,
        queue_size: int = 1000,
        checkpoint_interval: float = 5.0,
        on_write_failure: str = "skip",
        drain_timeout: float = 30.0,
        stats_interval: float = 60.0,
    ):
        if on_write_failure not in WRITE_FAILURE_POLICIES:
            raise ValueError(f"Unknown write failure policy: {on_write_failure}")

        self.client = client
        self.db = db_pool
        self.router = router
        self.cursor_store = cursor_store
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.checkpoint_interval = checkpoint_interval
        self.on_write_failure = on_write_failure
        self.drain_timeout = drain_timeout
        self.stats_interval = stats_interval

        # Cursor of the last envelope whose handling completed
        self.cursor: Optional[int] = None
        self.saved_cursor: Optional[int] = None
        self.last_checkpoint = 0.0

        self.halted: Optional[SyncHalted] = None
        self.stopping = False
        self.worker: Optional[asyncio.Task] = None
        self.stream_task: Optional[asyncio.Task] = None

        # Metrics
        self.events_processed = 0
        self.errors_count = 0
        self.abandoned_count = 0
        self.start_time = time.time()
        self.last_stats_time = time.time()
        self.last_stats_count = 0

        client.on_event(self.enqueue)

    async def enqueue(self, envelope: Envelope) -> None:
        await self.queue.put(envelope)

    def advance(self, time_us: int) -> None:
        if self.cursor is None or time_us > self.cursor:
            self.cursor = time_us

    async def process(self, envelope: Envelope) -> bool:
        """Handle one envelope; False means the halt policy stopped on it"""
        try:
            async with self.db.session() as store:
                await self.router.dispatch(envelope, store)
        except Exception as e:
            self.errors_count += 1
            logger.error(
                f"[ENGINE] Error processing {envelope.operation} {envelope.uri}: {e}",
                exc_info=True
            )
            if self.on_write_failure == "halt":
                self.halted = SyncHalted(envelope, e)
                return False
            logger.warning(f"[ENGINE] Skipping failed envelope at cursor {envelope.time_us}")
        else:
            self.events_processed += 1

        self.advance(envelope.time_us)
        return True

    async def _work(self) -> None:
        while True:
            envelope = await self.queue.get()
            try:
                ok = await self.process(envelope)
            finally:
                self.queue.task_done()

            if not ok:
                return

            await self.checkpoint()
            self.log_stats()

    async def checkpoint(self, force: bool = False) -> None:
        """Persist the processed cursor, at most once per checkpoint_interval"""
        if self.cursor_store is None or self.cursor is None:
            return
        if self.cursor == self.saved_cursor:
            return

        now = time.monotonic()
        if not force and now - self.last_checkpoint < self.checkpoint_interval:
            return

        self.last_checkpoint = now
        cursor = self.cursor
        try:
            await self.cursor_store.save(cursor)
            self.saved_cursor = cursor
        except Exception as e:
            logger.error(f"[CURSOR] Error saving cursor {cursor}: {e}")

    def log_stats(self, force: bool = False) -> None:
        now = time.time()
        due = (
            force
            or self.events_processed - self.last_stats_count >= self.STATS_EVERY_EVENTS
            or now - self.last_stats_time >= self.stats_interval
        )
        if not due:
            return

        self.last_stats_time = now
        self.last_stats_count = self.events_processed
        uptime = now - self.start_time
        rate = self.events_processed / uptime if uptime > 0 else 0
        logger.info(
            f"[STATS] Events: {self.events_processed:,} | Errors: {self.errors_count:,} | "
            f"Rate: {rate:.2f}/s | Uptime: {uptime:.0f}s | Cursor: {self.cursor}"
        )

    async def run(self, resume_cursor: Optional[int] = None) -> Optional[int]:
        """
        Stream and mirror until stopped.

        Returns the final processed cursor. Raises ReconnectExhausted when the
        transport gives up and SyncHalted when the halt policy triggers.
        """
        self.cursor = resume_cursor
        self.saved_cursor = resume_cursor
        self.start_time = time.time()
        self.last_checkpoint = time.monotonic()

        self.worker = asyncio.create_task(self._work())
        self.stream_task = asyncio.create_task(self.client.connect(resume_cursor))

        await asyncio.wait(
            {self.worker, self.stream_task}, return_when=asyncio.FIRST_COMPLETED
        )

        if self.worker.done():
            # Halted, or the worker died; either way stop reading.
            await self._stop_reading()

        await asyncio.wait({self.stream_task})
        await self._finish()

        if self.halted:
            raise self.halted
        if self.worker.done() and not self.worker.cancelled() and self.worker.exception():
            raise self.worker.exception()
        if not self.stream_task.cancelled() and self.stream_task.exception():
            raise self.stream_task.exception()
        return self.cursor

    async def _stop_reading(self) -> None:
        await self.client.shutdown()
        if self.stream_task and not self.stream_task.done():
            # Unblocks a reader waiting on a full queue or a pending connect.
            self.stream_task.cancel()

    async def _finish(self) -> None:
        if not self.worker.done():
            # The worker may also halt mid-drain, leaving join() unfinished.
            drain = asyncio.ensure_future(self.queue.join())
            await asyncio.wait(
                {drain, self.worker},
                timeout=self.drain_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not drain.done():
                drain.cancel()
                if not self.worker.done():
                    logger.warning(
                        f"[ENGINE] Drain timed out; abandoning {self.queue.qsize()} queued envelopes"
                    )
            self.worker.cancel()
            await asyncio.wait({self.worker})

        self.abandoned_count = self.queue.qsize()
        if self.abandoned_count:
            logger.warning(f"[ENGINE] {self.abandoned_count} envelopes were not handled")

        await self.checkpoint(force=True)
        self.log_stats(force=True)

    async def stop(self) -> None:
        """Stop reading and let run() drain and return; safe to call repeatedly"""
        if self.stopping:
            return
        self.stopping = True
        logger.info("[ENGINE] Stopping sync engine...")
        await self._stop_reading()

    def get_metrics(self) -> Dict[str, Any]:
        elapsed = time.time() - self.start_time
        return {
            'events_processed': self.events_processed,
            'errors': self.errors_count,
            'abandoned': self.abandoned_count,
            'frames_received': self.client.frames_received,
            'envelopes_delivered': self.client.envelopes_delivered,
            'envelopes_filtered': self.client.envelopes_filtered,
            'cursor': self.cursor,
            'saved_cursor': self.saved_cursor,
            'elapsed_seconds': elapsed,
        }
