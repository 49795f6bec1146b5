"""
Jetstream websocket client.

Owns the connection, the collection filter, the received-cursor and the
reconnect/backoff loop. Envelopes are passed to a single async callback; the
client does no mirror work of its own.
"""

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Iterable, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import COLLECTIONS, JETSTREAM_URL
from .envelope import Envelope, parse_frame

logger = logging.getLogger(__name__)

EventHandler = Callable[[Envelope], Awaitable[None]]


class StreamState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class ReconnectExhausted(RuntimeError):
    """Raised when the retry budget for consecutive connection failures is spent"""

    def __init__(self, attempts: int, cursor: Optional[int]):
        super().__init__(f"Gave up after {attempts} consecutive connection failures")
        self.attempts = attempts
        self.cursor = cursor


class StreamClient:
    """Subscribes to Jetstream for a fixed set of collections"""

    def __init__(
        self,
        url: str = JETSTREAM_URL,
        collections: Iterable[str] = COLLECTIONS,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        max_attempts: int = 10,
        resume_inclusive: bool = True,
        connector: Callable = websockets.connect,
    ):
        self.url = url
        self.collections = tuple(collections)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.resume_inclusive = resume_inclusive
        self.connector = connector

        self.state = StreamState.DISCONNECTED
        self.cursor: Optional[int] = None
        self.resume_cursor: Optional[int] = None
        # Consecutive failed connections; reset once a frame arrives
        self.attempts = 0

        self.handler: Optional[EventHandler] = None
        self.websocket = None
        self.closed = asyncio.Event()

        # Metrics
        self.frames_received = 0
        self.envelopes_delivered = 0
        self.envelopes_filtered = 0

    def on_event(self, handler: EventHandler) -> None:
        """Set the callback for incoming envelopes"""
        self.handler = handler

    def build_url(self, cursor: Optional[int] = None) -> str:
        """Subscription URL for the collection filter and optional cursor"""
        params = [('wantedCollections', collection) for collection in self.collections]
        if cursor is not None:
            params.append(('cursor', str(cursor)))
        return f"{self.url}?{urlencode(params)}"

    def backoff_delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def accepts(self, envelope: Envelope) -> bool:
        """Collection filter plus the resume boundary"""
        if envelope.collection not in self.collections:
            logger.debug(f"[FIREHOSE] Dropping envelope for unsubscribed collection {envelope.collection}")
            return False

        if self.resume_cursor is not None:
            if envelope.time_us < self.resume_cursor:
                return False
            if envelope.time_us == self.resume_cursor and not self.resume_inclusive:
                return False
        return True

    async def handle_frame(self, frame) -> None:
        self.frames_received += 1
        envelope = parse_frame(frame)
        if envelope is None:
            return

        if not self.accepts(envelope):
            self.envelopes_filtered += 1
            return

        self.cursor = envelope.time_us
        if self.handler is None:
            return

        try:
            await self.handler(envelope)
            self.envelopes_delivered += 1
        except Exception as e:
            logger.error(f"[FIREHOSE] Event handler failed for {envelope.uri}: {e}", exc_info=True)

    async def connect(self, resume_cursor: Optional[int] = None) -> None:
        """
        Stream until shutdown() is called.

        Raises ReconnectExhausted after max_attempts consecutive failures.
        """
        if self.state is StreamState.CLOSED:
            return

        if resume_cursor is not None:
            self.cursor = resume_cursor

        while not self.closed.is_set():
            # Resubscribe from the last cursor received, not from the
            # original seed, so a reconnect does not replay delivered work.
            self.resume_cursor = self.cursor
            url = self.build_url(self.cursor)
            self.state = StreamState.CONNECTING
            logger.info(f"[FIREHOSE] Connecting to: {url}")

            try:
                async with self.connector(
                    url,
                    ping_interval=30,
                    ping_timeout=45,
                    max_size=10 * 1024 * 1024,
                    compression=None,
                ) as websocket:
                    self.websocket = websocket
                    self.state = StreamState.STREAMING
                    logger.info("[FIREHOSE] Connected to Jetstream")

                    async for message in websocket:
                        if self.closed.is_set():
                            break
                        # A handshake alone does not count; a server that
                        # accepts and drops must still exhaust the budget.
                        self.attempts = 0
                        await self.handle_frame(message)

                if not self.closed.is_set():
                    logger.warning("[FIREHOSE] Stream ended by server")
            except ConnectionClosed as e:
                logger.warning(f"[FIREHOSE] Disconnected: {e}")
            except (WebSocketException, OSError, asyncio.TimeoutError) as e:
                logger.error(f"[FIREHOSE] Connection error: {e}")
            finally:
                self.websocket = None

            if self.closed.is_set():
                break

            self.attempts += 1
            if self.attempts >= self.max_attempts:
                logger.error("[FIREHOSE] Max reconnection attempts reached")
                self.state = StreamState.DISCONNECTED
                raise ReconnectExhausted(self.attempts, self.cursor)

            delay = self.backoff_delay(self.attempts - 1)
            self.state = StreamState.RECONNECTING
            logger.info(f"[FIREHOSE] Reconnecting in {delay:.1f}s (attempt {self.attempts})")

            try:
                await asyncio.wait_for(self.closed.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        self.state = StreamState.CLOSED

    async def shutdown(self) -> Optional[int]:
        """Close the connection for good and return the last received cursor"""
        if self.state is StreamState.CLOSED and self.closed.is_set():
            return self.cursor

        logger.info("[FIREHOSE] Shutting down...")
        self.closed.set()
        self.state = StreamState.CLOSED

        if self.websocket is not None:
            try:
                await self.websocket.close()
            except (WebSocketException, OSError) as e:
                logger.debug(f"[FIREHOSE] Error closing websocket: {e}")

        if self.cursor is not None:
            logger.info(f"[FIREHOSE] Final cursor: {self.cursor}")
        return self.cursor
