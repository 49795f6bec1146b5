"""Routes envelopes to the handler registered for their collection."""

import logging
from typing import Dict, Optional

from .actors import ActorProvisioner
from .config import COMMUNITY_COLLECTION, POST_COLLECTION, VOTE_COLLECTION
from .envelope import Envelope
from .handlers import CollectionHandler, CommunityHandler, PostHandler, VoteHandler

logger = logging.getLogger(__name__)


class EventRouter:

    def __init__(self, handlers: Dict[str, CollectionHandler]):
        self.handlers = dict(handlers)

    @classmethod
    def default(cls, actors: Optional[ActorProvisioner] = None) -> "EventRouter":
        """Router for the three mirrored collections sharing one provisioner"""
        actors = actors or ActorProvisioner()
        return cls({
            COMMUNITY_COLLECTION: CommunityHandler(actors),
            POST_COLLECTION: PostHandler(actors),
            VOTE_COLLECTION: VoteHandler(actors),
        })

    @property
    def collections(self):
        return tuple(self.handlers)

    async def dispatch(self, envelope: Envelope, store) -> bool:
        """Run the matching handler; False when no handler is registered"""
        handler = self.handlers.get(envelope.collection)
        if handler is None:
            logger.info(f"[ROUTER] Unknown collection: {envelope.collection}")
            return False

        logger.debug(
            f"[ROUTER] {envelope.operation.upper()} {envelope.collection} from {envelope.actor_id}"
        )
        await handler.handle(envelope, store)
        return True
