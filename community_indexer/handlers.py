"""
Collection handlers: mirror community, post and vote records.

Each handler receives an Envelope plus a MirrorStore that is already inside a
transaction. Dependency misses (unknown community, parent post or vote
subject) are logged and dropped; they are not retried. Anything the store
raises propagates to the engine, which rolls the envelope back and applies the
write-failure policy.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from .actors import ActorProvisioner
from .envelope import Envelope, CREATE, UPDATE, DELETE

logger = logging.getLogger(__name__)

UP = "up"
DOWN = "down"
VOTE_EFFECT = {UP: 1, DOWN: -1}


def sanitize_text(text: Optional[str]) -> Optional[str]:
    """Remove null bytes from text"""
    if not text or not isinstance(text, str):
        return None
    return text.replace('\x00', '')


def safe_date(value: Optional[str]) -> datetime:
    """Parse an ISO timestamp, falling back to now; naive UTC for TIMESTAMP columns"""
    if not value or not isinstance(value, str):
        return datetime.now(timezone.utc).replace(tzinfo=None)
    try:
        dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return datetime.now(timezone.utc).replace(tzinfo=None)
    if dt.tzinfo:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def blob_json(value: Any) -> Optional[str]:
    if not value:
        return None
    return json.dumps(value, sort_keys=True)


class CollectionHandler:
    """Dispatches an envelope to create/update/delete by operation"""

    collection: str = ""

    def __init__(self, actors: ActorProvisioner):
        self.actors = actors

    async def handle(self, envelope: Envelope, store) -> None:
        if envelope.operation == CREATE:
            await self.create(envelope, store)
        elif envelope.operation == UPDATE:
            await self.update(envelope, store)
        elif envelope.operation == DELETE:
            await self.delete(envelope, store)

    async def create(self, envelope: Envelope, store) -> None:
        raise NotImplementedError

    async def update(self, envelope: Envelope, store) -> None:
        raise NotImplementedError

    async def delete(self, envelope: Envelope, store) -> None:
        raise NotImplementedError


class CommunityHandler(CollectionHandler):
    """Upserts communities; deletion is acknowledged but never cascades"""

    async def create(self, envelope: Envelope, store) -> None:
        await self._upsert(envelope, store)

    async def update(self, envelope: Envelope, store) -> None:
        await self._upsert(envelope, store)

    async def _upsert(self, envelope: Envelope, store) -> None:
        record = envelope.record
        if not record or not envelope.cid:
            logger.info(f"[COMMUNITY] Missing record or cid for {envelope.operation} {envelope.uri}")
            return

        await self.actors.ensure(store, envelope.actor_id)

        uri = envelope.uri
        name = sanitize_text(record.get('name')) or envelope.rkey
        display_name = sanitize_text(record.get('displayName'))
        fields = {
            'description': sanitize_text(record.get('description')),
            'avatar': blob_json(record.get('avatar')),
            'banner': blob_json(record.get('banner')),
            'atproto_cid': envelope.cid,
        }

        existing = await store.find_community(uri)
        if existing:
            # Counters belong to other writers; only display fields change here.
            fields['display_name'] = display_name or existing['display_name']
            await store.update_community(existing['id'], fields)
            logger.info(f"[COMMUNITY] Updated community: {uri}")
            return

        community_id = str(uuid.uuid4())
        created = await store.insert_community({
            **fields,
            'id': community_id,
            'creator_did': envelope.actor_id,
            'name': name,
            'display_name': display_name or name,
            'atproto_uri': uri,
            'atproto_rkey': envelope.rkey,
        })
        if created:
            logger.info(f"[COMMUNITY] Created community: {uri} (id {community_id})")
        else:
            logger.warning(f"[COMMUNITY] Community {uri} conflicts with an existing row (name {name!r}); skipped")

    async def delete(self, envelope: Envelope, store) -> None:
        # Posts and votes outlive the upstream community record.
        logger.info(f"[COMMUNITY] Community deleted upstream, keeping mirror row: {envelope.uri}")


class PostHandler(CollectionHandler):

    def build_post(self, envelope: Envelope, community_id: str) -> Dict[str, Any]:
        record = envelope.record
        embed = record.get('embed')
        reply = record.get('reply')
        reply_parent = None
        reply_root = None
        if isinstance(reply, dict):
            reply_parent = reply.get('parent') or None
            reply_root = reply.get('root') or None

        tags = record.get('tags')
        if isinstance(tags, list):
            tags = [tag for tag in (sanitize_text(t) for t in tags) if tag]
        else:
            tags = None

        return {
            'uri': envelope.uri,
            'rkey': envelope.rkey,
            'cid': envelope.cid,
            'author_did': envelope.actor_id,
            'community_id': community_id,
            'title': sanitize_text(record.get('title')),
            'text': sanitize_text(record.get('text')) or '',
            'embed_type': embed.get('type') if isinstance(embed, dict) else None,
            'embed_data': json.dumps(embed) if embed else None,
            'tags': tags,
            'lang': sanitize_text(record.get('lang')),
            'reply_parent': reply_parent,
            'reply_root': reply_root,
            'created_at': safe_date(record.get('createdAt')),
        }

    async def _resolve(self, envelope: Envelope, store) -> Optional[Dict[str, Any]]:
        """Validate the envelope and build the post row, or None to drop it"""
        record = envelope.record
        if not record or not envelope.cid:
            logger.info(f"[POST] Missing record or cid for {envelope.operation} {envelope.uri}")
            return None

        await self.actors.ensure(store, envelope.actor_id)

        community_ref = record.get('communityRef')
        if not community_ref or not isinstance(community_ref, str):
            logger.info(f"[POST] Post missing communityRef: {envelope.uri}")
            return None

        community = await store.find_community(community_ref)
        if not community:
            logger.warning(f"[POST] Community not found for ref {community_ref}; dropping {envelope.uri}")
            return None

        return self.build_post(envelope, community['id'])

    async def create(self, envelope: Envelope, store) -> None:
        post = await self._resolve(envelope, store)
        if post is None:
            return

        parent_uri = post['reply_parent']
        if parent_uri and not await store.post_exists(parent_uri):
            logger.warning(f"[POST] Parent {parent_uri} not mirrored; dropping reply {post['uri']}")
            return

        if not await store.insert_post(post):
            logger.debug(f"[POST] Duplicate create ignored: {post['uri']}")
            return

        # comment_count follows reply.parent; top-level means no reply.root.
        if parent_uri:
            await store.adjust_comment_count(parent_uri, 1)
        if not post['reply_root']:
            await store.adjust_post_count(post['community_id'], 1)

        logger.info(f"[POST] Created post: {post['uri']}")

    async def update(self, envelope: Envelope, store) -> None:
        post = await self._resolve(envelope, store)
        if post is None:
            return

        if await store.update_post(post['uri'], post):
            logger.info(f"[POST] Updated post: {post['uri']}")
        else:
            logger.debug(f"[POST] Update for unmirrored post ignored: {post['uri']}")

    async def delete(self, envelope: Envelope, store) -> None:
        uri = envelope.uri
        existing = await store.get_post(uri)
        if not existing:
            logger.debug(f"[POST] Delete for unmirrored post ignored: {uri}")
            return

        # Counters depend on the linkage of the row being removed.
        if existing['reply_parent']:
            await store.adjust_comment_count(existing['reply_parent'], -1)
        if not existing['reply_root']:
            await store.adjust_post_count(existing['community_id'], -1)

        await store.delete_post(uri)
        logger.info(f"[POST] Deleted post: {uri}")


class VoteHandler(CollectionHandler):
    """One vote per (actor, subject); vote_count is ups minus downs"""

    async def create(self, envelope: Envelope, store) -> None:
        record = envelope.record
        if not record:
            logger.info(f"[VOTE] Missing record for vote create {envelope.uri}")
            return

        subject = record.get('subject')
        subject_uri = subject.get('uri') if isinstance(subject, dict) else None
        direction = record.get('direction')
        if not subject_uri or direction not in VOTE_EFFECT:
            logger.info(f"[VOTE] Invalid vote record {envelope.uri} (subject={subject_uri!r}, direction={direction!r})")
            return

        await self.actors.ensure(store, envelope.actor_id)

        if not await store.post_exists(subject_uri):
            logger.warning(f"[VOTE] Subject {subject_uri} not mirrored; dropping vote {envelope.uri}")
            return

        existing = await store.find_vote(envelope.actor_id, subject_uri)
        if existing:
            await store.adjust_vote_count(subject_uri, -VOTE_EFFECT[existing['direction']])
            await store.delete_vote(existing['uri'])
            logger.debug(f"[VOTE] Replaced {existing['direction']} vote {existing['uri']}")

        inserted = await store.insert_vote({
            'uri': envelope.uri,
            'rkey': envelope.rkey,
            'author_did': envelope.actor_id,
            'subject_uri': subject_uri,
            'direction': direction,
            'created_at': safe_date(record.get('createdAt')),
        })
        if not inserted:
            logger.debug(f"[VOTE] Duplicate create ignored: {envelope.uri}")
            return

        await store.adjust_vote_count(subject_uri, VOTE_EFFECT[direction])
        logger.info(f"[VOTE] Created vote: {envelope.uri} ({direction})")

    async def update(self, envelope: Envelope, store) -> None:
        # Vote records are immutable upstream; a changed vote is delete + create.
        logger.info(f"[VOTE] Ignoring update for immutable vote {envelope.uri}")

    async def delete(self, envelope: Envelope, store) -> None:
        uri = envelope.uri
        vote = await store.get_vote(uri)
        if not vote:
            logger.debug(f"[VOTE] Delete for unmirrored vote ignored: {uri}")
            return

        await store.adjust_vote_count(vote['subject_uri'], -VOTE_EFFECT[vote['direction']])
        await store.delete_vote(uri)
        logger.info(f"[VOTE] Deleted vote: {uri}")
