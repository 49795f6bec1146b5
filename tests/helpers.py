"""
Test doubles and envelope builders.

MemoryMirror implements the same operations as database.MirrorStore on plain
dicts, and session() restores a snapshot when the block raises, matching the
transaction-per-envelope behaviour of DatabasePool.session().
"""

import copy
import itertools
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, Dict, Any

from community_indexer.config import COMMUNITY_COLLECTION, POST_COLLECTION, VOTE_COLLECTION
from community_indexer.envelope import Envelope, RecordRef

_clock = itertools.count(1_700_000_000_000_000)


def next_time_us() -> int:
    return next(_clock)


class MemoryMirror:

    def __init__(self):
        self.users: Dict[str, Dict[str, Any]] = {}
        self.communities: Dict[str, Dict[str, Any]] = {}
        self.posts: Dict[str, Dict[str, Any]] = {}
        self.votes: Dict[str, Dict[str, Any]] = {}
        self.cursors: Dict[str, str] = {}
        self.sessions = 0
        # Method name -> exception raised the next time it is called
        self.fail_next: Dict[str, Exception] = {}

    # ----- session -----

    def _snapshot(self):
        return copy.deepcopy((self.users, self.communities, self.posts, self.votes, self.cursors))

    @asynccontextmanager
    async def session(self):
        snapshot = self._snapshot()
        self.sessions += 1
        try:
            yield self
        except BaseException:
            self.users, self.communities, self.posts, self.votes, self.cursors = snapshot
            raise

    def _maybe_fail(self, name: str):
        error = self.fail_next.pop(name, None)
        if error is not None:
            raise error

    # ----- queries used by tests -----

    def community_by_uri(self, uri: str) -> Optional[Dict[str, Any]]:
        for row in self.communities.values():
            if row['atproto_uri'] == uri:
                return row
        return None

    def votes_for(self, author_did: str, subject_uri: str):
        return [
            v for v in self.votes.values()
            if v['author_did'] == author_did and v['subject_uri'] == subject_uri
        ]

    # ----- actors -----

    async def actor_exists(self, actor_id: str) -> bool:
        return actor_id in self.users

    async def insert_actor(self, actor_id: str) -> bool:
        self._maybe_fail('insert_actor')
        if actor_id in self.users:
            return False
        self.users[actor_id] = {'id': actor_id, 'display_name': None, 'post_karma': 0}
        return True

    # ----- communities -----

    async def find_community(self, atproto_uri: str) -> Optional[Dict[str, Any]]:
        row = self.community_by_uri(atproto_uri)
        return dict(row) if row else None

    async def insert_community(self, data: Dict[str, Any]) -> bool:
        self._maybe_fail('insert_community')
        assert data['creator_did'] in self.users, "creator must be provisioned first"
        if data['id'] in self.communities:
            return False
        for row in self.communities.values():
            if row['name'] == data['name'] or row['atproto_uri'] == data['atproto_uri']:
                return False
        self.communities[data['id']] = {
            'description': None, 'avatar': None, 'banner': None,
            'atproto_cid': None, 'atproto_rkey': None,
            **data,
            'member_count': 0,
            'post_count': 0,
        }
        return True

    async def update_community(self, community_id: str, data: Dict[str, Any]) -> bool:
        row = self.communities.get(community_id)
        if row is None:
            return False
        for key in ('display_name', 'description', 'avatar', 'banner', 'atproto_cid'):
            row[key] = data.get(key)
        return True

    async def adjust_post_count(self, community_id: str, delta: int) -> None:
        self._maybe_fail('adjust_post_count')
        if community_id in self.communities:
            self.communities[community_id]['post_count'] += delta

    # ----- posts -----

    async def get_post(self, uri: str) -> Optional[Dict[str, Any]]:
        row = self.posts.get(uri)
        return dict(row) if row else None

    async def post_exists(self, uri: str) -> bool:
        return uri in self.posts

    async def insert_post(self, data: Dict[str, Any]) -> bool:
        self._maybe_fail('insert_post')
        assert data['author_did'] in self.users, "author must be provisioned first"
        assert data['community_id'] in self.communities, "community must resolve"
        if data['uri'] in self.posts:
            return False
        self.posts[data['uri']] = {**data, 'vote_count': 0, 'comment_count': 0}
        return True

    async def update_post(self, uri: str, data: Dict[str, Any]) -> bool:
        row = self.posts.get(uri)
        if row is None:
            return False
        for key in ('cid', 'title', 'text', 'embed_type', 'embed_data', 'tags'):
            row[key] = data.get(key)
        return True

    async def delete_post(self, uri: str) -> bool:
        return self.posts.pop(uri, None) is not None

    async def adjust_comment_count(self, uri: str, delta: int) -> None:
        if uri in self.posts:
            self.posts[uri]['comment_count'] += delta

    async def adjust_vote_count(self, uri: str, delta: int) -> None:
        self._maybe_fail('adjust_vote_count')
        if uri in self.posts:
            self.posts[uri]['vote_count'] += delta

    # ----- votes -----

    async def get_vote(self, uri: str) -> Optional[Dict[str, Any]]:
        row = self.votes.get(uri)
        return dict(row) if row else None

    async def find_vote(self, author_did: str, subject_uri: str) -> Optional[Dict[str, Any]]:
        matches = self.votes_for(author_did, subject_uri)
        return dict(matches[0]) if matches else None

    async def insert_vote(self, data: Dict[str, Any]) -> bool:
        self._maybe_fail('insert_vote')
        assert data['author_did'] in self.users, "voter must be provisioned first"
        if data['uri'] in self.votes or self.votes_for(data['author_did'], data['subject_uri']):
            return False
        self.votes[data['uri']] = dict(data)
        return True

    async def delete_vote(self, uri: str) -> bool:
        return self.votes.pop(uri, None) is not None

    # ----- cursor -----

    async def load_cursor(self, service: str) -> Optional[int]:
        value = self.cursors.get(service)
        return int(value) if value else None

    async def save_cursor(self, service: str, cursor: int, last_event_time: datetime) -> None:
        self.cursors[service] = str(cursor)


# ----- envelope builders -----

def envelope(actor, collection, rkey, operation='create', record=None, cid='bafycid', time_us=None):
    if operation == 'delete':
        record = None
        cid = None
    return Envelope(
        actor_id=actor,
        operation=operation,
        collection=collection,
        rkey=rkey,
        time_us=time_us if time_us is not None else next_time_us(),
        record=record,
        cid=cid,
    )


def community_uri(actor, rkey):
    return RecordRef(actor, COMMUNITY_COLLECTION, rkey).uri


def post_uri(actor, rkey):
    return RecordRef(actor, POST_COLLECTION, rkey).uri


def community_event(actor, rkey, operation='create', **fields):
    record = {'name': rkey, 'displayName': rkey.title(), **fields}
    return envelope(actor, COMMUNITY_COLLECTION, rkey, operation, record)


def post_event(actor, rkey, community, operation='create', parent=None, root=None, **fields):
    record = {
        'communityRef': community,
        'text': fields.pop('text', f'post {rkey}'),
        'createdAt': '2024-09-09T19:46:02.102Z',
        **fields,
    }
    if parent or root:
        record['reply'] = {'parent': parent, 'root': root or parent}
    return envelope(actor, POST_COLLECTION, rkey, operation, record)


def vote_event(actor, rkey, subject, direction='up', operation='create'):
    record = {
        'subject': {'uri': subject, 'cid': 'bafysubject'},
        'direction': direction,
        'createdAt': '2024-09-09T19:46:02.102Z',
    }
    return envelope(actor, VOTE_COLLECTION, rkey, operation, record)


def reply_event(actor, rkey, community, parent=None, root=None):
    """Post whose reply block carries exactly the given references"""
    reply = {}
    if parent:
        reply['parent'] = parent
    if root:
        reply['root'] = root
    record = {
        'communityRef': community,
        'text': f'reply {rkey}',
        'createdAt': '2024-09-09T19:46:02.102Z',
        'reply': reply,
    }
    return envelope(actor, POST_COLLECTION, rkey, 'create', record)
