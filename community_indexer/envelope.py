"""
Jetstream frame parsing.

Jetstream delivers one JSON object per websocket frame:

    {
        "did": "did:plc:...",
        "time_us": 1725911162329308,
        "kind": "commit",
        "commit": {
            "rev": "...",
            "operation": "create" | "update" | "delete",
            "collection": "mlcommons.community.post",
            "rkey": "3l3qo2vutsw2b",
            "record": {...},      # create/update only
            "cid": "bafyrei..."   # create/update only
        }
    }

Only commit frames become envelopes; identity/account frames and anything
malformed are dropped here.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Union

logger = logging.getLogger(__name__)

URI_SCHEME = "at://"

CREATE = "create"
UPDATE = "update"
DELETE = "delete"
OPERATIONS = (CREATE, UPDATE, DELETE)


class MalformedEnvelope(ValueError):
    """Raised when a frame does not have the envelope shape"""


@dataclass(frozen=True)
class RecordRef:
    """Identifies one logical record across its create/update/delete lifecycle"""

    actor_id: str
    collection: str
    rkey: str

    @property
    def uri(self) -> str:
        return f"{URI_SCHEME}{self.actor_id}/{self.collection}/{self.rkey}"

    @classmethod
    def parse(cls, uri: str) -> "RecordRef":
        if not isinstance(uri, str) or not uri.startswith(URI_SCHEME):
            raise ValueError(f"Not a record URI: {uri!r}")
        parts = uri[len(URI_SCHEME):].split('/')
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Not a record URI: {uri!r}")
        return cls(*parts)


@dataclass(frozen=True)
class Envelope:
    actor_id: str
    operation: str
    collection: str
    rkey: str
    time_us: int
    record: Optional[Dict[str, Any]] = None
    cid: Optional[str] = None

    @property
    def ref(self) -> RecordRef:
        return RecordRef(self.actor_id, self.collection, self.rkey)

    @property
    def uri(self) -> str:
        return self.ref.uri

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Envelope":
        """Build an envelope from a decoded commit frame"""
        if not isinstance(data, dict):
            raise MalformedEnvelope("frame is not a JSON object")

        actor_id = data.get('did')
        if not isinstance(actor_id, str) or not actor_id:
            raise MalformedEnvelope("missing did")

        time_us = data.get('time_us')
        if isinstance(time_us, bool) or not isinstance(time_us, int):
            raise MalformedEnvelope("missing or non-integer time_us")

        commit = data.get('commit')
        if not isinstance(commit, dict):
            raise MalformedEnvelope("missing commit")

        operation = commit.get('operation')
        if operation not in OPERATIONS:
            raise MalformedEnvelope(f"unknown operation {operation!r}")

        collection = commit.get('collection')
        rkey = commit.get('rkey')
        if not isinstance(collection, str) or not collection:
            raise MalformedEnvelope("missing collection")
        if not isinstance(rkey, str) or not rkey or '/' in rkey:
            raise MalformedEnvelope("missing or invalid rkey")

        record = commit.get('record')
        if record is not None and not isinstance(record, dict):
            raise MalformedEnvelope("record is not an object")

        cid = commit.get('cid')
        if cid is not None and not isinstance(cid, str):
            cid = str(cid)

        return cls(
            actor_id=actor_id,
            operation=operation,
            collection=collection,
            rkey=rkey,
            time_us=time_us,
            record=record,
            cid=cid or None,
        )


def parse_frame(frame: Union[str, bytes]) -> Optional[Envelope]:
    """Parse a raw Jetstream frame, returning None for anything not handled"""
    try:
        if isinstance(frame, (bytes, bytearray)):
            frame = frame.decode('utf-8')
        data = json.loads(frame)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"[PARSER] Dropping undecodable frame: {e}")
        return None

    if not isinstance(data, dict):
        logger.warning("[PARSER] Dropping frame that is not a JSON object")
        return None

    kind = data.get('kind')
    if kind != 'commit':
        # identity/account frames carry nothing we mirror
        logger.debug(f"[PARSER] Skipping {kind} frame")
        return None

    try:
        return Envelope.from_dict(data)
    except MalformedEnvelope as e:
        logger.warning(f"[PARSER] Dropping malformed commit frame: {e}")
        return None
