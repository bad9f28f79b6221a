"""ActivityPub protocol types and utilities.

This module implements the ActivityPub/ActivityStreams documents this server
publishes (actors, notes, collections) and the tagged variants inbound
activities are parsed into before the inbox state machine sees them.

References:
- ActivityPub: https://www.w3.org/TR/activitypub/
- ActivityStreams 2.0: https://www.w3.org/TR/activitystreams-core/
- Mastodon API: https://docs.joinmastodon.org/spec/activitypub/
"""

import html
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeAlias, Union
from urllib.parse import urlparse

from .errors import MalformedActivityError

# JSON-LD contexts for ActivityPub
ACTIVITY_STREAMS_CONTEXT = "https://www.w3.org/ns/activitystreams"
SECURITY_CONTEXT = "https://w3id.org/security/v1"

# Standard ActivityPub context
AP_CONTEXT: list[str | dict] = [
    ACTIVITY_STREAMS_CONTEXT,
    SECURITY_CONTEXT,
]

# Content types
AP_CONTENT_TYPE = "application/activity+json"
AP_ACCEPT_HEADER = 'application/activity+json, application/ld+json; profile="https://www.w3.org/ns/activitystreams"'
JRD_CONTENT_TYPE = "application/jrd+json"

# Public addressing
AS_PUBLIC = "https://www.w3.org/ns/activitystreams#Public"

# Type aliases
JsonDict: TypeAlias = dict[str, Any]


class ActivityType(str, Enum):
    """ActivityPub activity types."""
    # Content
    CREATE = "Create"

    # Social activities
    FOLLOW = "Follow"
    UNDO = "Undo"

    # Reactions
    LIKE = "Like"
    ANNOUNCE = "Announce"  # Boost/reblog


class ObjectType(str, Enum):
    """ActivityPub object types."""
    # Actors
    PERSON = "Person"
    SERVICE = "Service"
    APPLICATION = "Application"
    GROUP = "Group"
    ORGANIZATION = "Organization"

    # Content
    NOTE = "Note"

    # Collections
    ORDERED_COLLECTION = "OrderedCollection"
    ORDERED_COLLECTION_PAGE = "OrderedCollectionPage"


@dataclass
class PublicKey:
    """RSA public key for HTTP signatures."""
    id: str  # e.g., https://saturn.social/users/alice#main-key
    owner: str  # Actor ID
    public_key_pem: str

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        return {
            "id": self.id,
            "owner": self.owner,
            "publicKeyPem": self.public_key_pem,
        }


@dataclass
class ActorDocument:
    """ActivityPub Actor (Person, Service, etc.)."""
    id: str  # https://saturn.social/users/alice
    type: ObjectType = ObjectType.PERSON
    preferred_username: str = ""
    name: str = ""  # Display name
    summary: str = ""  # Bio/about
    url: str = ""  # Profile URL
    inbox: str = ""
    outbox: str = ""
    followers: str = ""
    following: str = ""
    public_key: PublicKey | None = None
    icon: JsonDict | None = None  # Avatar
    manually_approves_followers: bool = False
    discoverable: bool = True
    published: str = ""  # ISO timestamp

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        actor = {
            "@context": AP_CONTEXT,
            "id": self.id,
            "type": self.type.value,
            "preferredUsername": self.preferred_username,
            "name": self.name or self.preferred_username,
            "summary": self.summary,
            "url": self.url or self.id,
            "inbox": self.inbox,
            "outbox": self.outbox,
            "followers": self.followers,
            "following": self.following,
            "manuallyApprovesFollowers": self.manually_approves_followers,
            "discoverable": self.discoverable,
        }

        if self.public_key:
            actor["publicKey"] = self.public_key.to_dict()

        if self.icon:
            actor["icon"] = self.icon

        if self.published:
            actor["published"] = self.published

        return actor


@dataclass
class Note:
    """ActivityPub Note object (post/status)."""
    id: str
    content: str
    attributed_to: str  # Actor ID
    published: str = ""
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    in_reply_to: str | None = None
    url: str = ""
    sensitive: bool = False
    summary: str | None = None  # Content warning
    tag: list[JsonDict] = field(default_factory=list)
    attachment: list[JsonDict] = field(default_factory=list)

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        note = {
            "@context": AP_CONTEXT,
            "id": self.id,
            "type": ObjectType.NOTE.value,
            "content": self.content,
            "attributedTo": self.attributed_to,
            "published": self.published or datetime.now(timezone.utc).isoformat(),
            "to": self.to,
            "cc": self.cc,
            "url": self.url or self.id,
            "sensitive": self.sensitive,
        }

        if self.in_reply_to:
            note["inReplyTo"] = self.in_reply_to

        if self.summary:
            note["summary"] = self.summary

        if self.tag:
            note["tag"] = self.tag

        if self.attachment:
            note["attachment"] = self.attachment

        return note


@dataclass
class OrderedCollection:
    """ActivityPub OrderedCollection for followers/following."""
    id: str
    total_items: int = 0
    first: str = ""  # First page URL
    last: str = ""  # Last page URL

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        collection = {
            "@context": AP_CONTEXT,
            "id": self.id,
            "type": ObjectType.ORDERED_COLLECTION.value,
            "totalItems": self.total_items,
        }

        if self.first:
            collection["first"] = self.first
        if self.last:
            collection["last"] = self.last

        return collection


@dataclass
class OrderedCollectionPage:
    """Page of an OrderedCollection."""
    id: str
    part_of: str  # Parent collection ID
    items: list[str | JsonDict] = field(default_factory=list)
    next: str = ""
    prev: str = ""

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        page = {
            "@context": AP_CONTEXT,
            "id": self.id,
            "type": ObjectType.ORDERED_COLLECTION_PAGE.value,
            "partOf": self.part_of,
            "orderedItems": self.items,
        }

        if self.next:
            page["next"] = self.next
        if self.prev:
            page["prev"] = self.prev

        return page


# === Inbound activity variants ===


@dataclass
class FollowActivity:
    id: str
    actor: str
    object: str  # Followed actor URI


@dataclass
class LikeActivity:
    id: str
    actor: str
    object: str  # Liked object URI


@dataclass
class AnnounceActivity:
    id: str
    actor: str
    object: str  # Shared object URI


@dataclass
class CreateNoteActivity:
    """Create wrapping an inline Note."""
    id: str
    actor: str
    note_id: str
    content: str  # Plain text
    in_reply_to: str | None = None
    sensitive: bool = False
    summary: str | None = None
    mentions: list[str] = field(default_factory=list)  # Mentioned actor URIs
    attachments: list[JsonDict] = field(default_factory=list)
    actor_document: JsonDict | None = None


@dataclass
class UndoActivity:
    """Undo of a Follow, Like or Announce."""
    id: str
    actor: str
    undone: "InboundActivity"


@dataclass
class UnknownActivity:
    """Anything the inbox does not act on; kept raw for the audit log."""
    id: str
    actor: str
    type: str
    raw: JsonDict


InboundActivity = Union[
    FollowActivity,
    LikeActivity,
    AnnounceActivity,
    CreateNoteActivity,
    UndoActivity,
    UnknownActivity,
]


def _object_id(value: Any) -> str:
    """Return the ID of an object given inline or as a bare URI."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id", "") or ""
    return ""


def _actor_id(value: Any) -> str:
    if isinstance(value, list):
        value = value[0] if value else ""
    return _object_id(value)


def parse_inbound_activity(data: Any, _nested: bool = False) -> InboundActivity:
    """Parse a raw inbound activity into its tagged variant.

    Args:
        data: Decoded JSON payload

    Returns:
        One of the InboundActivity variants; unsupported shapes become
        UnknownActivity

    Raises:
        MalformedActivityError: If the payload is not an object or lacks
            ``type`` or ``actor``
    """
    if not isinstance(data, dict):
        raise MalformedActivityError("Activity must be a JSON object")

    activity_type = data.get("type")
    if isinstance(activity_type, list):
        activity_type = activity_type[0] if activity_type else None
    if not activity_type or not isinstance(activity_type, str):
        raise MalformedActivityError("Activity is missing 'type'")

    actor = _actor_id(data.get("actor"))
    if not actor and not _nested:
        raise MalformedActivityError("Activity is missing 'actor'")

    activity_id = data.get("id") or ""
    if not isinstance(activity_id, str):
        raise MalformedActivityError("Activity 'id' must be a string")

    obj = data.get("object")
    target = _object_id(obj)

    if activity_type == ActivityType.FOLLOW.value and target:
        return FollowActivity(id=activity_id, actor=actor, object=target)

    if activity_type == ActivityType.LIKE.value and target:
        return LikeActivity(id=activity_id, actor=actor, object=target)

    if activity_type == ActivityType.ANNOUNCE.value and target:
        return AnnounceActivity(id=activity_id, actor=actor, object=target)

    if activity_type == ActivityType.CREATE.value and isinstance(obj, dict):
        if obj.get("type") == ObjectType.NOTE.value:
            return _parse_create_note(activity_id, actor, obj, data)

    if activity_type == ActivityType.UNDO.value and isinstance(obj, dict) and not _nested:
        inner_data = dict(obj)
        inner_data.setdefault("actor", actor)
        try:
            inner = parse_inbound_activity(inner_data, _nested=True)
        except MalformedActivityError:
            inner = None
        if isinstance(inner, (FollowActivity, LikeActivity, AnnounceActivity)):
            return UndoActivity(id=activity_id, actor=actor, undone=inner)

    return UnknownActivity(id=activity_id, actor=actor, type=activity_type, raw=data)


def _parse_create_note(
    activity_id: str,
    actor: str,
    obj: JsonDict,
    data: JsonDict,
) -> CreateNoteActivity:
    for key in ("id", "content", "summary"):
        value = obj.get(key)
        if value is not None and not isinstance(value, str):
            raise MalformedActivityError(f"Note '{key}' must be a string")

    tags = obj.get("tag", [])
    if isinstance(tags, dict):
        tags = [tags]
    attachments = obj.get("attachment", [])
    if isinstance(attachments, dict):
        attachments = [attachments]

    in_reply_to = obj.get("inReplyTo")
    actor_document = data.get("actor") if isinstance(data.get("actor"), dict) else None

    return CreateNoteActivity(
        id=activity_id,
        actor=actor,
        note_id=obj.get("id", "") or "",
        content=strip_html(obj.get("content", "") or ""),
        in_reply_to=_object_id(in_reply_to) or None,
        sensitive=bool(obj.get("sensitive", False)),
        summary=obj.get("summary") or None,
        mentions=extract_mentions_from_tags(tags),
        attachments=[a for a in attachments if isinstance(a, dict)],
        actor_document=actor_document,
    )


def parse_actor(data: JsonDict) -> ActorDocument | None:
    """Parse an Actor from JSON-LD data.

    Args:
        data: JSON-LD actor document

    Returns:
        ActorDocument instance or None if invalid
    """
    if not isinstance(data, dict) or not data.get("id"):
        return None

    actor_type = data.get("type", "Person")
    if isinstance(actor_type, list):
        actor_type = actor_type[0] if actor_type else "Person"

    public_key = None
    pk = data.get("publicKey")
    if isinstance(pk, dict):
        public_key = PublicKey(
            id=pk.get("id", ""),
            owner=pk.get("owner", ""),
            public_key_pem=pk.get("publicKeyPem", ""),
        )

    icon = data.get("icon")
    if isinstance(icon, list):
        icon = icon[0] if icon else None
    if not isinstance(icon, dict):
        icon = None

    return ActorDocument(
        id=data["id"],
        type=ObjectType(actor_type) if actor_type in [t.value for t in ObjectType] else ObjectType.PERSON,
        preferred_username=data.get("preferredUsername", "") or "",
        name=data.get("name", "") or "",
        summary=data.get("summary", "") or "",
        url=data.get("url", data["id"]) if isinstance(data.get("url", ""), str) else data["id"],
        inbox=data.get("inbox", "") or "",
        outbox=data.get("outbox", "") or "",
        followers=data.get("followers", "") or "",
        following=data.get("following", "") or "",
        public_key=public_key,
        icon=icon,
        manually_approves_followers=bool(data.get("manuallyApprovesFollowers", False)),
        discoverable=bool(data.get("discoverable", True)),
        published=data.get("published", "") or "",
    )


def strip_html(html_content: str) -> str:
    """Strip HTML tags from note content.

    Args:
        html_content: HTML content

    Returns:
        Plain text content
    """
    text = re.sub(r'<br\s*/?>', '\n', html_content)
    text = re.sub(r'<p\s*/?>', '', text)
    text = re.sub(r'</p>', '\n', text)
    text = re.sub(r'<[^>]+>', '', text)
    text = html.unescape(text)
    return text.strip()


def text_to_html(text: str) -> str:
    """Convert plain text to simple HTML."""
    escaped = html.escape(text)
    html_content = escaped.replace('\n', '<br>')
    return f"<p>{html_content}</p>"


def extract_mentions_from_tags(tags: list[JsonDict]) -> list[str]:
    """Extract mention actor IDs from ActivityPub tags.

    Args:
        tags: List of tag objects

    Returns:
        List of actor IDs
    """
    mentions = []
    for tag in tags:
        if isinstance(tag, dict) and tag.get("type") == "Mention" and tag.get("href"):
            mentions.append(tag["href"])
    return mentions


def extract_instance_domain(actor_id: str) -> str:
    """Extract instance domain from actor ID.

    Args:
        actor_id: Full actor ID URL (e.g., https://mastodon.social/users/alice)

    Returns:
        Instance domain (e.g., mastodon.social)
    """
    return urlparse(actor_id).netloc.lower()


def username_from_uri(actor_id: str) -> str:
    """Best-effort username from the last path segment of an actor URI."""
    path = urlparse(actor_id).path.rstrip("/")
    name = path.rsplit("/", 1)[-1] if path else ""
    return name.lstrip("@") or "unknown"
