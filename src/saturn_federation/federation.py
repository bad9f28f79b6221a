"""Federation inbox processing and ActivityPub collections.

Implements:
- Inbox: apply Follow, Like, Announce, Create{Note} and their Undo forms
  from remote servers to local state
- Audit log of inbound activities with redelivery detection
- Followers/following collections of local actors
"""

import uuid
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .activitypub_types import (
    AnnounceActivity,
    CreateNoteActivity,
    FollowActivity,
    InboundActivity,
    LikeActivity,
    OrderedCollection,
    OrderedCollectionPage,
    UndoActivity,
    UnknownActivity,
    parse_inbound_activity,
)
from .actors import ActorDirectory
from .comments import CommentService
from .errors import ActorNotFoundError, ConflictError, InvalidInputError, NotFoundError, SaturnError
from .models import Actor, InboxActivity, InboxOutcome, NotificationType, Post, insert_ignore
from .notifications import CreateNotification, NotificationService
from .posts import PostOptions, PostStore

logger = structlog.get_logger()


@dataclass
class InboxAck:
    """Acknowledgment returned for every accepted inbox delivery."""
    status: InboxOutcome
    reason: str | None = None
    activity_id: str | None = None

    @classmethod
    def applied(cls, reason: str | None = None) -> "InboxAck":
        return cls(status=InboxOutcome.APPLIED, reason=reason)

    @classmethod
    def ignored(cls, reason: str) -> "InboxAck":
        return cls(status=InboxOutcome.IGNORED, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value}
        if self.reason:
            data["reason"] = self.reason
        if self.activity_id:
            data["activityId"] = self.activity_id
        return data


class InboxProcessor:
    """Translates inbound activities into directory, post and comment operations."""

    def __init__(
        self,
        directory: ActorDirectory,
        posts: PostStore,
        comments: CommentService,
        notifications: NotificationService,
        page_size: int = 20,
    ):
        """Initialize inbox processor.

        Args:
            directory: Actor directory
            posts: Post store
            comments: Comment service
            notifications: Notification service
            page_size: Items per collection page
        """
        self.directory = directory
        self.posts = posts
        self.comments = comments
        self.notifications = notifications
        self.page_size = page_size

    # === Inbox Handler ===

    async def process(
        self,
        session: AsyncSession,
        activity_data: dict[str, Any],
        target_handle: str,
    ) -> InboxAck:
        """Handle an activity delivered to a local actor's inbox.

        Args:
            session: Database session
            activity_data: Incoming activity JSON
            target_handle: Handle of the receiving local actor

        Returns:
            Acknowledgment with outcome ``applied`` or ``ignored``

        Raises:
            MalformedActivityError: If the payload is structurally invalid
            ActorNotFoundError: If the target handle is not a local actor
        """
        activity = parse_inbound_activity(activity_data)

        target = await self.directory.get_actor_by_handle(session, target_handle)
        if target is None or not target.is_local:
            raise ActorNotFoundError(f"Unknown actor: {target_handle}")

        activity_id = activity.id or f"urn:uuid:{uuid.uuid4()}"
        activity_type = activity_data.get("type")
        if not isinstance(activity_type, str):
            activity_type = str(activity_type[0])

        logger.info(
            "Processing inbox activity",
            type=activity_type,
            activity_id=activity_id,
            from_actor=activity.actor,
            to_actor=target_handle,
        )

        recorded = await insert_ignore(session, InboxActivity, {
            "activity_id": activity_id,
            "activity_type": activity_type,
            "actor_uri": activity.actor,
            "target_handle": target_handle,
            "activity_json": activity_data,
        })
        await session.commit()
        if not recorded:
            # A row without an outcome is a delivery that failed mid-way
            outcome = await session.scalar(
                select(InboxActivity.outcome).where(InboxActivity.activity_id == activity_id)
            )
            if outcome is not None:
                logger.info("Ignoring redelivered activity", activity_id=activity_id)
                ack = InboxAck.ignored("duplicate")
                ack.activity_id = activity_id
                return ack
            logger.info("Retrying unfinished activity", activity_id=activity_id)

        try:
            ack = await self._dispatch(session, activity)
        except (InvalidInputError, NotFoundError, ConflictError) as e:
            await session.rollback()
            logger.warning(
                "Inbox activity rejected",
                activity_id=activity_id,
                type=activity_type,
                error=str(e),
            )
            ack = InboxAck.ignored(str(e))
        except Exception:
            await session.rollback()
            logger.error("Inbox activity failed", activity_id=activity_id, type=activity_type, exc_info=True)
            raise

        await session.execute(
            update(InboxActivity)
            .where(InboxActivity.activity_id == activity_id)
            .values(outcome=ack.status, reason=ack.reason)
        )
        await session.commit()

        logger.info(
            "Inbox activity processed",
            activity_id=activity_id,
            outcome=ack.status.value,
            reason=ack.reason,
        )
        ack.activity_id = activity_id
        return ack

    async def _dispatch(self, session: AsyncSession, activity: InboundActivity) -> InboxAck:
        if isinstance(activity, FollowActivity):
            return await self._handle_follow(session, activity)
        elif isinstance(activity, LikeActivity):
            return await self._handle_like(session, activity)
        elif isinstance(activity, AnnounceActivity):
            return await self._handle_announce(session, activity)
        elif isinstance(activity, CreateNoteActivity):
            return await self._handle_create_note(session, activity)
        elif isinstance(activity, UndoActivity):
            return await self._handle_undo(session, activity)
        elif isinstance(activity, UnknownActivity):
            logger.debug("Ignoring unsupported activity type", type=activity.type)
            return InboxAck.ignored(f"unsupported type: {activity.type}")
        raise SaturnError(f"Unhandled activity variant: {type(activity).__name__}")

    async def _local_actor(self, session: AsyncSession, uri: str) -> Actor | None:
        actor = await self.directory.get_actor_by_uri(session, uri)
        if actor is None or not actor.is_local:
            return None
        return actor

    async def _local_post(self, session: AsyncSession, uri: str) -> Post | None:
        """Post named by uri if it exists and was authored on this server."""
        post = await self.posts.get_post_by_uri(session, uri)
        if post is None:
            return None
        author = await session.get(Actor, post.author_id)
        if author is None or not author.is_local:
            return None
        return post

    async def _handle_follow(self, session: AsyncSession, activity: FollowActivity) -> InboxAck:
        followee = await self._local_actor(session, activity.object)
        if followee is None:
            return InboxAck.ignored("follow target is not a local actor")

        follower = await self.directory.get_or_create_remote_actor(session, activity.actor)
        if follower.id == followee.id:
            return InboxAck.ignored("self-follow")

        created = await self.directory.follow(session, follower.id, followee.id)
        if not created:
            return InboxAck.ignored("already following")

        self.notifications.notify(CreateNotification(
            type=NotificationType.FOLLOW,
            recipient_id=followee.id,
            actor_id=follower.id,
        ))

        logger.info("Accepted follow", from_actor=activity.actor, to_actor=followee.uri)
        return InboxAck.applied()

    async def _handle_like(self, session: AsyncSession, activity: LikeActivity) -> InboxAck:
        post = await self._local_post(session, activity.object)
        if post is None:
            return InboxAck.ignored("object is not a local post")

        actor = await self.directory.get_or_create_remote_actor(session, activity.actor)
        result = await self.posts.like_post(session, post.id, actor.id)
        if not result.changed:
            return InboxAck.ignored("already liked")
        return InboxAck.applied()

    async def _handle_announce(self, session: AsyncSession, activity: AnnounceActivity) -> InboxAck:
        post = await self._local_post(session, activity.object)
        if post is None:
            return InboxAck.ignored("object is not a local post")

        actor = await self.directory.get_or_create_remote_actor(session, activity.actor)
        if not await self.posts.share_post(session, post.id, actor.id):
            return InboxAck.ignored("already shared")
        return InboxAck.applied()

    async def _handle_create_note(
        self,
        session: AsyncSession,
        activity: CreateNoteActivity,
    ) -> InboxAck:
        """Store a remote note as a comment (reply to a local post) or a post."""
        if not activity.note_id:
            return InboxAck.ignored("note has no id")

        author = await self.directory.get_or_create_remote_actor(
            session, activity.actor, activity.actor_document
        )

        if activity.in_reply_to:
            parent = await self._local_post(session, activity.in_reply_to)
            if parent is not None:
                if await self.comments.get_comment_by_uri(session, activity.note_id):
                    return InboxAck.ignored("note already stored")
                comment = await self.comments.create_comment(
                    session, parent.id, author.id, activity.content, uri=activity.note_id
                )
                logger.info("Stored remote reply", comment_id=comment["id"], post_id=parent.id)
                return InboxAck.applied()

        if await self.posts.get_post_by_uri(session, activity.note_id):
            return InboxAck.ignored("note already stored")

        post = await self.posts.create_post(
            session,
            author.id,
            activity.content,
            PostOptions(
                sensitive=activity.sensitive or bool(activity.summary),
                content_warning=activity.summary,
                attachments=activity.attachments,
                uri=activity.note_id,
                in_reply_to=activity.in_reply_to,
            ),
        )

        notified: set[int] = set()
        for mentioned_uri in activity.mentions:
            mentioned = await self._local_actor(session, mentioned_uri)
            if mentioned is None or mentioned.id in notified:
                continue
            notified.add(mentioned.id)
            self.notifications.notify(CreateNotification(
                type=NotificationType.MENTION,
                recipient_id=mentioned.id,
                actor_id=author.id,
                post_id=post.id,
            ))

        return InboxAck.applied()

    async def _handle_undo(self, session: AsyncSession, activity: UndoActivity) -> InboxAck:
        undone = activity.undone
        if undone.actor != activity.actor:
            return InboxAck.ignored("undo actor mismatch")

        actor = await self.directory.get_actor_by_uri(session, activity.actor)
        if actor is None:
            return InboxAck.ignored("unknown actor")

        if isinstance(undone, FollowActivity):
            followee = await self._local_actor(session, undone.object)
            if followee is None:
                return InboxAck.ignored("follow target is not a local actor")
            if not await self.directory.unfollow(session, actor.id, followee.id):
                return InboxAck.ignored("not following")
            logger.info("Processed unfollow", from_actor=activity.actor, to_actor=followee.uri)
            return InboxAck.applied()

        post = await self._local_post(session, undone.object)
        if post is None:
            return InboxAck.ignored("object is not a local post")

        if isinstance(undone, LikeActivity):
            removed = await self.posts.unlike_post(session, post.id, actor.id)
        else:
            removed = await self.posts.unshare_post(session, post.id, actor.id)

        if not removed:
            return InboxAck.ignored("nothing to undo")
        return InboxAck.applied()

    # === Followers/Following Collections ===

    async def followers_collection(
        self,
        session: AsyncSession,
        handle: str,
        page: int | None = None,
    ) -> dict[str, Any]:
        """Get actor's followers collection."""
        return await self._collection(session, handle, "followers", page)

    async def following_collection(
        self,
        session: AsyncSession,
        handle: str,
        page: int | None = None,
    ) -> dict[str, Any]:
        """Get actor's following collection."""
        return await self._collection(session, handle, "following", page)

    async def _collection(
        self,
        session: AsyncSession,
        handle: str,
        kind: str,
        page: int | None,
    ) -> dict[str, Any]:
        actor = await self.directory.get_actor_by_handle(session, handle)
        if actor is None or not actor.is_local:
            raise ActorNotFoundError(f"Unknown actor: {handle}")

        collection_url = f"{actor.uri}/{kind}"

        if page is None:
            if kind == "followers":
                total = await self.directory.count_followers(session, actor.id)
            else:
                total = await self.directory.count_following(session, actor.id)
            return OrderedCollection(
                id=collection_url,
                total_items=total,
                first=f"{collection_url}?page=1",
            ).to_dict()

        if page < 1:
            raise InvalidInputError(f"Invalid page: {page}")

        offset = (page - 1) * self.page_size
        if kind == "followers":
            members = await self.directory.get_followers(session, actor.id, self.page_size, offset)
        else:
            members = await self.directory.get_following(session, actor.id, self.page_size, offset)

        collection_page = OrderedCollectionPage(
            id=f"{collection_url}?page={page}",
            part_of=collection_url,
            items=[member.uri for member in members],
        )

        if len(members) == self.page_size:
            collection_page.next = f"{collection_url}?page={page + 1}"
        if page > 1:
            collection_page.prev = f"{collection_url}?page={page - 1}"

        return collection_page.to_dict()
