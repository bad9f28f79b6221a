"""Post store: posts, like/share sets and their counters.

Set membership changes are single atomic statements (insert-ignore or delete)
and each counter moves only when membership actually changed, so counters stay
equal to set sizes under concurrent requests.
"""

import uuid
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .activitypub_types import AS_PUBLIC, Note, text_to_html
from .actors import ActorDirectory
from .config import Visibility
from .errors import ForbiddenError, InvalidInputError, PostNotFoundError
from .models import Actor, Comment, NotificationType, Post, PostLike, PostShare, insert_ignore
from .notifications import CreateNotification, NotificationService

logger = structlog.get_logger()


@dataclass
class PostOptions:
    """Optional post attributes."""
    visibility: Visibility | str | None = None
    sensitive: bool = False
    content_warning: str | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    # Set for posts received through federation
    uri: str | None = None
    in_reply_to: str | None = None


@dataclass
class LikeResult:
    changed: bool
    like_count: int


class PostStore:
    """Owns posts and the like/share relations."""

    def __init__(
        self,
        directory: ActorDirectory,
        notifications: NotificationService,
        max_length: int = 500,
        default_visibility: Visibility = Visibility.PUBLIC,
    ):
        self.directory = directory
        self.notifications = notifications
        self.max_length = max_length
        self.default_visibility = default_visibility

    def _validate(self, content: str, options: PostOptions) -> Visibility:
        if not content.strip() and not options.attachments:
            raise InvalidInputError("Post content must not be empty")
        if len(content) > self.max_length:
            raise InvalidInputError(
                f"Post content exceeds {self.max_length} characters ({len(content)})"
            )

        try:
            visibility = Visibility(options.visibility or self.default_visibility)
        except ValueError as e:
            raise InvalidInputError(f"Invalid visibility: {options.visibility!r}") from e

        if options.content_warning and not options.sensitive:
            raise InvalidInputError("A content warning requires the post to be marked sensitive")

        return visibility

    # === Posts ===

    async def create_post(
        self,
        session: AsyncSession,
        author_id: int,
        content: str,
        options: PostOptions | None = None,
    ) -> Post:
        """Create a post with empty like/share sets and zero counters.

        Args:
            session: Database session
            author_id: Authoring actor
            content: Post text
            options: Visibility, sensitivity, content warning, attachments

        Returns:
            The stored post

        Raises:
            ActorNotFoundError: If the author does not exist
            InvalidInputError: If content or options are invalid
        """
        options = options or PostOptions()
        content = content or ""
        visibility = self._validate(content, options)
        author = await self.directory.get_actor(session, author_id)

        post = Post(
            uri=options.uri or f"{author.uri}/statuses/{uuid.uuid4().hex}",
            author_id=author.id,
            content=content,
            visibility=visibility,
            sensitive=options.sensitive,
            content_warning=options.content_warning or None,
            attachments=list(options.attachments),
            in_reply_to=options.in_reply_to,
            like_count=0,
            share_count=0,
            reply_count=0,
        )
        session.add(post)
        await session.commit()

        logger.info(
            "Post created",
            post_id=post.id,
            author_id=author.id,
            visibility=visibility.value,
            remote=not author.is_local,
        )
        return post

    async def get_post(self, session: AsyncSession, post_id: int) -> Post:
        """Get post by id.

        Raises:
            PostNotFoundError: If no such post exists
        """
        post = await session.get(Post, post_id, populate_existing=True)
        if post is None:
            raise PostNotFoundError(f"Post {post_id} not found")
        return post

    async def get_post_by_uri(self, session: AsyncSession, uri: str) -> Post | None:
        result = await session.execute(select(Post).where(Post.uri == uri))
        return result.scalar_one_or_none()

    async def update_post(
        self,
        session: AsyncSession,
        post_id: int,
        actor_id: int,
        content: str | None = None,
        options: PostOptions | None = None,
    ) -> Post:
        """Edit a post; only its author may do so.

        Raises:
            PostNotFoundError: If the post does not exist
            ForbiddenError: If actor_id is not the author
            InvalidInputError: If the edited post would be invalid
        """
        post = await self.get_post(session, post_id)
        if post.author_id != actor_id:
            raise ForbiddenError("Only the author can edit this post")

        merged = options or PostOptions(
            visibility=post.visibility,
            sensitive=post.sensitive,
            content_warning=post.content_warning,
            attachments=post.attachments,
        )
        new_content = post.content if content is None else content
        visibility = self._validate(new_content, merged)

        post.content = new_content
        post.visibility = visibility
        post.sensitive = merged.sensitive
        post.content_warning = merged.content_warning or None
        post.attachments = list(merged.attachments)
        await session.commit()

        logger.info("Post updated", post_id=post_id)
        return post

    async def delete_post(self, session: AsyncSession, post_id: int, actor_id: int) -> None:
        """Delete a post with its likes, shares and comments (author only)."""
        post = await self.get_post(session, post_id)
        if post.author_id != actor_id:
            raise ForbiddenError("Only the author can delete this post")

        await session.execute(delete(PostLike).where(PostLike.post_id == post_id))
        await session.execute(delete(PostShare).where(PostShare.post_id == post_id))
        await session.execute(delete(Comment).where(Comment.post_id == post_id))
        await session.delete(post)
        await session.commit()

        logger.info("Post deleted", post_id=post_id)

    async def list_posts_by_author(
        self,
        session: AsyncSession,
        author_id: int,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Post]:
        result = await session.execute(
            select(Post)
            .where(Post.author_id == author_id)
            .order_by(Post.created_at.desc(), Post.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_feed(
        self,
        session: AsyncSession,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Post]:
        """Public and local posts, newest first."""
        result = await session.execute(
            select(Post)
            .where(Post.visibility.in_([Visibility.PUBLIC, Visibility.LOCAL]))
            .order_by(Post.created_at.desc(), Post.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    # === Likes ===

    async def like_post(self, session: AsyncSession, post_id: int, actor_id: int) -> LikeResult:
        """Add actor to the post's liker set.

        The author is notified only when the like is new and is not their own.

        Raises:
            PostNotFoundError: If the post does not exist
            ActorNotFoundError: If the actor does not exist
        """
        post = await self.get_post(session, post_id)
        await self.directory.get_actor(session, actor_id)

        added = await insert_ignore(session, PostLike, {"post_id": post_id, "actor_id": actor_id})
        if added:
            await session.execute(
                update(Post).where(Post.id == post_id).values(like_count=Post.like_count + 1)
            )
        await session.commit()

        like_count = await session.scalar(select(Post.like_count).where(Post.id == post_id))

        if added:
            logger.info("Post liked", post_id=post_id, actor_id=actor_id)
            if post.author_id != actor_id:
                self.notifications.notify(CreateNotification(
                    type=NotificationType.LIKE,
                    recipient_id=post.author_id,
                    actor_id=actor_id,
                    post_id=post_id,
                ))

        return LikeResult(changed=added, like_count=like_count or 0)

    async def unlike_post(self, session: AsyncSession, post_id: int, actor_id: int) -> bool:
        """Remove actor from the liker set.

        Returns:
            True if a like was removed, False if the actor had not liked it

        Raises:
            PostNotFoundError: If the post does not exist
        """
        await self.get_post(session, post_id)

        result = await session.execute(
            delete(PostLike).where(PostLike.post_id == post_id, PostLike.actor_id == actor_id)
        )
        removed = result.rowcount > 0
        if removed:
            await session.execute(
                update(Post)
                .where(Post.id == post_id, Post.like_count > 0)
                .values(like_count=Post.like_count - 1)
            )
        await session.commit()

        if removed:
            logger.info("Post unliked", post_id=post_id, actor_id=actor_id)
        return removed

    async def has_liked(self, session: AsyncSession, post_id: int, actor_id: int) -> bool:
        result = await session.execute(
            select(PostLike.id).where(PostLike.post_id == post_id, PostLike.actor_id == actor_id)
        )
        return result.first() is not None

    async def get_likers(
        self,
        session: AsyncSession,
        post_id: int,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Actor]:
        await self.get_post(session, post_id)
        result = await session.execute(
            select(Actor)
            .join(PostLike, PostLike.actor_id == Actor.id)
            .where(PostLike.post_id == post_id)
            .order_by(PostLike.created_at, PostLike.id)
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    # === Shares ===

    async def share_post(self, session: AsyncSession, post_id: int, actor_id: int) -> bool:
        """Add actor to the sharer set. Shares do not notify."""
        await self.get_post(session, post_id)
        await self.directory.get_actor(session, actor_id)

        added = await insert_ignore(session, PostShare, {"post_id": post_id, "actor_id": actor_id})
        if added:
            await session.execute(
                update(Post).where(Post.id == post_id).values(share_count=Post.share_count + 1)
            )
        await session.commit()

        if added:
            logger.info("Post shared", post_id=post_id, actor_id=actor_id)
        return added

    async def unshare_post(self, session: AsyncSession, post_id: int, actor_id: int) -> bool:
        await self.get_post(session, post_id)

        result = await session.execute(
            delete(PostShare).where(PostShare.post_id == post_id, PostShare.actor_id == actor_id)
        )
        removed = result.rowcount > 0
        if removed:
            await session.execute(
                update(Post)
                .where(Post.id == post_id, Post.share_count > 0)
                .values(share_count=Post.share_count - 1)
            )
        await session.commit()

        if removed:
            logger.info("Post unshared", post_id=post_id, actor_id=actor_id)
        return removed

    # === Reply counter ===
    # Callers commit; the comment service runs these in the comment's transaction.

    async def increment_reply_count(self, session: AsyncSession, post_id: int) -> None:
        result = await session.execute(
            update(Post).where(Post.id == post_id).values(reply_count=Post.reply_count + 1)
        )
        if result.rowcount == 0:
            raise PostNotFoundError(f"Post {post_id} not found")

    async def decrement_reply_count(self, session: AsyncSession, post_id: int) -> None:
        await session.execute(
            update(Post)
            .where(Post.id == post_id, Post.reply_count > 0)
            .values(reply_count=Post.reply_count - 1)
        )

    # === Representations ===

    async def format_post(
        self,
        session: AsyncSession,
        post: Post,
        viewer_id: int | None = None,
    ) -> dict[str, Any]:
        """Client representation with author summary and viewer state."""
        author = await session.get(Actor, post.author_id)
        liked = False
        if viewer_id is not None:
            liked = await self.has_liked(session, post.id, viewer_id)

        return {
            "id": post.id,
            "uri": post.uri,
            "author": self.directory.actor_summary(author).to_dict() if author else None,
            "content": post.content,
            "visibility": post.visibility.value,
            "sensitive": post.sensitive,
            "contentWarning": post.content_warning,
            "attachments": post.attachments,
            "likeCount": post.like_count,
            "shareCount": post.share_count,
            "replyCount": post.reply_count,
            "likedByViewer": liked,
            "createdAt": post.created_at.isoformat(),
        }

    def build_note(self, post: Post, author: Actor) -> Note:
        """Build ActivityPub Note for a post."""
        if post.visibility == Visibility.PUBLIC:
            to = [AS_PUBLIC]
            cc = [f"{author.uri}/followers"]
        else:
            to = [f"{author.uri}/followers"]
            cc = []

        published = post.created_at
        if published.tzinfo is None:
            published = published.replace(tzinfo=timezone.utc)

        return Note(
            id=post.uri,
            content=text_to_html(post.content),
            attributed_to=author.uri,
            published=published.isoformat(),
            to=to,
            cc=cc,
            in_reply_to=post.in_reply_to,
            sensitive=post.sensitive,
            summary=post.content_warning,
            attachment=list(post.attachments),
        )
