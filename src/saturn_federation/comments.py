"""Comment service."""

from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .actors import ActorDirectory
from .errors import CommentNotFoundError, ForbiddenError, InvalidInputError
from .mentions import MentionResolver
from .models import Actor, Comment, NotificationType
from .notifications import CreateNotification, NotificationService
from .posts import PostStore

logger = structlog.get_logger()


class CommentService:
    """Creates and deletes comments, keeping the post reply count in step."""

    def __init__(
        self,
        directory: ActorDirectory,
        posts: PostStore,
        notifications: NotificationService,
        mentions: MentionResolver,
    ):
        self.directory = directory
        self.posts = posts
        self.notifications = notifications
        self.mentions = mentions

    async def create_comment(
        self,
        session: AsyncSession,
        post_id: int,
        author_id: int,
        content: str,
        uri: str | None = None,
    ) -> dict[str, Any]:
        """Create a comment on a post.

        The comment and the reply count move together in one transaction.
        Notifications to the post author and to mentioned actors are queued
        afterwards and cannot fail this call.

        Args:
            session: Database session
            post_id: Commented post
            author_id: Commenting actor
            content: Comment text
            uri: Federation URI for replies received from remote servers

        Returns:
            Formatted comment with the author summary

        Raises:
            PostNotFoundError: If the post does not exist
            ActorNotFoundError: If the author does not exist
            InvalidInputError: If the content is empty
        """
        content = (content or "").strip()
        if not content:
            raise InvalidInputError("Comment content must not be empty")

        post = await self.posts.get_post(session, post_id)
        author = await self.directory.get_actor(session, author_id)

        comment = Comment(post_id=post.id, author_id=author.id, content=content, uri=uri)
        session.add(comment)
        await session.flush()
        await self.posts.increment_reply_count(session, post.id)
        await session.commit()

        logger.info("Comment created", comment_id=comment.id, post_id=post.id, author_id=author.id)

        if post.author_id != author.id:
            self.notifications.notify(CreateNotification(
                type=NotificationType.COMMENT,
                recipient_id=post.author_id,
                actor_id=author.id,
                post_id=post.id,
                comment_id=comment.id,
            ))

        if "@" in content:
            self.notifications.fan_out(
                f"mentions:comment:{comment.id}",
                self._mention_job(content, author.id, post.id, comment.id),
            )

        return self.format_comment(comment, author)

    def _mention_job(self, content: str, author_id: int, post_id: int, comment_id: int):
        async def job(session: AsyncSession) -> None:
            # Each recipient is written by its own job
            for actor in await self.mentions.resolve(session, content):
                if actor.id == author_id:
                    continue
                self.notifications.notify(CreateNotification(
                    type=NotificationType.MENTION,
                    recipient_id=actor.id,
                    actor_id=author_id,
                    post_id=post_id,
                    comment_id=comment_id,
                ))
        return job

    async def delete_comment(
        self,
        session: AsyncSession,
        comment_id: int,
        requesting_actor_id: int,
    ) -> bool:
        """Delete a comment; only its author may do so.

        Returns:
            True if deleted, False if the comment does not exist

        Raises:
            ForbiddenError: If the requester is not the author
        """
        comment = await session.get(Comment, comment_id)
        if comment is None:
            return False
        if comment.author_id != requesting_actor_id:
            raise ForbiddenError("Only the author can delete this comment")

        post_id = comment.post_id
        await session.delete(comment)
        await self.posts.decrement_reply_count(session, post_id)
        await session.commit()

        logger.info("Comment deleted", comment_id=comment_id, post_id=post_id)
        return True

    async def get_comment(self, session: AsyncSession, comment_id: int) -> Comment:
        """Get comment by id.

        Raises:
            CommentNotFoundError: If no such comment exists
        """
        comment = await session.get(Comment, comment_id)
        if comment is None:
            raise CommentNotFoundError(f"Comment {comment_id} not found")
        return comment

    async def get_comment_by_uri(self, session: AsyncSession, uri: str) -> Comment | None:
        result = await session.execute(select(Comment).where(Comment.uri == uri))
        return result.scalar_one_or_none()

    async def list_comments(
        self,
        session: AsyncSession,
        post_id: int,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        """Comments on a post, oldest first, with the total count."""
        await self.posts.get_post(session, post_id)

        total = await session.scalar(
            select(func.count()).select_from(Comment).where(Comment.post_id == post_id)
        )
        result = await session.execute(
            select(Comment, Actor)
            .outerjoin(Actor, Actor.id == Comment.author_id)
            .where(Comment.post_id == post_id)
            .order_by(Comment.created_at, Comment.id)
            .offset(offset)
            .limit(limit)
        )
        comments = [self.format_comment(comment, author) for comment, author in result.all()]
        return comments, total or 0

    def format_comment(self, comment: Comment, author: Actor | None) -> dict[str, Any]:
        return {
            "id": comment.id,
            "postId": comment.post_id,
            "content": comment.content,
            "uri": comment.uri,
            "author": self.directory.actor_summary(author).to_dict() if author else None,
            "createdAt": comment.created_at.isoformat(),
        }
