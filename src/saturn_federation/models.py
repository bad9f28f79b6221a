"""Database models for the Saturn federation engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncAttrs, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .config import Visibility


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationType(str, Enum):
    """Kinds of notification a recipient can receive."""
    LIKE = "like"
    COMMENT = "comment"
    MENTION = "mention"
    FOLLOW = "follow"


class InboxOutcome(str, Enum):
    """Terminal states of inbound activity processing."""
    APPLIED = "applied"
    IGNORED = "ignored"


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


class Actor(Base):
    """A local or remote identity.

    Local actors have ``domain`` equal to the serving domain and carry a
    private key. Remote actors are created on first federation discovery.
    The handle is unique per domain.
    """
    __tablename__ = "actors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Full actor ID URL: https://saturn.social/users/alice
    uri: Mapped[str] = mapped_column(String(512), unique=True, nullable=False, index=True)
    # Handle without domain (preferredUsername)
    preferred_username: Mapped[str] = mapped_column(String(128), nullable=False)
    domain: Mapped[str] = mapped_column(String(256), nullable=False)
    is_local: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Profile
    display_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # Endpoints (remote actors)
    inbox_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    outbox_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # RSA key pair for HTTP signatures
    public_key_pem: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    private_key_pem: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("preferred_username", "domain", name="uq_actor_handle_domain"),
        Index("ix_actors_handle", "preferred_username"),
    )

    @property
    def handle(self) -> str:
        """Qualified handle (alice@saturn.social)."""
        return f"{self.preferred_username}@{self.domain}"


class Follow(Base):
    """Follow edge between two actors, stored by federation URI."""
    __tablename__ = "follows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    follower_uri: Mapped[str] = mapped_column(String(512), nullable=False)
    followee_uri: Mapped[str] = mapped_column(String(512), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("follower_uri", "followee_uri", name="uq_follow"),
        Index("ix_follows_followee", "followee_uri"),
    )


class Post(Base):
    """A content unit authored by an actor."""
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uri: Mapped[str] = mapped_column(String(512), unique=True, nullable=False, index=True)
    author_id: Mapped[int] = mapped_column(Integer, ForeignKey("actors.id"), nullable=False)

    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    visibility: Mapped[Visibility] = mapped_column(
        SQLEnum(Visibility), default=Visibility.PUBLIC, nullable=False
    )
    sensitive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    content_warning: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    attachments: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    # Remote notes may reply to something we do not store
    in_reply_to: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # Counters, maintained incrementally
    like_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    share_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reply_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_posts_author_created", "author_id", "created_at"),
        Index("ix_posts_created", "created_at"),
    )


class PostLike(Base):
    """Liker set member."""
    __tablename__ = "post_likes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    post_id: Mapped[int] = mapped_column(Integer, ForeignKey("posts.id"), nullable=False)
    actor_id: Mapped[int] = mapped_column(Integer, ForeignKey("actors.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("post_id", "actor_id", name="uq_post_like"),
    )


class PostShare(Base):
    """Sharer set member."""
    __tablename__ = "post_shares"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    post_id: Mapped[int] = mapped_column(Integer, ForeignKey("posts.id"), nullable=False)
    actor_id: Mapped[int] = mapped_column(Integer, ForeignKey("actors.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("post_id", "actor_id", name="uq_post_share"),
    )


class Comment(Base):
    """Reply attached to a post."""
    __tablename__ = "comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    post_id: Mapped[int] = mapped_column(Integer, ForeignKey("posts.id"), nullable=False)
    author_id: Mapped[int] = mapped_column(Integer, ForeignKey("actors.id"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    # Set for replies received through the inbox
    uri: Mapped[Optional[str]] = mapped_column(String(512), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_comments_post_created", "post_id", "created_at"),
    )


class Notification(Base):
    """Asynchronous signal to a recipient actor."""
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[NotificationType] = mapped_column(SQLEnum(NotificationType), nullable=False)
    recipient_id: Mapped[int] = mapped_column(Integer, ForeignKey("actors.id"), nullable=False)
    # Triggering actor; not a foreign key so the feed survives actor removal
    actor_id: Mapped[int] = mapped_column(Integer, nullable=False)
    post_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    comment_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_notifications_recipient_created", "recipient_id", "created_at"),
        Index("ix_notifications_recipient_read", "recipient_id", "read"),
    )


class InboxActivity(Base):
    """Audit record of an inbound ActivityPub activity."""
    __tablename__ = "inbox_activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    activity_id: Mapped[str] = mapped_column(String(512), unique=True, nullable=False, index=True)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_uri: Mapped[str] = mapped_column(String(512), nullable=False, index=True)
    target_handle: Mapped[str] = mapped_column(String(128), nullable=False)

    # Full activity JSON
    activity_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    outcome: Mapped[Optional[InboxOutcome]] = mapped_column(SQLEnum(InboxOutcome), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    received_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_inbox_activities_type", "activity_type"),
    )


async def insert_ignore(
    session: AsyncSession,
    model: type[Base],
    values: dict[str, Any],
) -> bool:
    """Atomically insert a row unless it violates a unique constraint.

    This is the set-add primitive: a single statement, so concurrent adds of
    the same member cannot both succeed.

    Args:
        session: Database session
        model: Mapped class to insert into
        values: Column values

    Returns:
        True if a row was inserted, False if it already existed
    """
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(model).values(**values).on_conflict_do_nothing()
    elif dialect == "sqlite":
        stmt = sqlite_insert(model).values(**values).on_conflict_do_nothing()
    else:
        raise NotImplementedError(f"insert_ignore is not supported on {dialect}")

    result = await session.execute(stmt)
    return result.rowcount > 0


async def init_db(database_url: str, echo: bool = False) -> async_sessionmaker:
    """Initialize database and return session maker."""
    engine = create_async_engine(database_url, echo=echo)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(engine, expire_on_commit=False)
