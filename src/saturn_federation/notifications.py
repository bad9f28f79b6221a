"""Notification fan-out.

Notifications are written by background jobs so that likes, comments, mentions
and follows never wait on (or fail because of) notification storage.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .actors import ActorDirectory, ActorSummary
from .errors import InvalidInputError
from .models import Actor, Notification, NotificationType

logger = structlog.get_logger()

# Shown in place of an actor that no longer exists
UNKNOWN_ACTOR_NAME = "Someone"

FanOutJob = Callable[[AsyncSession], Awaitable[Any]]


@dataclass
class CreateNotification:
    """Input for a single notification."""
    type: NotificationType | str
    recipient_id: int
    actor_id: int
    post_id: int | None = None
    comment_id: int | None = None


class NotificationDispatcher:
    """Best-effort background task queue for fan-out jobs.

    Every job gets its own database session. A failing job is logged here and
    never reaches the caller that submitted it.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        shutdown_grace_seconds: float = 5.0,
    ):
        self.session_maker = session_maker
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, job: FanOutJob) -> asyncio.Task | None:
        """Schedule a job without waiting for it.

        Args:
            name: Job label used in logs
            job: Coroutine function receiving a fresh session

        Returns:
            The scheduled task, or None once the dispatcher is closed
        """
        if self._closed:
            logger.warning("Dispatcher closed, dropping job", job=name)
            return None

        task = asyncio.create_task(self._run(name, job), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, job: FanOutJob) -> None:
        try:
            async with self.session_maker() as session:
                await job(session)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Fan-out job failed", job=name, error=str(e), exc_info=True)

    async def drain(self) -> None:
        """Wait until every submitted job (including ones they submit) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Stop accepting jobs; give pending ones a grace period, then cancel."""
        self._closed = True
        if not self._tasks:
            return

        pending = list(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=self.shutdown_grace_seconds)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("Abandoned pending fan-out jobs", count=len(still_running))


class NotificationService:
    """Creates, formats and marks notifications."""

    def __init__(
        self,
        directory: ActorDirectory,
        dispatcher: NotificationDispatcher,
        enabled: bool = True,
    ):
        self.directory = directory
        self.dispatcher = dispatcher
        self.enabled = enabled

    async def create_notification(
        self,
        session: AsyncSession,
        dto: CreateNotification,
    ) -> Notification | None:
        """Store a notification.

        Self-notifications are suppressed: nothing is stored and None is
        returned.

        Raises:
            InvalidInputError: If the notification type is unknown
        """
        try:
            notification_type = NotificationType(dto.type)
        except ValueError as e:
            raise InvalidInputError(f"Unknown notification type: {dto.type!r}") from e

        if dto.recipient_id == dto.actor_id:
            logger.debug(
                "Suppressed self-notification",
                type=notification_type.value,
                actor_id=dto.actor_id,
            )
            return None

        if not self.enabled:
            return None

        notification = Notification(
            type=notification_type,
            recipient_id=dto.recipient_id,
            actor_id=dto.actor_id,
            post_id=dto.post_id,
            comment_id=dto.comment_id,
        )
        session.add(notification)
        await session.commit()

        logger.info(
            "Notification created",
            notification_id=notification.id,
            type=notification_type.value,
            recipient_id=dto.recipient_id,
            actor_id=dto.actor_id,
        )
        return notification

    def notify(self, dto: CreateNotification) -> asyncio.Task | None:
        """Submit notification creation to the background queue."""
        if dto.recipient_id == dto.actor_id:
            return None

        async def job(session: AsyncSession) -> None:
            await self.create_notification(session, dto)

        return self.dispatcher.submit(f"notify:{dto.type}", job)

    def fan_out(self, name: str, job: FanOutJob) -> asyncio.Task | None:
        return self.dispatcher.submit(name, job)

    async def format_notification(
        self,
        session: AsyncSession,
        notification: Notification,
    ) -> dict[str, Any]:
        """Render a notification with the triggering actor's current profile."""
        actor = await session.get(Actor, notification.actor_id)
        if actor is not None:
            summary = self.directory.actor_summary(actor)
        else:
            summary = ActorSummary(id=None, handle="", display_name=UNKNOWN_ACTOR_NAME)

        return {
            "id": notification.id,
            "type": notification.type.value,
            "actor": summary.to_dict(),
            "postId": notification.post_id,
            "commentId": notification.comment_id,
            "read": notification.read,
            "createdAt": notification.created_at.isoformat(),
        }

    async def list_notifications(
        self,
        session: AsyncSession,
        recipient_id: int,
        limit: int = 20,
        offset: int = 0,
        unread_only: bool = False,
        type: NotificationType | None = None,
    ) -> list[Notification]:
        """Recipient's notifications, newest first."""
        stmt = select(Notification).where(Notification.recipient_id == recipient_id)
        if unread_only:
            stmt = stmt.where(Notification.read.is_(False))
        if type is not None:
            stmt = stmt.where(Notification.type == NotificationType(type))

        result = await session.execute(
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def unread_count(self, session: AsyncSession, recipient_id: int) -> int:
        total = await session.scalar(
            select(func.count())
            .select_from(Notification)
            .where(Notification.recipient_id == recipient_id, Notification.read.is_(False))
        )
        return total or 0

    async def mark_read(
        self,
        session: AsyncSession,
        notification_ids: list[int],
        recipient_id: int,
    ) -> int:
        """Mark notifications read.

        Ids that belong to another recipient are skipped silently.

        Returns:
            Number of notifications changed
        """
        if not notification_ids:
            return 0

        result = await session.execute(
            update(Notification)
            .where(
                Notification.id.in_(notification_ids),
                Notification.recipient_id == recipient_id,
                Notification.read.is_(False),
            )
            .values(read=True)
        )
        await session.commit()

        logger.debug("Marked notifications read", recipient_id=recipient_id, count=result.rowcount)
        return result.rowcount

    async def mark_all_read(self, session: AsyncSession, recipient_id: int) -> int:
        result = await session.execute(
            update(Notification)
            .where(Notification.recipient_id == recipient_id, Notification.read.is_(False))
            .values(read=True)
        )
        await session.commit()
        return result.rowcount
