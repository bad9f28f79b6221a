"""Explicit construction of the service graph."""

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from .actors import ActorDirectory, RemoteActorFetcher
from .comments import CommentService
from .config import AppConfig
from .federation import InboxProcessor
from .mentions import MentionResolver
from .notifications import NotificationDispatcher, NotificationService
from .posts import PostStore
from .webfinger import WebFingerResolver

logger = structlog.get_logger()


@dataclass
class Services:
    """All engine services, wired once per process."""
    config: AppConfig
    session_maker: async_sessionmaker
    directory: ActorDirectory
    dispatcher: NotificationDispatcher
    notifications: NotificationService
    posts: PostStore
    mentions: MentionResolver
    comments: CommentService
    inbox: InboxProcessor
    webfinger: WebFingerResolver
    fetcher: RemoteActorFetcher | None = None

    async def close(self) -> None:
        """Finish or abandon pending fan-out and release HTTP resources."""
        await self.dispatcher.close()
        if self.fetcher is not None:
            await self.fetcher.close()


def build_services(config: AppConfig, session_maker: async_sessionmaker) -> Services:
    """Build every service from configuration.

    Dependencies point one way: notifications depend on the directory only;
    posts, comments and the inbox depend on notifications.
    """
    fetcher = None
    if config.federation.fetch_remote_actors:
        fetcher = RemoteActorFetcher(
            user_agent=config.federation.user_agent,
            timeout_seconds=config.federation.fetch_timeout_seconds,
        )

    directory = ActorDirectory(
        base_url=config.instance.base_url,
        domain=config.instance.domain,
        fetcher=fetcher,
        generate_keys=config.generate_actor_keys,
    )
    dispatcher = NotificationDispatcher(
        session_maker,
        shutdown_grace_seconds=config.notifications.shutdown_grace_seconds,
    )
    notifications = NotificationService(
        directory,
        dispatcher,
        enabled=config.notifications.enabled,
    )
    posts = PostStore(
        directory,
        notifications,
        max_length=config.posts.max_length,
        default_visibility=config.posts.default_visibility,
    )
    mentions = MentionResolver(directory)
    comments = CommentService(directory, posts, notifications, mentions)
    inbox = InboxProcessor(
        directory,
        posts,
        comments,
        notifications,
        page_size=config.federation.collection_page_size,
    )
    webfinger = WebFingerResolver(
        directory,
        domain=config.instance.domain,
        base_url=config.instance.base_url,
    )

    logger.debug(
        "Services built",
        domain=config.instance.domain,
        remote_fetch=fetcher is not None,
    )

    return Services(
        config=config,
        session_maker=session_maker,
        directory=directory,
        dispatcher=dispatcher,
        notifications=notifications,
        posts=posts,
        mentions=mentions,
        comments=comments,
        inbox=inbox,
        webfinger=webfinger,
        fetcher=fetcher,
    )
