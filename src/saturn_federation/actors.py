"""Actor directory: actor records, remote discovery and the follow graph.

Implements:
- Local actor registration and profile edits
- Remote actor discovery (first sight through federation)
- Actor resolution by id, handle or federation URI
- Follow/unfollow edges stored by federation URI
"""

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import aiohttp
import structlog
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .activitypub_types import (
    AP_ACCEPT_HEADER,
    ActorDocument,
    PublicKey,
    extract_instance_domain,
    parse_actor,
    username_from_uri,
)
from .errors import ActorNotFoundError, ConflictError, InvalidInputError, SelfReferenceError
from .models import Actor, Follow, insert_ignore

logger = structlog.get_logger()

HANDLE_PATTERN = re.compile(r"^[A-Za-z0-9_]{1,64}$")


def generate_rsa_keypair() -> tuple[str, str]:
    """Generate RSA key pair for signing outbound activities.

    Returns:
        Tuple of (public_key_pem, private_key_pem)
    """
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
    )

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()

    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()

    return public_pem, private_pem


@dataclass
class ActorSummary:
    """Denormalized author/actor summary embedded in responses."""
    id: int | None
    handle: str
    display_name: str
    avatar_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "handle": self.handle,
            "displayName": self.display_name,
            "avatarUrl": self.avatar_url,
        }


class RemoteActorFetcher:
    """Fetches actor documents from remote servers."""

    def __init__(self, user_agent: str, timeout_seconds: float = 10.0):
        self.user_agent = user_agent
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._http_session: aiohttp.ClientSession | None = None

    async def _get_http_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession(timeout=self.timeout)
        return self._http_session

    async def close(self) -> None:
        """Close HTTP session."""
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()

    async def fetch(self, actor_uri: str) -> dict[str, Any]:
        """Fetch a remote actor document.

        Raises:
            ActorNotFoundError: If the document cannot be fetched
        """
        http_session = await self._get_http_session()
        try:
            async with http_session.get(
                actor_uri,
                headers={
                    "Accept": AP_ACCEPT_HEADER,
                    "User-Agent": self.user_agent,
                },
            ) as response:
                if response.status != 200:
                    raise ActorNotFoundError(f"Failed to fetch actor: HTTP {response.status}")
                return await response.json(content_type=None)
        except ActorNotFoundError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ActorNotFoundError(f"Failed to fetch actor: {e}") from e


class ActorDirectory:
    """Owns actor records and the follow/follower relation."""

    def __init__(
        self,
        base_url: str,
        domain: str,
        fetcher: RemoteActorFetcher | None = None,
        generate_keys: bool = True,
    ):
        """Initialize actor directory.

        Args:
            base_url: Server base URL (e.g., https://saturn.social)
            domain: Local serving domain (e.g., saturn.social)
            fetcher: Remote actor fetcher; None disables remote fetches
            generate_keys: Generate RSA key pairs for new local actors
        """
        self.base_url = base_url.rstrip("/")
        self.domain = domain.lower()
        self.fetcher = fetcher
        self.generate_keys = generate_keys

    def local_actor_uri(self, handle: str) -> str:
        return f"{self.base_url}/users/{handle}"

    # === Local Actor Management ===

    async def create_local_actor(
        self,
        session: AsyncSession,
        handle: str,
        display_name: str | None = None,
        summary: str | None = None,
        avatar_url: str | None = None,
    ) -> Actor:
        """Register a local actor.

        Raises:
            InvalidInputError: If the handle is malformed
            ConflictError: If the handle is already taken
        """
        if not HANDLE_PATTERN.match(handle or ""):
            raise InvalidInputError(f"Invalid handle: {handle!r}")

        uri = self.local_actor_uri(handle)
        public_key_pem, private_key_pem = (None, None)
        if self.generate_keys:
            public_key_pem, private_key_pem = generate_rsa_keypair()

        created = await insert_ignore(session, Actor, {
            "uri": uri,
            "preferred_username": handle,
            "domain": self.domain,
            "is_local": True,
            "display_name": display_name or handle,
            "summary": summary or "",
            "avatar_url": avatar_url,
            "inbox_url": f"{uri}/inbox",
            "outbox_url": f"{uri}/outbox",
            "public_key_pem": public_key_pem,
            "private_key_pem": private_key_pem,
        })
        if not created:
            raise ConflictError(f"Handle already taken: {handle}")
        await session.commit()

        actor = await self.get_actor_by_uri(session, uri)
        logger.info("Created local actor", actor_id=actor.id, handle=handle)
        return actor

    async def update_profile(
        self,
        session: AsyncSession,
        actor_id: int,
        display_name: str | None = None,
        summary: str | None = None,
        avatar_url: str | None = None,
    ) -> Actor:
        """Update profile fields; None leaves a field unchanged."""
        actor = await self.get_actor(session, actor_id)
        if display_name is not None:
            actor.display_name = display_name
        if summary is not None:
            actor.summary = summary
        if avatar_url is not None:
            actor.avatar_url = avatar_url
        await session.commit()

        logger.info("Updated actor profile", actor_id=actor_id)
        return actor

    # === Lookup ===

    async def get_actor(self, session: AsyncSession, actor_id: int) -> Actor:
        """Get actor by id.

        Raises:
            ActorNotFoundError: If no such actor exists
        """
        actor = await session.get(Actor, actor_id)
        if actor is None:
            raise ActorNotFoundError(f"Actor {actor_id} not found")
        return actor

    async def get_actor_by_uri(self, session: AsyncSession, uri: str) -> Actor | None:
        result = await session.execute(select(Actor).where(Actor.uri == uri))
        return result.scalar_one_or_none()

    async def get_actor_by_handle(
        self,
        session: AsyncSession,
        handle: str,
        domain: str | None = None,
    ) -> Actor | None:
        """Get actor by handle; domain defaults to the local domain."""
        result = await session.execute(
            select(Actor).where(
                Actor.preferred_username == handle,
                Actor.domain == (domain or self.domain).lower(),
            )
        )
        return result.scalar_one_or_none()

    async def find_actor(self, session: AsyncSession, identifier: int | str) -> Actor | None:
        """Resolve an actor without raising.

        Accepts a local id, a handle (``alice``, ``@alice``), a qualified
        handle (``alice@example.com``) or a federation URI.
        """
        if isinstance(identifier, int):
            return await session.get(Actor, identifier)

        identifier = (identifier or "").strip()
        if not identifier:
            return None

        if identifier.isdigit():
            return await session.get(Actor, int(identifier))

        if identifier.startswith(("https://", "http://")):
            return await self.get_actor_by_uri(session, identifier)

        handle = identifier.lstrip("@")
        if "@" in handle:
            handle, domain = handle.split("@", 1)
            return await self.get_actor_by_handle(session, handle, domain)
        return await self.get_actor_by_handle(session, handle)

    async def resolve_actor(self, session: AsyncSession, identifier: int | str) -> Actor:
        """Resolve an actor by id, handle or federation URI.

        Raises:
            ActorNotFoundError: If nothing matches
        """
        actor = await self.find_actor(session, identifier)
        if actor is None:
            raise ActorNotFoundError(f"Actor not found: {identifier}")
        return actor

    # === Remote Actor Discovery ===

    async def get_or_create_remote_actor(
        self,
        session: AsyncSession,
        actor_uri: str,
        document: dict[str, Any] | None = None,
    ) -> Actor:
        """Return the actor for a federation URI, creating it on first sight.

        Uses the embedded document when the activity carried one, otherwise
        fetches it. If neither is available, stores a stub derived from the
        URI so the activity can still be applied.

        Args:
            session: Database session
            actor_uri: Full actor ID URL
            document: Inline actor document, if any

        Returns:
            Actor record

        Raises:
            InvalidInputError: If the URI is malformed or names an unknown
                actor on this server
        """
        existing = await self.get_actor_by_uri(session, actor_uri)
        if existing:
            return existing

        instance_domain = extract_instance_domain(actor_uri)
        if not instance_domain:
            raise InvalidInputError(f"Invalid actor URI: {actor_uri}")
        if instance_domain in (self.domain, extract_instance_domain(self.base_url)):
            # Local actors are only created through registration
            raise InvalidInputError(f"Unknown local actor URI: {actor_uri}")

        parsed: ActorDocument | None = None
        if document is not None:
            parsed = parse_actor(document)
        elif self.fetcher is not None:
            try:
                parsed = parse_actor(await self.fetcher.fetch(actor_uri))
            except ActorNotFoundError as e:
                logger.warning("Remote actor fetch failed", actor_uri=actor_uri, error=str(e))

        if parsed is not None and parsed.id != actor_uri:
            logger.warning("Actor document id mismatch", actor_uri=actor_uri, document_id=parsed.id)
            parsed = None

        values: dict[str, Any] = {
            "uri": actor_uri,
            "preferred_username": username_from_uri(actor_uri),
            "domain": instance_domain,
            "is_local": False,
        }
        if parsed is not None:
            values.update(
                preferred_username=parsed.preferred_username or values["preferred_username"],
                display_name=parsed.name or None,
                summary=parsed.summary or None,
                avatar_url=parsed.icon.get("url") if parsed.icon else None,
                inbox_url=parsed.inbox or None,
                outbox_url=parsed.outbox or None,
                public_key_pem=parsed.public_key.public_key_pem if parsed.public_key else None,
            )

        created = await insert_ignore(session, Actor, values)
        await session.commit()

        actor = await self.get_actor_by_uri(session, actor_uri)
        if actor is None:
            # Lost to a handle collision on the same domain
            raise ConflictError(f"Could not register remote actor {actor_uri}")

        if created:
            logger.info(
                "Registered remote actor",
                actor_uri=actor_uri,
                handle=actor.handle,
                stub=parsed is None,
            )
        return actor

    # === Follow Graph ===

    async def follow(self, session: AsyncSession, follower_id: int, target_id: int) -> bool:
        """Make follower follow target.

        Returns:
            True if the edge is new, False if already following

        Raises:
            SelfReferenceError: If follower_id == target_id
            ActorNotFoundError: If either actor is missing
        """
        if follower_id == target_id:
            raise SelfReferenceError("An actor cannot follow itself")

        follower = await self.get_actor(session, follower_id)
        target = await self.get_actor(session, target_id)

        created = await insert_ignore(session, Follow, {
            "follower_uri": follower.uri,
            "followee_uri": target.uri,
        })
        await session.commit()

        if created:
            logger.info("Follow added", follower=follower.uri, followee=target.uri)
        return created

    async def unfollow(self, session: AsyncSession, follower_id: int, target_id: int) -> bool:
        """Remove the follow edge; no-op when not following.

        Returns:
            True if an edge was removed
        """
        follower = await self.get_actor(session, follower_id)
        target = await self.get_actor(session, target_id)

        result = await session.execute(
            delete(Follow).where(
                Follow.follower_uri == follower.uri,
                Follow.followee_uri == target.uri,
            )
        )
        await session.commit()

        removed = result.rowcount > 0
        if removed:
            logger.info("Follow removed", follower=follower.uri, followee=target.uri)
        return removed

    async def is_following(self, session: AsyncSession, follower_id: int, target_id: int) -> bool:
        follower = await self.get_actor(session, follower_id)
        target = await self.get_actor(session, target_id)
        result = await session.execute(
            select(Follow.id).where(
                Follow.follower_uri == follower.uri,
                Follow.followee_uri == target.uri,
            )
        )
        return result.first() is not None

    async def get_followers(
        self,
        session: AsyncSession,
        actor_id: int,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Actor]:
        """Actors whose URI is in this actor's follower set."""
        actor = await self.get_actor(session, actor_id)
        result = await session.execute(
            select(Actor)
            .join(Follow, Follow.follower_uri == Actor.uri)
            .where(Follow.followee_uri == actor.uri)
            .order_by(Follow.created_at, Follow.id)
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_following(
        self,
        session: AsyncSession,
        actor_id: int,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Actor]:
        """Actors whose URI is in this actor's followee set."""
        actor = await self.get_actor(session, actor_id)
        result = await session.execute(
            select(Actor)
            .join(Follow, Follow.followee_uri == Actor.uri)
            .where(Follow.follower_uri == actor.uri)
            .order_by(Follow.created_at, Follow.id)
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_followers(self, session: AsyncSession, actor_id: int) -> int:
        actor = await self.get_actor(session, actor_id)
        total = await session.scalar(
            select(func.count()).select_from(Follow).where(Follow.followee_uri == actor.uri)
        )
        return total or 0

    async def count_following(self, session: AsyncSession, actor_id: int) -> int:
        actor = await self.get_actor(session, actor_id)
        total = await session.scalar(
            select(func.count()).select_from(Follow).where(Follow.follower_uri == actor.uri)
        )
        return total or 0

    # === Representations ===

    def actor_summary(self, actor: Actor) -> ActorSummary:
        return ActorSummary(
            id=actor.id,
            handle=actor.preferred_username if actor.is_local else actor.handle,
            display_name=actor.display_name or actor.preferred_username,
            avatar_url=actor.avatar_url,
        )

    def build_actor_document(self, actor: Actor) -> ActorDocument:
        """Build ActivityPub Actor document for a local actor."""
        public_key = None
        if actor.public_key_pem:
            public_key = PublicKey(
                id=f"{actor.uri}#main-key",
                owner=actor.uri,
                public_key_pem=actor.public_key_pem,
            )

        created = actor.created_at
        if created is not None and created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)

        return ActorDocument(
            id=actor.uri,
            preferred_username=actor.preferred_username,
            name=actor.display_name or actor.preferred_username,
            summary=actor.summary or "",
            url=actor.uri,
            inbox=f"{actor.uri}/inbox",
            outbox=f"{actor.uri}/outbox",
            followers=f"{actor.uri}/followers",
            following=f"{actor.uri}/following",
            public_key=public_key,
            icon={"type": "Image", "url": actor.avatar_url} if actor.avatar_url else None,
            published=(created or datetime.now(timezone.utc)).isoformat(),
        )
