"""WebFinger discovery (RFC 7033) for local actors."""

import re
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from .activitypub_types import AP_CONTENT_TYPE
from .actors import ActorDirectory
from .errors import ActorNotFoundError, InvalidResourceError, NotLocalError

logger = structlog.get_logger()

ACCT_PATTERN = re.compile(r"^acct:([^@\s]+)@([^@\s]+)$")

PROFILE_PAGE_REL = "http://webfinger.net/rel/profile-page"


class WebFingerResolver:
    """Answers ``acct:`` lookups for actors of the local domain."""

    def __init__(self, directory: ActorDirectory, domain: str, base_url: str):
        self.directory = directory
        self.domain = domain.lower()
        self.base_url = base_url.rstrip("/")

    def parse_resource(self, resource: str) -> tuple[str, str]:
        """Split a resource into (handle, domain).

        Accepts ``acct:user@domain`` or a local actor URL.

        Raises:
            InvalidResourceError: If the resource is malformed
            NotLocalError: If an actor URL points at another server
        """
        resource = (resource or "").strip()

        match = ACCT_PATTERN.match(resource)
        if match:
            return match.group(1), match.group(2)

        if resource.startswith(("https://", "http://")):
            prefix = f"{self.base_url}/users/"
            if not resource.startswith(prefix):
                raise NotLocalError(f"Resource is not served here: {resource}")
            handle = resource[len(prefix):].strip("/")
            if not handle or "/" in handle:
                raise InvalidResourceError(f"Invalid resource: {resource}")
            return handle, self.domain

        raise InvalidResourceError(f"Invalid resource: {resource!r}")

    async def resolve_resource(self, session: AsyncSession, resource: str) -> dict[str, Any]:
        """Perform WebFinger lookup for a resource.

        Args:
            session: Database session
            resource: Resource URI (e.g., acct:alice@saturn.social)

        Returns:
            WebFinger JRD document

        Raises:
            InvalidResourceError: If the resource is malformed
            NotLocalError: If the resource names another domain
            ActorNotFoundError: If no local actor has that handle
        """
        handle, domain = self.parse_resource(resource)

        if domain.lower() != self.domain:
            raise NotLocalError(f"Domain {domain} is not served here")

        actor = await self.directory.get_actor_by_handle(session, handle)
        if actor is None or not actor.is_local:
            raise ActorNotFoundError(f"User not found: {handle}")

        logger.debug("WebFinger lookup", resource=resource, actor=actor.uri)

        return {
            "subject": f"acct:{actor.preferred_username}@{self.domain}",
            "aliases": [
                actor.uri,
            ],
            "links": [
                {
                    "rel": "self",
                    "type": AP_CONTENT_TYPE,
                    "href": actor.uri,
                },
                {
                    "rel": PROFILE_PAGE_REL,
                    "type": "text/html",
                    "href": actor.uri,
                },
            ],
        }
