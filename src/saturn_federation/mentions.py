"""Mention scanning and resolution."""

import re

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from .actors import ActorDirectory
from .models import Actor

logger = structlog.get_logger()

# @handle or @handle@remote.domain; not preceded by a word character or '@'
MENTION_PATTERN = re.compile(r"(?<![\w@])@([A-Za-z0-9_]+(?:@[A-Za-z0-9.-]+)?)")


def extract_mentions(text: str) -> list[str]:
    """Return distinct mention tokens in first-seen order.

    >>> extract_mentions("hi @alice and @bob@remote.example, @alice again")
    ['alice', 'bob@remote.example']
    """
    seen: list[str] = []
    for match in MENTION_PATTERN.finditer(text or ""):
        token = match.group(1).rstrip(".-")
        if token.endswith("@"):
            token = token[:-1]
        if token and token not in seen:
            seen.append(token)
    return seen


class MentionResolver:
    """Resolves mention tokens to actors through the directory."""

    def __init__(self, directory: ActorDirectory):
        self.directory = directory

    async def resolve(self, session: AsyncSession, text: str) -> list[Actor]:
        """Resolve every mention in text.

        Unknown handles are dropped; each actor is returned once.
        """
        actors: list[Actor] = []
        seen_ids: set[int] = set()
        for token in extract_mentions(text):
            # Prefixed so numeric handles are never read as actor ids
            actor = await self.directory.find_actor(session, f"@{token}")
            if actor is None:
                logger.debug("Unresolved mention", token=token)
                continue
            if actor.id not in seen_ids:
                seen_ids.add(actor.id)
                actors.append(actor)
        return actors
