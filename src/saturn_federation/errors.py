"""Error kinds raised by the Saturn federation engine.

The HTTP layer maps these to status codes; see ``main.ERROR_STATUS``.
"""


class SaturnError(Exception):
    """Base class for engine errors."""
    pass


class NotFoundError(SaturnError):
    """Referenced entity does not exist."""
    pass


class ActorNotFoundError(NotFoundError):
    """Actor not found."""
    pass


class PostNotFoundError(NotFoundError):
    """Post not found."""
    pass


class CommentNotFoundError(NotFoundError):
    """Comment not found."""
    pass


class ForbiddenError(SaturnError):
    """Actor is acting outside its rights."""
    pass


class InvalidInputError(SaturnError):
    """Malformed or missing input."""
    pass


class InvalidResourceError(InvalidInputError):
    """WebFinger resource is not a valid acct: URI."""
    pass


class MalformedActivityError(InvalidInputError):
    """Inbound activity is structurally invalid."""
    pass


class NotLocalError(SaturnError):
    """Resource belongs to a domain this server does not serve."""
    pass


class SelfReferenceError(SaturnError):
    """Operation would make an actor reference itself (e.g. self-follow)."""
    pass


class ConflictError(SaturnError):
    """Unique value (e.g. handle) is already taken."""
    pass
