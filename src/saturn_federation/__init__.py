"""Saturn Federation Engine.

Social interaction and federation core for a federated micro-blogging
server: actors follow each other, publish posts, like, share and comment on
them, receive notifications, and exchange this state with other servers over
ActivityPub.

Key components:
- actors: Actor directory and follow graph
- posts: Posts with like/share sets and counters
- comments: Comments and reply counts
- mentions: Mention scanning and resolution
- notifications: Notification fan-out
- federation: ActivityPub inbox processing and collections
- webfinger: WebFinger discovery
- main: HTTP server entry point
"""

from .activitypub_types import (
    ActivityType,
    ActorDocument,
    Note,
    ObjectType,
    OrderedCollection,
    OrderedCollectionPage,
    PublicKey,
    parse_inbound_activity,
)
from .actors import ActorDirectory, ActorSummary, RemoteActorFetcher, generate_rsa_keypair
from .comments import CommentService
from .config import (
    AppConfig,
    DatabaseConfig,
    FederationConfig,
    InstanceConfig,
    NotificationConfig,
    PostConfig,
    Visibility,
    load_config,
)
from .container import Services, build_services
from .errors import (
    ActorNotFoundError,
    CommentNotFoundError,
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    InvalidResourceError,
    MalformedActivityError,
    NotFoundError,
    NotLocalError,
    PostNotFoundError,
    SaturnError,
    SelfReferenceError,
)
from .federation import InboxAck, InboxProcessor
from .mentions import MentionResolver, extract_mentions
from .models import (
    Actor,
    Comment,
    Follow,
    InboxActivity,
    InboxOutcome,
    Notification,
    NotificationType,
    Post,
    init_db,
)
from .notifications import CreateNotification, NotificationDispatcher, NotificationService
from .posts import LikeResult, PostOptions, PostStore
from .webfinger import WebFingerResolver

__version__ = "0.1.0"

__all__ = [
    # Types
    "ActivityType",
    "ActorDocument",
    "Note",
    "ObjectType",
    "OrderedCollection",
    "OrderedCollectionPage",
    "PublicKey",
    "parse_inbound_activity",
    # Actors
    "ActorDirectory",
    "ActorSummary",
    "RemoteActorFetcher",
    "generate_rsa_keypair",
    # Config
    "AppConfig",
    "DatabaseConfig",
    "FederationConfig",
    "InstanceConfig",
    "NotificationConfig",
    "PostConfig",
    "Visibility",
    "load_config",
    # Wiring
    "Services",
    "build_services",
    # Errors
    "ActorNotFoundError",
    "CommentNotFoundError",
    "ConflictError",
    "ForbiddenError",
    "InvalidInputError",
    "InvalidResourceError",
    "MalformedActivityError",
    "NotFoundError",
    "NotLocalError",
    "PostNotFoundError",
    "SaturnError",
    "SelfReferenceError",
    # Services
    "CommentService",
    "CreateNotification",
    "InboxAck",
    "InboxProcessor",
    "LikeResult",
    "MentionResolver",
    "NotificationDispatcher",
    "NotificationService",
    "PostOptions",
    "PostStore",
    "WebFingerResolver",
    "extract_mentions",
    # Models
    "Actor",
    "Comment",
    "Follow",
    "InboxActivity",
    "InboxOutcome",
    "Notification",
    "NotificationType",
    "Post",
    "init_db",
]
