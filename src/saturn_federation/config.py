"""Configuration for the Saturn federation engine."""

from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Visibility(str, Enum):
    """Post visibility tiers.

    - PUBLIC: visible to everyone and federated
    - LOCAL: visible on this instance only
    - FOLLOWERS: visible to the author's followers only
    """
    PUBLIC = "public"
    LOCAL = "local"
    FOLLOWERS = "followers"


class InstanceConfig(BaseSettings):
    """Serving domain and HTTP listener settings."""

    model_config = SettingsConfigDict(env_prefix="INSTANCE_")

    domain: str = Field(
        default="saturn.social",
        description="Local serving domain (e.g., @alice@saturn.social)"
    )
    base_url: str = Field(
        default="https://saturn.social",
        description="Public URL of this server (must be HTTPS for federation)"
    )
    host: str = Field(
        default="0.0.0.0",
        description="Host address for HTTP server"
    )
    port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port for HTTP server"
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure base URL uses HTTPS (required for ActivityPub)."""
        if v and not v.startswith("https://"):
            # Allow http for development
            import warnings
            warnings.warn("Instance base URL should use HTTPS for production")
        return v.rstrip("/")

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, v: str) -> str:
        return v.strip().lower()


class DatabaseConfig(BaseSettings):
    """Database settings."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    url: str = Field(
        default="sqlite+aiosqlite:///saturn.db",
        description="SQLAlchemy database URL"
    )
    echo: bool = Field(
        default=False,
        description="Log every SQL statement"
    )


class PostConfig(BaseSettings):
    """Post validation settings."""

    model_config = SettingsConfigDict(env_prefix="POSTS_")

    max_length: int = Field(
        default=500,
        ge=1,
        le=100000,
        description="Maximum post length in characters"
    )
    default_visibility: Visibility = Field(
        default=Visibility.PUBLIC,
        description="Visibility used when a post does not specify one"
    )


class FederationConfig(BaseSettings):
    """Inbound federation settings."""

    model_config = SettingsConfigDict(env_prefix="FEDERATION_")

    fetch_remote_actors: bool = Field(
        default=True,
        description="Fetch actor documents of unknown remote actors"
    )
    fetch_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for remote actor fetches"
    )
    user_agent: str = Field(
        default="SaturnFederation/1.0",
        description="User-Agent sent with outbound fetches"
    )
    collection_page_size: int = Field(
        default=20,
        ge=1,
        le=200,
        description="Items per followers/following collection page"
    )


class NotificationConfig(BaseSettings):
    """Notification fan-out settings."""

    model_config = SettingsConfigDict(env_prefix="NOTIFICATIONS_")

    enabled: bool = Field(
        default=True,
        description="Create notification records"
    )
    shutdown_grace_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Time pending fan-out jobs get to finish on shutdown"
    )


class AppConfig(BaseSettings):
    """Main configuration combining all settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Sub-configs
    instance: InstanceConfig = Field(default_factory=InstanceConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    posts: PostConfig = Field(default_factory=PostConfig)
    federation: FederationConfig = Field(default_factory=FederationConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    generate_actor_keys: bool = Field(
        default=True,
        description="Generate an RSA key pair for new local actors"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @classmethod
    def from_yaml(cls, path: str) -> "AppConfig":
        """Load configuration from YAML file."""
        import yaml
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})


def load_config() -> AppConfig:
    """Load configuration from environment and .env file."""
    return AppConfig()
