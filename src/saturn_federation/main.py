"""HTTP server for the Saturn federation engine.

Implements:
- WebFinger endpoint (/.well-known/webfinger)
- Actor endpoints (/users/{handle})
- Inbox endpoint and followers/following collections
"""

import asyncio
import logging
import signal

import structlog
from aiohttp import web

from .activitypub_types import AP_CONTENT_TYPE, JRD_CONTENT_TYPE
from .config import AppConfig, load_config
from .container import Services, build_services
from .errors import (
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    NotFoundError,
    NotLocalError,
    SaturnError,
    SelfReferenceError,
)
from .models import init_db

logger = structlog.get_logger()

ERROR_STATUS: dict[type[SaturnError], int] = {
    NotFoundError: 404,
    NotLocalError: 404,
    ForbiddenError: 403,
    InvalidInputError: 400,
    SelfReferenceError: 422,
    ConflictError: 409,
}


def status_for(error: SaturnError) -> int:
    """HTTP status for an engine error (most specific class wins)."""
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


def configure_logging(level: str = "INFO") -> None:
    """Configure structured logging on top of stdlib logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Map engine errors to JSON error responses."""
    try:
        return await handler(request)
    except SaturnError as e:
        status = status_for(e)
        logger.info(
            "Request failed",
            path=request.path,
            status=status,
            error_type=type(e).__name__,
            error=str(e),
        )
        return web.json_response({"error": str(e)}, status=status)


def create_app(services: Services) -> web.Application:
    """Build the aiohttp application around wired services."""
    app = web.Application(middlewares=[error_middleware])
    app["services"] = services

    app.router.add_get("/.well-known/webfinger", handle_webfinger)

    app.router.add_get("/users/{handle}", handle_actor)
    app.router.add_post("/users/{handle}/inbox", handle_inbox)
    app.router.add_get("/users/{handle}/followers", handle_followers)
    app.router.add_get("/users/{handle}/following", handle_following)

    # Health check
    app.router.add_get("/health", handle_health)

    return app


class SaturnServer:
    """Federation engine HTTP server."""

    def __init__(self, config: AppConfig):
        """Initialize server.

        Args:
            config: Application configuration
        """
        self.config = config
        self.services: Services | None = None
        self.app: web.Application | None = None

    async def setup(self) -> None:
        """Set up database, services and routes."""
        session_maker = await init_db(self.config.database.url, echo=self.config.database.echo)
        self.services = build_services(self.config, session_maker)
        self.app = create_app(self.services)

        logger.info(
            "Server setup complete",
            domain=self.config.instance.domain,
            base_url=self.config.instance.base_url,
        )

    async def cleanup(self) -> None:
        """Clean up server resources."""
        if self.services:
            await self.services.close()

    async def run(self) -> None:
        """Run the server."""
        await self.setup()

        runner = web.AppRunner(self.app)
        await runner.setup()

        site = web.TCPSite(
            runner,
            self.config.instance.host,
            self.config.instance.port,
        )

        await site.start()

        logger.info(
            "Server started",
            host=self.config.instance.host,
            port=self.config.instance.port,
        )

        # Wait for shutdown signal
        stop_event = asyncio.Event()

        def signal_handler():
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

        await stop_event.wait()

        logger.info("Shutting down...")
        await runner.cleanup()
        await self.cleanup()


# === Route Handlers ===


def _page_param(request: web.Request) -> int | None:
    page = request.query.get("page")
    if not page:
        return None
    try:
        return int(page)
    except ValueError:
        raise InvalidInputError(f"Invalid page: {page!r}") from None


async def handle_webfinger(request: web.Request) -> web.Response:
    """Handle WebFinger discovery requests."""
    resource = request.query.get("resource", "")
    if not resource:
        return web.json_response(
            {"error": "Missing resource parameter"},
            status=400,
        )

    services: Services = request.app["services"]
    async with services.session_maker() as session:
        result = await services.webfinger.resolve_resource(session, resource)

    return web.json_response(result, content_type=JRD_CONTENT_TYPE)


async def handle_actor(request: web.Request) -> web.Response:
    """Handle actor profile request."""
    handle = request.match_info["handle"]
    services: Services = request.app["services"]

    async with services.session_maker() as session:
        actor = await services.directory.get_actor_by_handle(session, handle)
        if actor is None or not actor.is_local:
            return web.json_response({"error": "Actor not found"}, status=404)

    # Check Accept header for ActivityPub
    accept = request.headers.get("Accept", "")
    if "application/activity+json" not in accept and "application/ld+json" not in accept:
        # Minimal profile page for browsers
        return web.Response(
            text=f"<html><body><h1>@{actor.handle}</h1></body></html>",
            content_type="text/html",
        )

    document = services.directory.build_actor_document(actor)
    return web.json_response(document.to_dict(), content_type=AP_CONTENT_TYPE)


async def handle_inbox(request: web.Request) -> web.Response:
    """Handle incoming ActivityPub activities."""
    handle = request.match_info["handle"]

    try:
        activity_data = await request.json()
    except ValueError:
        return web.json_response(
            {"error": "Invalid JSON"},
            status=400,
        )

    services: Services = request.app["services"]
    async with services.session_maker() as session:
        ack = await services.inbox.process(session, activity_data, handle)

    return web.json_response(ack.to_dict(), status=202)


async def handle_followers(request: web.Request) -> web.Response:
    """Handle followers collection request."""
    handle = request.match_info["handle"]
    page = _page_param(request)

    services: Services = request.app["services"]
    async with services.session_maker() as session:
        result = await services.inbox.followers_collection(session, handle, page)

    return web.json_response(result, content_type=AP_CONTENT_TYPE)


async def handle_following(request: web.Request) -> web.Response:
    """Handle following collection request."""
    handle = request.match_info["handle"]
    page = _page_param(request)

    services: Services = request.app["services"]
    async with services.session_maker() as session:
        result = await services.inbox.following_collection(session, handle, page)

    return web.json_response(result, content_type=AP_CONTENT_TYPE)


async def handle_health(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({"status": "ok"})


def main() -> None:
    """Main entry point."""
    config = load_config()
    configure_logging(config.log_level)

    server = SaturnServer(config)

    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
