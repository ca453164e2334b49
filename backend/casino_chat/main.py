"""Casino Chat Backend Application.

This is the main entry point for the casino lobby chat service. It serves the
REST and WebSocket endpoints the client chat core talks to.

Modules:
    - chat: Message store, presence registry, subscriber hub and endpoints
    - client: The client-side chat core (connection, pipeline, presence)
    - events: Realtime event schema shared by both sides
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from casino_chat.chat.auth import TokenVerifier
from casino_chat.chat.hub import SubscriberHub
from casino_chat.chat.presence import PresenceRegistry
from casino_chat.chat.router import router as chat_router
from casino_chat.chat.store import MessageStore
from casino_chat.client.cooldown import CooldownLimiter
from casino_chat.config import AppConfig, get_config
from casino_chat.events import PresenceOfflineEvent

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every request and TCP connection; websockets logs
# every frame at DEBUG.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "websockets",
    "websockets.client",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def sweep_presence(app: FastAPI) -> None:
    """Periodically drop silent users and broadcast ``presence.offline``."""
    config: AppConfig = app.state.config
    interval = config.server_chat.sweep_interval
    topic = config.client.topic
    while True:
        await asyncio.sleep(interval)
        for presence in app.state.presence.sweep():
            await app.state.hub.publish(PresenceOfflineEvent(payload=presence), topic)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config: AppConfig = app.state.config

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in chat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    if not len(app.state.verifier):
        logger.warning("No bearer tokens configured; every request will be rejected")

    sweeper = asyncio.create_task(sweep_presence(app))
    logger.info(
        f"Chat service ready on http://{config.server.host}:{config.server.port} "
        f"(topic={config.client.topic})"
    )

    yield  # Application runs here

    # Shutdown
    sweeper.cancel()
    await asyncio.gather(sweeper, return_exceptions=True)
    await app.state.hub.close_all()
    logger.info("Application shutdown complete")


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build the FastAPI application with its own chat state.

    Args:
        config: Configuration to use; loaded from the YAML files if omitted.
    """
    config = config or get_config()

    app = FastAPI(
        title="Casino Chat API",
        description="Realtime lobby chat for the casino app",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    chat = config.server_chat
    app.state.config = config
    app.state.verifier = TokenVerifier(config.secrets.tokens)
    app.state.store = MessageStore(chat.history_size)
    app.state.presence = PresenceRegistry(chat.presence_stale)
    app.state.hub = SubscriberHub()
    app.state.limiter = CooldownLimiter(chat.cooldown.limit, chat.cooldown.window)

    app.include_router(chat_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _config = get_config()
    uvicorn.run(app, host=_config.server.host, port=_config.server.port)
