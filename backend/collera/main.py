"""CollEra Chat Backend Application.

This is the main entry point for the CollEra messaging service: realtime
direct messages between connected college students, with a REST fallback.

Modules:
    - chat: presence registry, realtime session manager, conversation and
      message storage, REST facade
    - identity: identity and connection oracle (DuckDB user directory)
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from collera.chat.manager import SessionManager
from collera.chat.presence import PresenceRegistry
from collera.chat.router import router as chat_router
from collera.chat.service import ChatService
from collera.chat.store import ChatStore
from collera.chat.ws_router import router as ws_router
from collera.config import AppConfig, get_config
from collera.errors import ChatError
from collera.identity.service import UserDirectory

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "uvicorn.access",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config: AppConfig = app.state.config

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    oracle = UserDirectory(
        db_path=config.database.path,
        secret_key=config.secrets.jwt.secret_key,
        algorithm=config.auth.algorithm,
        token_expire_days=config.auth.token_expire_days,
        require_verified=config.auth.require_verified,
    )
    store = ChatStore(
        db_path=config.database.path,
        max_content_length=config.chat.max_content_length,
        deleted_placeholder=config.chat.deleted_placeholder,
    )
    service = ChatService(
        store,
        oracle,
        default_page_size=config.chat.default_page_size,
        max_page_size=config.chat.max_page_size,
    )
    registry = PresenceRegistry()

    app.state.oracle = oracle
    app.state.chat_store = store
    app.state.chat_service = service
    app.state.presence = registry
    app.state.sessions = SessionManager(registry, service, oracle)
    logger.info("Chat services ready (db=%s)", config.database.path)

    yield  # Application runs here

    # Shutdown
    registry.clear()
    store.close()
    oracle.close()
    logger.info("Application shutdown complete")


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Render a ChatError as the REST failure envelope."""
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        {"success": False, "error": exc.code, "message": exc.message},
        status_code=exc.status_code,
    )


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Configuration to use. Defaults to the process-wide config
            loaded from collera.settings.yaml / collera.secrets.yaml.
    """
    app = FastAPI(
        title="CollEra Chat API",
        description="Realtime messaging backend for the CollEra student network",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config or get_config()

    app.add_exception_handler(ChatError, chat_error_handler)
    app.include_router(chat_router)
    app.include_router(ws_router)

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
