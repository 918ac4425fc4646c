"""CareChat Backend Application.

Entry point for the real-time conversation service of the healthcare job
marketplace: job posters and healthcare workers talk about an application
over WebSocket, with a REST surface for history and management.

Modules:
    - messaging: conversations, messages and the delivery state machine
    - realtime: WebSocket sessions, rooms and event dispatch
    - presence: online users and their connections
    - auth: Cognito bearer-token verification
    - directory: user and job-application lookups
    - notifications: in-app notifications for new messages
"""
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from carechat.auth.dependencies import set_identity_verifier, set_user_directory
from carechat.auth.service import IdentityVerifier
from carechat.config import get_config
from carechat.database import Database
from carechat.directory.service import UserDirectory
from carechat.errors import ChatError
from carechat.messaging.router import router as messaging_router
from carechat.messaging.service import MessageService, set_message_service
from carechat.notifications.service import NotificationService
from carechat.presence.registry import PresenceRegistry
from carechat.realtime.router import router as realtime_router
from carechat.realtime.session import SessionManager, set_session_manager

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every JWKS request and TLS handshake.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in carechat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    database = Database.get_instance(db_path=config.database.path)
    directory = UserDirectory(database)
    notifications = NotificationService(database)
    messaging = config.messaging
    message_service = MessageService(
        database,
        directory,
        notifications,
        edit_window=timedelta(minutes=messaging.edit_window_minutes),
        max_content_length=messaging.max_content_length,
        default_page_size=messaging.default_page_size,
        max_page_size=messaging.max_page_size,
        preview_length=messaging.preview_length,
    )

    if not config.identity.user_pool_id or not config.identity.client_id:
        logger.warning("Identity user_pool_id/client_id not configured; every token will be rejected")
    verifier = IdentityVerifier.from_settings(config.identity)

    set_user_directory(directory)
    set_identity_verifier(verifier)
    set_message_service(message_service)
    set_session_manager(SessionManager(
        message_service,
        directory,
        verifier,
        presence=PresenceRegistry(shards=config.presence.lock_shards),
        notifications=notifications,
        conversation_list_size=messaging.conversation_list_size,
    ))
    logger.info(
        f"CareChat ready on http://{config.server.host}:{config.server.port} "
        f"(database={database.path})"
    )

    yield  # Application runs here

    # Shutdown
    set_session_manager(None)
    set_message_service(None)
    set_identity_verifier(None)
    set_user_directory(None)
    Database.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="CareChat API",
    description="Real-time messaging between job posters and healthcare workers",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Render a ChatError as ``{"success": false, "error", "code"}``."""
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "code": exc.code},
    )


# Register all routers
app.include_router(realtime_router)
app.include_router(messaging_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run(app, host=config.server.host, port=config.server.port)
