"""
FanzSSO identity layer
Single sign-on client, client-side session state machine, and server-side
guard chain with rate limiting for every platform sharing one identity service.

Logging is configured by the entry point (``python -m fanz_sso``), never on import.
All log output goes to stderr.
"""

import logging
import sys

from .auth import CreatorStatus, Invalid, Session, Unreachable, User, Valid, ValidationResult
from .clients import SSOClient
from .config import SSOConfig
from .core import (
    AuthenticationError,
    CallbackError,
    ErrorCode,
    NetworkError,
    RefreshError,
    Rejection,
    SSOError,
)
from .session import FileTokenStore, MemoryTokenStore, SessionManager, SessionState

__version__ = "1.0.0"

logger = logging.getLogger(__name__)

__all__ = [
    "AuthenticationError",
    "CallbackError",
    "CreatorStatus",
    "ErrorCode",
    "FileTokenStore",
    "Invalid",
    "MemoryTokenStore",
    "NetworkError",
    "RefreshError",
    "Rejection",
    "SSOClient",
    "SSOConfig",
    "SSOError",
    "Session",
    "SessionManager",
    "SessionState",
    "Unreachable",
    "User",
    "Valid",
    "ValidationResult",
    "configure_logging",
    "main",
]


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def main(host: str | None = None, port: int | None = None) -> None:
    """Run the guarded HTTP server with uvicorn.

    Args:
        host: Host to bind to (default: HTTP_HOST, 127.0.0.1 for localhost only)
        port: Port to bind to (default: HTTP_PORT)
    """
    import uvicorn
    from dotenv import load_dotenv

    from .server import create_app

    load_dotenv()
    try:
        config = SSOConfig()
    except ValueError as e:
        configure_logging()
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    configure_logging(config.log_level)
    host = host or config.http_host
    port = port or config.http_port
    logger.info(f"Starting FanzSSO server for platform '{config.platform_id}' on {host}:{port}")

    try:
        uvicorn.run(create_app(config), host=host, port=port, log_level=config.log_level.lower())
    except KeyboardInterrupt:
        logger.info("Server shutdown requested")
