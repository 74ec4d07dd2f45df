"""Client-side session handling: token persistence and the session state machine"""

from .manager import Listener, Navigator, SessionChangedError, SessionManager, SessionState
from .token_store import (
    REFRESH_TOKEN_KEY,
    TOKEN_KEY,
    USER_KEY,
    FileTokenStore,
    MemoryTokenStore,
    StoredCredentials,
    TokenStore,
)

__all__ = [
    "FileTokenStore",
    "Listener",
    "MemoryTokenStore",
    "Navigator",
    "REFRESH_TOKEN_KEY",
    "SessionChangedError",
    "SessionManager",
    "SessionState",
    "StoredCredentials",
    "TOKEN_KEY",
    "TokenStore",
    "USER_KEY",
]
