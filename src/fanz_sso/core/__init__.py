"""Core building blocks: error taxonomy, circuit breaker, log sanitizing"""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpenError,
    CircuitState,
)
from .errors import (
    AuthenticationError,
    CallbackError,
    ErrorCode,
    NetworkError,
    RefreshError,
    Rejection,
    SSOError,
    create_error_response,
)
from .security import TokenSanitizer

__all__ = [
    "AuthenticationError",
    "CallbackError",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerOpenError",
    "CircuitState",
    "ErrorCode",
    "NetworkError",
    "RefreshError",
    "Rejection",
    "SSOError",
    "TokenSanitizer",
    "create_error_response",
]
