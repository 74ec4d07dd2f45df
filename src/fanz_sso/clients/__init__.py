"""External service clients"""

from .sso import SSOClient

__all__ = ["SSOClient"]
