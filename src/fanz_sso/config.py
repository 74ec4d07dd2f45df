#!/usr/bin/env python3
# MIT License
#
# Copyright (c) 2025 Recursive Companion Contributors
# Based on work by Hank Besser (https://github.com/hankbesser/recursive-companion)
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

"""
Configuration module for the FanzSSO identity layer
Centralizes all configuration values and environment variables
"""

import os
from dataclasses import dataclass, field
from typing import Any


@dataclass
class SSOConfig:
    """Configuration shared by the SSO client, session manager and server guards"""

    # Identity service
    sso_base_url: str = field(
        default_factory=lambda: os.getenv("FANZ_SSO_URL", "https://sso.fanz.foundation")
    )
    platform_id: str = field(default_factory=lambda: os.getenv("FANZ_PLATFORM_ID", "unknown"))
    redirect_uri: str = field(
        default_factory=lambda: os.getenv(
            "FANZ_REDIRECT_URI", "http://localhost:3000/auth/callback"
        )
    )
    request_timeout: float = field(
        default_factory=lambda: float(os.getenv("SSO_TIMEOUT", "5.0"))
    )

    # Session lifetime (seconds)
    token_ttl: int = field(default_factory=lambda: int(os.getenv("TOKEN_TTL", "3600")))
    refresh_interval: int = field(
        default_factory=lambda: int(os.getenv("REFRESH_INTERVAL", "2700"))
    )

    # Rate limiting
    rate_limit_window: int = field(
        default_factory=lambda: int(os.getenv("RATE_LIMIT_WINDOW", "900"))
    )
    rate_limit_max: int = field(default_factory=lambda: int(os.getenv("RATE_LIMIT_MAX", "1000")))
    rate_limit_sweep_interval: float = field(
        default_factory=lambda: float(os.getenv("RATE_LIMIT_SWEEP_INTERVAL", "60"))
    )

    # 0 disables caching of successful validations
    validation_cache_ttl: int = field(
        default_factory=lambda: int(os.getenv("VALIDATION_CACHE_TTL", "0"))
    )
    validation_cache_size: int = 10000

    # Circuit breaker around identity service calls
    breaker_failure_threshold: int = 5
    breaker_reset_timeout: float = 30.0

    # Client-side persistence
    token_store_path: str | None = field(default_factory=lambda: os.getenv("TOKEN_STORE_PATH"))

    # HTTP server
    # Honor X-Forwarded-For when running behind a reverse proxy
    trust_proxy: bool = field(
        default_factory=lambda: os.getenv("TRUST_PROXY", "false").lower() in ("1", "true", "yes")
    )
    http_host: str = field(default_factory=lambda: os.getenv("HTTP_HOST", "127.0.0.1"))
    http_port: int = field(default_factory=lambda: int(os.getenv("HTTP_PORT", "8080")))
    cors_origins: list[str] = field(
        default_factory=lambda: [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
            if origin.strip()
        ]
    )
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    def __post_init__(self) -> None:
        self.sso_base_url = self.sso_base_url.rstrip("/")

        # A session must never reach hard expiry while the app is open
        if self.refresh_interval >= self.token_ttl:
            raise ValueError(
                f"refresh_interval ({self.refresh_interval}s) must be shorter than "
                f"token_ttl ({self.token_ttl}s)"
            )
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if self.rate_limit_max < 1 or self.rate_limit_window < 1:
            raise ValueError("rate limit window and ceiling must be at least 1")

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary"""
        return {
            "sso_base_url": self.sso_base_url,
            "platform_id": self.platform_id,
            "redirect_uri": self.redirect_uri,
            "request_timeout": self.request_timeout,
            "token_ttl": self.token_ttl,
            "refresh_interval": self.refresh_interval,
            "rate_limit_window": self.rate_limit_window,
            "rate_limit_max": self.rate_limit_max,
            "validation_cache_ttl": self.validation_cache_ttl,
            "http_host": self.http_host,
            "http_port": self.http_port,
            "trust_proxy": self.trust_proxy,
        }
