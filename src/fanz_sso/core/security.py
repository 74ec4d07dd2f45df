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
Security utilities for keeping tokens and credentials out of logs.
"""

import hashlib
import re
from typing import Any


class TokenSanitizer:
    """Redacts bearer tokens, JWTs, refresh tokens and passwords."""

    PATTERNS = {
        "jwt": re.compile(r"eyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]*"),
        "bearer": re.compile(r"(?:Bearer)\s+([A-Za-z0-9_\-\.~+/]+=*)", re.IGNORECASE),
        "refresh_token": re.compile(
            r"(?:refresh_token|access_token|token)[\"\']?[\s=:]+[\"\']?([A-Za-z0-9_\-\.~+/]{8,})",
            re.IGNORECASE,
        ),
        "password": re.compile(r"(?:password|passwd)[\"\']?[\s=:]+[\"\']?([^\s\"\'&,}]+)", re.IGNORECASE),
        "auth_code": re.compile(r"(?:[?&]code=)([^&\s]+)", re.IGNORECASE),
    }

    SENSITIVE_FIELDS = {
        "password",
        "passwd",
        "token",
        "refresh_token",
        "access_token",
        "authorization",
        "code",
        "client_secret",
        "cookie",
    }

    @classmethod
    def sanitize_string(cls, text: str) -> str:
        """
        Sanitize tokens and credentials from a string.

        Args:
            text: String to sanitize

        Returns:
            Sanitized string
        """
        if not text:
            return text

        sanitized = cls.PATTERNS["jwt"].sub("[REDACTED_JWT]", text)
        for name in ("bearer", "refresh_token", "password", "auth_code"):
            sanitized = cls.PATTERNS[name].sub(
                lambda m, name=name: m.group(0).replace(m.group(1), f"[REDACTED_{name.upper()}]"),
                sanitized,
            )
        return sanitized

    @classmethod
    def sanitize_dict(cls, data: dict[str, Any], max_depth: int = 10) -> dict[str, Any]:
        """
        Recursively sanitize sensitive fields in a dictionary.

        Args:
            data: Dictionary to sanitize
            max_depth: Maximum recursion depth

        Returns:
            Sanitized dictionary
        """
        if max_depth <= 0:
            return {"error": "Max recursion depth reached"}

        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            if key.lower() in cls.SENSITIVE_FIELDS:
                sanitized[key] = "[REDACTED]"
            elif isinstance(value, dict):
                sanitized[key] = cls.sanitize_dict(value, max_depth - 1)
            elif isinstance(value, list):
                sanitized[key] = [
                    cls.sanitize_dict(item, max_depth - 1)
                    if isinstance(item, dict)
                    else cls.sanitize_string(item) if isinstance(item, str) else item
                    for item in value
                ]
            elif isinstance(value, str):
                sanitized[key] = cls.sanitize_string(value)
            else:
                sanitized[key] = value

        return sanitized

    @classmethod
    def sanitize_error(cls, error: Exception) -> str:
        """Sanitize an exception message."""
        return cls.sanitize_string(str(error))

    @staticmethod
    def fingerprint(token: str, length: int = 16) -> str:
        """Stable identifier for a token, safe to log or use as a cache key."""
        return hashlib.sha256(token.encode()).hexdigest()[:length]
