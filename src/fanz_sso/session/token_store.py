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
Client-side token persistence.

Three string-keyed entries (access token, refresh token, serialized user) are
written and cleared as one group; a reader sees either all of them or none.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..auth.models import User

logger = logging.getLogger(__name__)

TOKEN_KEY = "fanz_access_token"
REFRESH_TOKEN_KEY = "fanz_refresh_token"
USER_KEY = "fanz_user"


@dataclass(frozen=True)
class StoredCredentials:
    """Persisted credentials restored at boot."""

    access_token: str
    refresh_token: str | None
    user: User


class TokenStore(Protocol):
    """Persistence interface used by the session manager."""

    async def load(self) -> StoredCredentials | None: ...

    async def save(self, access_token: str, refresh_token: str | None, user: User) -> None: ...

    async def clear(self) -> None: ...


def encode_entries(access_token: str, refresh_token: str | None, user: User) -> dict[str, str]:
    return {
        TOKEN_KEY: access_token,
        REFRESH_TOKEN_KEY: refresh_token or "",
        USER_KEY: json.dumps(user.to_dict()),
    }


def decode_entries(entries: dict[str, str]) -> StoredCredentials | None:
    """Rebuild credentials; a missing token or unreadable user yields None."""
    access_token = entries.get(TOKEN_KEY)
    raw_user = entries.get(USER_KEY)
    if not access_token or not raw_user:
        return None

    try:
        user = User.from_dict(json.loads(raw_user))
    except ValueError as e:
        logger.warning(f"Discarding unreadable cached user: {e}")
        return None

    return StoredCredentials(
        access_token=access_token,
        refresh_token=entries.get(REFRESH_TOKEN_KEY) or None,
        user=user,
    )


class MemoryTokenStore:
    """Process-local store; the entry group is replaced in a single assignment."""

    def __init__(self, entries: dict[str, str] | None = None):
        self._entries: dict[str, str] = dict(entries or {})

    @property
    def entries(self) -> dict[str, str]:
        return dict(self._entries)

    async def load(self) -> StoredCredentials | None:
        return decode_entries(self._entries)

    async def save(self, access_token: str, refresh_token: str | None, user: User) -> None:
        self._entries = encode_entries(access_token, refresh_token, user)

    async def clear(self) -> None:
        self._entries = {}


class FileTokenStore:
    """
    JSON file store for CLI and desktop clients.

    Writes go to a temp file that is atomically renamed over the target, so a
    crash mid-write leaves the previous group intact. File I/O runs in the
    default executor to keep the event loop responsive.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    async def load(self) -> StoredCredentials | None:
        loop = asyncio.get_running_loop()
        try:
            entries = await loop.run_in_executor(None, self._read_file)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Cannot read token store at {self.path}: {e}")
            return None

        if not isinstance(entries, dict):
            logger.warning(f"Token store at {self.path} has unexpected content")
            return None
        return decode_entries(entries)

    async def save(self, access_token: str, refresh_token: str | None, user: User) -> None:
        entries = encode_entries(access_token, refresh_token, user)
        async with self._lock:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._write_file, entries)
        logger.debug(f"Credentials for user {user.id} saved to {self.path}")

    async def clear(self) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._remove_file)

    def _read_file(self) -> dict[str, str]:
        with open(self.path, encoding="utf-8") as f:
            return json.load(f)

    def _write_file(self, entries: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(entries, f)
        temp_path.chmod(0o600)
        temp_path.replace(self.path)

    def _remove_file(self) -> None:
        self.path.unlink(missing_ok=True)
