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
Client-side session state machine.

Restores persisted credentials at boot, keeps the access token fresh with a
background task, and exposes login / SSO / logout flows. All refreshes are
single-flight: concurrent callers share one in-flight attempt.
"""

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from ..auth.models import (
    AuthResponse,
    Invalid,
    Session,
    Unreachable,
    User,
    Valid,
    resolve_expiry,
    token_expiry,
)
from ..clients.sso import SSOClient
from ..config import SSOConfig
from ..core.errors import NetworkError, RefreshError, SSOError, create_error_response
from ..core.security import TokenSanitizer
from .token_store import FileTokenStore, MemoryTokenStore, StoredCredentials, TokenStore

logger = logging.getLogger(__name__)

Navigator = Callable[[str], Awaitable[None] | None]
Listener = Callable[["SessionManager"], None]


class SessionChangedError(RefreshError):
    """A refresh finished after the session it started from was replaced or cleared."""


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


class SessionManager:
    """Owns the current Session and keeps it in sync with the token store.

    The session is an immutable value replaced as a whole, so readers never
    observe a token without its user. Rejections from the identity service
    end the session; connectivity failures never do.
    """

    def __init__(
        self,
        client: SSOClient,
        store: TokenStore | None = None,
        refresh_interval: float = 2700,
        token_ttl: float = 3600,
        navigator: Navigator | None = None,
    ):
        if refresh_interval >= token_ttl:
            raise ValueError(
                f"refresh_interval ({refresh_interval}s) must be shorter than "
                f"token_ttl ({token_ttl}s)"
            )

        self.client = client
        self.store: TokenStore = store if store is not None else MemoryTokenStore()
        self.refresh_interval = refresh_interval
        self.token_ttl = token_ttl
        self._navigator = navigator

        self.state = SessionState.UNINITIALIZED
        self._session: Session | None = None
        self._listeners: list[Listener] = []
        # Bumped whenever the session is replaced or cleared; lets an in-flight
        # refresh detect that its result is stale.
        self._generation = 0
        self._inflight: asyncio.Task | None = None
        self._refresh_loop: asyncio.Task | None = None
        # Structured description of the last failed login or refresh, for UIs.
        self.last_error: dict[str, Any] | None = None

    @classmethod
    def from_config(
        cls, config: SSOConfig, client: SSOClient, navigator: Navigator | None = None
    ) -> "SessionManager":
        store: TokenStore
        if config.token_store_path:
            store = FileTokenStore(config.token_store_path)
        else:
            store = MemoryTokenStore()
        return cls(
            client,
            store,
            refresh_interval=config.refresh_interval,
            token_ttl=config.token_ttl,
            navigator=navigator,
        )

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def user(self) -> User | None:
        return self._session.user if self._session else None

    @property
    def token(self) -> str | None:
        return self._session.access_token if self._session else None

    @property
    def is_authenticated(self) -> bool:
        return self.state is SessionState.AUTHENTICATED and self._session is not None

    @property
    def is_loading(self) -> bool:
        return self.state in (SessionState.UNINITIALIZED, SessionState.LOADING)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a state-change listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Session listener failed")

    def _record_error(self, error: SSOError, context: str) -> None:
        self.last_error = TokenSanitizer.sanitize_dict(create_error_response(error, context))
        logger.debug(f"Recorded {context} failure: {self.last_error}")

    def _set_state(self, state: SessionState) -> None:
        self.state = state
        self._notify()

    def _enter_authenticated(self, session: Session) -> None:
        self._session = session
        self._set_state(SessionState.AUTHENTICATED)
        self._start_refresh_loop()

    async def _clear(self) -> None:
        """Drop the session and every persisted entry."""
        self._generation += 1
        self._stop_refresh_loop()
        self._session = None
        try:
            await self.store.clear()
        finally:
            self._set_state(SessionState.UNAUTHENTICATED)

    async def start(self) -> SessionState:
        """Restore a persisted session. Calling it again is a no-op."""
        if self.state is not SessionState.UNINITIALIZED:
            return self.state

        self._set_state(SessionState.LOADING)
        stored = await self.store.load()
        if stored is None:
            await self._clear()
            return self.state

        validation = await self.client.validate_token(stored.access_token)

        if isinstance(validation, Valid):
            session = Session(
                access_token=stored.access_token,
                refresh_token=stored.refresh_token,
                user=validation.user,
                expires_at=validation.expires_at or token_expiry(stored.access_token),
            )
            if validation.user != stored.user:
                await self.store.save(session.access_token, session.refresh_token, session.user)
            logger.info(f"Restored session for user {validation.user.id}")
            self._enter_authenticated(session)

        elif isinstance(validation, Unreachable):
            logger.warning(
                f"Identity service unreachable at boot, using cached session: {validation.error}"
            )
            self._enter_authenticated(self._session_from(stored))

        else:
            logger.info(f"Stored token rejected ({validation.reason}), attempting refresh")
            try:
                await self._refresh_from(stored)
            except RefreshError as e:
                logger.info(f"Session could not be restored: {e.message}")
            except NetworkError as e:
                # The refresh token may still be good; keep it for the next start.
                logger.warning(f"Refresh at boot failed, staying signed out: {e.message}")
                self._session = None
                self._set_state(SessionState.UNAUTHENTICATED)

        return self.state

    @staticmethod
    def _session_from(stored: StoredCredentials) -> Session:
        return Session(
            access_token=stored.access_token,
            refresh_token=stored.refresh_token,
            user=stored.user,
            expires_at=token_expiry(stored.access_token),
        )

    async def refresh_auth(self) -> str:
        """
        Refresh the access token and return it.

        Concurrent callers await the same attempt and receive the same token.

        Raises:
            RefreshError: The refresh token was rejected; the session is cleared
            NetworkError: Outcome unknown; the session is kept
        """
        if self._session is None:
            stored = await self.store.load()
            if stored is None:
                error = RefreshError("No refresh token available")
                self._record_error(error, "refresh")
                raise error
            return await self._refresh_from(stored)
        return await self._refresh_from(self._session)

    async def _refresh_from(self, credentials: Session | StoredCredentials) -> str:
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._refresh_once(credentials))
            self._inflight.add_done_callback(self._refresh_done)
        # Shielded so a cancelled waiter does not abort the shared attempt.
        return await asyncio.shield(self._inflight)

    def _refresh_done(self, task: asyncio.Task) -> None:
        # Runs even when every waiter was cancelled, e.g. the background loop
        # stopped by the very rejection it was waiting on.
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, SSOError) and not isinstance(error, SessionChangedError):
            self._record_error(error, "refresh")

    async def _refresh_once(self, credentials: Session | StoredCredentials) -> str:
        generation = self._generation

        if not credentials.refresh_token:
            await self._clear()
            raise RefreshError("No refresh token available")

        try:
            refreshed = await self.client.refresh_token(credentials.refresh_token)
        except RefreshError:
            logger.warning("Refresh token rejected, ending session")
            if generation == self._generation:
                await self._clear()
            raise

        validation = await self.client.validate_token(refreshed.token)
        if isinstance(validation, Invalid):
            logger.warning(f"Refreshed token failed validation ({validation.reason})")
            if generation == self._generation:
                await self._clear()
            raise RefreshError("Refreshed token failed validation")

        if generation != self._generation:
            logger.info("Session changed while refreshing, discarding refreshed token")
            raise SessionChangedError("Session ended during refresh")

        if isinstance(validation, Valid):
            user = validation.user
            expires_at = validation.expires_at or resolve_expiry(
                refreshed.token, refreshed.expires_in
            )
        else:
            user = credentials.user
            expires_at = resolve_expiry(refreshed.token, refreshed.expires_in)

        refresh_token = refreshed.refresh_token or credentials.refresh_token
        await self.store.save(refreshed.token, refresh_token, user)
        self._enter_authenticated(
            Session(
                access_token=refreshed.token,
                refresh_token=refresh_token,
                user=user,
                expires_at=expires_at,
            )
        )
        self.last_error = None
        logger.debug(f"Access token refreshed: {TokenSanitizer.fingerprint(refreshed.token)}")
        return refreshed.token

    def _start_refresh_loop(self) -> None:
        if self._refresh_loop is None or self._refresh_loop.done():
            self._refresh_loop = asyncio.create_task(self._run_refresh_loop())

    def _stop_refresh_loop(self) -> None:
        task, self._refresh_loop = self._refresh_loop, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run_refresh_loop(self) -> None:
        while self.state is SessionState.AUTHENTICATED:
            await asyncio.sleep(self.refresh_interval)
            try:
                await self.refresh_auth()
            except RefreshError as e:
                logger.warning(f"Background refresh ended the session: {e.message}")
                return
            except NetworkError as e:
                logger.warning(f"Background refresh deferred: {e.message}")
            except Exception:
                logger.exception("Background refresh failed unexpectedly, stopping")
                return

    async def login(self, email: str, password: str) -> User:
        """
        Log in with email and password.

        Credentials are persisted before the session is swapped in, so any
        failure leaves the previous state untouched.
        """
        try:
            auth = await self.client.login(email, password)
        except SSOError as e:
            self._record_error(e, "login")
            raise
        await self._adopt(auth)
        return auth.user

    async def complete_sso_login(
        self, code: str, state: str, expected_state: str | None = None
    ) -> User:
        """Finish a federated login from the OAuth redirect parameters."""
        try:
            auth = await self.client.handle_callback(code, state, expected_state)
        except SSOError as e:
            self._record_error(e, "callback")
            raise
        await self._adopt(auth)
        return auth.user

    async def login_with_sso(self) -> None:
        """Send the user to the identity service's login page via the navigator."""
        if self._navigator is None:
            raise RuntimeError("SessionManager has no navigator for SSO redirects")
        url = await self.client.get_authorization_url()
        result: Any = self._navigator(url)
        if inspect.isawaitable(result):
            await result

    async def _adopt(self, auth: AuthResponse) -> None:
        await self.store.save(auth.token, auth.refresh_token, auth.user)
        self._generation += 1
        self.last_error = None
        self._enter_authenticated(
            Session(
                access_token=auth.token,
                refresh_token=auth.refresh_token,
                user=auth.user,
                expires_at=resolve_expiry(auth.token, auth.expires_in),
            )
        )
        logger.info(f"Signed in as user {auth.user.id}")

    async def logout(self) -> None:
        """Invalidate the session remotely (best effort) and always clear it locally."""
        session = self._session
        try:
            if session is not None:
                await self.client.logout(session.access_token)
        finally:
            await self._clear()

    async def close(self) -> None:
        """Stop background work. A refresh already in flight is allowed to finish."""
        task, self._refresh_loop = self._refresh_loop, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        inflight = self._inflight
        if inflight is not None and not inflight.done():
            with contextlib.suppress(RefreshError, NetworkError):
                await inflight

    async def __aenter__(self) -> "SessionManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False
