"""Authenticated-session gate in front of all telemetry access."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional

from backend.base import AuthSession, BackendError, NotAuthenticatedError, TelemetryBackend

logger = logging.getLogger(__name__)

SessionListener = Callable[[bool], Awaitable[None]]


class SessionGate:
    """Tracks the backend session and notifies listeners when it comes or goes."""

    def __init__(self, backend: TelemetryBackend) -> None:
        self.backend = backend
        self._session: Optional[AuthSession] = None
        self._listeners: List[SessionListener] = []

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> Optional[AuthSession]:
        return self._session

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def require(self) -> AuthSession:
        if self._session is None:
            raise NotAuthenticatedError("Sign in to view telemetry.")
        return self._session

    async def restore(self) -> bool:
        """Adopt a session the backend already holds, if any."""
        await self._set(await self.backend.get_session())
        return self.is_authenticated

    async def sign_in(self, email: str, password: str) -> AuthSession:
        """Sign in; a rejected attempt raises and leaves the current state untouched."""
        session = await self.backend.sign_in(email, password)
        logger.info("Signed in", extra={"status": "authenticated"})
        await self._set(session)
        return session

    async def sign_out(self) -> None:
        try:
            await self.backend.sign_out()
        except BackendError as exc:
            logger.warning("Backend sign-out failed", extra={"reason": str(exc)})
        finally:
            await self._set(None)
        logger.info("Signed out", extra={"status": "signed_out"})

    async def revoke(self, reason: str = "session revoked") -> None:
        """Drop the session after the backend rejected it."""
        if self._session is None:
            return
        logger.warning("Session revoked by backend", extra={"reason": reason})
        await self._set(None)

    async def _set(self, session: Optional[AuthSession]) -> None:
        was_authenticated = self.is_authenticated
        self._session = session
        if was_authenticated == self.is_authenticated:
            return
        for listener in list(self._listeners):
            await listener(self.is_authenticated)
