"""Interface to the managed telemetry backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from models.records import Device, Reading


class BackendError(Exception):
    """A query against the backend failed (network, HTTP or payload error)."""


class AuthenticationError(BackendError):
    """Sign-in was rejected or the session is no longer valid."""


class NotAuthenticatedError(Exception):
    """Data access attempted without an authenticated session."""


@dataclass(frozen=True)
class AuthSession:
    access_token: str
    user_id: str
    email: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


class TelemetryBackend(ABC):
    """Narrow query/auth surface the dashboard depends on.

    Row-level access control is enforced by the backend, so every query runs
    with whatever session was established through :meth:`sign_in`.
    """

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> AuthSession:
        ...

    @abstractmethod
    async def sign_out(self) -> None:
        ...

    @abstractmethod
    async def get_session(self) -> Optional[AuthSession]:
        ...

    @abstractmethod
    async def list_devices(self) -> list[Device]:
        """Return devices ordered by name ascending."""

    @abstractmethod
    async def list_latest_readings(self, device_ids: Sequence[str]) -> list[Reading]:
        """Return at least the most recent reading of each device that has one."""

    @abstractmethod
    async def list_readings(
        self,
        device_ids: Sequence[str],
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        ascending: bool = True,
    ) -> list[Reading]:
        """Return readings for ``device_ids`` within ``[since, until]`` ordered by ``created_at``."""

    async def aclose(self) -> None:
        return None
