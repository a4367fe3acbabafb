"""
CredentialCoordinator - holds the working access credential and renews it.

Renewal is single-flight: however many requests notice an expiring token at
the same time, one renewal call is made and every caller awaits its result.
"""

import asyncio
import base64
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Protocol

from loguru import logger

from venuelink.services.errors import SessionExpiredError
from venuelink.services.timers import DelayedTask, TaskScheduler


@dataclass(frozen=True)
class Credential:
    """An access token and when it stops being valid."""

    token: str
    expires_at: datetime | None = None
    refresh_token: str | None = None

    @classmethod
    def from_token(
        cls,
        token: str,
        refresh_token: str | None = None,
        expires_in: float | None = None,
    ) -> "Credential":
        """
        Build a credential, taking the expiry from ``expires_in`` when given
        or from the ``exp`` claim when the token is a JWT.
        """
        if expires_in is not None:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        else:
            expires_at = _jwt_expiry(token)
        return cls(token=token, expires_at=expires_at, refresh_token=refresh_token)

    def expires_in(self, now: datetime | None = None) -> float | None:
        """Seconds of validity left, or None if the expiry is unknown."""
        if self.expires_at is None:
            return None
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds()

    def is_valid(self, margin: float = 0.0, now: datetime | None = None) -> bool:
        remaining = self.expires_in(now)
        return remaining is None or remaining > margin


def _jwt_expiry(token: str) -> datetime | None:
    parts = token.split(".")
    if len(parts) != 3:
        return None
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
        exp = claims["exp"]
        return datetime.fromtimestamp(float(exp), tz=timezone.utc)
    except (ValueError, KeyError, TypeError):
        return None


class CredentialStore(Protocol):
    """Persistence for the credential; the medium is up to the application."""

    def get(self) -> Credential | None: ...

    def set(self, credential: Credential) -> None: ...

    def clear(self) -> None: ...


class InMemoryCredentialStore:
    """Process-lifetime credential store."""

    def __init__(self, credential: Credential | None = None):
        self._credential = credential

    def get(self) -> Credential | None:
        return self._credential

    def set(self, credential: Credential) -> None:
        self._credential = credential

    def clear(self) -> None:
        self._credential = None


RenewFn = Callable[[Credential | None], Awaitable[Credential]]
SessionExpiredCallback = Callable[[str], Any]


class CredentialCoordinator:
    """
    Hands out a valid credential and coordinates renewal.

    Usage:
        coordinator = CredentialCoordinator(store, renew_fn=refresh_via_api)

        credential = await coordinator.get_valid_credential()
        if credential:
            headers["Authorization"] = f"Bearer {credential.token}"

        coordinator.on_session_expired(lambda reason: force_logout())
    """

    def __init__(
        self,
        store: CredentialStore,
        renew_fn: RenewFn | None = None,
        refresh_margin: float = 60.0,
        scheduler: TaskScheduler | None = None,
    ):
        self._store = store
        self._renew_fn = renew_fn
        self._refresh_margin = refresh_margin
        self._scheduler = scheduler or TaskScheduler()
        self._renewal: asyncio.Future[Credential] | None = None
        self._auto_refresh: DelayedTask | None = None
        self._listeners: list[SessionExpiredCallback] = []
        self.renew_count = 0

    @property
    def has_renew_fn(self) -> bool:
        return self._renew_fn is not None

    def set_renew_fn(self, renew_fn: RenewFn) -> None:
        self._renew_fn = renew_fn

    @property
    def credential(self) -> Credential | None:
        return self._store.get()

    @property
    def is_renewing(self) -> bool:
        return self._renewal is not None

    async def get_valid_credential(self) -> Credential | None:
        """
        Return the stored credential, renewing it first when it is inside the
        safety margin. Returns None when nobody is signed in.
        """
        credential = self._store.get()
        if credential is None:
            return None
        if credential.is_valid(self._refresh_margin):
            return credential
        logger.info("Access credential expiring, renewing before use")
        return await self.renew()

    async def renew(self) -> Credential:
        """
        Renew the credential. Concurrent callers share one renewal.

        Raises:
            SessionExpiredError: renewal failed; the session is over.
        """
        if self._renewal is None:
            self._renewal = asyncio.ensure_future(self._do_renew())
            self._renewal.add_done_callback(self._renewal_settled)
        return await asyncio.shield(self._renewal)

    def _renewal_settled(self, future: "asyncio.Future[Credential]") -> None:
        self._renewal = None
        # Waiters that were cancelled never retrieve the error.
        if not future.cancelled():
            future.exception()

    async def _do_renew(self) -> Credential:
        self.renew_count += 1
        current = self._store.get()
        if self._renew_fn is None:
            self._expire("no renewal function configured")
            raise SessionExpiredError("Credential renewal is not configured")
        if current is None:
            self._expire("no credential to renew")
            raise SessionExpiredError("No credential available to renew")

        try:
            renewed = await self._renew_fn(current)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Credential renewal failed: {e}")
            self._expire(f"renewal failed: {e}")
            raise SessionExpiredError(
                f"Session expired: credential renewal failed ({e})"
            ) from e

        self._store.set(renewed)
        logger.info("Access credential renewed")
        return renewed

    def expire_session(self, reason: str) -> None:
        """Drop the credential and tell listeners the session is over."""
        self._expire(reason)

    def _expire(self, reason: str) -> None:
        self._store.clear()
        self.stop_auto_refresh()
        logger.warning(f"Session expired: {reason}")
        for callback in list(self._listeners):
            try:
                callback(reason)
            except Exception as e:
                logger.exception(f"Session-expired listener failed: {e}")

    def on_session_expired(self, callback: SessionExpiredCallback) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    # Proactive refresh

    def start_auto_refresh(
        self,
        check_interval: float = 60.0,
        refresh_window: float = 600.0,
    ) -> DelayedTask:
        """
        Check the credential every ``check_interval`` seconds and renew it
        once it expires within ``refresh_window`` seconds.
        """
        self.stop_auto_refresh()
        self._auto_refresh = self._scheduler.every(
            check_interval, lambda: self._check_and_refresh(refresh_window)
        )
        logger.info("Credential auto-refresh started")
        return self._auto_refresh

    def stop_auto_refresh(self) -> None:
        if self._auto_refresh is not None:
            self._auto_refresh.cancel()
            self._auto_refresh = None
            logger.info("Credential auto-refresh stopped")

    async def _check_and_refresh(self, refresh_window: float) -> None:
        credential = self._store.get()
        if credential is None:
            self.stop_auto_refresh()
            return
        if credential.is_valid(refresh_window):
            return
        try:
            await self.renew()
        except SessionExpiredError:
            # _expire already stopped the refresher
            pass
