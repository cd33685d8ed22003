"""
CredentialStore - Owns the access/refresh token pair and its renewal.

Features:
- Lazy load from key-value storage on first access
- Expiry bookkeeping with a conservative lifetime window
- Single-flight renewal: concurrent callers share one refresh call
- Best-effort persistence: storage errors degrade to memory-only
"""

import asyncio
import base64
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Protocol

from loguru import logger
from pydantic import BaseModel

from crudclient.datastore.storage import KeyValueStorage, MemoryStorage, resolve
from crudclient.services.errors import NoRefreshCredential, RenewalFailed

ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"
TOKEN_EXPIRY_KEY = "tokenExpiry"


class AuthResponse(BaseModel):
    """Body returned by the renewal endpoint."""

    accessToken: str
    refreshToken: str | None = None


RefreshFn = Callable[[str], Awaitable[AuthResponse]]


class TokenCodec(Protocol):
    """Reversible transform applied to values before they hit storage."""

    def encode(self, value: str) -> str: ...

    def decode(self, stored: str) -> str | None: ...


class PlainCodec:
    """Stores values as-is."""

    def encode(self, value: str) -> str:
        return value

    def decode(self, stored: str) -> str | None:
        return stored


class Base64Codec:
    """Obfuscates values as url-safe base64 of `value|timestamp`."""

    def encode(self, value: str) -> str:
        raw = f"{value}|{int(time.time() * 1000)}"
        return base64.urlsafe_b64encode(raw.encode()).decode()

    def decode(self, stored: str) -> str | None:
        try:
            decoded = base64.urlsafe_b64decode(stored.encode()).decode()
        except (ValueError, UnicodeDecodeError):
            return None
        value, sep, _ = decoded.rpartition("|")
        return value if sep else None


@dataclass
class CredentialPair:
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None


@dataclass
class RenewalTicket:
    """The renewal currently in flight."""

    task: "asyncio.Task[str]"
    started_at: datetime


class CredentialStore:
    """
    Access/refresh credential holder with single-flight renewal.

    Usage:
        store = CredentialStore(storage, refresh_fn=call_refresh_endpoint)
        await store.set_credentials("access", "refresh")

        if await store.is_expiring_soon():
            token = await store.renew()
    """

    def __init__(
        self,
        storage: KeyValueStorage | None = None,
        refresh_fn: RefreshFn | None = None,
        lifetime: timedelta = timedelta(minutes=55),
        refresh_window: timedelta = timedelta(minutes=5),
        codec: TokenCodec | None = None,
    ):
        self._storage = storage if storage is not None else MemoryStorage()
        self.refresh_fn = refresh_fn
        self._lifetime = lifetime
        self._refresh_window = refresh_window
        self._codec = codec or PlainCodec()

        self._access_token: str | None = None
        self._refresh_token: str | None = None
        self._expires_at: datetime | None = None
        self._loaded = False
        self._ticket: RenewalTicket | None = None
        self._renewals = 0

    # Storage helpers

    async def _read(self, key: str) -> str | None:
        try:
            stored = await resolve(self._storage.get(key))
        except Exception as e:
            logger.warning(f"Failed to retrieve {key} from storage: {e}")
            return None
        if stored is None:
            return None
        return self._codec.decode(stored)

    async def _write(self, key: str, value: str) -> None:
        try:
            await resolve(self._storage.set(key, self._codec.encode(value)))
        except Exception as e:
            logger.warning(f"Failed to store {key}, keeping it in memory only: {e}")

    async def _remove(self, key: str) -> None:
        try:
            await resolve(self._storage.remove(key))
        except Exception as e:
            logger.warning(f"Failed to remove {key} from storage: {e}")

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return

        access = await self._read(ACCESS_TOKEN_KEY)
        refresh = await self._read(REFRESH_TOKEN_KEY)
        expiry = await self._read(TOKEN_EXPIRY_KEY)

        # A concurrent set/clear won while we were reading
        if self._loaded:
            return

        self._access_token = access
        self._refresh_token = refresh
        self._expires_at = _parse_expiry(expiry)
        self._loaded = True

    # Accessors

    async def get_access(self) -> str | None:
        await self._ensure_loaded()
        return self._access_token

    async def get_refresh(self) -> str | None:
        await self._ensure_loaded()
        return self._refresh_token

    async def get_credentials(self) -> CredentialPair | None:
        """Snapshot of the live pair, None when signed out."""
        await self._ensure_loaded()
        if self._access_token is None:
            return None
        return CredentialPair(
            access_token=self._access_token,
            refresh_token=self._refresh_token,
            expires_at=self._expires_at,
        )

    @property
    def expires_at(self) -> datetime | None:
        return self._expires_at

    @property
    def renewal_in_flight(self) -> bool:
        return self._ticket is not None

    # Mutation

    async def set_credentials(self, access: str, refresh: str | None = None) -> None:
        """Replace the access token (and refresh token if given) and reset expiry."""
        expires_at = datetime.now() + self._lifetime

        # Memory first so readers never see a half-updated pair
        self._access_token = access
        if refresh:
            self._refresh_token = refresh
        self._expires_at = expires_at
        self._loaded = True

        await self._write(ACCESS_TOKEN_KEY, access)
        if refresh:
            await self._write(REFRESH_TOKEN_KEY, refresh)
        await self._write(TOKEN_EXPIRY_KEY, expires_at.isoformat())

    async def clear(self) -> None:
        """Forget both tokens and the expiry."""
        self._access_token = None
        self._refresh_token = None
        self._expires_at = None
        self._loaded = True

        for key in (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, TOKEN_EXPIRY_KEY):
            await self._remove(key)

    # Expiry

    async def is_expired(self) -> bool:
        await self._ensure_loaded()
        if self._expires_at is None:
            return True
        return datetime.now() >= self._expires_at

    async def is_expiring_soon(self, window: timedelta | None = None) -> bool:
        await self._ensure_loaded()
        if self._expires_at is None:
            return True
        window = self._refresh_window if window is None else window
        return datetime.now() + window >= self._expires_at

    async def validate_security_state(self) -> bool:
        """Check that a stored access token is usable and renewable."""
        access = await self.get_access()
        refresh = await self.get_refresh()

        if access and await self.is_expired():
            logger.warning("Access token is expired")
            return False

        if access and not refresh:
            logger.warning("Missing refresh token")
            return False

        return True

    # Renewal

    async def renew(self) -> str:
        """
        Obtain a new access token.

        Only one refresh call is ever in flight; callers arriving while it
        runs await the same ticket and observe the same outcome.

        Raises:
            NoRefreshCredential: no refresh token is stored
            RenewalFailed: the refresh call failed (credentials are cleared)
        """
        ticket = self._ticket
        if ticket is None:
            ticket = RenewalTicket(
                task=asyncio.create_task(self._perform_renewal()),
                started_at=datetime.now(),
            )
            self._ticket = ticket
            self._renewals += 1
        else:
            logger.debug("Token refresh already in flight, awaiting it")

        # Shielded so one cancelled waiter does not cancel the others
        return await asyncio.shield(ticket.task)

    async def _perform_renewal(self) -> str:
        try:
            refresh = await self.get_refresh()
            if not refresh:
                raise NoRefreshCredential()
            if self.refresh_fn is None:
                raise RenewalFailed("No refresh endpoint configured")

            try:
                response = await self.refresh_fn(refresh)
            except Exception as e:
                logger.error(f"Token refresh failed: {e}")
                await self.clear()
                raise RenewalFailed(cause=e) from e

            await self.set_credentials(response.accessToken, response.refreshToken)
            logger.debug("Access token renewed")
            return response.accessToken
        finally:
            self._ticket = None

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "has_access_token": self._access_token is not None,
            "has_refresh_token": self._refresh_token is not None,
            "expires_at": self._expires_at.isoformat() if self._expires_at else None,
            "renewal_in_flight": self._ticket is not None,
            "renewals": self._renewals,
        }


def _parse_expiry(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        if value.isdigit():
            # Millisecond epoch
            return datetime.fromtimestamp(int(value) / 1000)
        return datetime.fromisoformat(value)
    except (ValueError, OverflowError, OSError):
        return None
