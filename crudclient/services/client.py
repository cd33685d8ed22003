"""
ApiClient - Async HTTP client for the CRUD service with recovery built in.

Combines:
- CredentialStore for bearer tokens and single-flight renewal
- RequestDeduplicator for concurrent request merging
- classify() + FailureReporter for the failure taxonomy
- Exponential backoff for transient failures
"""

import asyncio
import inspect
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable
from urllib.parse import urlencode

import httpx
from loguru import logger

from crudclient.datastore.storage import create_storage
from crudclient.services.classifier import classify
from crudclient.services.credentials import (
    AuthResponse,
    Base64Codec,
    CredentialStore,
    PlainCodec,
)
from crudclient.services.deduplicator import (
    CancellationToken,
    RequestDeduplicator,
    create_request_key,
    dedupe_by_default,
)
from crudclient.services.errors import (
    ApiError,
    FailureKind,
    RenewalFailed,
    RequestCancelled,
    RequestThrottled,
)
from crudclient.services.reporting import (
    Disposition,
    ErrorCallback,
    FailureReporter,
    Notifier,
)
from crudclient.services.throttle import Debouncer, Throttler
from crudclient.settings import Settings, global_settings

UnauthorizedCallback = Callable[[ApiError], Any]

RETRYABLE_KINDS = frozenset({FailureKind.NETWORK_ERROR, FailureKind.SERVER_ERROR})


@dataclass
class RequestOptions:
    """Per-call behaviour switches."""

    deduplicate: bool | None = None  # None: reads on, writes off
    fingerprint_override: str | None = None
    retry: bool = True
    on_error: ErrorCallback | None = None
    silent: bool = False
    params: dict[str, Any] | None = None
    headers: dict[str, str] | None = None
    timeout: float | None = None


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient failures."""

    max_retries: int = 2
    base_delay: float = 1.0

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry `retry_number` (0-based)."""
        return self.base_delay * (2**retry_number)

    def should_retry(self, failure: ApiError) -> bool:
        return failure.kind in RETRYABLE_KINDS or failure.is_timeout


class ApiClient:
    """
    HTTP client for the CRUD service with credential renewal, deduplication
    and failure recovery.

    Usage:
        async with ApiClient() as client:
            await client.credentials.set_credentials(access, refresh)
            users = await client.get("users", RequestOptions(params={"limit": 10}))

            # Opt a write into deduplication
            await client.post(
                "users", {"email": "a@b.c"}, RequestOptions(deduplicate=True)
            )
    """

    def __init__(
        self,
        settings: Settings | None = None,
        credentials: CredentialStore | None = None,
        deduplicator: RequestDeduplicator | None = None,
        reporter: FailureReporter | None = None,
        notifier: Notifier | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings or global_settings
        self._debug = self._settings.debug
        self._transport = transport

        self.credentials = credentials or CredentialStore(
            storage=create_storage(self._settings.credential_db_url),
            lifetime=timedelta(minutes=self._settings.token_lifetime_minutes),
            refresh_window=timedelta(
                minutes=self._settings.token_refresh_window_minutes
            ),
            codec=Base64Codec() if self._settings.token_encode else PlainCodec(),
        )
        if self.credentials.refresh_fn is None:
            self.credentials.refresh_fn = self._call_refresh_endpoint

        self.deduplicator = deduplicator or RequestDeduplicator(
            pending_timeout=timedelta(seconds=self._settings.dedup_pending_timeout),
            cleanup_interval=timedelta(seconds=self._settings.dedup_cleanup_interval),
            debug=self._debug,
        )
        self.reporter = reporter or FailureReporter(notifier=notifier)
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=self._settings.max_retries,
            base_delay=self._settings.retry_base_delay,
        )
        self.throttler = Throttler()
        self.debouncer = Debouncer()

        self._unauthorized_callbacks: list[UnauthorizedCallback] = []

        # HTTP client (lazy initialization)
        self._http_client: httpx.AsyncClient | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._settings.base_url,
                timeout=httpx.Timeout(self._settings.api_timeout),
                headers={"Content-Type": "application/json"},
                transport=self._transport,
                follow_redirects=True,
            )
        return self._http_client

    def on_unauthorized(self, callback: UnauthorizedCallback) -> None:
        """Register a hook fired when the session is invalidated."""
        self._unauthorized_callbacks.append(callback)

    # Public entry point

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        options: RequestOptions | None = None,
    ) -> Any:
        """
        Make a request with credential renewal, deduplication and retries.

        Args:
            method: HTTP method (GET, POST, ...)
            path: Path relative to the configured API root
            body: JSON body for writes
            options: Per-call switches, see RequestOptions

        Returns:
            Parsed JSON body, raw text for non-JSON bodies, None when empty

        Raises:
            ApiError: the classified failure once recovery is exhausted
        """
        options = options or RequestOptions()
        method = method.upper()

        try:
            return await self._execute(method, path, body, options)
        except Exception as e:
            failure = await self._surface(e, options)
            if failure is e:
                raise
            raise failure from e

    async def get(self, path: str, options: RequestOptions | None = None) -> Any:
        return await self.request("GET", path, options=options)

    async def post(
        self, path: str, body: Any = None, options: RequestOptions | None = None
    ) -> Any:
        return await self.request("POST", path, body, options)

    async def put(
        self, path: str, body: Any = None, options: RequestOptions | None = None
    ) -> Any:
        return await self.request("PUT", path, body, options)

    async def patch(
        self, path: str, body: Any = None, options: RequestOptions | None = None
    ) -> Any:
        return await self.request("PATCH", path, body, options)

    async def delete(self, path: str, options: RequestOptions | None = None) -> Any:
        return await self.request("DELETE", path, options=options)

    async def throttled_request(
        self,
        key: str,
        limit: float,
        method: str,
        path: str,
        body: Any = None,
        options: RequestOptions | None = None,
    ) -> Any:
        """At most one call per `limit` seconds for `key`."""
        options = options or RequestOptions()
        try:
            return await self.throttler.run(
                key, lambda: self.request(method, path, body, options), limit
            )
        except RequestThrottled as e:
            raise await self._surface(e, options) from e

    async def debounced_request(
        self,
        key: str,
        delay: float,
        method: str,
        path: str,
        body: Any = None,
        options: RequestOptions | None = None,
    ) -> Any:
        """Only the last call for `key` within `delay` seconds is sent."""
        options = options or RequestOptions()
        try:
            return await self.debouncer.run(
                key, lambda: self.request(method, path, body, options), delay
            )
        except RequestCancelled as e:
            raise await self._surface(e, options) from e

    # Recovery loop

    async def _execute(
        self,
        method: str,
        path: str,
        body: Any,
        options: RequestOptions,
    ) -> Any:
        renewed = False
        retries = 0

        while True:
            access = await self._preflight()
            try:
                # After a renewal the request must go out with the new token,
                # never join an entry sent with the old one
                return await self._dispatch(
                    method, path, body, options, access, shared=not renewed
                )
            except Exception as e:
                failure = classify(e)

            if failure.kind is FailureKind.AUTHENTICATION_ERROR:
                # Renewal only on the first attempt
                if renewed or retries or not await self.credentials.get_refresh():
                    raise failure
                renewed = True

                current = await self.credentials.get_access()
                if current is not None and current != access:
                    logger.info(f"Token already renewed, retrying {method} {path}")
                    continue
                try:
                    await self.credentials.renew()
                except RenewalFailed as e:
                    logger.error(f"Token refresh after 401 failed: {e}")
                    raise failure
                logger.info(f"Token renewed, retrying {method} {path}")
                continue

            if (
                options.retry
                and retries < self.retry_policy.max_retries
                and self.retry_policy.should_retry(failure)
            ):
                delay = self.retry_policy.delay_for(retries)
                retries += 1
                logger.warning(
                    f"Retrying {method} {path} ({retries}/{self.retry_policy.max_retries}) "
                    f"in {delay:.2f}s: {failure.message}"
                )
                await asyncio.sleep(delay)
                continue

            raise failure

    async def _preflight(self) -> str | None:
        """
        Renew ahead of expiry, or join a renewal already in flight.

        Falls back to the token read before the attempt if renewal fails.
        """
        access = await self.credentials.get_access()
        if self.credentials.renewal_in_flight or (
            await self.credentials.is_expiring_soon()
            and await self.credentials.get_refresh()
        ):
            try:
                return await self.credentials.renew()
            except RenewalFailed as e:
                logger.warning(f"Proactive token refresh failed: {e}")
        return access

    async def _dispatch(
        self,
        method: str,
        path: str,
        body: Any,
        options: RequestOptions,
        access: str | None,
        shared: bool = True,
    ) -> Any:
        deduplicate = (
            options.deduplicate
            if options.deduplicate is not None
            else dedupe_by_default(method)
        )
        if not (shared and deduplicate):
            return await self._send(method, path, body, options, access)

        async def operation(token: CancellationToken) -> Any:
            # Registry cancellation cancels this task, aborting the send
            return await self._send(method, path, body, options, access)

        fingerprint = options.fingerprint_override or create_request_key(
            method, _with_query(path, options.params), body
        )
        return await self.deduplicator.run_deduplicated(fingerprint, operation)

    async def _send(
        self,
        method: str,
        path: str,
        body: Any,
        options: RequestOptions,
        access: str | None,
    ) -> Any:
        """Execute the actual HTTP request."""
        client = await self._get_http_client()

        headers = dict(options.headers or {})
        if access:
            headers["Authorization"] = f"Bearer {access}"

        response = await client.request(
            method=method,
            url=path.lstrip("/"),
            params=options.params,
            headers=headers,
            json=body,
            timeout=options.timeout or self._settings.api_timeout,
        )
        response.raise_for_status()
        return _parse_body(response)

    async def _call_refresh_endpoint(self, refresh_token: str) -> AuthResponse:
        client = await self._get_http_client()
        response = await client.post(
            self._settings.refresh_endpoint,
            headers={"Authorization": f"Bearer {refresh_token}"},
            timeout=self._settings.refresh_timeout,
        )
        response.raise_for_status()
        return AuthResponse.model_validate(response.json())

    # Terminal handling

    async def _surface(self, error: Exception, options: RequestOptions) -> ApiError:
        """Classify, report once, sign out if required; return what to raise."""
        failure = classify(error)
        disposition = await self.reporter.dispatch(
            failure, silent=options.silent, on_error=options.on_error
        )
        if disposition is Disposition.SESSION_INVALIDATED:
            await self._invalidate_session(failure)
        return failure

    async def _invalidate_session(self, failure: ApiError) -> None:
        await self.credentials.clear()
        logger.warning("Session invalidated, credentials cleared")

        for callback in self._unauthorized_callbacks:
            try:
                result = callback(failure)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Unauthorized callback failed: {e}")

    # Lifecycle

    async def close(self) -> None:
        """Close the HTTP client and cleanup resources."""
        self.deduplicator.close()
        self.debouncer.clear()
        self.throttler.clear()

        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

        logger.debug("ApiClient closed")

    async def __aenter__(self) -> "ApiClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    # Status

    def get_cache_status(self) -> dict[str, Any]:
        """Snapshot of in-flight work and recovery counters."""
        return {
            "pendingCount": self.deduplicator.get_in_flight_count(),
            "debounceCount": self.debouncer.count(),
            "throttleCount": self.throttler.count(),
            "renewalInFlight": self.credentials.renewal_in_flight,
            "deduplicator": self.deduplicator.get_stats().to_dict(),
            "failures": self.reporter.get_stats(),
        }


def _with_query(path: str, params: dict[str, Any] | None) -> str:
    if not params:
        return path
    return f"{path}?{urlencode(sorted(params.items()), doseq=True)}"


def _parse_body(response: httpx.Response) -> Any:
    if response.status_code == 204 or not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


# Global client instance
_global_client: ApiClient | None = None


def get_api_client() -> ApiClient:
    """Get the global API client instance."""
    global _global_client
    if _global_client is None:
        _global_client = ApiClient()
    return _global_client


async def close_api_client() -> None:
    """Close the global API client."""
    global _global_client
    if _global_client:
        await _global_client.close()
        _global_client = None
