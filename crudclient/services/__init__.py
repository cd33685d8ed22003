"""
Service layer infrastructure - resilient access to the remote CRUD service.

Provides:
- CredentialStore: Access/refresh tokens with single-flight renewal
- RequestDeduplicator: Prevents duplicate concurrent requests
- classify: Maps raw failures onto the FailureKind taxonomy
- FailureReporter: Logging, notifications and session sign-out decisions
- ApiClient: Unified client combining all of the above
"""

from crudclient.services.errors import (
    ServiceError,
    ApiError,
    FailureKind,
    RenewalFailed,
    NoRefreshCredential,
    RequestThrottled,
    RequestCancelled,
)
from crudclient.services.classifier import classify, kind_for_status
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
)
from crudclient.services.reporting import Disposition, FailureReporter
from crudclient.services.throttle import Debouncer, Throttler
from crudclient.services.client import (
    ApiClient,
    RequestOptions,
    RetryPolicy,
    close_api_client,
    get_api_client,
)

__all__ = [
    # Errors
    "ServiceError",
    "ApiError",
    "FailureKind",
    "RenewalFailed",
    "NoRefreshCredential",
    "RequestThrottled",
    "RequestCancelled",
    # Classifier
    "classify",
    "kind_for_status",
    # Credentials
    "AuthResponse",
    "Base64Codec",
    "CredentialStore",
    "PlainCodec",
    # Deduplicator
    "CancellationToken",
    "RequestDeduplicator",
    "create_request_key",
    # Reporting
    "Disposition",
    "FailureReporter",
    # Throttling
    "Debouncer",
    "Throttler",
    # Client
    "ApiClient",
    "RequestOptions",
    "RetryPolicy",
    "close_api_client",
    "get_api_client",
]
