"""Shared fixtures: a scripted fake CRUD service behind httpx.MockTransport."""

import asyncio
import inspect
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio

from crudclient.datastore.storage import MemoryStorage
from crudclient.services.client import ApiClient
from crudclient.services.credentials import CredentialStore
from crudclient.services.deduplicator import RequestDeduplicator
from crudclient.services.reporting import FailureReporter
from crudclient.settings import Settings

API_ROOT = "/api/v1"
REFRESH_PATH = f"{API_ROOT}/auth/refresh"


class FakeService:
    """
    Replays queued responses per (method, path) and records every request.

    The last queued response for a route is repeated once the queue drains.
    """

    def __init__(self):
        self.calls: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list] = {}
        self.delay = 0.0

    def queue(self, method: str, path: str, *responses) -> None:
        self._routes.setdefault((method, f"{API_ROOT}/{path}"), []).extend(responses)

    def calls_to(self, method: str, path: str) -> list[httpx.Request]:
        target = f"{API_ROOT}/{path}"
        return [c for c in self.calls if c.method == method and c.url.path == target]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)

        queue = self._routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": "route not scripted"})

        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            result = response(request)
            if inspect.isawaitable(result):
                result = await result
            return result
        # Fresh copy: the client binds each response to its request
        return httpx.Response(
            response.status_code, headers=response.headers, content=response.content
        )


class RecordingNotifier:
    def __init__(self):
        self.messages: list[tuple[str, str]] = []

    def __call__(self, message: str, severity: str) -> None:
        self.messages.append((message, severity))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        api_url="http://crud.test",
        max_retries=2,
        retry_base_delay=0.0,
        debug=True,
    )


@pytest.fixture
def service() -> FakeService:
    return FakeService()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def client(settings, service, storage, notifier):
    credentials = CredentialStore(
        storage=storage,
        lifetime=timedelta(minutes=55),
        refresh_window=timedelta(minutes=5),
    )
    api = ApiClient(
        settings=settings,
        credentials=credentials,
        deduplicator=RequestDeduplicator(auto_sweep=False),
        reporter=FailureReporter(notifier=notifier),
        transport=httpx.MockTransport(service.handler),
    )
    yield api
    await api.close()
