from unittest.mock import AsyncMock, patch

import httpx
import pytest

from apiclientx import ApiClient

VALID_TOKEN = 'ghp_' + 'a' * 36


@pytest.fixture
def mock_time():
    """Mock time.time() for deterministic tests."""
    current_time = 1_700_000_000.0

    with patch('time.time') as mock_time_mod:
        def time_side_effect():
            nonlocal current_time
            return current_time

        mock_time_mod.side_effect = time_side_effect

        # Helper to advance time
        def advance(seconds):
            nonlocal current_time
            current_time += seconds
            return current_time

        mock_time_mod.advance = advance
        yield mock_time_mod


@pytest.fixture
def mock_sleep():
    """Fixture to mock asyncio.sleep to avoid actual waiting in tests."""
    with patch('asyncio.sleep', new_callable=AsyncMock) as mock:
        yield mock


@pytest.fixture
def token():
    return VALID_TOKEN


class FakeService:
    """
    Stand-in for the remote API behind an httpx.MockTransport.

    Replies come from ``handler`` when given, otherwise from ``responses`` in
    order (the last one repeats). Exceptions in ``responses`` are raised.
    """

    def __init__(self, responses=None, handler=None):
        self.requests = []
        self._responses = list(responses or [])
        self._handler = handler

    def __call__(self, request):
        self.requests.append(request)
        if self._handler is not None:
            return self._handler(request)

        item = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(item, Exception):
            raise item
        return item

    @property
    def transport(self):
        return httpx.MockTransport(self)

    @property
    def paths(self):
        return [request.url.path for request in self.requests]


@pytest.fixture
def fake_service():
    """Factory for FakeService instances."""
    return FakeService


@pytest.fixture
def make_client(token):
    """Build an ApiClient wired to a FakeService."""
    def factory(service, **options):
        options.setdefault('token', token)
        client = ApiClient(transport=service.transport, **options)
        return client

    return factory


@pytest.fixture
def mock_response_headers():
    """Fixture providing mock rate limit headers."""
    return {
        'x-ratelimit-limit': '100',
        'x-ratelimit-remaining': '50',
        'x-ratelimit-reset': '300',
        'retry-after': '30',
    }


@pytest.fixture
def rate_limit_error():
    """Fixture providing a mock rate limit error."""
    error = Exception('Rate limit exceeded')
    error.status_code = 429
    error.headers = {'retry-after': '30'}
    return error
