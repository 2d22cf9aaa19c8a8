import random
from email.utils import formatdate

import httpx
import pytest

from apiclientx.exceptions import RequestFailedError
from apiclientx.models import ErrorClassification, ErrorKind
from apiclientx.utils import (
    classify_error,
    classify_response,
    estimate_size,
    exponential_backoff,
    format_duration,
    is_rate_limit_error,
    parse_link_header,
    parse_rate_limit_headers,
    retry_with_backoff,
    sanitize_endpoint,
)


def test_is_rate_limit_error():
    """Test that is_rate_limit_error correctly identifies rate limit errors."""
    # Test with a classified rate limit failure
    classification = ErrorClassification(kind=ErrorKind.RATE_LIMIT, retryable=True, reset_at=1.0)
    assert is_rate_limit_error(RequestFailedError('quota', classification)) is True

    # Test with HTTP 429 status code directly
    class HTTP429Error(Exception):
        status_code = 429
    assert is_rate_limit_error(HTTP429Error()) is True

    # Test with HTTP 429 status code in response
    class Response:
        def __init__(self):
            self.status_code = 429
    class ErrorWithResponse(Exception):
        def __init__(self):
            self.response = Response()
    assert is_rate_limit_error(ErrorWithResponse()) is True

    # Test with rate limit phrases in error message
    assert is_rate_limit_error(Exception("Rate limit exceeded")) is True
    assert is_rate_limit_error(Exception("Too many requests")) is True
    assert is_rate_limit_error(Exception("Quota exceeded")) is True
    assert is_rate_limit_error(Exception("Request was throttled")) is True
    assert is_rate_limit_error(Exception("RATE LIMIT EXCEEDED")) is True

    # Test with non-rate-limit exceptions
    assert is_rate_limit_error(Exception()) is False
    assert is_rate_limit_error(ValueError()) is False

    class HTTP404Error(Exception):
        status_code = 404
    assert is_rate_limit_error(HTTP404Error()) is False
    assert is_rate_limit_error(Exception("Invalid request")) is False


@pytest.mark.parametrize('status,kind,retryable', [
    (400, ErrorKind.CLIENT, False),
    (401, ErrorKind.CLIENT, False),
    (404, ErrorKind.CLIENT, False),
    (422, ErrorKind.CLIENT, False),
    (408, ErrorKind.CLIENT, True),
    (429, ErrorKind.CLIENT, True),
    (500, ErrorKind.SERVER, True),
    (503, ErrorKind.SERVER, True),
])
def test_classify_response(status, kind, retryable):
    classification = classify_response(status)
    assert classification.kind == kind
    assert classification.retryable is retryable
    assert classification.status_code == status


def test_classify_exhausted_quota():
    headers = {'x-ratelimit-remaining': '0', 'x-ratelimit-reset': '1700000060'}
    classification = classify_response(403, headers)
    assert classification.kind == ErrorKind.RATE_LIMIT
    assert classification.retryable is True
    assert classification.reset_at == 1_700_000_060
    assert classification.quota_exhausted

    # A plain 403 is a permission problem
    assert classify_response(403, {'x-ratelimit-remaining': '10'}).retryable is False


def test_classify_error():
    request = httpx.Request('GET', 'https://api.github.com/x')

    assert classify_error(httpx.ReadTimeout('slow', request=request)).kind == ErrorKind.NETWORK
    assert classify_error(httpx.ConnectError('refused', request=request)).retryable is True
    assert classify_error(ValueError('bad')).kind == ErrorKind.UNKNOWN
    assert classify_error(ValueError('bad')).retryable is False

    response = httpx.Response(502, request=request)
    error = httpx.HTTPStatusError('bad gateway', request=request, response=response)
    assert classify_error(error).kind == ErrorKind.SERVER

    classification = ErrorClassification(kind=ErrorKind.CLIENT, status_code=404)
    assert classify_error(RequestFailedError('nope', classification)) is classification


def test_exponential_backoff_bounds():
    rng = random.Random(42)
    for attempt in range(10):
        delay = exponential_backoff(attempt, base_delay=1, max_delay=30, jitter=0.1, rng=rng)
        expected = min(2 ** attempt, 30)
        assert expected <= delay <= min(expected * 1.1, 30)


def test_exponential_backoff_without_jitter():
    assert [exponential_backoff(a, jitter=0) for a in range(6)] == [1, 2, 4, 8, 16, 30]


def test_parse_rate_limit_headers_epoch_and_relative():
    epoch = parse_rate_limit_headers({'X-RateLimit-Reset': '1700000300', 'X-RateLimit-Remaining': '7'}, now=1_700_000_000)
    assert epoch == {'remaining': 7, 'reset_at': 1_700_000_300}

    relative = parse_rate_limit_headers({'x-rate-limit-reset': '60', 'x-rate-limit-limit': '100'}, now=1000.0)
    assert relative == {'reset_at': 1060.0, 'limit': 100}


def test_parse_retry_after(mock_response_headers):
    parsed = parse_rate_limit_headers(mock_response_headers, now=1000.0)
    assert parsed['retry_after'] == 30
    assert parsed['reset_at'] == 1300.0

    now = 1_700_000_000.0
    http_date = formatdate(now + 120, usegmt=True)
    assert parse_rate_limit_headers({'Retry-After': http_date}, now=now)['retry_after'] == pytest.approx(120)

    assert 'retry_after' not in parse_rate_limit_headers({'Retry-After': 'soon'})


def test_parse_link_header():
    header = (
        '<https://api.github.com/repos/x/y/issues?page=2>; rel="next", '
        '<https://api.github.com/repos/x/y/issues?page=5>; rel="last"'
    )
    assert parse_link_header(header) == {
        'next': 'https://api.github.com/repos/x/y/issues?page=2',
        'last': 'https://api.github.com/repos/x/y/issues?page=5',
    }
    assert parse_link_header(None) == {}


@pytest.mark.parametrize('endpoint,expected', [
    ('/repos/octocat/hello', '/repos/{owner}/{repo}'),
    ('/repos/octocat/hello/pulls/12?state=open', '/repos/{owner}/{repo}/pulls/{id}'),
    ('/users/octocat/repos', '/users/{username}/repos'),
    ('/orgs/github/members', '/orgs/{org}/members'),
    ('/gists/' + 'a' * 40, '/gists/{sha}'),
    ('/user', '/user'),
])
def test_sanitize_endpoint(endpoint, expected):
    assert sanitize_endpoint(endpoint) == expected


def test_estimate_size():
    assert estimate_size(None) == 0
    assert estimate_size('abc') == 6
    assert estimate_size({'a': 1}) == 2 + 8
    assert estimate_size([1, 'ab']) == 12


def test_format_duration():
    assert format_duration(0.25) == '250ms'
    assert format_duration(1.5) == '1.5s'
    assert format_duration(120) == '2.0m'
    assert format_duration(7200) == '2.0h'


@pytest.mark.asyncio
class TestRetryWithBackoff:
    async def test_retries_transient_errors(self, mock_sleep):
        request = httpx.Request('GET', 'https://api.github.com/x')
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise httpx.ConnectError('refused', request=request)
            return 'ok'

        assert await retry_with_backoff(flaky, retries=3) == 'ok'
        assert calls == 3
        assert mock_sleep.await_count == 2

    async def test_stops_on_permanent_errors(self, mock_sleep):
        async def broken():
            raise ValueError('bad input')

        with pytest.raises(ValueError):
            await retry_with_backoff(broken, retries=3)
        mock_sleep.assert_not_called()

    async def test_gives_up_after_retries(self, mock_sleep):
        async def always_fails():
            raise RuntimeError('down')

        with pytest.raises(RuntimeError):
            await retry_with_backoff(always_fails, retries=2, should_retry=lambda e, a: True)
        assert mock_sleep.await_count == 2
