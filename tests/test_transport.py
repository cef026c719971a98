"""Tests for the GraphQL transport."""

import asyncio
import datetime
import json
import time

import httpx
import pytest
from unittest.mock import AsyncMock, patch

from monarch_mcp.auth import AuthService, Session
from monarch_mcp.exceptions import (
    APIError,
    AuthError,
    DependencyDownError,
    EmptyResponseError,
    NetworkError,
    RateLimitError,
    ValidationError,
)
from monarch_mcp.transport import (
    GraphQLClient,
    RequestOptions,
    TransportState,
    make_dedupe_key,
)

ACCOUNTS_QUERY = "{ accounts { id } }"
ACCOUNTS_DATA = {"accounts": [{"id": "acc-1"}, {"id": "acc-2"}]}


class Recorder:
    """Mock transport handler that counts calls and replays responses."""

    def __init__(self, *responses, delay=0.0):
        self.responses = list(responses) or [httpx.Response(200, json={"data": ACCOUNTS_DATA})]
        self.delay = delay
        self.requests = []
        self.started_at = []

    async def __call__(self, request):
        self.requests.append(request)
        self.started_at.append(time.monotonic())
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses[0] if len(self.responses) == 1 else self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        # Fresh response per call so a canned one can be replayed
        return httpx.Response(response.status_code, content=response.content, headers=response.headers)

    @property
    def calls(self):
        return len(self.requests)


@pytest.fixture
def auth(tmp_path):
    """AuthService holding a valid in-memory session."""
    service = AuthService(session_path=tmp_path / "session.json", device_uuid="device-123")
    service._session = Session(token="test-token", device_uuid="device-123")
    return service


def make_client(auth, handler, min_interval=0.0, state=None, **kwargs):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GraphQLClient(
        auth,
        state=state or TransportState(min_interval),
        http_client=http_client,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_query_sends_graphql_request(auth):
    """Test query posts operation text, variables and identity headers."""
    handler = Recorder()
    client = make_client(auth, handler)

    result = await client.query(ACCOUNTS_QUERY, {"first": 1})

    assert result == ACCOUNTS_DATA
    request = handler.requests[0]
    assert str(request.url) == "https://api.monarchmoney.com/graphql"
    assert request.method == "POST"
    assert json.loads(request.content) == {
        "query": ACCOUNTS_QUERY,
        "variables": {"first": 1},
        "operationName": None,
    }
    assert request.headers["Authorization"] == "Token test-token"
    assert request.headers["device-uuid"] == "device-123"
    assert request.headers["Client-Platform"] == "web"
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["User-Agent"].startswith("monarch-mcp/")


@pytest.mark.asyncio
async def test_mutate_behaves_like_query(auth):
    """Test mutate goes through the same request path."""
    handler = Recorder(httpx.Response(200, json={"data": {"updateAccount": {"id": "acc-1"}}}))
    client = make_client(auth, handler)

    result = await client.mutate("mutation { updateAccount { id } }")

    assert result == {"updateAccount": {"id": "acc-1"}}
    assert json.loads(handler.requests[0].content)["variables"] == {}


def test_base_url_normalization(auth):
    """Test /graphql is appended only when missing."""
    assert GraphQLClient(auth, base_url="https://example.test").url == "https://example.test/graphql"
    assert GraphQLClient(auth, base_url="https://example.test/graphql").url == "https://example.test/graphql"
    assert GraphQLClient(auth, base_url="https://example.test/").url == "https://example.test/graphql"


@pytest.mark.asyncio
async def test_concurrent_identical_requests_share_one_call(auth):
    """Test identical concurrent requests collapse into one network call."""
    handler = Recorder(delay=0.01)
    client = make_client(auth, handler)

    first, second = await asyncio.gather(
        client.query(ACCOUNTS_QUERY, {}),
        client.query(ACCOUNTS_QUERY, {}),
    )

    assert handler.calls == 1
    assert first == second == ACCOUNTS_DATA
    # Each caller gets its own copy
    assert first is not second
    first["accounts"].clear()
    assert second == ACCOUNTS_DATA


@pytest.mark.asyncio
async def test_concurrent_identical_requests_share_errors(auth):
    """Test every waiter receives the same error from the shared call."""
    handler = Recorder(httpx.Response(400, text="Bad query"), delay=0.01)
    client = make_client(auth, handler)

    results = await asyncio.gather(
        client.query(ACCOUNTS_QUERY),
        client.query(ACCOUNTS_QUERY),
        return_exceptions=True,
    )

    assert handler.calls == 1
    assert all(isinstance(r, APIError) for r in results)
    assert results[0] is results[1]


@pytest.mark.asyncio
async def test_different_variables_are_not_collapsed(auth):
    """Test requests with different variables each hit the network."""
    handler = Recorder(delay=0.01)
    client = make_client(auth, handler)

    await asyncio.gather(
        client.query(ACCOUNTS_QUERY, {"first": 1}),
        client.query(ACCOUNTS_QUERY, {"first": 2}),
    )

    assert handler.calls == 2


@pytest.mark.asyncio
async def test_dedupe_can_be_disabled(auth):
    """Test dedupe=False always issues its own call."""
    handler = Recorder(delay=0.01)
    client = make_client(auth, handler)
    options = RequestOptions(dedupe=False)

    await asyncio.gather(
        client.query(ACCOUNTS_QUERY, options=options),
        client.query(ACCOUNTS_QUERY, options=options),
    )

    assert handler.calls == 2


def test_dedupe_key_normalizes_variable_order():
    """Test key order does not matter but values do."""
    assert make_dedupe_key("q", {"a": 1, "b": {"c": 2, "d": 3}}) == make_dedupe_key(
        "q", {"b": {"d": 3, "c": 2}, "a": 1}
    )
    assert make_dedupe_key("q", {"a": 1}) != make_dedupe_key("q", {"a": 2})
    assert make_dedupe_key("q", None) == make_dedupe_key("q", {})
    assert make_dedupe_key("q1", {}) != make_dedupe_key("q2", {})


@pytest.mark.asyncio
async def test_inflight_entry_released_after_success_and_failure(auth):
    """Test the dedupe table is emptied whatever the outcome."""
    handler = Recorder(
        httpx.Response(200, json={"data": ACCOUNTS_DATA}),
        httpx.Response(400, text="nope"),
    )
    client = make_client(auth, handler)

    await client.query(ACCOUNTS_QUERY)
    assert client.state.inflight == {}

    with pytest.raises(APIError):
        await client.query(ACCOUNTS_QUERY)
    assert client.state.inflight == {}

    # A later identical request goes back to the network
    assert handler.calls == 2


@pytest.mark.asyncio
async def test_abandoned_caller_does_not_cancel_shared_call(auth):
    """Test cancelling one waiter leaves the in-flight call and other waiters intact."""
    release = asyncio.Event()
    started = asyncio.Event()
    calls = []

    async def handler(request):
        calls.append(request)
        started.set()
        await release.wait()
        return httpx.Response(200, json={"data": ACCOUNTS_DATA})

    client = make_client(auth, handler)
    abandoned = asyncio.create_task(client.query(ACCOUNTS_QUERY))
    waiting = asyncio.create_task(client.query(ACCOUNTS_QUERY))
    await started.wait()

    abandoned.cancel()
    with pytest.raises(asyncio.CancelledError):
        await abandoned

    release.set()
    assert await waiting == ACCOUNTS_DATA
    assert len(calls) == 1
    assert client.state.inflight == {}


@pytest.mark.asyncio
async def test_pacing_spaces_sequential_calls(auth):
    """Test back-to-back calls start at least min_interval apart."""
    interval = 0.05
    handler = Recorder()
    client = make_client(auth, handler, min_interval=interval)

    for i in range(4):
        await client.query(ACCOUNTS_QUERY, {"page": i})

    starts = handler.started_at
    assert handler.calls == 4
    assert starts[-1] - starts[0] >= 3 * interval - 0.01
    for earlier, later in zip(starts, starts[1:]):
        assert later - earlier >= interval - 0.005


@pytest.mark.asyncio
async def test_pacing_is_shared_between_clients(auth):
    """Test clients sharing a TransportState share one pacing gate."""
    interval = 0.05
    state = TransportState(min_interval=interval)
    handler = Recorder()
    first = make_client(auth, handler, state=state)
    second = make_client(auth, handler, state=state)

    await asyncio.gather(
        first.query(ACCOUNTS_QUERY, {"page": 1}),
        second.query(ACCOUNTS_QUERY, {"page": 2}),
        first.query(ACCOUNTS_QUERY, {"page": 3}),
    )

    starts = sorted(handler.started_at)
    assert handler.calls == 3
    for earlier, later in zip(starts, starts[1:]):
        assert later - earlier >= interval - 0.005


@pytest.mark.asyncio
async def test_server_errors_retried_until_budget_exhausted(auth):
    """Test a persistent 500 is attempted max_retries + 1 times."""
    handler = Recorder(httpx.Response(500, text="boom"))
    client = make_client(auth, handler)

    with patch("monarch_mcp.transport.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        with pytest.raises(DependencyDownError) as exc_info:
            await client.query(ACCOUNTS_QUERY, options=RequestOptions(max_retries=2))

    assert handler.calls == 3
    assert exc_info.value.status_code == 500
    assert [c.args[0] for c in mock_sleep.await_args_list] == [0.25, 0.5]


@pytest.mark.asyncio
async def test_backoff_doubles_and_is_capped(auth):
    """Test backoff delays double from 250ms and stop at 2s."""
    handler = Recorder(httpx.Response(503))
    client = make_client(auth, handler)

    with patch("monarch_mcp.transport.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        with pytest.raises(DependencyDownError):
            await client.query(ACCOUNTS_QUERY, options=RequestOptions(max_retries=6))

    assert handler.calls == 7
    assert [c.args[0] for c in mock_sleep.await_args_list] == [0.25, 0.5, 1.0, 2.0, 2.0, 2.0]


@pytest.mark.asyncio
async def test_rate_limit_retried_then_succeeds(auth):
    """Test a 429 followed by success returns the data."""
    handler = Recorder(
        httpx.Response(429),
        httpx.Response(200, json={"data": ACCOUNTS_DATA}),
    )
    client = make_client(auth, handler, backoff_initial=0.001)

    result = await client.query(ACCOUNTS_QUERY)

    assert result == ACCOUNTS_DATA
    assert handler.calls == 2


@pytest.mark.asyncio
async def test_rate_limit_error_after_retries(auth):
    """Test RateLimitError surfaces once retries are used up."""
    handler = Recorder(httpx.Response(429))
    client = make_client(auth, handler, backoff_initial=0.001)

    with pytest.raises(RateLimitError):
        await client.query(ACCOUNTS_QUERY, options=RequestOptions(max_retries=1))

    assert handler.calls == 2


@pytest.mark.asyncio
async def test_client_error_fails_fast(auth):
    """Test a 400 is attempted once with no backoff."""
    handler = Recorder(httpx.Response(400, text="Variable $first of type Int! was not provided"))
    client = make_client(auth, handler)

    with patch("monarch_mcp.transport.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        with pytest.raises(APIError, match="was not provided"):
            await client.query(ACCOUNTS_QUERY)

    assert handler.calls == 1
    mock_sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_unauthorized_response_raises_auth_error(auth):
    """Test a 401 from the API is an AuthError and is not retried."""
    handler = Recorder(httpx.Response(401, text="Unauthorized"))
    client = make_client(auth, handler)

    with pytest.raises(AuthError):
        await client.query(ACCOUNTS_QUERY)

    assert handler.calls == 1


@pytest.mark.asyncio
async def test_connection_failure_raises_network_error(auth):
    """Test connection errors are classified and not retried by the transport."""
    handler = Recorder(httpx.ConnectError("Connection refused"))
    client = make_client(auth, handler)

    with pytest.raises(NetworkError, match="Connection refused") as exc_info:
        await client.query(ACCOUNTS_QUERY)

    assert handler.calls == 1
    assert isinstance(exc_info.value.cause, httpx.ConnectError)


@pytest.mark.asyncio
async def test_timeout_raises_network_error_and_updates_pacing(auth):
    """Test timeouts become NetworkError and still record the call time."""
    handler = Recorder(httpx.ReadTimeout("timed out"))
    client = make_client(auth, handler)

    with pytest.raises(NetworkError, match="Request aborted/timeout"):
        await client.query(ACCOUNTS_QUERY, options=RequestOptions(timeout=0.5))

    assert client.state.pacer.last_call is not None


@pytest.mark.asyncio
async def test_missing_session_never_hits_network(tmp_path):
    """Test no session and nothing on disk fails before any network call."""
    auth = AuthService(session_path=tmp_path / "missing.json")
    handler = Recorder()
    client = make_client(auth, handler)

    with pytest.raises(AuthError, match="No session token"):
        await client.query(ACCOUNTS_QUERY)

    assert handler.calls == 0
    assert client.state.pacer.last_call is None


@pytest.mark.asyncio
async def test_expired_session_never_hits_network(tmp_path):
    """Test an expired session is discarded and rejected."""
    auth = AuthService(session_path=tmp_path / "session.json")
    auth._session = Session(
        token="old-token",
        device_uuid="device-123",
        token_expiration="2020-01-01T00:00:00Z",
    )
    handler = Recorder()
    client = make_client(auth, handler)

    with pytest.raises(AuthError, match="Session expired"):
        await client.query(ACCOUNTS_QUERY)

    assert handler.calls == 0
    assert auth.get_session() is None


@pytest.mark.asyncio
async def test_session_loaded_from_disk(tmp_path):
    """Test the transport falls back to the stored session."""
    session_file = tmp_path / "session.json"
    session_file.write_text(json.dumps({"token": "disk-token", "deviceUuid": "disk-device"}))
    auth = AuthService(session_path=session_file)
    handler = Recorder()
    client = make_client(auth, handler)

    await client.query(ACCOUNTS_QUERY)

    assert handler.requests[0].headers["Authorization"] == "Token disk-token"
    assert handler.requests[0].headers["device-uuid"] == "disk-device"


@pytest.mark.asyncio
async def test_empty_data_raises_empty_response_error(auth):
    """Test a 200 with null data and no errors is not a generic failure."""
    handler = Recorder(httpx.Response(200, json={"data": None, "errors": []}))
    client = make_client(auth, handler)

    with pytest.raises(EmptyResponseError):
        await client.query(ACCOUNTS_QUERY)

    assert handler.calls == 1


@pytest.mark.asyncio
async def test_graphql_error_surfaces_message_verbatim(auth):
    """Test GraphQL errors become APIError with the server's message."""
    handler = Recorder(
        httpx.Response(200, json={"data": None, "errors": [{"message": "Something went wrong"}]})
    )
    client = make_client(auth, handler)

    with pytest.raises(APIError) as exc_info:
        await client.query(ACCOUNTS_QUERY)

    assert exc_info.value.message == "Something went wrong"
    assert handler.calls == 1


@pytest.mark.asyncio
async def test_graphql_rate_limit_message_is_retried(auth):
    """Test a rate-limit GraphQL error is retried like a 429."""
    handler = Recorder(
        httpx.Response(200, json={"errors": [{"message": "Rate limit exceeded, slow down"}]}),
        httpx.Response(200, json={"data": ACCOUNTS_DATA}),
    )
    client = make_client(auth, handler, backoff_initial=0.001)

    assert await client.query(ACCOUNTS_QUERY) == ACCOUNTS_DATA
    assert handler.calls == 2


@pytest.mark.asyncio
async def test_invalid_json_response_raises_api_error(auth):
    """Test an undecodable 200 body is an APIError."""
    handler = Recorder(httpx.Response(200, text="<html>oops</html>"))
    client = make_client(auth, handler)

    with pytest.raises(APIError, match="not valid JSON"):
        await client.query(ACCOUNTS_QUERY)


@pytest.mark.asyncio
async def test_malformed_input_rejected_before_network(auth):
    """Test bad operation text, variables or options raise ValidationError."""
    handler = Recorder()
    client = make_client(auth, handler)

    with pytest.raises(ValidationError):
        await client.query("   ")
    with pytest.raises(ValidationError):
        await client.query(ACCOUNTS_QUERY, ["not", "a", "mapping"])
    with pytest.raises(ValidationError):
        await client.query(ACCOUNTS_QUERY, options=RequestOptions(timeout=0))
    with pytest.raises(ValidationError):
        await client.query(ACCOUNTS_QUERY, options=RequestOptions(max_retries=-1))

    assert handler.calls == 0


@pytest.mark.asyncio
async def test_unserializable_variables_rejected_before_network(auth):
    """Test variables that cannot be sent as JSON raise ValidationError without a request."""
    handler = Recorder()
    client = make_client(auth, handler)

    for variables in ({"startDate": datetime.date(2024, 1, 1)}, {"amount": float("nan")}, {1: "a", "b": 2}):
        with pytest.raises(ValidationError, match="not JSON serializable") as exc_info:
            await client.query(ACCOUNTS_QUERY, variables)
        assert exc_info.value.cause is not None

    with pytest.raises(ValidationError):
        await client.query(
            ACCOUNTS_QUERY,
            {"startDate": datetime.date(2024, 1, 1)},
            options=RequestOptions(dedupe=False),
        )

    assert handler.calls == 0
    assert client.state.inflight == {}


@pytest.mark.asyncio
async def test_timeout_bounds_whole_attempt(auth):
    """Test a response slower than the timeout is aborted as a NetworkError."""
    handler = Recorder(delay=0.5)
    client = make_client(auth, handler)

    start = time.monotonic()
    with pytest.raises(NetworkError, match="Request aborted/timeout") as exc_info:
        await client.query(ACCOUNTS_QUERY, options=RequestOptions(timeout=0.05))
    elapsed = time.monotonic() - start

    assert elapsed < 0.4
    assert handler.calls == 1
    assert isinstance(exc_info.value.cause, asyncio.TimeoutError)
    assert client.state.pacer.last_call is not None
