"""GraphQL transport for the Monarch Money API.

Every request goes through ``GraphQLClient.execute``, which:

- resolves the session from the ``AuthService`` (no network call without one)
- collapses concurrent identical requests onto a single in-flight call
- spaces request starts at least ``min_interval`` seconds apart
- retries rate-limit and 5xx failures with exponential backoff
- raises classified ``MonarchError`` subclasses for every failure
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from .auth import USER_AGENT, AuthService, Session
from .exceptions import (
    APIError,
    AuthError,
    CauseCategory,
    MonarchError,
    NetworkError,
    ValidationError,
    classify_http_error,
    classify_network_error,
    extract_data,
)

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.monarchmoney.com"
DEFAULT_MIN_INTERVAL = 0.25
DEFAULT_BACKOFF_INITIAL = 0.25
DEFAULT_BACKOFF_MAX = 2.0

# Network errors are left to the caller; only upstream pressure is retried here.
TRANSPORT_RETRY_CATEGORIES = frozenset({CauseCategory.RATE_LIMIT, CauseCategory.DEPENDENCY_DOWN})


@dataclass(frozen=True)
class RequestOptions:
    """Per-call transport options."""

    timeout: float = 30.0
    max_retries: int = 2
    dedupe: bool = True

    def validate(self) -> None:
        if self.timeout <= 0:
            raise ValidationError(f"timeout must be positive, got {self.timeout}")
        if self.max_retries < 0:
            raise ValidationError(f"max_retries must be >= 0, got {self.max_retries}")


class RequestPacer:
    """Enforces a minimum interval between request starts.

    Slots are reserved synchronously, so callers are released in the order
    they reached ``wait()``.
    """

    def __init__(self, min_interval: float = DEFAULT_MIN_INTERVAL, clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self._next_slot = float("-inf")
        self._last_call: Optional[float] = None

    @property
    def last_call(self) -> Optional[float]:
        return self._last_call

    async def wait(self) -> float:
        """Sleep until this caller's start slot. Returns the time waited."""
        now = self._clock()
        slot = max(now, self._next_slot)
        if self._last_call is not None:
            slot = max(slot, self._last_call + self.min_interval)
        self._next_slot = slot + self.min_interval

        delay = slot - now
        if delay > 0:
            logger.debug("Pacing request for %.3fs", delay)
            await asyncio.sleep(delay)
        return delay

    def record_call(self) -> None:
        self._last_call = self._clock()


class TransportState:
    """Mutable state shared by every client that should pace together.

    Pass the same instance to several ``GraphQLClient`` objects to make them
    share one pacing gate and one dedupe table.
    """

    def __init__(self, min_interval: float = DEFAULT_MIN_INTERVAL):
        self.pacer = RequestPacer(min_interval)
        self.inflight: Dict[str, "asyncio.Task[Dict[str, Any]]"] = {}

    def release(self, key: str, task: "asyncio.Task[Dict[str, Any]]") -> None:
        if self.inflight.get(key) is task:
            del self.inflight[key]
        # Mark the outcome as retrieved even if every waiter went away
        if not task.cancelled():
            task.exception()


def make_dedupe_key(query: str, variables: Optional[Mapping[str, Any]] = None) -> str:
    """Build a deterministic key from operation text and variables.

    Raises:
        ValidationError: If the variables cannot be sent as JSON
    """
    try:
        serialized = json.dumps(variables or {}, sort_keys=True, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"variables are not JSON serializable: {e}", cause=e) from e
    return f"{query}::{serialized}"


class GraphQLClient:
    """Executes GraphQL operations against the Monarch Money API."""

    def __init__(
        self,
        auth: AuthService,
        base_url: str = API_BASE_URL,
        state: Optional[TransportState] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        backoff_initial: float = DEFAULT_BACKOFF_INITIAL,
        backoff_max: float = DEFAULT_BACKOFF_MAX,
    ):
        """Initialize the GraphQL client.

        Args:
            auth: Session provider consulted before every request
            base_url: API base URL; '/graphql' is appended when missing
            state: Shared pacing/dedupe state (default: private to this client)
            http_client: Optional httpx client to reuse for every request
            backoff_initial: First retry delay in seconds
            backoff_max: Upper bound for the retry delay in seconds
        """
        base_url = base_url.rstrip("/")
        self.url = base_url if base_url.endswith("/graphql") else f"{base_url}/graphql"
        self.auth = auth
        self.state = state or TransportState()
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self._http_client = http_client

    async def query(
        self,
        query: str,
        variables: Optional[Mapping[str, Any]] = None,
        options: Optional[RequestOptions] = None,
    ) -> Dict[str, Any]:
        """Run a GraphQL query and return its ``data`` payload."""
        return await self.execute(query, variables, options)

    async def mutate(
        self,
        query: str,
        variables: Optional[Mapping[str, Any]] = None,
        options: Optional[RequestOptions] = None,
    ) -> Dict[str, Any]:
        """Run a GraphQL mutation and return its ``data`` payload."""
        return await self.execute(query, variables, options)

    async def execute(
        self,
        query: str,
        variables: Optional[Mapping[str, Any]] = None,
        options: Optional[RequestOptions] = None,
    ) -> Dict[str, Any]:
        """Execute one GraphQL operation.

        Args:
            query: GraphQL operation text
            variables: Operation variables
            options: Timeout, retry and dedupe settings

        Returns:
            Deep copy of the response's ``data`` object

        Raises:
            ValidationError: If the operation text, variables or options are malformed
            MonarchError: Classified failure of the request
        """
        options = options or RequestOptions()
        options.validate()
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("GraphQL operation text is required")
        if variables is not None and not isinstance(variables, Mapping):
            raise ValidationError(f"variables must be a mapping, got {type(variables).__name__}")

        key = make_dedupe_key(query, variables)
        task = self.state.inflight.get(key) if options.dedupe else None
        if task is not None:
            logger.debug("Joining in-flight request %s", key[:80])
        else:
            task = asyncio.ensure_future(self._perform_request(query, variables, options))
            if options.dedupe:
                self.state.inflight[key] = task
            task.add_done_callback(lambda t: self.state.release(key, t))

        # shield: a caller giving up must not cancel the call for other waiters
        result = await asyncio.shield(task)
        return copy.deepcopy(result)

    async def _perform_request(
        self,
        query: str,
        variables: Optional[Mapping[str, Any]],
        options: RequestOptions,
    ) -> Dict[str, Any]:
        session = await self._resolve_session()

        pacer = self.state.pacer
        await pacer.wait()
        try:
            return await self._send_with_retry(session, query, variables, options)
        finally:
            pacer.record_call()

    async def _resolve_session(self) -> Session:
        session = self.auth.get_session() or await self.auth.load_session()
        if session is None or not session.token:
            raise AuthError("No session token available")
        if self.auth.is_expired(session):
            self.auth.invalidate()
            raise AuthError("Session expired")
        return session

    async def _send_with_retry(
        self,
        session: Session,
        query: str,
        variables: Optional[Mapping[str, Any]],
        options: RequestOptions,
    ) -> Dict[str, Any]:
        attempt = 0
        delay = self.backoff_initial
        while True:
            try:
                return await self._send(session, query, variables, options.timeout)
            except MonarchError as e:
                if attempt >= options.max_retries or e.cause_category not in TRANSPORT_RETRY_CATEGORIES:
                    raise
                attempt += 1
                logger.warning(
                    "Retrying Monarch request in %.2fs (attempt %d of %d): %s",
                    delay, attempt, options.max_retries, e,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.backoff_max)

    async def _send(
        self,
        session: Session,
        query: str,
        variables: Optional[Mapping[str, Any]],
        timeout: float,
    ) -> Dict[str, Any]:
        body = {"query": query, "variables": dict(variables or {}), "operationName": None}
        headers = self._build_headers(session)

        try:
            # httpx timeouts are per phase; wait_for bounds the whole attempt
            response = await asyncio.wait_for(self._post(body, headers, timeout), timeout)
        except asyncio.TimeoutError as e:
            raise NetworkError("Request aborted/timeout", cause=e) from e
        except httpx.HTTPError as e:
            raise classify_network_error(e) from e

        if not response.is_success:
            raise classify_http_error(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as e:
            raise APIError(f"GraphQL response was not valid JSON: {e}", cause=e) from e

        return extract_data(payload)

    async def _post(self, body: Dict[str, Any], headers: Dict[str, str], timeout: float) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(self.url, json=body, headers=headers, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(self.url, json=body, headers=headers)

    @staticmethod
    def _build_headers(session: Session) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Token {session.token}",
            "Client-Platform": "web",
            "Origin": "https://app.monarchmoney.com",
            "device-uuid": session.device_uuid,
            "User-Agent": USER_AGENT,
        }
