"""Propstack CRM API client.

API docs: https://docs.propstack.de/reference
Auth: static API key in the X-API-KEY header.
Rate limits answer 429, sometimes with a Retry-After header.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_exponential

from ..errors import classify_response, network_failure
from ..models import ErrorKind, Failure, Outcome, RequestDescriptor

logger = logging.getLogger(__name__)

API_BASE = "https://api.propstack.de/v1"

MAX_RETRIES = 3
RETRY_BASE_SECONDS = 1.0
MAX_RETRY_AFTER_SECONDS = 60.0

_BODY_METHODS = {"POST", "PUT", "PATCH"}


def encode_params(params: Optional[dict[str, Any]]) -> list[tuple[str, str]]:
    """Encode query params the way Propstack expects: arrays as repeated ``key[]``."""
    encoded: list[tuple[str, str]] = []
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            encoded.extend((f"{key}[]", _scalar(item)) for item in value)
        else:
            encoded.append((key, _scalar(value)))
    return encoded


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_transient(outcome: Outcome) -> bool:
    return isinstance(outcome, Failure) and outcome.transient


def _give_up(retry_state: RetryCallState) -> Outcome:
    return retry_state.outcome.result()


class PropstackClient:
    """Async Propstack client. One instance per credential; safe to share across tasks."""

    def __init__(
        self,
        api_key: str,
        base_url: str = API_BASE,
        *,
        timeout: float = 30.0,
        max_retries: int = MAX_RETRIES,
        retry_base_seconds: float = RETRY_BASE_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if not api_key:
            raise ValueError("A Propstack API key is required")
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self._backoff = wait_exponential(multiplier=retry_base_seconds, exp_base=2)
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"X-API-KEY": api_key, "Accept": "application/json"},
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings, **kwargs) -> PropstackClient:
        return cls(
            settings.api_key,
            settings.base_url,
            timeout=settings.timeout_seconds,
            max_retries=settings.max_retries,
            **kwargs,
        )

    async def __aenter__(self) -> PropstackClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ─── Verbs ────────────────────────────────────────────────────────────────

    async def get(self, path: str, params: Optional[dict[str, Any]] = None) -> Outcome:
        return await self.execute(RequestDescriptor(method="GET", path=path, params=params or {}))

    async def post(self, path: str, body: Any = None, params: Optional[dict[str, Any]] = None) -> Outcome:
        return await self.execute(RequestDescriptor(method="POST", path=path, params=params or {}, body=body))

    async def put(self, path: str, body: Any = None, params: Optional[dict[str, Any]] = None) -> Outcome:
        return await self.execute(RequestDescriptor(method="PUT", path=path, params=params or {}, body=body))

    async def delete(self, path: str, params: Optional[dict[str, Any]] = None) -> Outcome:
        return await self.execute(RequestDescriptor(method="DELETE", path=path, params=params or {}))

    # ─── Request executor ─────────────────────────────────────────────────────

    async def execute(self, request: RequestDescriptor) -> Outcome:
        """Run one logical request, retrying rate limits and network errors.

        Returns a Success or a classified Failure. Transient failures are retried
        up to ``max_retries`` times with 1s/2s/4s backoff, or the server's
        Retry-After capped at ``MAX_RETRY_AFTER_SECONDS``. When the budget runs
        out the last transient Failure is returned with ``attempts`` set.
        """
        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            retry=retry_if_result(_is_transient),
            before_sleep=self._log_retry,
            retry_error_callback=_give_up,
        )
        outcome = await retrying(self._attempt, request)
        if isinstance(outcome, Failure):
            attempts = retrying.statistics.get("attempt_number", 1)
            outcome = outcome.model_copy(update={"attempts": attempts})
            logger.debug("Propstack %s %s failed: %s", request.method, request.path, outcome.kind.value)
        return outcome

    async def _attempt(self, request: RequestDescriptor) -> Outcome:
        kwargs: dict[str, Any] = {"params": encode_params(request.params)}
        method = request.method.upper()
        if request.body is not None and method in _BODY_METHODS:
            kwargs["json"] = request.body

        try:
            response = await self._http.request(method, request.path, **kwargs)
        except httpx.TransportError as exc:
            return network_failure(exc, request.path)
        return classify_response(response, request.path)

    def _wait(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome.result()
        if outcome.kind is ErrorKind.RATE_LIMITED and outcome.retry_after is not None:
            return min(outcome.retry_after, MAX_RETRY_AFTER_SECONDS)
        return self._backoff(retry_state)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome.result()
        request = retry_state.args[0]
        logger.warning(
            "Propstack %s %s failed (%s), retry %d/%d in %.1fs",
            request.method,
            request.path,
            outcome.kind.value,
            retry_state.attempt_number,
            self.max_retries,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
        )
