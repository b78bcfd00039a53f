"""
Resilient HTTP client for outbound service calls.

Wraps a pooled ``httpx.AsyncClient`` with:

- bearer token forwarding from the active request context
- single-flight de-duplication of identical in-flight calls
- linear-backoff retry for transport failures and 5xx responses
- ``cached_get`` backed by the namespaced cache
"""

import asyncio
import hashlib
from dataclasses import dataclass
from json import dumps as json_dumps
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, retry_async
from ..caching.cache_store import NamespacedCache
from ..caching.namespaces import CacheNamespace
from ..domain.request_context import get_auth_header


@dataclass
class CachedResponse:
    """Payload returned by ``cached_get``."""
    data: Any
    from_cache: bool
    status_code: Optional[int] = None


def _serialize(value: Any) -> str:
    return json_dumps(value, sort_keys=True, default=str, separators=(",", ":"))


def build_request_key(method: str, url: str, params: Optional[Mapping[str, Any]] = None,
                      json: Any = None, authorization: Optional[str] = None) -> str:
    """Identity of an outbound call for de-duplication purposes.

    Calls that differ in body or caller credentials never share a key; the
    credential is folded in as a short digest so tokens do not end up in logs.
    """
    key = f"{method.upper()}:{url}:{_serialize(params or {})}"
    if json is not None:
        key += f":{_serialize(json)}"
    if authorization:
        key += ":" + hashlib.sha256(authorization.encode()).hexdigest()[:16]
    return key


def is_retryable(exc: BaseException) -> bool:
    """No response at all (connection error, timeout) or a 5xx response."""
    if isinstance(exc, httpx.HTTPStatusError):
        return 500 <= exc.response.status_code <= 599
    return isinstance(exc, httpx.TransportError)


def _outcome(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return "server_error" if exc.response.status_code >= 500 else "client_error"
    return "transport_error"


class ResilientHTTPClient:
    """Outbound HTTP client shared by all requests of the process."""

    def __init__(self,
                 base_url: str = "",
                 *,
                 timeout: float = 10.0,
                 retry_config: Optional[RetryConfig] = None,
                 cache: Optional[NamespacedCache] = None,
                 cached_get_ttl: float = 60,
                 metrics: Optional[MetricsCollector] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=1.0, backoff_strategy="linear")
        self.cache = cache
        self.cached_get_ttl = cached_get_ttl
        self.metrics = metrics
        self.logger = get_logger("ehr.http_client")
        self._sleep = sleep
        self._pending: Dict[str, "asyncio.Task[httpx.Response]"] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def request(self,
                      method: str,
                      url: str,
                      *,
                      params: Optional[Mapping[str, Any]] = None,
                      json: Any = None,
                      headers: Optional[Mapping[str, str]] = None) -> httpx.Response:
        """Send a request, joining an identical call already in flight.

        De-duplication is per caller: the forwarded ``Authorization`` header is
        part of the request key, so concurrent same-URL calls made with
        different credentials each reach the network.

        Raises ``httpx.HTTPStatusError`` for 4xx/5xx responses and
        ``httpx.TransportError`` when no response was received, after retries.
        """
        method = method.upper()
        merged = httpx.Headers(get_auth_header())
        if headers:
            merged.update(headers)

        key = build_request_key(method, url, params, json, merged.get("authorization"))
        task = self._pending.get(key)
        if task is not None and not task.done():
            self.logger.debug("Joining in-flight request", method=method, url=url)
            if self.metrics:
                self.metrics.record_outbound_deduplicated(method)
        else:
            task = asyncio.ensure_future(self._run_shared(key, method, url, params, json, merged))
            self._pending[key] = task
            task.add_done_callback(lambda t: self._settle(key, t))

        # One caller going away must not cancel the call the others wait on
        return await asyncio.shield(task)

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def cached_get(self,
                         url: str,
                         *,
                         params: Optional[Mapping[str, Any]] = None,
                         headers: Optional[Mapping[str, str]] = None,
                         ttl: Optional[float] = None) -> CachedResponse:
        """GET through the identity namespace of the cache."""
        cache_key = f"http:{url}:{_serialize(params or {})}"
        if self.cache is not None:
            try:
                cached = self.cache.get(CacheNamespace.IDENTITY, cache_key)
            except Exception as e:
                self.logger.warning("Cache read failed", key=cache_key, error=str(e))
                cached = None
            if cached is not None:
                return CachedResponse(data=cached, from_cache=True)

        response = await self.get(url, params=params, headers=headers)
        data = response.json() if response.content else None

        if data is not None and self.cache is not None:
            try:
                self.cache.set(CacheNamespace.IDENTITY, cache_key, data, ttl if ttl is not None else self.cached_get_ttl)
            except Exception as e:
                self.logger.warning("Cache write failed", key=cache_key, error=str(e))

        return CachedResponse(data=data, from_cache=False, status_code=response.status_code)

    async def close(self):
        """Close the connection pool."""
        await self.client.aclose()
        self.logger.info("HTTP client closed")

    async def _run_shared(self, key: str, method: str, url: str, params: Optional[Mapping[str, Any]],
                          json: Any, headers: httpx.Headers) -> httpx.Response:
        try:
            return await self._send_with_retry(method, url, params, json, headers)
        finally:
            if self._pending.get(key) is asyncio.current_task():
                del self._pending[key]

    def _settle(self, key: str, task: "asyncio.Task[httpx.Response]"):
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            task.exception()

    async def _send_with_retry(self, method: str, url: str, params: Optional[Mapping[str, Any]],
                               json: Any, headers: httpx.Headers) -> httpx.Response:
        async def attempt() -> httpx.Response:
            response = await self.client.request(method, url, params=params, json=json, headers=headers)
            response.raise_for_status()
            return response

        def on_retry(attempt_number: int, delay: float, exc: BaseException):
            if self.metrics:
                self.metrics.record_outbound_retry(method)

        try:
            response = await retry_async(
                attempt,
                exceptions=(httpx.HTTPError,),
                config=self.retry_config,
                retry_if=is_retryable,
                sleep=self._sleep,
                on_retry=on_retry,
                name=f"{method} {url}",
            )
        except httpx.HTTPError as e:
            if self.metrics:
                self.metrics.record_outbound_request(method, _outcome(e))
            self.logger.warning("Outbound request failed", method=method, url=url, error=str(e))
            raise

        if self.metrics:
            self.metrics.record_outbound_request(method, "success")
        return response
