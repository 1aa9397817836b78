"""
REST fallback client for point queries, polling and backfill.

Handles:
1. GET response cache keyed by full URL (query included), lazily expired
2. Exponential-backoff retries for network failures, 5xx and GET timeouts
3. Request/response interceptor chains applied in registration order

4xx responses are terminal for the call and never retried.
"""

from __future__ import annotations

import asyncio
import inspect
import re
import time
from typing import Any, Awaitable, Callable, Iterable, Mapping, NamedTuple, Union
from urllib.parse import urlencode

import aiohttp
import orjson
import structlog

from .. import errors
from ..config import RestConfig
from .normalize import normalize_order_book
from .orderbook import OrderBook

logger = structlog.get_logger(__name__)

_SYMBOL_RE = re.compile(r"^[A-Z]{2,10}[A-Z]{2,10}$")


class RestResponse(NamedTuple):
    """Decoded HTTP response handed to response interceptors."""
    status: int
    headers: dict[str, str]
    data: Any
    url: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


RequestOptions = dict[str, Any]
RequestInterceptor = Callable[[str, RequestOptions], Union[RequestOptions, Awaitable[RequestOptions]]]
ResponseInterceptor = Callable[
    [RestResponse, str, RequestOptions], Union[RestResponse, Awaitable[RestResponse]]
]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class RestClient:
    """
    Async HTTP client for the order book backend.

    Usage:
        async with RestClient(RestConfig(base_url="http://localhost:8080")) as api:
            book = await api.get_order_book("BTCUSDT", depth=20)
    """

    def __init__(
        self,
        config: RestConfig,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.default_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            **config.headers,
        }

        self.request_interceptors: list[RequestInterceptor] = []
        self.response_interceptors: list[ResponseInterceptor] = []

        # url -> (stored_at monotonic seconds, data)
        self._cache: dict[str, tuple[float, Any]] = {}

        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> RestClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def add_request_interceptor(self, interceptor: RequestInterceptor) -> None:
        self.request_interceptors.append(interceptor)

    def add_response_interceptor(self, interceptor: ResponseInterceptor) -> None:
        self.response_interceptors.append(interceptor)

    def build_url(self, path: str, params: Mapping[str, Any] | None = None) -> str:
        url = f"{self.base_url}{path}"
        if params:
            url = f"{url}?{urlencode(params)}"
        return url

    # ===== CACHE =====

    def _cache_get(self, url: str) -> tuple[bool, Any]:
        entry = self._cache.get(url)
        if entry is None:
            return False, None
        stored_at, data = entry
        if (time.monotonic() - stored_at) * 1000 < self.config.cache_ttl_ms:
            return True, data
        del self._cache[url]
        return False, None

    def _cache_put(self, url: str, data: Any) -> None:
        now = time.monotonic()
        ttl = self.config.cache_ttl_ms / 1000
        # URLs that are never read again expire here
        expired = [key for key, (stored_at, _) in self._cache.items() if now - stored_at >= ttl]
        for key in expired:
            del self._cache[key]
        self._cache[url] = (now, data)

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.debug("cache_cleared")

    def cache_stats(self) -> dict[str, Any]:
        return {"size": len(self._cache), "entries": list(self._cache)}

    # ===== CORE REQUEST =====

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """
        Perform one logical request with caching and retries.

        Raises:
            HTTPError: 4xx immediately, 5xx once retries are exhausted
            TimeoutError: request exceeded config.timeout_ms
            ConnectionError: network failure after all retries
            ProtocolError: 2xx response declared JSON but did not parse
        """
        method = method.upper()
        url = self.build_url(path, params)

        if method == "GET":
            hit, data = self._cache_get(url)
            if hit:
                logger.debug("cache_hit", url=url)
                return data

        options: RequestOptions = {
            "method": method,
            "headers": {**self.default_headers, **(headers or {})},
            "json": json,
            "started_at": time.monotonic(),
        }
        for interceptor in self.request_interceptors:
            options = await _maybe_await(interceptor(url, options))

        attempts = max(1, self.config.retry_attempts)
        last_error: errors.FeedError | None = None

        for attempt in range(1, attempts + 1):
            try:
                response = await self._send(url, options)
            except asyncio.TimeoutError as exc:
                last_error = errors.TimeoutError(
                    f"Request timeout after {self.config.timeout_ms:.0f}ms",
                    timeout=self.config.timeout_ms / 1000,
                    cause=exc,
                )
                if method != "GET":
                    raise last_error from exc
            except aiohttp.ClientError as exc:
                last_error = errors.ConnectionError(f"{method} {url} failed: {exc}", cause=exc)
            else:
                for interceptor in self.response_interceptors:
                    response = await _maybe_await(interceptor(response, url, options))

                if response.ok:
                    if method == "GET":
                        self._cache_put(url, response.data)
                    logger.debug("request_ok", method=method, url=url, status=response.status)
                    return response.data

                last_error = errors.HTTPError(
                    f"HTTP {response.status}: {response.data}",
                    status=response.status,
                    body=response.data,
                    url=url,
                )
                if not last_error.retryable:
                    raise last_error

            if attempt < attempts:
                delay = self.config.retry_delay_ms * 2 ** (attempt - 1)
                logger.warning(
                    "request_retry",
                    method=method,
                    url=url,
                    attempt=attempt,
                    max_attempts=attempts,
                    delay_ms=delay,
                    error=str(last_error),
                )
                await asyncio.sleep(delay / 1000)

        logger.error("request_failed", method=method, url=url, attempts=attempts, error=str(last_error))
        raise last_error

    async def _send(self, url: str, options: RequestOptions) -> RestResponse:
        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_ms / 1000)
        kwargs: dict[str, Any] = {"headers": options["headers"], "timeout": timeout}
        if options.get("json") is not None:
            kwargs["data"] = orjson.dumps(options["json"])

        async with session.request(options["method"], url, **kwargs) as resp:
            body = await resp.read()
            content_type = resp.headers.get("Content-Type", "")
            if "application/json" in content_type and body:
                try:
                    data = orjson.loads(body)
                except orjson.JSONDecodeError as exc:
                    if 200 <= resp.status < 300:
                        raise errors.ProtocolError(
                            f"Invalid JSON from {url}", raw=body, cause=exc
                        ) from exc
                    data = body.decode(errors="replace")
            else:
                data = body.decode(errors="replace")
            return RestResponse(resp.status, dict(resp.headers), data, url)

    # ===== VERBS =====

    async def get(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, data: Any = None) -> Any:
        return await self.request("POST", path, json=data if data is not None else {})

    async def put(self, path: str, data: Any = None) -> Any:
        return await self.request("PUT", path, json=data if data is not None else {})

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    # ===== ORDER BOOK ENDPOINTS =====

    async def get_order_book(self, symbol: str, depth: int = 20, **params: Any) -> OrderBook:
        """GET /api/orderbook/{SYMBOL}?depth=N, normalized to an OrderBook."""
        symbol = symbol.upper()
        data = await self.get(f"/api/orderbook/{symbol}", {"depth": depth, **params})
        if not isinstance(data, dict):
            raise errors.ProtocolError(f"Invalid order book response for {symbol}", raw=str(data))
        normalized = normalize_order_book(data, symbol=symbol)
        if normalized.rejected_levels:
            logger.warning("levels_rejected", symbol=symbol, count=normalized.rejected_levels, source="rest")
        return normalized.book

    async def get_multiple_order_books(
        self, symbols: Iterable[str], depth: int = 20
    ) -> tuple[dict[str, OrderBook], dict[str, str]]:
        """Fetch several books concurrently; failures are collected, not raised."""
        symbols = [s.upper() for s in symbols]
        results = await asyncio.gather(
            *(self.get_order_book(s, depth) for s in symbols),
            return_exceptions=True,
        )
        books: dict[str, OrderBook] = {}
        failures: dict[str, str] = {}
        for symbol, result in zip(symbols, results):
            if isinstance(result, errors.FeedError):
                failures[symbol] = str(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                books[result.symbol] = result
        return books, failures

    async def get_market_summary(self) -> Any:
        return await self.get("/api/market/summary")

    async def get_symbols(self) -> list[str]:
        data = await self.get("/api/symbols")
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            return list(data.get("symbols") or [])
        return []

    async def get_health(self) -> Any:
        return await self.get("/api/health")

    async def get_exchange_status(self) -> Any:
        return await self.get("/api/exchanges/status")

    async def get_history(self, symbol: str, interval: str = "1h", limit: int = 100, **params: Any) -> Any:
        return await self.get(
            f"/api/history/{symbol.upper()}",
            {"interval": interval, "limit": limit, **params},
        )

    async def subscribe_symbol(self, symbol: str) -> Any:
        return await self.post("/api/subscribe", {"symbol": symbol.upper()})

    async def unsubscribe_symbol(self, symbol: str) -> Any:
        return await self.delete(f"/api/subscribe/{symbol.upper()}")

    async def get_subscriptions(self) -> Any:
        return await self.get("/api/subscriptions")

    @staticmethod
    def is_valid_symbol(symbol: Any) -> bool:
        return isinstance(symbol, str) and bool(_SYMBOL_RE.match(symbol.upper()))
