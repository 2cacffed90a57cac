"""Async JSON REST client shared by the indexer, wallet and price adapters."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import ssl
from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import urlencode

import aiohttp

from engine.chain_client import TransientNetworkError
from utils.rate_limiter import AsyncRateLimiter

LOGGER = logging.getLogger("token_liquidity.rest")


@dataclass
class AsyncRestRequest:
    method: str
    path: str
    params: Mapping[str, Any] | None = None
    body: Mapping[str, Any] | None = None


class AsyncRestError(Exception):
    """Base exception for async REST client errors."""

    def __init__(
        self, message: str, status: int | None = None, payload: str = ""
    ) -> None:
        super().__init__(message)
        self.status = status
        self.payload = payload


class AsyncRateLimitError(AsyncRestError):
    """Raised when the API indicates that the rate limit has been exceeded."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message, status=429)
        self.retry_after = retry_after


class AsyncTransientApiError(AsyncRestError, TransientNetworkError):
    """Raised for transient REST errors that may succeed on retry."""


class AsyncRestClient:
    """Async REST client with retry and rate-limit handling."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 15.0,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        session: aiohttp.ClientSession | None = None,
        rate_limiter: AsyncRateLimiter | None = None,
        verify_ssl: bool = True,  # Enable SSL certificate verification
        ssl_context: ssl.SSLContext | None = None,  # Custom SSL context
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._rate_limiter = rate_limiter
        self._ssl_context = ssl_context
        if ssl_context is None and verify_ssl:
            self._ssl_context = ssl.create_default_context()
        elif ssl_context is None and not verify_ssl:
            # Disable certificate verification (NOT recommended for production)
            self._ssl_context = ssl._create_unverified_context()
            LOGGER.warning(
                "SSL certificate verification is DISABLED for %s. "
                "Man-in-the-middle attacks are possible.",
                self.base_url,
            )
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self._session = session
        self._owns_session = session is None

    def build_url(self, path: str) -> str:
        if not path:
            return self.base_url
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def send(self, request: AsyncRestRequest) -> Any:
        attempts = 0
        while True:
            # Apply rate limiting if configured
            if self._rate_limiter is not None:
                await self._rate_limiter.acquire()
            try:
                return await self._send_once(request)
            except AsyncRateLimitError as exc:
                attempts += 1
                if attempts > self.max_retries:
                    raise
                delay = exc.retry_after or self._compute_backoff(attempts)
                await asyncio.sleep(delay)
            except AsyncTransientApiError as exc:
                attempts += 1
                if attempts > self.max_retries:
                    raise
                delay = self._compute_backoff(attempts)
                LOGGER.debug(
                    "%s %s failed (%s); retry %d in %.2fs",
                    request.method.upper(),
                    request.path,
                    exc,
                    attempts,
                    delay,
                )
                await asyncio.sleep(delay)

    async def _send_once(self, request: AsyncRestRequest) -> Any:
        url = self.build_url(request.path)
        method = request.method.upper()
        params = dict(request.params or {})
        headers = {"Accept": "application/json"}

        if params:
            url = f"{url}?{urlencode(params)}"

        data_bytes = None
        if method != "GET" and request.body is not None:
            data_bytes = json.dumps(dict(request.body), default=str).encode("utf8")
            headers["Content-Type"] = "application/json"

        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with session.request(
                method,
                url,
                headers=headers,
                data=data_bytes,
                timeout=timeout,
            ) as response:
                payload = await response.text()
                if response.status == 429:
                    retry_after = self._parse_retry_after(
                        response.headers.get("Retry-After")
                    )
                    raise AsyncRateLimitError(
                        "Rate limit exceeded", retry_after=retry_after
                    )
                if response.status in {500, 502, 503, 504}:
                    raise AsyncTransientApiError(
                        f"Transient HTTP error {response.status}",
                        status=response.status,
                        payload=payload,
                    )
                if response.status >= 400:
                    raise AsyncRestError(
                        self._build_http_error_message(response.status, payload),
                        status=response.status,
                        payload=payload,
                    )
        except aiohttp.ClientError as exc:
            raise AsyncTransientApiError(
                f"Network error while contacting {self.base_url}"
            ) from exc
        except asyncio.TimeoutError as exc:
            raise AsyncTransientApiError(
                f"Timed out after {self.timeout}s contacting {self.base_url}"
            ) from exc

        if not payload:
            return {}
        try:
            return json.loads(payload)
        except json.JSONDecodeError as exc:
            raise AsyncRestError(
                f"Invalid JSON from {url}: {payload[:200]}", payload=payload
            ) from exc

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            connector = aiohttp.TCPConnector(ssl=self._ssl_context)
            self._session = aiohttp.ClientSession(timeout=timeout, connector=connector)
        return self._session

    def _compute_backoff(self, attempt: int) -> float:
        base = self.backoff_factor * (2 ** (attempt - 1))
        return base + random.uniform(0, base)

    def _parse_retry_after(self, header_value: str | None) -> float | None:
        if header_value is None:
            return None
        try:
            return float(header_value)
        except ValueError:
            return None

    def _build_http_error_message(self, status_code: int, payload: str) -> str:
        if payload:
            return f"HTTP error {status_code}: {payload}"
        return f"HTTP error {status_code}"
