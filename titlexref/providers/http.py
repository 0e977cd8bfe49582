"""Shared HTTP plumbing for external metadata providers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ..errors import (
    NetworkError,
    NotFoundError,
    ProviderTimeoutError,
    RateLimitedError,
)
from ..services.rate_limits import RateLimitRegistry, ThrottleGroup
from ..utils import normalize_base_url

logger = logging.getLogger(__name__)


class JsonProvider:
    """Base class issuing throttled JSON requests and raising typed failures.

    404 becomes :class:`NotFoundError`, 429 records a cooldown and becomes
    :class:`RateLimitedError`, timeouts become :class:`ProviderTimeoutError`
    and every other failure becomes :class:`NetworkError`.
    """

    name = "provider"
    throttle_name: str | None = None

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        base_url: object,
        timeout: float,
        throttles: ThrottleGroup | None = None,
        registry: RateLimitRegistry | None = None,
        max_retries: int = 0,
    ) -> None:
        self._client = http_client
        self._base_url = normalize_base_url(base_url) or ""
        self._timeout = timeout
        self._throttle = (
            throttles.get(self.throttle_name or self.name) if throttles else None
        )
        self._registry = registry
        self._max_retries = max_retries

    @property
    def base_url(self) -> str:
        return self._base_url

    def is_rate_limited(self) -> bool:
        return bool(self._registry and self._registry.is_rate_limited(self.name))

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        priority: bool = False,
    ) -> Any:
        if self.is_rate_limited():
            raise RateLimitedError(self.name, "cooling down after rate limit")

        url = path if path.startswith("http") else f"{self._base_url}{path}"
        attempt = 0
        while True:
            if self._throttle is not None:
                await self._throttle.wait(priority=priority)
            try:
                response = await self._client.request(
                    method, url, params=params, json=json, timeout=self._timeout
                )
            except httpx.TimeoutException as exc:
                raise ProviderTimeoutError(self.name, f"timed out requesting {url}") from exc
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "Transient error talking to %s (%s). Retrying in %.1fs",
                        self.name,
                        exc.__class__.__name__,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise NetworkError(self.name, f"{exc.__class__.__name__}: {exc}") from exc

            if 500 <= response.status_code < 600 and attempt < self._max_retries:
                attempt += 1
                backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                logger.info(
                    "%s returned %s. Retrying in %.1fs",
                    self.name,
                    response.status_code,
                    backoff,
                )
                await asyncio.sleep(backoff)
                continue
            break

        if response.status_code == 404:
            raise NotFoundError(self.name, f"{url} not found", status_code=404)
        if response.status_code == 429:
            if self._registry is not None:
                await self._registry.mark_rate_limited(self.name)
            raise RateLimitedError(self.name, "Rate limited", status_code=429)
        if response.status_code >= 400:
            raise NetworkError(
                self.name,
                f"HTTP {response.status_code} from {url}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise NetworkError(self.name, f"invalid JSON from {url}") from exc

    async def _get_json(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        priority: bool = False,
    ) -> Any:
        return await self._request_json("GET", path, params=params, priority=priority)

    async def _post_json(
        self,
        path: str,
        payload: Any,
        *,
        params: dict[str, Any] | None = None,
        priority: bool = False,
    ) -> Any:
        return await self._request_json(
            "POST", path, params=params, json=payload, priority=priority
        )
