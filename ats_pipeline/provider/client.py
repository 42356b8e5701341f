from __future__ import annotations

import asyncio
import logging
import ssl
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from ats_pipeline.core.config import Settings, get_settings
from ats_pipeline.services.records import ConnectorRecord

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
THROTTLE_STATUS_CODES = {429, 503}
TLS_MARKERS = ("ssl", "tls", "handshake", "certificate")
DNS_NOT_FOUND_MARKERS = ("name or service not known", "nodename nor servname", "no address associated")

Sleep = Callable[[float], Awaitable[None]]


class ProviderError(Exception):
    """Base provider gateway error."""


class ProviderConfigurationError(ProviderError):
    """Raised when a connector lacks the credentials needed to build a client."""


class ProviderRequestError(ProviderError):
    """Non-retryable provider failure with the request/response context attached."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: Any = None,
        method: str | None = None,
        url: str | None = None,
        params: dict[str, Any] | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.method = method
        self.url = url
        self.params = params
        self.code = code


class ProviderRetryExhaustedError(ProviderError):
    """Raised after every attempt of one logical call failed transiently."""

    def __init__(self, message: str, *, attempts: int, status_code: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.status_code = status_code
        self.code = code


def network_error_code(exc: BaseException) -> str | None:
    """Coarse errno-style label for a transport failure (``ETIMEDOUT``, ``ECONNRESET``...)."""
    if isinstance(exc, httpx.TimeoutException):
        return "ETIMEDOUT"
    text = _error_text(exc)
    if any(marker in text for marker in DNS_NOT_FOUND_MARKERS):
        return "ENOTFOUND"
    if "temporary failure in name resolution" in text:
        return "EAI_AGAIN"
    if "reset" in text:
        return "ECONNRESET"
    if is_tls_error(exc):
        return "ETLS"
    if isinstance(exc, httpx.TransportError):
        return "ECONNERROR"
    return None


def is_tls_error(exc: BaseException) -> bool:
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, ssl.SSLError):
            return True
        current = current.__cause__ or current.__context__
    text = _error_text(exc)
    return any(marker in text for marker in TLS_MARKERS)


def _error_text(exc: BaseException) -> str:
    parts: list[str] = []
    current: BaseException | None = exc
    while current is not None and len(parts) < 5:
        parts.append(str(current))
        current = current.__cause__ or current.__context__
    return " ".join(parts).lower()


class ProviderClient:
    """Retrying client for one provider account (subdomain + API key)."""

    def __init__(
        self,
        subdomain: str,
        api_key: str,
        *,
        timeout_seconds: float = 15.0,
        max_attempts: int = 4,
        throttle_max_delay_seconds: float = 5.0,
        network_backoff_seconds: float = 0.8,
        tls_rebuild_threshold: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if not subdomain:
            raise ProviderConfigurationError("provider client requires a subdomain")
        if not api_key:
            raise ProviderConfigurationError("provider client requires an api key")
        self.subdomain = subdomain
        self.base_url = f"https://{subdomain}.bamboohr.com"
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.throttle_max_delay_seconds = throttle_max_delay_seconds
        self.network_backoff_seconds = network_backoff_seconds
        self.tls_rebuild_threshold = max(1, tls_rebuild_threshold)
        self._api_key = api_key
        self._transport = transport
        self._sleep = sleep
        self._tls_failures = 0
        self._keepalive = True
        self._client = self._build_client()

    def _build_client(self) -> httpx.AsyncClient:
        limits = httpx.Limits() if self._keepalive else httpx.Limits(max_keepalive_connections=0)
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self._api_key, "x"),
            headers={"Accept": "application/json"},
            timeout=self.timeout_seconds,
            limits=limits,
            transport=self._transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def api_get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = path if path.startswith(API_PREFIX) else f"{API_PREFIX}{path}"
        return await self.request("GET", url, params=params)

    def owns_url(self, url: str) -> bool:
        """True when ``url`` is relative or points at this account's own origin."""
        try:
            target = httpx.URL(url)
        except httpx.InvalidURL:
            return False
        if not target.is_absolute_url:
            return True
        base = httpx.URL(self.base_url)
        return (target.scheme, target.host, target.port) == (base.scheme, base.host, base.port)

    async def get_url(self, url: str) -> Any:
        """Follow a ``nextPageUrl`` handed back by a list endpoint.

        Only same-origin URLs are followed; the path and query are replayed against
        the base URL so credentials never leave the account's host.
        """
        if not self.owns_url(url):
            raise ProviderRequestError(
                "refusing to follow page url outside the provider host",
                method="GET",
                url=url,
                code="EFOREIGNHOST",
            )
        return await self.request("GET", httpx.URL(url).raw_path.decode("ascii"))

    async def get_job_summaries(self, params: dict[str, Any] | None = None) -> Any:
        return await self.api_get("/applicant_tracking/jobs", params)

    async def get_applications(self, params: dict[str, Any] | None = None) -> Any:
        return await self.api_get("/applicant_tracking/applications", params)

    async def list_employees(self) -> Any:
        return await self.api_get("/employees")

    async def request(self, method: str, url: str, *, params: dict[str, Any] | None = None) -> Any:
        last_status: int | None = None
        last_code: str | None = None

        for attempt in range(self.max_attempts):
            try:
                response = await self._client.request(method, url, params=params)
            except httpx.TransportError as exc:
                code = network_error_code(exc)
                if code == "ENOTFOUND":
                    logger.error("provider host not resolvable method=%s url=%s: %s", method, url, exc)
                    raise ProviderRequestError(str(exc), method=method, url=url, params=params, code=code) from exc
                last_code, last_status = code, None
                if code == "ETLS":
                    await self._register_tls_failure()
                delay = self.network_backoff_seconds * (2**attempt)
                logger.warning(
                    "provider network error (%s) on %s %s; retry %s/%s in %.1fs",
                    code,
                    method,
                    url,
                    attempt + 1,
                    self.max_attempts,
                    delay,
                )
                if attempt + 1 < self.max_attempts:
                    await self._sleep(delay)
                continue

            if response.status_code in THROTTLE_STATUS_CODES:
                last_status, last_code = response.status_code, None
                delay = min(self.throttle_max_delay_seconds, float(attempt + 1))
                logger.warning(
                    "provider throttled (%s) on %s %s; retry %s/%s in %.1fs",
                    response.status_code,
                    method,
                    url,
                    attempt + 1,
                    self.max_attempts,
                    delay,
                )
                if attempt + 1 < self.max_attempts:
                    await self._sleep(delay)
                continue

            if response.is_error:
                body = _response_body(response)
                logger.error(
                    "provider request failed method=%s url=%s params=%s status=%s headers=%s body=%s",
                    method,
                    url,
                    params,
                    response.status_code,
                    dict(response.headers),
                    body,
                )
                raise ProviderRequestError(
                    f"provider returned HTTP {response.status_code}",
                    status_code=response.status_code,
                    body=body,
                    method=method,
                    url=str(response.request.url),
                    params=params,
                )

            self._tls_failures = 0
            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as exc:
                raise ProviderRequestError(
                    "provider returned a non-JSON body",
                    status_code=response.status_code,
                    body=response.text[:2000],
                    method=method,
                    url=str(response.request.url),
                    params=params,
                ) from exc

        raise ProviderRetryExhaustedError(
            f"request failed after {self.max_attempts} attempts",
            attempts=self.max_attempts,
            status_code=last_status,
            code=last_code,
        )

    async def _register_tls_failure(self) -> None:
        self._tls_failures += 1
        if self._tls_failures < self.tls_rebuild_threshold:
            return
        logger.warning(
            "rebuilding provider client for subdomain=%s without keep-alive after %s TLS failures",
            self.subdomain,
            self._tls_failures,
        )
        previous = self._client
        self._keepalive = False
        self._tls_failures = 0
        self._client = self._build_client()
        await previous.aclose()


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:2000]


class ProviderClientFactory:
    """Hands out one long-lived client per (subdomain, api_key) and owns their lifecycle."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self._transport = transport
        self._sleep = sleep
        self._clients: dict[tuple[str, str], ProviderClient] = {}

    def for_connector(self, connector: ConnectorRecord) -> ProviderClient:
        if not connector.subdomain:
            raise ProviderConfigurationError(f"connector subdomain is missing for: {connector.id}")
        if not connector.api_key:
            raise ProviderConfigurationError(f"connector api key is missing for: {connector.id}")
        key = (connector.subdomain, connector.api_key)
        client = self._clients.get(key)
        if client is None:
            client = ProviderClient(
                connector.subdomain,
                connector.api_key,
                timeout_seconds=self.settings.provider_timeout_seconds,
                max_attempts=self.settings.provider_max_attempts,
                throttle_max_delay_seconds=self.settings.provider_throttle_max_delay_seconds,
                network_backoff_seconds=self.settings.provider_network_backoff_seconds,
                tls_rebuild_threshold=self.settings.provider_tls_rebuild_threshold,
                transport=self._transport,
                sleep=self._sleep,
            )
            self._clients[key] = client
        return client

    async def close(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.close()
