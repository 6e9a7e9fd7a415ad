"""Byte transport for remote sources.

``ByteTransport`` is the seam the byte stage fetches through; ``HttpxTransport``
is the default implementation. Transport failures are mapped into
``TransportError`` so callers get the HTTP status and an actionable hint
without inspecting httpx internals.
"""

from __future__ import annotations

import asyncio
import logging
from types import TracebackType
from typing import TYPE_CHECKING, Any, Protocol, Self, runtime_checkable

import httpx

from pagecast.config import Config, resolve_config
from pagecast.errors import (
    ConfigurationError,
    PagecastError,
    TransportError,
    _walk_exception_chain,
    get_http_error_hint,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

log = logging.getLogger(__name__)

_OPTION_KEYS = frozenset({"method", "headers", "params", "timeout"})


@runtime_checkable
class ByteTransport(Protocol):
    """Fetches raw document bytes for a URL."""

    async def fetch(
        self, url: str, options: Mapping[str, Any] | None = None
    ) -> bytes: ...  # noqa: D102

    async def aclose(self) -> None: ...  # noqa: D102


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def wrap_transport_error(exc: BaseException, *, url: str) -> TransportError:
    """Map an httpx exception into a ``TransportError``."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc
    if isinstance(exc, TransportError):
        if exc.url is None:
            exc.url = url
        return exc

    status_code = extract_status_code(exc)
    hint: str | None = None
    if status_code is not None:
        hint = get_http_error_hint(status_code)
    elif isinstance(exc, httpx.TimeoutException):
        hint = "The server did not answer in time; raise request_timeout_s."
    elif isinstance(exc, httpx.RequestError):
        hint = "Check the URL and your network connection."

    status_note = f" (status={status_code})" if status_code is not None else ""
    cause = str(exc)
    msg = f"Fetching {url} failed{status_note}"
    return TransportError(
        f"{msg}: {cause}" if cause else msg,
        hint=hint,
        status_code=status_code,
        url=url,
    )


class HttpxTransport:
    """Fetch documents with a shared ``httpx.AsyncClient``.

    The client is created lazily and closed by ``aclose()`` unless it was
    supplied by the caller.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize with configuration and an optional pre-built client."""
        self._config = config or resolve_config()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._config.request_timeout_s,
                follow_redirects=self._config.follow_redirects,
                headers={"User-Agent": self._config.user_agent},
            )
        return self._client

    async def fetch(self, url: str, options: Mapping[str, Any] | None = None) -> bytes:
        """Download *url* and return the body.

        Options: ``method`` (default GET), ``headers``, ``params`` and
        ``timeout`` (seconds, overrides ``Config.request_timeout_s``).
        """
        opts = dict(options or {})
        unknown = set(opts) - _OPTION_KEYS
        if unknown:
            raise ConfigurationError(
                f"Unknown source options: {', '.join(sorted(unknown))}",
                hint=f"Supported options: {', '.join(sorted(_OPTION_KEYS))}",
            )
        method = str(opts.get("method") or "GET").upper()
        timeout = opts.get("timeout")

        log.debug("fetching %s %s", method, url)
        try:
            async with self._get_client().stream(
                method,
                url,
                headers=opts.get("headers"),
                params=opts.get("params"),
                timeout=httpx.USE_CLIENT_DEFAULT if timeout is None else timeout,
            ) as response:
                response.raise_for_status()
                return await self._read_body(response, url)
        except asyncio.CancelledError:
            raise
        except PagecastError:
            raise
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, url=url) from e

    async def _read_body(self, response: httpx.Response, url: str) -> bytes:
        limit = self._config.max_bytes
        declared = response.headers.get("Content-Length")
        if limit and declared and declared.isdigit() and int(declared) > limit:
            raise TransportError(
                f"Remote document exceeds size limit ({declared} > {limit})",
                hint="Raise max_bytes (PAGECAST_MAX_BYTES) to allow larger documents.",
                status_code=response.status_code,
                url=url,
            )

        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            if limit and len(body) > limit:
                raise TransportError(
                    f"Remote document exceeds size limit ({len(body)} > {limit})",
                    hint="Raise max_bytes (PAGECAST_MAX_BYTES) to allow larger documents.",
                    status_code=response.status_code,
                    url=url,
                )
        log.debug("fetched %d bytes from %s", len(body), url)
        return bytes(body)

    async def aclose(self) -> None:
        """Close the client if this transport created it."""
        if self._owns_client and self._client is not None:
            client, self._client = self._client, None
            await client.aclose()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        _: type[BaseException] | None,
        __: BaseException | None,
        ___: TracebackType | None,
    ) -> None:
        await self.aclose()
