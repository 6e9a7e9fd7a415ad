"""PageRequest: explicit pipeline input, plus local byte acquisition."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping  # noqa: TC003 - used at runtime in dataclass
from dataclasses import dataclass, replace
import inspect
import math
import os
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

from pagecast.errors import ConfigurationError, SourceError

SourceKind = Literal["remote", "local"]
_BYTES_LIKE = bytes | bytearray | memoryview


def _is_local_value(value: object) -> bool:
    return (
        isinstance(value, _BYTES_LIKE | os.PathLike)
        or callable(getattr(value, "read", None))
    )


@dataclass(frozen=True)
class PageRequest:
    """Which document to load, which page to extract, and at what scale.

    ``source_kind, source_value, source_options`` key the byte stage; ``page``
    keys the page stage. ``scale`` only affects rasterization. When ``scale``
    is *None* the pipeline uses ``Config.default_scale``.
    """

    source_kind: SourceKind
    source_value: Any
    source_options: Mapping[str, Any] | None = None
    page: int = 1
    scale: float | None = None

    def __post_init__(self) -> None:
        """Validate the request shape early for clear errors."""
        if self.source_kind == "remote":
            if not isinstance(self.source_value, str):
                raise ConfigurationError(
                    "Remote sources need a URL string",
                    hint="Use PageRequest.from_url('https://...').",
                )
            scheme = urlparse(self.source_value).scheme.lower()
            if scheme not in ("http", "https"):
                raise ConfigurationError(
                    f"Unsupported URL scheme: {scheme or '(none)'}",
                    hint="Only http:// and https:// URLs can be fetched.",
                )
        elif self.source_kind == "local":
            if not _is_local_value(self.source_value):
                raise ConfigurationError(
                    "Local sources must be bytes, a path or a binary file object",
                    hint="Use PageRequest.from_bytes() or PageRequest.from_file(). "
                    "Plain strings are not accepted as local sources.",
                )
            if self.source_options:
                raise ConfigurationError(
                    "source_options only apply to remote sources",
                )
        else:
            raise ConfigurationError(
                f"Unknown source kind: {self.source_kind!r}",
                hint="Supported kinds: 'remote', 'local'",
            )

        if isinstance(self.page, bool) or not isinstance(self.page, int):
            raise ConfigurationError(f"page must be an integer, got {self.page!r}")
        if self.page < 1:
            raise ConfigurationError(
                f"page must be ≥ 1, got {self.page}",
                hint="Pages are numbered from 1.",
            )
        if self.scale is not None and (
            isinstance(self.scale, bool)
            or not isinstance(self.scale, int | float)
            or not math.isfinite(self.scale)
            or self.scale <= 0
        ):
            raise ConfigurationError(
                f"scale must be a finite number > 0, got {self.scale!r}"
            )

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        page: int = 1,
        scale: float | None = None,
        **options: Any,
    ) -> PageRequest:
        """Create a request for a document served over HTTP(S).

        Args:
            url: Document URL.
            page: 1-based page number.
            scale: Render scale; ``Config.default_scale`` when *None*.
            **options: Transport options (``headers``, ``params``,
                ``timeout``, ``method``).
        """
        return cls(
            source_kind="remote",
            source_value=url,
            source_options=dict(options) or None,
            page=page,
            scale=scale,
        )

    @classmethod
    def from_bytes(
        cls,
        data: bytes | bytearray | memoryview,
        *,
        page: int = 1,
        scale: float | None = None,
    ) -> PageRequest:
        """Create a request for an in-memory document."""
        return cls(source_kind="local", source_value=data, page=page, scale=scale)

    @classmethod
    def from_file(
        cls, path: str | Path, *, page: int = 1, scale: float | None = None
    ) -> PageRequest:
        """Create a request for a local file. Must exist or ``SourceError`` is raised."""
        p = Path(path)
        if not p.exists():
            raise SourceError(f"File not found: {p}")
        return cls(source_kind="local", source_value=p, page=page, scale=scale)

    def with_page(self, page: int) -> PageRequest:
        return replace(self, page=page)

    def with_scale(self, scale: float | None) -> PageRequest:
        return replace(self, scale=scale)

    @property
    def source_key(self) -> tuple[Any, Any, Any]:
        """Dependency tuple of the byte stage."""
        return (self.source_kind, self.source_value, self.source_options)

    def describe(self) -> str:
        """Short label for logs."""
        value = self.source_value
        if isinstance(value, _BYTES_LIKE):
            label = f"<{len(value)} bytes>"
        elif isinstance(value, os.PathLike | str):
            label = str(value)
        else:
            label = f"<{type(value).__name__}>"
        return f"{self.source_kind}:{label}#page={self.page}"


async def read_local_bytes(value: Any) -> bytes:
    """Read document bytes from a bytes-like value, a path or a file object.

    File objects may expose a sync or an async ``read()``. Path reads run in
    a worker thread.
    """
    if isinstance(value, _BYTES_LIKE):
        return bytes(value)

    if isinstance(value, os.PathLike):
        path = Path(value)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise SourceError(f"Could not read {path}: {e}") from e

    read = getattr(value, "read", None)
    if callable(read):
        data = read()
        if inspect.isawaitable(data):
            data = await data
        if not isinstance(data, _BYTES_LIKE):
            raise SourceError(
                f"File object returned {type(data).__name__}, expected bytes",
                hint="Open local files in binary mode ('rb').",
            )
        return bytes(data)

    raise SourceError(f"Cannot read bytes from {type(value).__name__}")
