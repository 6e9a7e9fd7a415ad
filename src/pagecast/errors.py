"""Exception hierarchy for pagecast.

Errors are grouped by the pipeline stage that raises them so callers can
tell where a render went wrong without string matching.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class PagecastError(Exception):
    """Base exception for all pagecast errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(PagecastError):
    """Configuration or request validation failed."""


class SourceError(PagecastError):
    """Acquiring the raw document bytes failed."""


class TransportError(SourceError):
    """A remote fetch failed.

    Carries the HTTP status (when the server answered) so callers can decide
    what to show without parsing the message.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        status_code: int | None = None,
        url: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.status_code = status_code
        self.url = url


class DocumentError(PagecastError):
    """The document engine could not parse or read the document."""


class PageRangeError(DocumentError):
    """A page outside ``1..page_count`` was requested."""

    def __init__(
        self,
        page: int,
        page_count: int,
        *,
        hint: str | None = None,
    ) -> None:
        super().__init__(
            f"Page {page} is out of range (document has {page_count} pages)",
            hint=hint or f"Request a page between 1 and {page_count}.",
        )
        self.page = page
        self.page_count = page_count


class RenderError(PagecastError):
    """Rasterizing a page onto a surface failed."""


class CellDisposedError(PagecastError):
    """An async cell was used after ``dispose()``."""


class InternalError(PagecastError):
    """A pagecast internal error (bug) or invariant violation."""


_HTTP_ERROR_HINTS = {
    401: "The server requires authentication; pass headers via source options.",
    403: "Access to the document was refused.",
    404: "No document exists at this URL.",
    429: "The server is rate limiting requests; try again later.",
    500: "The server failed while serving the document.",
    503: "The server is unavailable; try again later.",
}


def get_http_error_hint(status_code: int) -> str | None:
    """Return an actionable hint for a given HTTP status code."""
    return _HTTP_ERROR_HINTS.get(status_code)


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
