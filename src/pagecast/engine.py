"""Document engine seam and the default PyMuPDF implementation.

The pipeline only relies on the protocols below: an engine opens bytes into
a document, a document hands out pages, and a page knows its viewport at a
scale and can render itself onto a drawing context.

PyMuPDF work is blocking, so it runs on a process-wide worker pool. The pool
is configured once: the first ``configure_worker`` call (or the first lazy
``get_worker``) wins and later calls are no-ops, so building many pipelines
never reconfigures it under in-flight work.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import functools
import logging
import threading
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

import fitz  # PyMuPDF
from PIL import Image

from pagecast.config import Config, resolve_config
from pagecast.errors import ConfigurationError, DocumentError, PageRangeError

if TYPE_CHECKING:
    from collections.abc import Callable

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Viewport:
    """Pixel size of a page at a given scale."""

    width: int
    height: int
    scale: float


@runtime_checkable
class DrawingContext(Protocol):
    """2-D context a page renders into."""

    def draw_image(  # noqa: D102
        self, image: Image.Image, origin: tuple[int, int] = (0, 0)
    ) -> None: ...


@runtime_checkable
class PageHandle(Protocol):
    """One extracted page."""

    @property
    def number(self) -> int: ...  # noqa: D102

    def viewport(self, scale: float) -> Viewport: ...  # noqa: D102

    async def render(  # noqa: D102
        self, context: DrawingContext, viewport: Viewport
    ) -> None: ...


@runtime_checkable
class DocumentHandle(Protocol):
    """A parsed document."""

    @property
    def page_count(self) -> int: ...  # noqa: D102

    async def get_page(self, number: int) -> PageHandle: ...  # noqa: D102

    async def close(self) -> None:
        """Release the document. Pages obtained from it become unusable."""


@runtime_checkable
class DocumentEngine(Protocol):
    """Parses raw bytes into a document."""

    async def open(self, data: bytes) -> DocumentHandle: ...  # noqa: D102


# --- Process-wide worker ---

_worker_lock = threading.Lock()
_worker: ThreadPoolExecutor | None = None
_worker_threads: int | None = None


def configure_worker(max_workers: int) -> bool:
    """Configure the engine worker pool once.

    Returns:
        True if this call created the pool, False if it was already
        configured (the call is then a no-op).
    """
    global _worker, _worker_threads
    if (
        isinstance(max_workers, bool)
        or not isinstance(max_workers, int)
        or max_workers < 1
    ):
        raise ConfigurationError(
            f"max_workers must be an integer ≥ 1, got {max_workers!r}"
        )
    with _worker_lock:
        if _worker is not None:
            if max_workers != _worker_threads:
                log.debug(
                    "engine worker already configured with %s threads; ignoring %d",
                    _worker_threads,
                    max_workers,
                )
            return False
        _worker = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="pagecast-engine"
        )
        _worker_threads = max_workers
        log.debug("engine worker configured with %d threads", max_workers)
        return True


def get_worker(config: Config | None = None) -> ThreadPoolExecutor:
    """Return the engine worker pool, creating it from *config* on first use."""
    with _worker_lock:
        worker = _worker
    if worker is not None:
        return worker
    configure_worker((config or resolve_config()).worker_threads)
    with _worker_lock:
        if _worker is None:  # pragma: no cover - shut down concurrently
            raise RuntimeError("engine worker was shut down during initialization")
        return _worker


def shutdown_worker(*, wait: bool = True) -> None:
    """Release the worker pool; the next ``get_worker`` configures a new one."""
    global _worker, _worker_threads
    with _worker_lock:
        worker, _worker, _worker_threads = _worker, None, None
    if worker is not None:
        worker.shutdown(wait=wait)


# --- PyMuPDF implementation ---


class PyMuPDFEngine:
    """Open PDF bytes with PyMuPDF on the engine worker."""

    def __init__(self, config: Config | None = None) -> None:
        """Initialize with optional configuration (resolved lazily)."""
        self._config = config

    async def call(self, fn: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        """Run a blocking PyMuPDF call on the engine worker."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            get_worker(self._config), functools.partial(fn, *args, **kwargs)
        )

    async def open(self, data: bytes) -> PyMuPDFDocument:
        """Parse *data* as a PDF."""

        def _open() -> fitz.Document:
            try:
                doc = fitz.open(stream=data, filetype="pdf")
            except (RuntimeError, ValueError) as e:
                raise DocumentError(
                    f"Could not parse document: {e}",
                    hint="Check that the source is a valid PDF.",
                ) from e
            if doc.page_count < 1:
                doc.close()
                raise DocumentError(
                    "Document has no pages",
                    hint="Check that the source is a valid PDF.",
                )
            return doc

        doc = await self.call(_open)
        log.debug("opened document with %d pages", doc.page_count)
        return PyMuPDFDocument(doc, self)


class PyMuPDFDocument:
    """Document handle backed by ``fitz.Document``."""

    def __init__(self, doc: fitz.Document, engine: PyMuPDFEngine) -> None:
        self._doc = doc
        self._engine = engine

    @property
    def page_count(self) -> int:
        return self._doc.page_count

    async def get_page(self, number: int) -> PyMuPDFPage:
        """Load page *number* (1-based)."""
        count = self.page_count
        if not 1 <= number <= count:
            raise PageRangeError(number, count)
        page = await self._engine.call(self._doc.load_page, number - 1)
        return PyMuPDFPage(page, number, self._engine)

    async def close(self) -> None:
        await self._engine.call(self._doc.close)


class PyMuPDFPage:
    """Page handle backed by ``fitz.Page``."""

    def __init__(self, page: fitz.Page, number: int, engine: PyMuPDFEngine) -> None:
        self._page = page
        self._number = number
        self._engine = engine

    def __repr__(self) -> str:
        return f"PyMuPDFPage(number={self._number})"

    @property
    def number(self) -> int:
        return self._number

    def viewport(self, scale: float) -> Viewport:
        """Pixel size of the page rendered at *scale* (1.0 = 72 dpi)."""
        box = (self._page.rect * fitz.Matrix(scale, scale)).irect
        return Viewport(width=box.width, height=box.height, scale=scale)

    async def render(self, context: DrawingContext, viewport: Viewport) -> None:
        """Rasterize the page at ``viewport.scale`` and draw it on *context*."""
        matrix = fitz.Matrix(viewport.scale, viewport.scale)
        pix = await self._engine.call(
            self._page.get_pixmap, matrix=matrix, alpha=False
        )
        image = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
        context.draw_image(image, (0, 0))
