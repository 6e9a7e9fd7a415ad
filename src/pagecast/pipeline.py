"""Three-stage page pipeline: bytes -> document -> page.

Each stage is an ``AsyncCell`` keyed on its own inputs plus the upstream
stage's published result. A stage whose upstream has not succeeded returns
the suspension token, so it stays ``Pending`` until the upstream publishes
again. Failures therefore park every stage below them for the rest of the
epoch; nothing is retried until an input changes.

The pipeline is a pure state machine. All I/O happens in the collaborators
its producers call (transport, engine); rasterization is left to the
consumer (see ``pagecast.view``).

The pipeline owns the documents it opens. A document is closed once the
document stage moves past it (new bytes arrive) and when the pipeline
is disposed; pages taken from it stop being renderable at that point.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import functools
import logging
from types import TracebackType
from typing import TYPE_CHECKING, Any, Self, TypeAlias

from pagecast.cell import AsyncCell
from pagecast.config import Config, resolve_config
from pagecast.engine import PyMuPDFEngine
from pagecast.errors import ConfigurationError
from pagecast.result import Failure, Pending, Success
from pagecast.source import PageRequest, read_local_bytes
from pagecast.suspend import suspend
from pagecast.transport import HttpxTransport

if TYPE_CHECKING:
    from collections.abc import Callable

    from pagecast.cell import Wrap
    from pagecast.engine import DocumentEngine, DocumentHandle, PageHandle
    from pagecast.result import AsyncResult
    from pagecast.transport import ByteTransport

log = logging.getLogger(__name__)

PipelineListener: TypeAlias = "Callable[[PipelineState], None]"


@dataclass(frozen=True)
class PipelineState:
    """Aggregate view over the three stages."""

    #: True while any stage is pending.
    loading: bool
    #: First failure scanning bytes -> document -> page.
    error: Any | None
    #: True once the page stage succeeded.
    ready: bool
    page: PageHandle | None
    scale: float
    stages: tuple[AsyncResult[Any, Any], AsyncResult[Any, Any], AsyncResult[Any, Any]]


def aggregate(
    bytes_result: AsyncResult[bytes, Any],
    document_result: AsyncResult[DocumentHandle, Any],
    page_result: AsyncResult[PageHandle, Any],
    *,
    scale: float,
) -> PipelineState:
    """Fold stage results into a ``PipelineState``.

    Earlier failures win: a later stage cannot have run past an earlier
    failure in the same epoch, and during rapid input changes the earliest
    failure is the one worth reporting. Stages below the earliest failure
    are parked on a suspension and do not count as loading.
    """
    stages = (bytes_result, document_result, page_result)
    active: list[AsyncResult[Any, Any]] = []
    error = None
    for result in stages:
        if isinstance(result, Failure):
            error = result.error
            break
        active.append(result)
    ready = isinstance(page_result, Success)
    return PipelineState(
        loading=any(isinstance(r, Pending) for r in active),
        error=error,
        ready=ready,
        page=page_result.data if isinstance(page_result, Success) else None,
        scale=scale,
        stages=stages,
    )


class Pipeline:
    """Load one page of a document through three chained async cells.

    Must be created inside a running event loop; the byte stage starts
    immediately.

    Example:
        async with Pipeline(PageRequest.from_file("paper.pdf", page=2)) as p:
            state = await p.settled()
            if state.ready:
                print(state.page.viewport(state.scale))
    """

    def __init__(
        self,
        request: PageRequest,
        *,
        transport: ByteTransport | None = None,
        engine: DocumentEngine | None = None,
        config: Config | None = None,
    ) -> None:
        """Wire the stages and start loading *request*.

        Args:
            request: What to load.
            transport: Remote byte transport. An ``HttpxTransport`` is created
                on first remote fetch (and closed by ``aclose``) when omitted.
            engine: Document engine. Defaults to ``PyMuPDFEngine``.
            config: Resolved configuration. Defaults to ``resolve_config()``.
        """
        self._config = config or resolve_config()
        self._transport = transport
        self._owns_transport = transport is None
        self._engine: DocumentEngine = engine or PyMuPDFEngine(self._config)
        self._request = self._check_request(request)

        self.bytes_cell: AsyncCell[bytes] = AsyncCell(name="bytes")
        self.document_cell: AsyncCell[DocumentHandle] = AsyncCell(name="document")
        self.page_cell: AsyncCell[PageHandle] = AsyncCell(name="page")

        self._listeners: list[PipelineListener] = []
        self._last_state: PipelineState | None = None
        self._refreshing = False
        self._dirty = False
        self._disposed = False
        # Last published document; closed once the document stage moves past it.
        self._document: DocumentHandle | None = None
        self._closing: set[asyncio.Task[None]] = set()

        for cell in self.cells:
            cell.subscribe(self._on_publish)
        self._refresh()

    @property
    def cells(self) -> tuple[AsyncCell[Any], AsyncCell[Any], AsyncCell[Any]]:
        return (self.bytes_cell, self.document_cell, self.page_cell)

    @property
    def request(self) -> PageRequest:
        return self._request

    @property
    def scale(self) -> float:
        scale = self._request.scale
        return self._config.default_scale if scale is None else scale

    @property
    def state(self) -> PipelineState:
        return aggregate(
            self.bytes_cell.state,
            self.document_cell.state,
            self.page_cell.state,
            scale=self.scale,
        )

    def update(self, request: PageRequest) -> PipelineState:
        """Switch to *request*; only stages whose inputs changed restart."""
        self._request = self._check_request(request)
        log.debug("pipeline update: %s", request.describe())
        self._refresh()
        return self.state

    def subscribe(self, listener: PipelineListener) -> Callable[[], None]:
        """Call *listener(state)* whenever the aggregate state changes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def settled(self) -> PipelineState:
        """Wait until every stage is idle and return the aggregate state.

        Idle means no producer of a current epoch is running and no
        superseded document is still being closed; a suspended or failed
        chain is idle too. Work disowned by an input change is not waited on.
        """
        while True:
            for cell in self.cells:
                await cell.settled()
            if self._closing:
                await asyncio.wait(set(self._closing))
            elif not any(cell.busy for cell in self.cells):
                return self.state

    def dispose(self) -> None:
        """Dispose every stage; no state changes are published afterwards."""
        if self._disposed:
            return
        self._disposed = True
        for cell in self.cells:
            cell.dispose()
        self._listeners.clear()
        if self._document is not None:
            document, self._document = self._document, None
            self._retire(document)

    async def aclose(self) -> None:
        """Dispose, close open documents and close an owned transport."""
        self.dispose()
        if self._closing:
            await asyncio.wait(set(self._closing))
        if self._owns_transport and self._transport is not None:
            transport, self._transport = self._transport, None
            try:
                await transport.aclose()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Cleanup should never mask the primary failure.
                log.warning("Transport cleanup failed: %s", exc)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        _: type[BaseException] | None,
        __: BaseException | None,
        ___: TracebackType | None,
    ) -> None:
        await self.aclose()

    # --- stage producers ---

    async def _acquire(self, request: PageRequest, wrap: Wrap) -> bytes:
        if request.source_kind == "remote":
            transport = self._get_transport()
            return await wrap(
                transport.fetch(request.source_value, request.source_options)
            )
        return await read_local_bytes(request.source_value)

    async def _parse(self, upstream: AsyncResult[bytes, Any], _wrap: Wrap) -> Any:
        if not isinstance(upstream, Success):
            return suspend()
        # Not wrapped: a superseded open must come back here so the handle
        # can be closed.
        document = await self._engine.open(upstream.data)
        if self._disposed or self.bytes_cell.state is not upstream:
            log.debug("closing document opened for superseded bytes")
            self._retire(document)
            return suspend()
        return document

    def _extract(
        self, upstream: AsyncResult[DocumentHandle, Any], page: int, wrap: Wrap
    ) -> Any:
        if isinstance(upstream, Success):
            return wrap(upstream.data.get_page(page))
        return suspend()

    # --- wiring ---

    def _get_transport(self) -> ByteTransport:
        if self._transport is None:
            self._transport = HttpxTransport(self._config)
        return self._transport

    @staticmethod
    def _check_request(request: PageRequest) -> PageRequest:
        if not isinstance(request, PageRequest):
            raise ConfigurationError(
                f"Expected a PageRequest, got {type(request).__name__}",
                hint="Build one with PageRequest.from_url() or PageRequest.from_file().",
            )
        return request

    def _on_publish(self, cell: AsyncCell[Any], result: AsyncResult[Any, Any]) -> None:
        if cell is self.document_cell:
            document = result.data if isinstance(result, Success) else None
            previous, self._document = self._document, document
            if previous is not None and previous is not document:
                self._retire(previous)
        self._refresh()

    def _retire(self, document: DocumentHandle) -> None:
        task = asyncio.get_running_loop().create_task(
            self._close_document(document), name="pagecast.pipeline:close-document"
        )
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_document(self, document: DocumentHandle) -> None:
        try:
            await document.close()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("Document cleanup failed: %s", exc)

    def _refresh(self) -> None:
        """Re-key every stage from the current request and upstream results.

        Publications triggered while re-keying (a stage resetting to Pending)
        re-enter here; they are coalesced into another pass of the loop.
        """
        if self._disposed:
            return
        if self._refreshing:
            self._dirty = True
            return

        self._refreshing = True
        try:
            while True:
                self._dirty = False
                request = self._request

                self.bytes_cell.observe(
                    functools.partial(self._acquire, request), request.source_key
                )
                bytes_result = self.bytes_cell.state
                self.document_cell.observe(
                    functools.partial(self._parse, bytes_result), (bytes_result,)
                )
                document_result = self.document_cell.state
                self.page_cell.observe(
                    functools.partial(self._extract, document_result, request.page),
                    (document_result, request.page),
                )
                if not self._dirty or self._disposed:
                    break
        finally:
            self._refreshing = False

        self._emit()

    def _emit(self) -> None:
        if self._disposed:
            return
        state = self.state
        if state == self._last_state:
            return
        self._last_state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                log.warning("pipeline listener %r failed", listener, exc_info=True)
