"""PageView: the consumer that turns pipeline state into pixels.

A view subscribes to a ``Pipeline`` and

- fires ``on_loading`` / ``on_success`` when ``loading`` / ``ready`` turn
  true, and ``on_failure(error)`` once per distinct error object;
- sizes its surface to the page viewport and renders the page whenever the
  ready page or the scale changes.

Renders run one after another. A render superseded before it starts is
skipped, so a slow render of an old page never overwrites a newer one. A
render whose page leaves the pipeline while it runs does not report its
failure; the page's document may already be closed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Literal

from pagecast.errors import RenderError

if TYPE_CHECKING:
    from collections.abc import Callable

    from pagecast.engine import PageHandle
    from pagecast.pipeline import Pipeline, PipelineState
    from pagecast.surface import Surface

log = logging.getLogger(__name__)


class PageView:
    """Render the pipeline's page onto a surface and report lifecycle events."""

    def __init__(
        self,
        pipeline: Pipeline,
        surface: Surface | None = None,
        *,
        on_loading: Callable[[], None] | None = None,
        on_success: Callable[[], None] | None = None,
        on_failure: Callable[[Any], None] | None = None,
    ) -> None:
        """Subscribe to *pipeline* and react to its current state right away."""
        self.on_loading = on_loading
        self.on_success = on_success
        self.on_failure = on_failure
        self._pipeline = pipeline
        self._surface = surface

        self._was_loading = False
        self._was_ready = False
        self._last_error: Any = None
        self._rendered: tuple[PageHandle, float] | None = None
        self._render_generation = 0
        self._render_task: asyncio.Task[None] | None = None

        self._unsubscribe: Callable[[], None] | None = pipeline.subscribe(
            self._on_state
        )
        self._on_state(pipeline.state)

    @property
    def surface(self) -> Surface | None:
        return self._surface

    @property
    def fallback(self) -> Literal["loading", "error"] | None:
        """Which placeholder a presentation layer should show instead of the surface."""
        state = self._pipeline.state
        if state.loading:
            return "loading"
        if state.error is not None:
            return "error"
        return None

    def attach(self, surface: Surface | None) -> None:
        """Swap the target surface; a ready page is re-rendered onto it."""
        self._surface = surface
        self._rendered = None
        self._maybe_render(self._pipeline.state)

    async def rendered(self) -> Surface | None:
        """Wait for queued renders to finish and return the surface."""
        while self._render_task is not None and not self._render_task.done():
            await asyncio.wait({self._render_task})
        return self._surface

    def close(self) -> None:
        """Stop following the pipeline and cancel queued renders."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._render_generation += 1
        if self._render_task is not None and not self._render_task.done():
            self._render_task.cancel()

    # --- internals ---

    def _on_state(self, state: PipelineState) -> None:
        self._notify(state)
        self._maybe_render(state)

    def _notify(self, state: PipelineState) -> None:
        # Record each edge before calling back so a raising callback is not
        # called again for the same edge.
        loading_edge = state.loading and not self._was_loading
        ready_edge = state.ready and not self._was_ready
        error = state.error
        new_error = error is not None and error is not self._last_error
        self._was_loading = state.loading
        self._was_ready = state.ready
        self._last_error = error

        if loading_edge and self.on_loading:
            self.on_loading()
        if ready_edge and self.on_success:
            self.on_success()
        if new_error:
            self._report(error)

    def _report(self, error: Any) -> None:
        if self.on_failure:
            self.on_failure(error)

    def _maybe_render(self, state: PipelineState) -> None:
        surface = self._surface
        page = state.page
        if not state.ready or page is None:
            if self._rendered is not None:
                # The rendered page left the pipeline; an in-flight render is stale.
                self._rendered = None
                self._render_generation += 1
            return
        if surface is None:
            return
        if (
            self._rendered is not None
            and self._rendered[0] is page
            and self._rendered[1] == state.scale
        ):
            return
        self._rendered = (page, state.scale)

        self._render_generation += 1
        previous = self._render_task
        self._render_task = asyncio.get_running_loop().create_task(
            self._render(self._render_generation, previous, page, state.scale, surface),
            name=f"pagecast.render:{page.number}",
        )

    async def _render(
        self,
        generation: int,
        previous: asyncio.Task[None] | None,
        page: PageHandle,
        scale: float,
        surface: Surface,
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        if generation != self._render_generation:
            log.debug("render of page %d superseded", page.number)
            return

        viewport = page.viewport(scale)
        context = surface.get_context()
        if context is None:
            log.debug("surface has no drawing context; skipping render")
            return

        surface.height = viewport.height
        surface.width = viewport.width
        try:
            await page.render(context, viewport)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if generation != self._render_generation:
                log.debug("superseded render of page %d failed: %s", page.number, exc)
                return
            log.warning("Rendering page %d failed: %s", page.number, exc)
            if isinstance(exc, RenderError):
                error = exc
            else:
                error = RenderError(f"Rendering page {page.number} failed: {exc}")
                error.__cause__ = exc
            self._report(error)
            return
        log.debug(
            "rendered page %d at %dx%d", page.number, viewport.width, viewport.height
        )
