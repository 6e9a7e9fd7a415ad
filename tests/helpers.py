"""Test helpers (small, reusable doubles).

Each fake records its calls and can hold any call behind an ``asyncio.Event``
so tests control exactly when an operation settles.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from PIL import Image

from pagecast.engine import Viewport
from pagecast.errors import PageRangeError


@dataclass
class Gates:
    """Named barriers. ``hold(key)`` makes calls for *key* wait for ``release``."""

    events: dict[Any, asyncio.Event] = field(default_factory=dict)

    def hold(self, key: Any) -> asyncio.Event:
        return self.events.setdefault(key, asyncio.Event())

    def release(self, key: Any) -> None:
        self.hold(key).set()

    async def wait(self, key: Any) -> None:
        event = self.events.get(key)
        if event is not None:
            await event.wait()


@dataclass
class GateTransport:
    """Transport returning scripted bytes (or raising scripted errors) per URL."""

    payloads: dict[str, bytes | BaseException] = field(default_factory=dict)
    gates: Gates = field(default_factory=Gates)
    calls: list[tuple[str, Any]] = field(default_factory=list)
    closed: bool = False

    async def fetch(self, url: str, options: Any = None) -> bytes:
        self.calls.append((url, options))
        await self.gates.wait(url)
        item = self.payloads[url]
        if isinstance(item, BaseException):
            raise item
        return item

    async def aclose(self) -> None:
        self.closed = True


@dataclass(eq=False)
class FakePage:
    number: int
    width: float = 100.0
    height: float = 200.0
    render_error: BaseException | None = None
    render_calls: list[Viewport] = field(default_factory=list)

    def viewport(self, scale: float) -> Viewport:
        return Viewport(
            width=int(self.width * scale), height=int(self.height * scale), scale=scale
        )

    async def render(self, context: Any, viewport: Viewport) -> None:
        self.render_calls.append(viewport)
        await asyncio.sleep(0)
        if self.render_error is not None:
            raise self.render_error
        context.draw_image(
            Image.new("RGB", (viewport.width, viewport.height), (0, 0, 0)), (0, 0)
        )


@dataclass(eq=False)
class FakeDocument:
    page_count: int
    gates: Gates = field(default_factory=Gates)
    page_calls: list[int] = field(default_factory=list)
    closed: bool = False

    async def get_page(self, number: int) -> FakePage:
        self.page_calls.append(number)
        await self.gates.wait(number)
        if not 1 <= number <= self.page_count:
            raise PageRangeError(number, self.page_count)
        return FakePage(number)

    async def close(self) -> None:
        self.closed = True


@dataclass
class FakeEngine:
    """Engine mapping raw bytes to page counts (or scripted parse errors)."""

    documents: dict[bytes, int | BaseException] = field(default_factory=dict)
    gates: Gates = field(default_factory=Gates)
    open_calls: list[bytes] = field(default_factory=list)
    opened: list[FakeDocument] = field(default_factory=list)

    async def open(self, data: bytes) -> FakeDocument:
        self.open_calls.append(data)
        await self.gates.wait(data)
        item = self.documents[data]
        if isinstance(item, BaseException):
            raise item
        doc = FakeDocument(page_count=item)
        self.opened.append(doc)
        return doc
