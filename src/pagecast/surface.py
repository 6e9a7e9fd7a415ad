"""Drawing surfaces pages are rasterized onto."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from PIL import Image

from pagecast.errors import RenderError

if TYPE_CHECKING:
    from pagecast.engine import DrawingContext


@runtime_checkable
class Surface(Protocol):
    """Sizable surface that hands out a 2-D drawing context."""

    width: int
    height: int

    def get_context(self) -> DrawingContext | None: ...  # noqa: D102


class ImageSurface:
    """Surface backed by a Pillow image.

    Resizing discards the current pixels, the same way resizing a canvas
    clears it. The image is allocated on first draw.
    """

    def __init__(
        self,
        width: int = 0,
        height: int = 0,
        *,
        background: tuple[int, int, int] = (255, 255, 255),
    ) -> None:
        self._width = width
        self._height = height
        self._background = background
        self._image: Image.Image | None = None

    @property
    def width(self) -> int:
        return self._width

    @width.setter
    def width(self, value: int) -> None:
        self._width = int(value)
        self._image = None

    @property
    def height(self) -> int:
        return self._height

    @height.setter
    def height(self, value: int) -> None:
        self._height = int(value)
        self._image = None

    @property
    def image(self) -> Image.Image | None:
        """Current pixels, or None if nothing has been drawn since the last resize."""
        return self._image

    def get_context(self) -> ImageContext:
        """Return a drawing context bound to this surface."""
        return ImageContext(self)

    def _ensure_image(self) -> Image.Image:
        if self._image is None:
            if self._width <= 0 or self._height <= 0:
                raise RenderError(
                    f"Cannot draw on a {self._width}x{self._height} surface",
                    hint="Size the surface before drawing.",
                )
            self._image = Image.new(
                "RGB", (self._width, self._height), self._background
            )
        return self._image

    def save(self, path: str | Path, *, format: str | None = None) -> Path:  # noqa: A002
        """Write the current pixels to *path*."""
        if self._image is None:
            raise RenderError(
                "Nothing has been rendered onto this surface",
                hint="Wait for PageView.rendered() before saving.",
            )
        p = Path(path)
        self._image.save(p, format=format)
        return p


class ImageContext:
    """Drawing context that pastes onto its surface's image."""

    def __init__(self, surface: ImageSurface) -> None:
        self._surface = surface

    def draw_image(
        self, image: Image.Image, origin: tuple[int, int] = (0, 0)
    ) -> None:
        self._surface._ensure_image().paste(image, origin)
