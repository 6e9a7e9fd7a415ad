"""Render one document page to an image.

Run:
    python -m pagecast path/to/file.pdf --page 2 --scale 1.5 --output page.png
    python -m pagecast https://example.org/paper.pdf

Exit codes: 0 on success, 1 when the pipeline or the render fails, 2 for
usage or configuration errors.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
import sys
from typing import Any

from pagecast.config import Config, resolve_config
from pagecast.engine import shutdown_worker
from pagecast.errors import PagecastError
from pagecast.pipeline import Pipeline
from pagecast.source import PageRequest
from pagecast.surface import ImageSurface
from pagecast.view import PageView

log = logging.getLogger("pagecast.cli")


def format_error(exc: BaseException) -> str:
    """One-line message plus the hint when the error carries one."""
    hint = getattr(exc, "hint", None)
    return f"{exc} (hint: {hint})" if hint else str(exc)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pagecast",
        description="Render one page of a PDF (local path or http(s) URL) to PNG.",
    )
    parser.add_argument("source", help="Local file path or http(s):// URL")
    parser.add_argument("--page", type=int, default=1, help="1-based page number")
    parser.add_argument(
        "--scale",
        type=float,
        default=None,
        help="Render scale (1.0 = 72 dpi). Defaults to PAGECAST_DEFAULT_SCALE.",
    )
    parser.add_argument(
        "--output",
        "-o",
        type=Path,
        default=None,
        help="Output image path (default: page-<N>.png)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Request timeout in seconds for remote sources",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def build_request(source: str, *, page: int, scale: float | None) -> PageRequest:
    if source.startswith(("http://", "https://")):
        return PageRequest.from_url(source, page=page, scale=scale)
    return PageRequest.from_file(source, page=page, scale=scale)


async def main_async(request: PageRequest, output: Path, *, config: Config) -> int:
    failures: list[Any] = []
    surface = ImageSurface()
    async with Pipeline(request, config=config) as pipeline:
        view = PageView(pipeline, surface, on_failure=failures.append)
        state = await pipeline.settled()
        await view.rendered()
        view.close()

    if state.error is not None:
        print(f"error: {format_error(state.error)}", file=sys.stderr)
        return 1
    if failures:
        print(f"error: {format_error(failures[-1])}", file=sys.stderr)
        return 1

    surface.save(output)
    print(f"Wrote page {request.page} ({surface.width}x{surface.height}) to {output}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides: dict[str, Any] = {}
    if args.timeout is not None:
        overrides["request_timeout_s"] = args.timeout
    try:
        config = resolve_config(overrides)
        request = build_request(args.source, page=args.page, scale=args.scale)
    except PagecastError as e:
        print(f"error: {format_error(e)}", file=sys.stderr)
        return 2

    output = args.output or Path(f"page-{request.page}.png")
    log.debug("rendering %s to %s", request.describe(), output)
    try:
        return asyncio.run(main_async(request, output, config=config))
    finally:
        shutdown_worker()


if __name__ == "__main__":
    sys.exit(main())
