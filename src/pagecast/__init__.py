"""pagecast: load one page of a document through a cancellable async pipeline.

Public API:
    - Pipeline / PipelineState: bytes -> document -> page, with aggregate state
    - PageRequest: explicit pipeline input
    - PageView: renders the ready page onto a surface, fires lifecycle callbacks
    - AsyncCell / suspend: the primitives the pipeline is built from
    - Config / resolve_config: configuration
"""

from __future__ import annotations

import logging

from pagecast.cell import AsyncCell
from pagecast.config import Config, resolve_config
from pagecast.engine import PyMuPDFEngine, Viewport, configure_worker
from pagecast.errors import (
    CellDisposedError,
    ConfigurationError,
    DocumentError,
    InternalError,
    PageRangeError,
    PagecastError,
    RenderError,
    SourceError,
    TransportError,
)
from pagecast.pipeline import Pipeline, PipelineState
from pagecast.result import PENDING, Failure, Pending, Success
from pagecast.source import PageRequest
from pagecast.surface import ImageSurface
from pagecast.suspend import SUSPENDED, suspend
from pagecast.transport import HttpxTransport
from pagecast.view import PageView

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("pagecast")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("pagecast").addHandler(logging.NullHandler())


__all__ = [
    "PENDING",
    "SUSPENDED",
    "AsyncCell",
    "CellDisposedError",
    "Config",
    "ConfigurationError",
    "DocumentError",
    "Failure",
    "HttpxTransport",
    "ImageSurface",
    "InternalError",
    "PageRangeError",
    "PageRequest",
    "PageView",
    "PagecastError",
    "Pending",
    "Pipeline",
    "PipelineState",
    "PyMuPDFEngine",
    "RenderError",
    "SourceError",
    "Success",
    "TransportError",
    "Viewport",
    "configure_worker",
    "resolve_config",
    "suspend",
]
