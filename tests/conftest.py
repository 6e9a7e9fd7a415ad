"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration and shared test data.
Fixtures marked autouse apply to every test.
"""

from __future__ import annotations

from contextlib import suppress
import logging
import os

import fitz
import pytest

from pagecast.engine import shutdown_worker

# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests."""
    with suppress(Exception):
        monkeypatch.setattr(
            "pagecast.config.load_dotenv", lambda *_args, **_kwargs: False
        )


@pytest.fixture(autouse=True)
def isolate_pagecast_env(monkeypatch):
    """Clear PAGECAST_* env vars so host settings never leak into tests."""
    for key in list(os.environ.keys()):
        if key.startswith("PAGECAST_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def fresh_engine_worker():
    """Each test starts with an unconfigured engine worker."""
    shutdown_worker()
    yield
    shutdown_worker()


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# =============================================================================
# Test Data
# =============================================================================


def make_pdf(page_sizes: list[tuple[float, float]]) -> bytes:
    """Build an in-memory PDF with one labelled page per size."""
    doc = fitz.open()
    for i, (width, height) in enumerate(page_sizes, start=1):
        page = doc.new_page(width=width, height=height)
        page.insert_text((20, 40), f"page {i}")
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture(scope="session")
def three_page_pdf() -> bytes:
    """A 3-page PDF; page N is 100*N points wide and 200 points tall."""
    return make_pdf([(100.0, 200.0), (200.0, 200.0), (300.0, 200.0)])
