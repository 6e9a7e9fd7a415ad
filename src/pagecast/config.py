"""Configuration: pydantic schema in, frozen runtime payload out.

Resolution precedence is ``defaults < env < overrides``. Environment values
are read from ``PAGECAST_*`` variables after an optional ``.env`` load.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import cache
import os
from typing import TYPE_CHECKING, Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from pagecast.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Mapping

ENV_PREFIX = "PAGECAST_"

_DOTENV_LOADED: bool = False


class Settings(BaseModel):
    """Schema for configuration fields, defaults and validation rules."""

    request_timeout_s: float = Field(default=30.0, gt=0)
    #: Upper bound on downloaded document size; ``None`` disables the cap.
    max_bytes: int | None = Field(default=None, gt=0)
    user_agent: str = Field(default="pagecast", min_length=1)
    follow_redirects: bool = Field(default=True)
    #: Threads in the process-wide engine worker. PyMuPDF is not thread-safe,
    #: so keep this at 1 unless a different engine is plugged in.
    worker_threads: int = Field(default=1, ge=1)
    default_scale: float = Field(default=1.0, gt=0)

    model_config = {"extra": "forbid"}

    @field_validator("user_agent", mode="before")
    @classmethod
    def normalize_user_agent(cls, v: Any) -> Any:
        """Trim surrounding whitespace on the user agent."""
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("max_bytes", mode="before")
    @classmethod
    def normalize_max_bytes(cls, v: Any) -> Any:
        """Map empty strings and ``0`` to *no cap*."""
        if v in ("", "0", 0):
            return None
        return v


@cache
def _default_settings() -> dict[str, Any]:
    return Settings().model_dump()


@dataclass(frozen=True)
class Config:
    """Immutable configuration passed to transports, engines and pipelines.

    Example:
        config = resolve_config(overrides={"request_timeout_s": 5})
    """

    request_timeout_s: float = 30.0
    max_bytes: int | None = None
    user_agent: str = "pagecast"
    follow_redirects: bool = True
    worker_threads: int = 1
    default_scale: float = 1.0


def _try_load_dotenv() -> None:
    global _DOTENV_LOADED
    if _DOTENV_LOADED:
        return
    load_dotenv()
    _DOTENV_LOADED = True


def load_env() -> dict[str, str]:
    """Return ``PAGECAST_*`` variables keyed by lower-cased field name.

    Values stay strings; the schema coerces them.
    """
    known = set(Settings.model_fields)
    out: dict[str, str] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX) :].lower()
        if name in known:
            out[name] = value
    return out


def resolve_config(overrides: Mapping[str, Any] | None = None) -> Config:
    """Resolve configuration from defaults, environment and overrides.

    Args:
        overrides: Programmatic values; these win over the environment.

    Returns:
        A validated, frozen ``Config``.

    Raises:
        ConfigurationError: If any value fails validation.
    """
    _try_load_dotenv()

    merged: dict[str, Any] = dict(_default_settings())
    merged.update(load_env())
    merged.update(overrides or {})

    try:
        settings = Settings.model_validate(merged)
    except ValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(p) for p in err.get("loc", ())) or "config"
        msg = err.get("msg") or "invalid value"
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, ") :]
        raise ConfigurationError(
            f"Configuration validation failed for {field}: {msg}",
            hint=f"Check the {ENV_PREFIX}{field.upper()} environment variable "
            "or the override you passed.",
        ) from e

    return Config(**settings.model_dump())
