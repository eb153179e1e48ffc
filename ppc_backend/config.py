"""Export settings resolved from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

try:  # Load environment variables from a .env file if present
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:  # pragma: no cover - optional dependency
    pass


@dataclass(frozen=True)
class ExportSettings:
    """Versioning and naming applied to every research export."""

    hash_version: str = "v1"
    schema_version: str = "1.0.0"
    filename_prefix: str = "ppc_research"
    history_default_limit: int = 20
    history_max_limit: int = 100


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:  # pragma: no cover - clearly surface misconfiguration
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


@lru_cache(maxsize=1)
def get_export_settings() -> ExportSettings:
    """Return the active export settings derived from the environment."""

    return ExportSettings(
        hash_version=os.getenv("RESEARCH_HASH_VERSION", "v1").strip() or "v1",
        schema_version=os.getenv("RESEARCH_SCHEMA_VERSION", "1.0.0").strip() or "1.0.0",
        history_default_limit=_get_int_env("RESEARCH_HISTORY_LIMIT", 20),
    )


__all__ = ["ExportSettings", "get_export_settings"]
