"""Database configuration helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from platformdirs import user_data_dir

from ppc_backend.key_manager import APP_NAME

_POOL_ENV = {"pool_size": "DB_POOL_SIZE", "max_overflow": "DB_MAX_OVERFLOW", "pool_timeout": "DB_POOL_TIMEOUT"}


@dataclass(frozen=True)
class DatabaseSettings:
    """Resolved database configuration for the application."""

    url: str
    echo: bool = False

    def engine_options(self) -> Dict[str, object]:
        """Return keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.echo}
        connect_args: Dict[str, object] = {}
        if self.is_sqlite:
            connect_args["check_same_thread"] = False
        else:
            for option, env_var in _POOL_ENV.items():
                value = _get_int_env(env_var)
                if value is not None:
                    options[option] = value
        if self.is_postgres:
            connect_args["options"] = "-c timezone=UTC"
        if connect_args:
            options["connect_args"] = connect_args
        return options

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith("postgresql") or self.url.startswith("postgres")


def _default_sqlite_path() -> Path:
    data_dir = Path(user_data_dir(APP_NAME, APP_NAME))
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "research.db"


def _get_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:  # pragma: no cover - clearly surface misconfiguration
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    """Return the active database settings derived from the environment."""

    url = os.getenv("PPC_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        return DatabaseSettings(url=url)

    path_override = os.getenv("PPC_DB_PATH")
    if path_override:
        db_path = Path(path_override).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
    else:
        db_path = _default_sqlite_path()

    return DatabaseSettings(url=f"sqlite:///{db_path}")
