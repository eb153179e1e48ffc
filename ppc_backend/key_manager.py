"""Secret loading for the research export service.

Secrets resolve from the environment first. Development deployments may also
use a local encrypted store under the platform data directory; production
lookups never fall back to it unless ``SECRETS_FALLBACK=always``.

The pseudonymization salt is always requested with ``allow_fallback=False``:
a missing salt is a configuration error, never something to paper over with a
generated or default value.
"""

import json
import os
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from platformdirs import user_data_dir

APP_NAME = "PPCResearchExport"

_METADATA_FILENAME = "secrets_metadata.json"
_ENV_DEV_VALUES = {"development", "dev", "local", "test"}
_DEFAULT_SECRET_MAX_AGE_DAYS = 90


class SecretError(Exception):
    """Base error for secret management failures."""


class SecretNotFoundError(SecretError):
    """Raised when a required secret is not available."""


class SecretRotationError(SecretError):
    """Raised when rotation metadata is missing or indicates staleness."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _base_dir() -> Path:
    directory = Path(user_data_dir(APP_NAME, APP_NAME))
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _metadata_file() -> Path:
    return _base_dir() / _METADATA_FILENAME


def _key_file() -> Path:
    return _base_dir() / "secrets.json.enc"


def _fernet_file() -> Path:
    return _base_dir() / "secrets.key"


def _fernet() -> Fernet:  # pragma: no cover - simple helper
    f_path = _fernet_file()
    if f_path.exists():
        key = f_path.read_bytes()
    else:
        key = Fernet.generate_key()
        f_path.write_bytes(key)
        os.chmod(f_path, 0o600)
    return Fernet(key)


def _load_metadata() -> Dict[str, Dict[str, Any]]:
    path = _metadata_file()
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}


def _record_metadata(name: str, **fields: Any) -> Dict[str, Any]:
    data = _load_metadata()
    record = data.get(name, {}).copy()
    record.update({k: v for k, v in fields.items() if v is not None})
    record["updatedAt"] = _now_iso()
    data[name] = record
    _metadata_file().write_text(json.dumps(data, indent=2), encoding="utf-8")
    return record


def _load_local_store() -> Dict[str, str]:
    path = _key_file()
    if not path.exists():
        return {}
    try:
        payload = _fernet().decrypt(path.read_bytes())
        return json.loads(payload.decode("utf-8"))
    except (InvalidToken, OSError, ValueError):
        return {}


def _save_local_store(entries: Dict[str, str]) -> None:
    token = _fernet().encrypt(json.dumps(entries).encode("utf-8"))
    _key_file().write_bytes(token)


def _parse_iso(value: str) -> Optional[datetime]:
    try:
        cleaned = value.strip()
        if cleaned.endswith("Z"):
            cleaned = cleaned[:-1] + "+00:00"
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_dev_env() -> bool:
    return os.getenv("ENVIRONMENT", "development").lower() in _ENV_DEV_VALUES


def _allow_fallback() -> bool:
    fallback_env = os.getenv("SECRETS_FALLBACK", "auto").lower()
    if fallback_env == "always":
        return True
    if fallback_env == "never":
        return False
    return is_dev_env()


def _max_age_days(default: int) -> int:
    value = os.getenv("SECRET_MAX_AGE_DAYS")
    if value:
        try:
            return int(value)
        except ValueError:
            pass
    return default


def _env_metadata(env_var: str) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {"source": "environment"}
    rotated = os.getenv(f"{env_var}_ROTATED_AT")
    version = os.getenv(f"{env_var}_VERSION")
    if rotated:
        metadata["rotatedAt"] = rotated
    if version:
        metadata["version"] = version
    return metadata


def _validate_rotation(
    name: str,
    env_var: str,
    metadata: Dict[str, Any],
    *,
    max_age_days: int,
    allow_missing: bool,
) -> None:
    rotated_at = metadata.get("rotatedAt")
    if not rotated_at:
        if allow_missing:
            return
        raise SecretRotationError(
            f"Rotation timestamp for '{name}' is missing. Provide {env_var}_ROTATED_AT."
        )
    parsed = _parse_iso(str(rotated_at))
    if parsed is None:
        if allow_missing:
            return
        raise SecretRotationError(
            f"Rotation timestamp for '{name}' is not a valid ISO-8601 datetime: {rotated_at}"
        )
    if parsed < datetime.now(timezone.utc) - timedelta(days=max_age_days):
        raise SecretRotationError(
            f"Secret '{name}' appears stale (rotated {rotated_at}). Rotate at least every {max_age_days} days."
        )


def load_secret(
    name: str,
    env_var: str,
    *,
    required: bool = False,
    allow_fallback: Optional[bool] = None,
    max_age_days: Optional[int] = None,
    allow_missing_rotation: Optional[bool] = None,
) -> Tuple[Optional[str], Dict[str, Any]]:
    """Load a secret from the environment, then the local store if allowed."""

    allow_fallback = _allow_fallback() if allow_fallback is None else allow_fallback
    allow_missing_rotation = is_dev_env() if allow_missing_rotation is None else allow_missing_rotation
    max_age = max_age_days or _max_age_days(_DEFAULT_SECRET_MAX_AGE_DAYS)

    env_value = os.getenv(env_var, "").strip()
    if env_value:
        metadata = _env_metadata(env_var)
        _validate_rotation(
            name, env_var, metadata, max_age_days=max_age, allow_missing=allow_missing_rotation
        )
        return env_value, metadata

    if allow_fallback:
        stored = _load_local_store().get(name)
        if stored:
            metadata = _load_metadata().get(name, {}).copy()
            metadata.setdefault("source", "local-file")
            _validate_rotation(
                name, env_var, metadata, max_age_days=max_age, allow_missing=allow_missing_rotation
            )
            return stored, metadata

    if required:
        raise SecretNotFoundError(f"Secret '{name}' is not configured. Provide {env_var}.")
    return None, {}


def store_secret(name: str, value: str, *, source: str = "local-file") -> Dict[str, Any]:
    """Persist ``value`` in the local encrypted store."""

    entries = _load_local_store()
    entries[name] = value
    _save_local_store(entries)
    return _record_metadata(name, source=source, rotatedAt=_now_iso(), version=str(uuid.uuid4()))


def require_secret(
    name: str,
    env_var: str,
    *,
    description: Optional[str] = None,
    max_age_days: Optional[int] = None,
    allow_fallback: Optional[bool] = None,
    allow_missing_rotation: Optional[bool] = None,
) -> str:
    """Return a configured secret or raise with a helpful error."""

    effective_fallback = _allow_fallback() if allow_fallback is None else allow_fallback
    try:
        value, metadata = load_secret(
            name,
            env_var,
            required=True,
            allow_fallback=effective_fallback,
            max_age_days=max_age_days,
            allow_missing_rotation=allow_missing_rotation,
        )
    except SecretNotFoundError as exc:
        label = description or f"secret '{name}'"
        raise SecretNotFoundError(f"{label} is not configured. Provide {env_var}.") from exc
    source = metadata.get("source")
    if not effective_fallback and source and source != "environment":
        label = description or f"secret '{name}'"
        raise SecretNotFoundError(
            f"{label} is configured via a local fallback. Provide {env_var} from the environment."
        )
    return value  # type: ignore[return-value]


def ensure_local_secret(
    name: str,
    env_var: str,
    generator: Callable[[], str] = lambda: secrets.token_urlsafe(48),
    *,
    allow_fallback: Optional[bool] = None,
) -> str:
    """Return a secret, provisioning a local one in development if needed."""

    allow_fallback = _allow_fallback() if allow_fallback is None else allow_fallback
    value, _ = load_secret(name, env_var, allow_fallback=allow_fallback)
    if value:
        return value
    if not allow_fallback:
        raise SecretNotFoundError(
            f"Cannot provision '{name}' locally because the fallback store is disabled. Provide {env_var}."
        )
    new_value = generator()
    store_secret(name, new_value)
    return new_value


__all__ = [
    "APP_NAME",
    "SecretError",
    "SecretNotFoundError",
    "SecretRotationError",
    "is_dev_env",
    "load_secret",
    "store_secret",
    "require_secret",
    "ensure_local_secret",
]
