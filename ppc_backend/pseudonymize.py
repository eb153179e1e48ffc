"""Deterministic, non-reversible pseudonyms for identifier columns.

A token is ``PREFIX_`` followed by the first 16 hex characters of
``sha256(salt + ":" + original_id)``. The same id always yields the same
token while the salt is unchanged; rotating the salt starts a new epoch and
deliberately breaks cross-export linkage. No mapping from token back to the
original id is kept anywhere.

Only identifier columns are transformed. Content columns pass through
verbatim, so keeping names, dates of birth, contact details and free text out
of a research view is the view's responsibility.
"""

from __future__ import annotations

import hashlib
from functools import lru_cache
from typing import Any, Dict, List, Sequence

import structlog

from ppc_backend.errors import ConfigurationError, UpstreamFailure
from ppc_backend.key_manager import SecretError, require_secret
from ppc_backend.research_schema import DatasetSchema, IdentifierField

logger = structlog.get_logger(__name__)

TOKEN_HEX_LENGTH = 16


class Pseudonymizer:
    """Replace identifier fields using a salt fixed for the lifetime of the instance."""

    def __init__(self, salt: str) -> None:
        if not salt:
            raise ConfigurationError("Pseudonymization salt is not configured")
        self._salt = salt

    def token(self, original_id: Any, prefix: str) -> str:
        digest = hashlib.sha256(f"{self._salt}:{original_id}".encode("utf-8")).hexdigest()
        return f"{prefix}_{digest[:TOKEN_HEX_LENGTH]}"

    def transform(self, schema: DatasetSchema, rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Return pseudonymized copies of ``rows``; the input is not modified.

        Every column is checked against ``schema`` before any row is
        transformed, so an undeclared column aborts the whole batch.
        """

        declared = set(schema.source_columns)
        undeclared = sorted({key for row in rows for key in row} - declared)
        if undeclared:
            logger.error(
                "research_view_undeclared_columns",
                view=schema.view_name,
                columns=undeclared,
            )
            raise UpstreamFailure("Research view returned columns outside the export schema")

        output: List[Dict[str, Any]] = []
        for row in rows:
            result: Dict[str, Any] = {}
            for key, value in row.items():
                spec = schema.field_for(key)
                if isinstance(spec, IdentifierField):
                    result[spec.output] = None if value is None else self.token(value, spec.prefix)
                else:
                    result[key] = value
            output.append(result)
        return output


@lru_cache(maxsize=1)
def load_pseudonymizer() -> Pseudonymizer:
    """Build the process-wide pseudonymizer from the configured salt.

    The salt is read once; a rotated salt takes effect after a restart (or
    ``load_pseudonymizer.cache_clear()``).
    """

    try:
        salt = require_secret(
            "research_salt",
            "RESEARCH_PSEUDONYM_SALT",
            description="Research pseudonymization salt",
            allow_fallback=False,
            allow_missing_rotation=True,
        )
    except SecretError as exc:
        logger.error("research_salt_unavailable", error=str(exc))
        raise ConfigurationError("Pseudonymization salt is not configured") from exc
    return Pseudonymizer(salt)


__all__ = ["Pseudonymizer", "load_pseudonymizer", "TOKEN_HEX_LENGTH"]
