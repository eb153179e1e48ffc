"""Declared shapes of the three research datasets.

Each dataset type maps to one read-only research view. The schema lists, in
output order, which view columns are identifiers (pseudonymized and renamed
to ``*_pid``) and which are content (passed through). The ordered list of
output columns is the dataset's allow-list: nothing outside it is ever
exported.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import date
from typing import Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from ppc_backend.phi_patterns import PSEUDONYM_SUFFIX, forbidden_columns

EXPORT_ROLES = frozenset({"admin", "owner"})

_ID_SUFFIX = re.compile(r"(_uuid|_id)$")


class ExportPurpose(str, enum.Enum):
    REGISTRY = "registry"
    PUBLICATION = "publication"
    RESEARCH = "research"


class DatasetType(str, enum.Enum):
    CARE_TARGETS = "care_targets"
    OUTCOMES = "outcomes"
    EPISODES = "episodes"


def identifier_prefix(column: str) -> str:
    """Return the three letter token prefix for an identifier column."""

    stem = _ID_SUFFIX.sub("", column)
    return stem.upper()[:3]


def pseudonym_column(column: str) -> str:
    return _ID_SUFFIX.sub(PSEUDONYM_SUFFIX, column)


@dataclass(frozen=True)
class IdentifierField:
    """A view column holding a row, patient, episode or care-target identity."""

    source: str
    output: str
    prefix: str

    @classmethod
    def from_column(cls, source: str) -> "IdentifierField":
        if not _ID_SUFFIX.search(source):
            raise ValueError(f"Identifier column {source!r} must end in _uuid or _id")
        return cls(source=source, output=pseudonym_column(source), prefix=identifier_prefix(source))


@dataclass(frozen=True)
class ContentField:
    """A view column exported verbatim."""

    source: str

    @property
    def output(self) -> str:
        return self.source


SchemaField = Union[IdentifierField, ContentField]


@dataclass(frozen=True)
class DatasetSchema:
    dataset_type: DatasetType
    view_name: str
    fields: Tuple[SchemaField, ...]
    filter_column: str

    def __post_init__(self) -> None:
        leaked = forbidden_columns(self.allowed_columns)
        if leaked:
            raise ValueError(
                f"{self.dataset_type.value} schema declares PHI columns: {', '.join(leaked)}"
            )

    @property
    def allowed_columns(self) -> Tuple[str, ...]:
        return tuple(f.output for f in self.fields)

    @property
    def source_columns(self) -> Tuple[str, ...]:
        return tuple(f.source for f in self.fields)

    def field_for(self, source: str) -> Optional[SchemaField]:
        for f in self.fields:
            if f.source == source:
                return f
        return None


def _identifiers(*columns: str) -> Tuple[IdentifierField, ...]:
    return tuple(IdentifierField.from_column(c) for c in columns)


def _content(*columns: str) -> Tuple[ContentField, ...]:
    return tuple(ContentField(c) for c in columns)


SCHEMAS: Dict[DatasetType, DatasetSchema] = {
    DatasetType.CARE_TARGETS: DatasetSchema(
        dataset_type=DatasetType.CARE_TARGETS,
        view_name="v_research_care_targets",
        fields=_identifiers("care_target_uuid", "episode_uuid", "patient_uuid")
        + _content(
            "body_region",
            "instrument_type",
            "baseline_score",
            "discharge_score",
            "score_delta",
            "mcid_threshold",
            "mcid_met",
            "care_target_status",
            "age_band_at_episode_start",
            "episode_time_bucket",
        ),
        filter_column="episode_time_bucket",
    ),
    # The outcomes view carries episode_time_bucket for range filtering only;
    # it is not part of the exported columns.
    DatasetType.OUTCOMES: DatasetSchema(
        dataset_type=DatasetType.OUTCOMES,
        view_name="v_research_outcomes",
        fields=_identifiers("care_target_uuid")
        + _content("instrument_type", "baseline_score", "discharge_score", "score_delta", "mcid_met"),
        filter_column="episode_time_bucket",
    ),
    DatasetType.EPISODES: DatasetSchema(
        dataset_type=DatasetType.EPISODES,
        view_name="v_research_episodes",
        fields=_identifiers("episode_uuid", "patient_uuid")
        + _content(
            "episode_start_bucket",
            "episode_end_bucket",
            "number_of_care_targets",
            "episode_status",
        ),
        filter_column="episode_start_bucket",
    ),
}


def schema_for(dataset_type: DatasetType) -> DatasetSchema:
    return SCHEMAS[dataset_type]


class ExportRequest(BaseModel):
    """A validated research export request."""

    model_config = ConfigDict(frozen=True)

    export_purpose: ExportPurpose
    dataset_type: DatasetType
    date_range_start: date
    date_range_end: date
    requested_by: str


__all__ = [
    "EXPORT_ROLES",
    "ExportPurpose",
    "DatasetType",
    "IdentifierField",
    "ContentField",
    "DatasetSchema",
    "SCHEMAS",
    "schema_for",
    "identifier_prefix",
    "pseudonym_column",
    "ExportRequest",
]
