"""Request validation and row selection from the research views."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Protocol

import sqlalchemy as sa
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ppc_backend.db.models import research_view_metadata
from ppc_backend.errors import InvalidArgument, NotFound, UpstreamFailure
from ppc_backend.research_schema import (
    DatasetSchema,
    DatasetType,
    ExportPurpose,
    ExportRequest,
    schema_for,
)
from ppc_backend.time_utils import parse_iso_date, quarter_bucket

logger = structlog.get_logger(__name__)

SourceRow = Dict[str, Any]

_PURPOSES = [p.value for p in ExportPurpose]
_DATASETS = [d.value for d in DatasetType]


def _join_choices(values: List[str]) -> str:
    return ", ".join(values[:-1]) + f", or {values[-1]}"


def parse_export_request(payload: Any, requested_by: str) -> ExportRequest:
    """Validate a raw request body.

    Raises :class:`InvalidArgument` naming the first field that fails.
    """

    if not isinstance(payload, Mapping):
        raise InvalidArgument("body", "Request body must be a JSON object")

    purpose = payload.get("export_purpose")
    if purpose not in _PURPOSES:
        raise InvalidArgument(
            "export_purpose",
            f"Invalid export_purpose. Must be: {_join_choices(_PURPOSES)}",
        )
    dataset = payload.get("dataset_type")
    if dataset not in _DATASETS:
        raise InvalidArgument(
            "dataset_type",
            f"Invalid dataset_type. Must be: {_join_choices(_DATASETS)}",
        )

    raw_start = payload.get("date_range_start")
    raw_end = payload.get("date_range_end")
    if not raw_start or not raw_end:
        missing = "date_range_start" if not raw_start else "date_range_end"
        raise InvalidArgument(missing, "date_range_start and date_range_end are required")

    start = parse_iso_date(raw_start)
    if start is None:
        raise InvalidArgument("date_range_start", "date_range_start must be a YYYY-MM-DD date")
    end = parse_iso_date(raw_end)
    if end is None:
        raise InvalidArgument("date_range_end", "date_range_end must be a YYYY-MM-DD date")
    if start > end:
        raise InvalidArgument("date_range_end", "date_range_end must not be before date_range_start")

    return ExportRequest(
        export_purpose=ExportPurpose(purpose),
        dataset_type=DatasetType(dataset),
        date_range_start=start,
        date_range_end=end,
        requested_by=requested_by,
    )


class ViewReader(Protocol):
    def fetch_rows(self, schema: DatasetSchema, start_bucket: str, end_bucket: str) -> List[SourceRow]:
        ...


class ResearchViewRepository:
    """Reads declared columns from a research view within a bucket range."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def fetch_rows(self, schema: DatasetSchema, start_bucket: str, end_bucket: str) -> List[SourceRow]:
        view = research_view_metadata.tables[schema.view_name]
        columns = [view.c[name] for name in schema.source_columns]
        bucket = view.c[schema.filter_column]
        stmt = (
            sa.select(*columns)
            .where(bucket >= start_bucket, bucket <= end_bucket)
            .order_by(bucket, columns[0])
        )
        try:
            result = self.session.execute(stmt)
            return [dict(row) for row in result.mappings()]
        except SQLAlchemyError as exc:
            logger.error(
                "research_view_query_failed",
                view=schema.view_name,
                error=exc.__class__.__name__,
            )
            raise UpstreamFailure("Failed to query research data") from exc


class DatasetSelector:
    """Map a validated request onto its research view and fetch the rows."""

    def __init__(self, reader: ViewReader) -> None:
        self.reader = reader

    def select(self, request: ExportRequest) -> List[SourceRow]:
        schema = schema_for(request.dataset_type)
        start_bucket = quarter_bucket(request.date_range_start)
        end_bucket = quarter_bucket(request.date_range_end)
        rows = self.reader.fetch_rows(schema, start_bucket, end_bucket)
        if not rows:
            logger.info(
                "research_export_no_rows",
                dataset_type=request.dataset_type.value,
                start_bucket=start_bucket,
                end_bucket=end_bucket,
            )
            raise NotFound(
                "No records found for the specified criteria",
                details={"row_count": 0},
            )
        return rows


__all__ = [
    "SourceRow",
    "ViewReader",
    "ResearchViewRepository",
    "DatasetSelector",
    "parse_export_request",
]
