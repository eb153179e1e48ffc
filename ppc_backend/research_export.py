"""CSV rendering, manifest bookkeeping and the research export pipeline.

One export runs strictly in order: select rows, pseudonymize, render CSV,
write the manifest, write the audit entry. The CSV is the deliverable: a
failed manifest or audit write is logged, counted and reported as a warning,
but the caller still receives the file.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

import sqlalchemy as sa
import structlog
from prometheus_client import Counter
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ppc_backend.auth import Caller
from ppc_backend.config import ExportSettings, get_export_settings
from ppc_backend.db.models import AuditLog, ResearchExport
from ppc_backend.db.session import session_scope
from ppc_backend.pseudonymize import Pseudonymizer
from ppc_backend.research_schema import DatasetType, ExportPurpose, ExportRequest, schema_for
from ppc_backend.research_views import DatasetSelector
from ppc_backend.time_utils import utc_now

logger = structlog.get_logger(__name__)

AUDIT_ACTION = "RESEARCH_EXPORT_CREATED"
MANIFEST_TABLE = "research_exports"

RESEARCH_EXPORTS_TOTAL = Counter(
    "ppc_research_exports_total",
    "Research export requests by dataset, purpose and outcome",
    ("dataset_type", "export_purpose", "outcome"),
)

RESEARCH_EXPORT_ROWS_TOTAL = Counter(
    "ppc_research_export_rows_total",
    "Rows delivered in research exports",
    ("dataset_type",),
)

AUDIT_WRITE_FAILURES_TOTAL = Counter(
    "ppc_research_audit_write_failures_total",
    "Research exports delivered without a manifest or audit record",
    ("store",),
)


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


def render_csv(rows: Sequence[Dict[str, Any]]) -> str:
    """Serialise ``rows`` to CSV using the first row's keys as the header.

    Values containing a comma, double quote or newline are quoted with inner
    quotes doubled. Later rows missing a header key get an empty cell.
    """

    if not rows:
        return ""
    header = list(rows[0].keys())
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(header)
    ragged = 0
    for row in rows:
        if row.keys() != rows[0].keys():
            ragged += 1
        writer.writerow([_cell(row.get(column)) for column in header])
    if ragged:
        logger.warning("research_export_ragged_rows", ragged_rows=ragged, header=header)
    return buffer.getvalue()


def export_filename(
    dataset_type: DatasetType,
    export_purpose: ExportPurpose,
    today: date,
    *,
    prefix: str = "ppc_research",
) -> str:
    return f"{prefix}_{dataset_type.value}_{export_purpose.value}_{today.isoformat()}.csv"


class ManifestStore:
    """Append-only access to the ``research_exports`` manifest table."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    def create(
        self,
        request: ExportRequest,
        *,
        row_count: int,
        hash_version: str,
        schema_version: str,
    ) -> str:
        with session_scope(self.session_factory) as session:
            manifest = ResearchExport(
                created_by=request.requested_by,
                export_purpose=request.export_purpose.value,
                dataset_type=request.dataset_type.value,
                date_range_start=request.date_range_start,
                date_range_end=request.date_range_end,
                row_count=row_count,
                hash_version=hash_version,
                schema_version=schema_version,
            )
            session.add(manifest)
            session.flush()
            return manifest.id

    def list_recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        with session_scope(self.session_factory) as session:
            stmt = (
                sa.select(ResearchExport)
                .order_by(ResearchExport.created_at.desc(), ResearchExport.id)
                .limit(limit)
            )
            return [_serialise_manifest(m) for m in session.execute(stmt).scalars()]


def _serialise_manifest(manifest: ResearchExport) -> Dict[str, Any]:
    return {
        "id": manifest.id,
        "created_by": manifest.created_by,
        "export_purpose": manifest.export_purpose,
        "dataset_type": manifest.dataset_type,
        "date_range_start": manifest.date_range_start.isoformat(),
        "date_range_end": manifest.date_range_end.isoformat(),
        "row_count": manifest.row_count,
        "hash_version": manifest.hash_version,
        "schema_version": manifest.schema_version,
        "created_at": manifest.created_at.isoformat() if manifest.created_at else None,
    }


class AuditTrailWriter:
    """Writes audit entries through its own session, separate from the manifest."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    def record_export(
        self,
        request: ExportRequest,
        *,
        manifest_id: Optional[str],
        row_count: int,
        hash_version: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        with session_scope(self.session_factory) as session:
            entry = AuditLog(
                user_id=request.requested_by,
                action=AUDIT_ACTION,
                table_name=MANIFEST_TABLE,
                record_id=manifest_id or "unknown",
                details={
                    "export_purpose": request.export_purpose.value,
                    "dataset_type": request.dataset_type.value,
                    "date_range_start": request.date_range_start.isoformat(),
                    "date_range_end": request.date_range_end.isoformat(),
                    "row_count": row_count,
                    "hash_version": hash_version,
                },
                ip_address=ip_address,
                user_agent=user_agent,
                success=True,
            )
            session.add(entry)
            session.flush()
            return entry.id


@dataclass
class ExportResult:
    csv_text: str
    filename: str
    row_count: int
    manifest_id: Optional[str]
    hash_version: str
    warnings: List[str] = field(default_factory=list)


class ResearchExportService:
    """Runs one export from validated request to rendered CSV."""

    def __init__(
        self,
        selector: DatasetSelector,
        pseudonymizer: Pseudonymizer,
        manifests: ManifestStore,
        audit: AuditTrailWriter,
        settings: Optional[ExportSettings] = None,
    ) -> None:
        self.selector = selector
        self.pseudonymizer = pseudonymizer
        self.manifests = manifests
        self.audit = audit
        self.settings = settings or get_export_settings()

    def run(
        self,
        caller: Caller,
        request: ExportRequest,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ExportResult:
        dataset = request.dataset_type.value
        purpose = request.export_purpose.value
        logger.info(
            "research_export_started",
            user_id=caller.user_id,
            dataset_type=dataset,
            export_purpose=purpose,
            date_range_start=request.date_range_start.isoformat(),
            date_range_end=request.date_range_end.isoformat(),
        )

        rows = self.selector.select(request)
        pseudonymized = self.pseudonymizer.transform(schema_for(request.dataset_type), rows)
        csv_text = render_csv(pseudonymized)
        row_count = len(pseudonymized)

        warnings: List[str] = []
        manifest_id: Optional[str] = None
        try:
            manifest_id = self.manifests.create(
                request,
                row_count=row_count,
                hash_version=self.settings.hash_version,
                schema_version=self.settings.schema_version,
            )
        except SQLAlchemyError as exc:
            AUDIT_WRITE_FAILURES_TOTAL.labels(store="manifest").inc()
            logger.error(
                "research_export_manifest_failed",
                user_id=caller.user_id,
                dataset_type=dataset,
                row_count=row_count,
                error=exc.__class__.__name__,
            )
            warnings.append("manifest_write_failed")

        try:
            self.audit.record_export(
                request,
                manifest_id=manifest_id,
                row_count=row_count,
                hash_version=self.settings.hash_version,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        except SQLAlchemyError as exc:
            AUDIT_WRITE_FAILURES_TOTAL.labels(store="audit_log").inc()
            logger.error(
                "research_export_audit_log_failed",
                user_id=caller.user_id,
                manifest_id=manifest_id,
                error=exc.__class__.__name__,
            )
            warnings.append("audit_log_write_failed")

        RESEARCH_EXPORTS_TOTAL.labels(dataset, purpose, "success").inc()
        RESEARCH_EXPORT_ROWS_TOTAL.labels(dataset).inc(row_count)
        logger.info(
            "research_export_completed",
            user_id=caller.user_id,
            manifest_id=manifest_id,
            row_count=row_count,
            warnings=warnings,
        )
        return ExportResult(
            csv_text=csv_text,
            filename=export_filename(
                request.dataset_type,
                request.export_purpose,
                utc_now().date(),
                prefix=self.settings.filename_prefix,
            ),
            row_count=row_count,
            manifest_id=manifest_id,
            hash_version=self.settings.hash_version,
            warnings=warnings,
        )


__all__ = [
    "AUDIT_ACTION",
    "AUDIT_WRITE_FAILURES_TOTAL",
    "RESEARCH_EXPORTS_TOTAL",
    "RESEARCH_EXPORT_ROWS_TOTAL",
    "AuditTrailWriter",
    "ExportResult",
    "ManifestStore",
    "ResearchExportService",
    "export_filename",
    "render_csv",
]
