"""SQLAlchemy models for the role store, export manifests and audit log.

The research views are owned by the clinical database, not by this service.
They are described on ``research_view_metadata`` so queries can be built
against them, but migrations never create or drop them.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, Date, DateTime, Integer, String
from sqlalchemy.orm import declarative_base


Base = declarative_base()
research_view_metadata = sa.MetaData()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class UserRole(Base):
    __tablename__ = "user_roles"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    user_id = sa.Column(String, nullable=False)
    role = sa.Column(String, nullable=False)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )

    __table_args__ = (
        sa.UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
        sa.Index("idx_user_roles_user", "user_id"),
    )


class ResearchExport(Base):
    """Append-only manifest of one research export."""

    __tablename__ = "research_exports"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    created_by = sa.Column(String, nullable=False)
    export_purpose = sa.Column(String, nullable=False)
    dataset_type = sa.Column(String, nullable=False)
    date_range_start = sa.Column(Date, nullable=False)
    date_range_end = sa.Column(Date, nullable=False)
    row_count = sa.Column(Integer, nullable=False)
    hash_version = sa.Column(String, nullable=False)
    schema_version = sa.Column(String, nullable=False)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )

    __table_args__ = (
        sa.Index("idx_research_exports_created", "created_at"),
        sa.Index("idx_research_exports_creator", "created_by"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    timestamp = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)
    user_id = sa.Column(String, nullable=True)
    action = sa.Column(String, nullable=False)
    table_name = sa.Column(String, nullable=True)
    record_id = sa.Column(String, nullable=True)
    details = sa.Column(sa.JSON, nullable=True)
    ip_address = sa.Column(String, nullable=True)
    user_agent = sa.Column(String, nullable=True)
    success = sa.Column(Boolean, nullable=True)

    __table_args__ = (
        sa.Index("idx_audit_logs_user", "user_id", "timestamp"),
        sa.Index("idx_audit_logs_action", "action"),
    )


v_research_care_targets = sa.Table(
    "v_research_care_targets",
    research_view_metadata,
    sa.Column("care_target_uuid", sa.Text),
    sa.Column("episode_uuid", sa.Text),
    sa.Column("patient_uuid", sa.Text),
    sa.Column("body_region", sa.Text),
    sa.Column("instrument_type", sa.Text),
    sa.Column("baseline_score", sa.Float),
    sa.Column("discharge_score", sa.Float),
    sa.Column("score_delta", sa.Float),
    sa.Column("mcid_threshold", sa.Float),
    sa.Column("mcid_met", sa.Boolean),
    sa.Column("care_target_status", sa.Text),
    sa.Column("age_band_at_episode_start", sa.Text),
    sa.Column("episode_time_bucket", sa.Text),
)

v_research_outcomes = sa.Table(
    "v_research_outcomes",
    research_view_metadata,
    sa.Column("care_target_uuid", sa.Text),
    sa.Column("instrument_type", sa.Text),
    sa.Column("baseline_score", sa.Float),
    sa.Column("discharge_score", sa.Float),
    sa.Column("score_delta", sa.Float),
    sa.Column("mcid_met", sa.Boolean),
    sa.Column("episode_time_bucket", sa.Text),
)

v_research_episodes = sa.Table(
    "v_research_episodes",
    research_view_metadata,
    sa.Column("episode_uuid", sa.Text),
    sa.Column("patient_uuid", sa.Text),
    sa.Column("episode_start_bucket", sa.Text),
    sa.Column("episode_end_bucket", sa.Text),
    sa.Column("number_of_care_targets", sa.Integer),
    sa.Column("episode_status", sa.Text),
)


__all__ = [
    "Base",
    "research_view_metadata",
    "UserRole",
    "ResearchExport",
    "AuditLog",
    "v_research_care_targets",
    "v_research_outcomes",
    "v_research_episodes",
]
