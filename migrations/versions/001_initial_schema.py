"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Assets, transcode jobs and renditions for the Reelforge pipeline.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the pipeline tables."""
    op.create_table(
        "assets",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(36), nullable=True),
        sa.Column("title", sa.String(255), nullable=False, server_default=""),
        sa.Column("status", sa.String(20), nullable=False, server_default="DRAFT"),
        sa.Column("duration", sa.Float, server_default="0"),
        sa.Column("source_width", sa.Integer, server_default="0"),
        sa.Column("source_height", sa.Integer, server_default="0"),
        sa.Column("manifest_url", sa.Text, nullable=True),
        sa.Column("thumbnail_url", sa.Text, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("view_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('DRAFT', 'UPLOADED', 'TRANSCODING', 'READY', 'FAILED')",
            name="ck_assets_status",
        ),
    )
    op.create_index("ix_assets_status", "assets", ["status"])
    op.create_index("ix_assets_owner_id", "assets", ["owner_id"])
    op.create_index("ix_assets_created_at", "assets", ["created_at"])

    op.create_table(
        "transcode_jobs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "asset_id",
            sa.String(36),
            sa.ForeignKey("assets.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="UPLOADED"),
        sa.Column("progress", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("worker_id", sa.String(100), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint(
            "status IN ('UPLOADED', 'TRANSCODING', 'READY', 'FAILED')",
            name="ck_transcode_jobs_status",
        ),
        sa.CheckConstraint(
            "progress >= 0 AND progress <= 100",
            name="ck_transcode_jobs_progress_range",
        ),
    )
    op.create_index("ix_transcode_jobs_status", "transcode_jobs", ["status"])

    op.create_table(
        "renditions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("asset_id", sa.String(36), sa.ForeignKey("assets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("quality", sa.String(10), nullable=False),
        sa.Column("index_url", sa.Text, nullable=False),
        sa.Column("size_bytes", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("asset_id", "quality", name="uq_renditions_asset_quality"),
    )
    op.create_index("ix_renditions_asset_id", "renditions", ["asset_id"])


def downgrade() -> None:
    """Drop the pipeline tables."""
    op.drop_index("ix_renditions_asset_id", table_name="renditions")
    op.drop_table("renditions")
    op.drop_index("ix_transcode_jobs_status", table_name="transcode_jobs")
    op.drop_table("transcode_jobs")
    op.drop_index("ix_assets_created_at", table_name="assets")
    op.drop_index("ix_assets_owner_id", table_name="assets")
    op.drop_index("ix_assets_status", table_name="assets")
    op.drop_table("assets")
