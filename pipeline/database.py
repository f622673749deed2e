from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


assets = sa.Table(
    "assets",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("owner_id", sa.String(36), nullable=True),
    sa.Column("title", sa.String(255), nullable=False, default=""),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('DRAFT', 'UPLOADED', 'TRANSCODING', 'READY', 'FAILED')",
            name="ck_assets_status",
        ),
        nullable=False,
        default="DRAFT",
    ),
    sa.Column("duration", sa.Float, default=0),  # seconds
    sa.Column("source_width", sa.Integer, default=0),
    sa.Column("source_height", sa.Integer, default=0),
    # Set only when READY; cleared on failure
    sa.Column("manifest_url", sa.Text, nullable=True),
    sa.Column("thumbnail_url", sa.Text, nullable=True),
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("view_count", sa.Integer, nullable=False, default=0),
    sa.Column("created_at", sa.DateTime(timezone=True), default=utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=utcnow),
    sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
    sa.Index("ix_assets_status", "status"),
    sa.Index("ix_assets_owner_id", "owner_id"),
    sa.Index("ix_assets_created_at", "created_at"),
)

# One job row per asset; an operator retry resets it rather than adding another
transcode_jobs = sa.Table(
    "transcode_jobs",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column(
        "asset_id",
        sa.String(36),
        sa.ForeignKey("assets.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    ),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('UPLOADED', 'TRANSCODING', 'READY', 'FAILED')",
            name="ck_transcode_jobs_status",
        ),
        nullable=False,
        default="UPLOADED",
    ),
    sa.Column(
        "progress",
        sa.Integer,
        sa.CheckConstraint(
            "progress >= 0 AND progress <= 100",
            name="ck_transcode_jobs_progress_range",
        ),
        nullable=False,
        default=0,
    ),
    sa.Column("error", sa.Text, nullable=True),
    sa.Column("worker_id", sa.String(100), nullable=True),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=utcnow),
    sa.Index("ix_transcode_jobs_status", "status"),
)

renditions = sa.Table(
    "renditions",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("asset_id", sa.String(36), sa.ForeignKey("assets.id", ondelete="CASCADE"), nullable=False),
    sa.Column("quality", sa.String(10), nullable=False),  # 360p, 720p, etc.
    sa.Column("index_url", sa.Text, nullable=False),
    sa.Column("size_bytes", sa.BigInteger, nullable=False, default=0),
    sa.Column("created_at", sa.DateTime(timezone=True), default=utcnow),
    sa.UniqueConstraint("asset_id", "quality", name="uq_renditions_asset_quality"),
    sa.Index("ix_renditions_asset_id", "asset_id"),
)


def create_tables(url: str = DATABASE_URL):
    """
    Create all tables directly from metadata.
    Production deployments use Alembic migrations instead.
    """
    engine = sa.create_engine(url)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
