"""Pydantic schemas for data that leaves the job store (status snapshots, CLI output)."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from pipeline.enums import AssetStatus


class StatusSnapshot(BaseModel):
    """Advisory job status as published to the status cache."""

    model_config = ConfigDict(extra="ignore")

    asset_id: str = Field(..., min_length=1, max_length=36)
    status: AssetStatus
    progress: int = Field(default=0, ge=0, le=100)
    error: Optional[str] = None
    updated_at: datetime
