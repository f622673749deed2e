"""
Tests for Pydantic schema validation.
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from pipeline.enums import AssetStatus
from pipeline.schemas import StatusSnapshot


class TestStatusSnapshot:
    """Tests for the status cache snapshot schema."""

    def test_valid_snapshot(self):
        snapshot = StatusSnapshot(
            asset_id="asset-1",
            status=AssetStatus.TRANSCODING,
            progress=45,
            updated_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        assert snapshot.status == AssetStatus.TRANSCODING
        assert snapshot.error is None

    def test_status_accepts_string_value(self):
        snapshot = StatusSnapshot(asset_id="a", status="READY", progress=100, updated_at=datetime.now(timezone.utc))
        assert snapshot.status == AssetStatus.READY

    def test_unknown_status_rejected(self):
        with pytest.raises(ValidationError):
            StatusSnapshot(asset_id="a", status="ARCHIVED", updated_at=datetime.now(timezone.utc))

    @pytest.mark.parametrize("progress", [-1, 101])
    def test_progress_out_of_range_rejected(self, progress):
        with pytest.raises(ValidationError):
            StatusSnapshot(asset_id="a", status="TRANSCODING", progress=progress, updated_at=datetime.now(timezone.utc))

    def test_empty_asset_id_rejected(self):
        with pytest.raises(ValidationError):
            StatusSnapshot(asset_id="", status="READY", updated_at=datetime.now(timezone.utc))

    def test_extra_fields_ignored(self):
        snapshot = StatusSnapshot.model_validate(
            {
                "asset_id": "a",
                "status": "FAILED",
                "progress": 30,
                "error": "boom",
                "updated_at": "2026-01-01T00:00:00Z",
                "worker_id": "worker-1",
            }
        )
        assert not hasattr(snapshot, "worker_id")

    def test_json_round_trip_uses_enum_values(self):
        snapshot = StatusSnapshot(asset_id="a", status="READY", progress=100, updated_at=datetime.now(timezone.utc))
        dumped = StatusSnapshot.model_validate_json(snapshot.model_dump_json()).model_dump(mode="json")
        assert dumped["status"] == "READY"
