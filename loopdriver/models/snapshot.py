"""
Snapshot Models
Manifest written next to every snapshot and the summary returned by list().
"""
from datetime import datetime, timezone
from typing import List

from pydantic import BaseModel, field_validator


class SnapshotManifest(BaseModel):
    run_id: str
    created_at: datetime
    files: List[str] = []

    @field_validator("created_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        # Manifests written by hand may carry naive timestamps
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class SnapshotInfo(BaseModel):
    run_id: str
    path: str
    created_at: datetime
    file_count: int
