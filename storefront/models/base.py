from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict

class TimeStampedModel(BaseModel):
    """Base model with timestamp fields"""
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

class SnapshotModel(TimeStampedModel):
    """Immutable persisted document; changes produce a new snapshot"""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    def touched(self, now: datetime, **changes: Any):
        """Copy with the given field changes and a fresh updated_at"""
        changes["updated_at"] = now
        return self.model_copy(update=changes)
