"""Pydantic models for the conversation index."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class IndexEntry(BaseModel):
    """Entry in the conversation index for fast lookups.

    The index maps conversation IDs to summary metadata, allowing quick
    listing without reading entire JSONL files.
    """

    model_config = ConfigDict(
        extra="allow",  # Allow extra fields
        str_strip_whitespace=True,
    )

    workspace_path: Optional[str] = Field(default=None, description="Workspace the conversation belongs to")
    created_at: datetime = Field(..., description="When conversation was created")
    updated_at: datetime = Field(..., description="Last update timestamp")
    message_count: int = Field(default=0, ge=0, description="Messages currently stored")
    compaction_count: int = Field(default=0, ge=0, description="Compactions applied so far")

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def parse_datetime(cls, v):
        """Parse ISO format strings to datetime objects."""
        if isinstance(v, str):
            return datetime.fromisoformat(v.replace("Z", "+00:00"))
        return v
