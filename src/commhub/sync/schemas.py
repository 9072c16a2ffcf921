"""
Pydantic schemas for the sync control API.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator, model_validator

from commhub.communication.models import ProviderType
from commhub.sync.orchestrator import SyncOptions
from commhub.sync.state import SyncMode


class SyncRequest(BaseModel):
    """Options accepted by POST /sync/{workspace_id}."""

    provider: ProviderType = Field(..., description="Provider to sync from")
    limit: int | None = Field(None, ge=1, le=10_000, description="Maximum conversations to sync")
    since: datetime | None = Field(None, description="Only conversations active at or after this time")
    until: datetime | None = Field(None, description="Only activity at or before this time")
    sync_messages: bool = Field(default=True, description="Fetch messages and calls per conversation")
    only_saved_contacts: bool = Field(
        default=False,
        description="Only conversations whose participant is a named contact",
    )
    phone_number_id: str | None = Field(None, max_length=255)
    force_refresh: bool = False
    incremental: bool = Field(default=False, description="Resume from the last completed sync")
    mode: SyncMode = SyncMode.FULL

    @field_validator("since", "until")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def validate_window(self) -> "SyncRequest":
        if self.since and self.until and self.since > self.until:
            raise ValueError("since must not be after until")
        return self

    def to_options(self) -> SyncOptions:
        return SyncOptions(**self.model_dump())


class SyncProgressSchema(BaseModel):
    phase: str | None = None
    processed: int = 0
    total: int = 0


class SyncStatusResponse(BaseModel):
    """Snapshot of the current or last sync run."""

    workspace_id: str
    provider: ProviderType
    status: str
    progress: SyncProgressSchema
    partial: bool = False
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    counts: dict[str, int] = Field(default_factory=dict)


class SyncCancelResponse(BaseModel):
    cancelled: bool
