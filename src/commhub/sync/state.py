"""
Sync run state machine.

One run per (workspace, provider) may be active at a time. The registry is
the only shared mutable state of the sync engine; every read-modify-write of
a run goes through its lock.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from commhub.communication.models import ProviderType
from commhub.shared.exceptions import ConflictError


class SyncStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncPhase(str, Enum):
    CONVERSATIONS = "conversations"
    MESSAGES = "messages"
    CONTACTS = "contacts"


class SyncMode(str, Enum):
    FULL = "full"
    CONTACTS = "contacts"
    CONTACTS_FROM_PARTICIPANTS = "contacts_from_participants"


_TERMINAL = {SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED}


class SyncAlreadyRunningError(ConflictError):
    """A start request arrived while a run is active."""

    def __init__(self, workspace_id: str, provider: ProviderType) -> None:
        super().__init__(f"Sync already running for workspace {workspace_id} ({provider.value})")
        self.workspace_id = workspace_id
        self.provider = provider


@dataclass
class SyncCounts:
    conversations_from_provider: int = 0
    conversations_synced: int = 0
    conversations_skipped: int = 0
    messages_synced: int = 0
    calls_synced: int = 0
    contacts_created: int = 0
    contacts_updated: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return dict(self.__dict__)


@dataclass
class SyncRun:
    """Mutable state of one run; snapshot() is what callers see."""

    workspace_id: str
    provider: ProviderType
    status: SyncStatus = SyncStatus.IDLE
    phase: SyncPhase | None = None
    processed: int = 0
    total: int = 0
    partial: bool = False
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    counts: SyncCounts = field(default_factory=SyncCounts)
    cancel_requested: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == SyncStatus.RUNNING

    def enter_phase(self, phase: SyncPhase, total: int) -> None:
        self.phase = phase
        self.processed = 0
        self.total = total

    def advance(self, n: int = 1) -> None:
        self.processed += n

    def finish(self, status: SyncStatus, error: str | None = None) -> None:
        if status not in _TERMINAL:
            raise ValueError(f"Not a terminal status: {status}")
        self.status = status
        self.error = error
        self.finished_at = datetime.now(timezone.utc)

    def snapshot(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "provider": self.provider.value,
            "status": self.status.value,
            "progress": {
                "phase": self.phase.value if self.phase else None,
                "processed": self.processed,
                "total": self.total,
            },
            "partial": self.partial,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "counts": self.counts.as_dict(),
        }


class SyncRegistry:
    """Current run per (workspace, provider), guarded by one lock."""

    def __init__(self) -> None:
        self._runs: dict[tuple[str, ProviderType], SyncRun] = {}
        self._lock = asyncio.Lock()

    async def begin(self, workspace_id: str, provider: ProviderType) -> SyncRun:
        """Move the workspace into ``running`` or raise if it already is."""
        key = (workspace_id, provider)
        async with self._lock:
            current = self._runs.get(key)
            if current is not None and current.is_active:
                raise SyncAlreadyRunningError(workspace_id, provider)
            run = SyncRun(
                workspace_id=workspace_id,
                provider=provider,
                status=SyncStatus.RUNNING,
                started_at=datetime.now(timezone.utc),
            )
            self._runs[key] = run
            return run

    async def request_cancel(self, workspace_id: str, provider: ProviderType) -> bool:
        async with self._lock:
            run = self._runs.get((workspace_id, provider))
            if run is None or not run.is_active:
                return False
            run.cancel_requested = True
            return True

    def get(self, workspace_id: str, provider: ProviderType) -> SyncRun | None:
        return self._runs.get((workspace_id, provider))

    def snapshot(self, workspace_id: str, provider: ProviderType) -> dict[str, Any]:
        run = self.get(workspace_id, provider)
        if run is None:
            return SyncRun(workspace_id=workspace_id, provider=provider).snapshot()
        return run.snapshot()
