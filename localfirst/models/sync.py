from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlmodel import Field, SQLModel

from .base import utc_now


class SyncOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def rank(self) -> int:
        return _OPERATION_RANK[self]

    def escalate(self, other: "SyncOperation") -> "SyncOperation":
        """create -> update -> delete; nunca regride."""
        return other if other.rank > self.rank else self


_OPERATION_RANK = {
    SyncOperation.CREATE: 0,
    SyncOperation.UPDATE: 1,
    SyncOperation.DELETE: 2,
}


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    DISABLED = "disabled"
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR_BACKOFF = "error_backoff"


class ChangeNotification(SQLModel):
    """Emitida pelo repositório a cada mutação local bem-sucedida."""
    entity_id: str
    operation: SyncOperation
    # 'purge' remove fisicamente; não gera push
    purged: bool = False


class SyncQueueEntry(SQLModel):
    """Uma alteração pendente (outbox). No máximo uma por entidade."""
    entity_id: str
    operation: SyncOperation
    enqueued_at: datetime = Field(default_factory=utc_now)


class SyncItemError(SQLModel):
    entity_id: str
    reason: str
    retryable: bool = False


class SyncResult(SQLModel):
    pushed: int = 0
    pulled: int = 0
    conflicts: int = 0
    errors: List[SyncItemError] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def has_retryable_errors(self) -> bool:
        return any(e.retryable for e in self.errors)

    def add_error(self, entity_id: str, reason: str, retryable: bool = False) -> None:
        self.errors.append(SyncItemError(entity_id=entity_id, reason=reason, retryable=retryable))


class SyncStatus(SQLModel):
    """Snapshot imutável do estado do motor, entregue aos listeners."""
    state: EngineState = EngineState.UNINITIALIZED
    enabled: bool = False
    is_running: bool = False
    queue_size: int = Field(default=0, ge=0)
    last_sync_time: Optional[datetime] = None
    error: Optional[str] = None
    last_result: Optional[SyncResult] = None

    class Config:
        frozen = True
