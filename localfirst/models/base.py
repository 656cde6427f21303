import uuid
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, Optional

from pydantic import field_validator
from sqlmodel import Field, SQLModel


# Função auxiliar para timestamps UTC
def utc_now():
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class SyncState(IntEnum):
    """Status de sincronização de um registro local."""
    SYNCED = 0
    PENDING = 1
    FAILED = 2
    # Política 'manual': divergência aguardando decisão do usuário
    CONFLICT = 3


class SyncModel(SQLModel):
    """
    Classe Base para todas as entidades sincronizáveis.
    Implementa identificador, Soft Delete e Metadados de Auditoria.
    O id e os timestamps ficam vazios até o repositório atribuí-los.
    """
    id: Optional[str] = Field(default=None)

    # Metadados de Auditoria
    created_at: Optional[datetime] = Field(default=None)
    updated_at: Optional[datetime] = Field(default=None)

    # Tombstone para Soft Delete
    is_deleted: bool = Field(default=False)

    sync_status: SyncState = Field(default=SyncState.PENDING)

    class Config:
        # Garante validação estrita de tipos
        validate_assignment = True

    @field_validator("created_at", "updated_at")
    @classmethod
    def _ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Datas sem fuso (ex: vindas de SQLite) são tratadas como UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Entity(SyncModel):
    """
    Registro genérico de sincronização.
    O conteúdo real (título, link, resumo...) vive em `payload`, sem esquema,
    para que o motor funcione com qualquer coleção.
    """
    table: Optional[str] = Field(default=None)
    owner_id: Optional[str] = Field(default=None)

    # Identificador compartilhado com o servidor, vazio até o primeiro sync
    remote_id: Optional[str] = Field(default=None)

    payload: Dict[str, Any] = Field(default_factory=dict)

    # Payload no momento do último sync bem-sucedido (base do merge por campo)
    synced_payload: Optional[Dict[str, Any]] = Field(default=None)

    # Cópia remota guardada quando a política 'manual' sinaliza conflito
    conflict_payload: Optional[Dict[str, Any]] = Field(default=None)

    @property
    def version(self) -> int:
        """Versão implícita derivada de updated_at (microssegundos)."""
        if self.updated_at is None:
            return 0
        return int(self.updated_at.timestamp() * 1_000_000)

    @property
    def can_sync(self) -> bool:
        return bool(self.owner_id)

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_storage(cls, data: Dict[str, Any]) -> "Entity":
        return cls.model_validate(data)
