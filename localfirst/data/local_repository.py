import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlmodel import SQLModel

from localfirst.data.kv_store import KVStore
from localfirst.errors import NotFoundError, ValidationError
from localfirst.models.base import Entity, SyncState, new_id, utc_now
from localfirst.models.sync import ChangeNotification, SyncOperation

logger = logging.getLogger(__name__)

ChangeListener = Callable[[ChangeNotification], None]

ORDER_FIELDS = ("created_at", "updated_at")


class QueryCriteria(SQLModel):
    owner_id: Optional[str] = None
    include_deleted: bool = False
    updated_after: Optional[datetime] = None
    sync_status: Optional[SyncState] = None
    # None = ordem de inserção
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None
    offset: int = 0


class LocalRepository:
    """
    Repositório local (CRUD + Soft Delete + consulta) sobre um KVStore.
    Único leitor/escritor do estado local de uma tabela.

    Não conhece o sync: cada mutação bem-sucedida apenas emite uma
    ChangeNotification para os assinantes (o motor de auto-sync assina).
    Os métodos da seção "sync" escrevem sem notificar, para que dados
    vindos do servidor não voltem para a fila.
    """

    def __init__(self, kv_store: KVStore, table: str, require_owner: bool = True):
        if not table:
            raise ValidationError("Repositório sem nome de tabela")
        self.kv_store = kv_store
        self.table = table
        self.require_owner = require_owner
        self._listeners: List[ChangeListener] = []

    # --- Chaves ---

    @property
    def _entity_prefix(self) -> str:
        return f"{self.table}:entity:"

    @property
    def _index_key(self) -> str:
        return f"{self.table}:index"

    def _entity_key(self, entity_id: str) -> str:
        return f"{self._entity_prefix}{entity_id}"

    def _load_index(self) -> List[str]:
        return self.kv_store.get(self._index_key) or []

    def _save(self, entity: Entity) -> None:
        # Índice primeiro: um registro nunca fica gravado fora do índice
        index = self._load_index()
        is_new = entity.id not in index
        if is_new:
            index.append(entity.id)
            self.kv_store.set(self._index_key, index)
        try:
            self.kv_store.set(self._entity_key(entity.id), entity.to_storage())
        except Exception:
            if is_new:
                index.remove(entity.id)
                self.kv_store.set(self._index_key, index)
            raise

    def _remove(self, entity_id: str) -> None:
        self.kv_store.delete(self._entity_key(entity_id))
        index = self._load_index()
        if entity_id in index:
            index.remove(entity_id)
            self.kv_store.set(self._index_key, index)

    @staticmethod
    def _next_timestamp(previous: Optional[datetime]) -> datetime:
        # updated_at nunca retrocede, mesmo com relógio ajustado para trás
        now = utc_now()
        if previous is not None and now <= previous:
            return previous + timedelta(microseconds=1)
        return now

    # --- Observadores ---

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Registra um ouvinte de mutações. Retorna a função de remoção."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, entity_id: str, operation: SyncOperation, purged: bool = False) -> None:
        notification = ChangeNotification(entity_id=entity_id, operation=operation, purged=purged)
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                logger.exception(f"Listener falhou ao receber {operation.value} de {entity_id}")

    # --- MÉTODOS CRUD ---

    def create(self, entity: Entity) -> Entity:
        if not entity.table:
            raise ValidationError("Entidade sem tabela", entity.id)
        if entity.table != self.table:
            raise ValidationError(
                f"Tabela '{entity.table}' não pertence ao repositório '{self.table}'", entity.id
            )
        if self.require_owner and not entity.owner_id:
            raise ValidationError("Entidade sem owner_id", entity.id)

        record = entity.model_copy(deep=True)
        record.id = record.id or new_id()
        if self.kv_store.get(self._entity_key(record.id)) is not None:
            raise ValidationError("Id já existe", record.id)

        now = utc_now()
        record.created_at = now
        record.updated_at = now
        record.is_deleted = False
        record.sync_status = SyncState.PENDING

        self._save(record)
        logger.debug(f"[{self.table}] create {record.id}")
        self._notify(record.id, SyncOperation.CREATE)
        return record

    def get(self, entity_id: str) -> Optional[Entity]:
        data = self.kv_store.get(self._entity_key(entity_id))
        return Entity.from_storage(data) if data is not None else None

    def _require(self, entity_id: Optional[str]) -> Entity:
        existing = self.get(entity_id) if entity_id else None
        if existing is None:
            raise NotFoundError("Entidade não encontrada", entity_id)
        return existing

    def update(self, entity: Entity) -> Entity:
        """
        Atualiza payload/owner de uma entidade existente.
        updated_at é sempre sobrescrito com a hora atual: é isso que dá
        sentido ao last-write-wins.
        """
        existing = self._require(entity.id)
        if existing.is_deleted:
            raise NotFoundError("Entidade removida", entity.id)
        if entity.table and entity.table != self.table:
            raise ValidationError(f"Tabela '{entity.table}' não pode ser alterada", entity.id)
        if self.require_owner and not (entity.owner_id or existing.owner_id):
            raise ValidationError("Entidade sem owner_id", entity.id)

        existing.payload = dict(entity.payload)
        existing.owner_id = entity.owner_id or existing.owner_id
        existing.updated_at = self._next_timestamp(existing.updated_at)
        if existing.sync_status != SyncState.CONFLICT:
            existing.sync_status = SyncState.PENDING

        self._save(existing)
        logger.debug(f"[{self.table}] update {existing.id}")
        self._notify(existing.id, SyncOperation.UPDATE)
        return existing

    def delete(self, entity_id: str) -> Entity:
        """Soft delete: marca o tombstone e mantém o registro até o sync confirmar."""
        existing = self._require(entity_id)
        if existing.is_deleted:
            return existing

        existing.is_deleted = True
        existing.updated_at = self._next_timestamp(existing.updated_at)
        existing.sync_status = SyncState.PENDING

        self._save(existing)
        logger.debug(f"[{self.table}] delete (soft) {entity_id}")
        self._notify(entity_id, SyncOperation.DELETE)
        return existing

    def purge(self, entity_id: str) -> None:
        """Remoção física. Operação explícita, separada do delete."""
        self._require(entity_id)
        self._remove(entity_id)
        logger.debug(f"[{self.table}] purge {entity_id}")
        self._notify(entity_id, SyncOperation.DELETE, purged=True)

    def query(self, criteria: Optional[QueryCriteria] = None) -> List[Entity]:
        criteria = criteria or QueryCriteria()
        if criteria.order_by and criteria.order_by not in ORDER_FIELDS:
            raise ValidationError(f"Ordenação desconhecida: {criteria.order_by}")

        results = []
        for entity_id in self._load_index():
            entity = self.get(entity_id)
            if entity is None:
                continue
            if entity.is_deleted and not criteria.include_deleted:
                continue
            if criteria.owner_id and entity.owner_id != criteria.owner_id:
                continue
            if criteria.updated_after and entity.updated_at <= criteria.updated_after:
                continue
            if criteria.sync_status is not None and entity.sync_status != criteria.sync_status:
                continue
            results.append(entity)

        if criteria.order_by:
            results.sort(key=lambda e: getattr(e, criteria.order_by), reverse=criteria.descending)

        results = results[criteria.offset:]
        if criteria.limit is not None:
            results = results[:criteria.limit]
        return results

    def list_all(self) -> List[Entity]:
        return self.query()

    # --- Métodos usados pelo sync (sem notificação) ---

    def find_by_remote_id(self, remote_id: str) -> Optional[Entity]:
        for data in self.kv_store.list(self._entity_prefix).values():
            if data.get("remote_id") == remote_id:
                return Entity.from_storage(data)
        return None

    def get_pending(self) -> List[Entity]:
        """Registros pendentes de envio (inclui tombstones)."""
        return [
            e for e in self.query(QueryCriteria(include_deleted=True))
            if e.sync_status in (SyncState.PENDING, SyncState.FAILED)
        ]

    def get_conflicts(self) -> List[Entity]:
        return self.query(QueryCriteria(include_deleted=True, sync_status=SyncState.CONFLICT))

    def apply_remote(self, entity: Entity) -> Entity:
        """
        Insere ou atualiza dados vindos do servidor.
        Mantém o updated_at remoto e não dispara notificação de sync.
        """
        record = entity.model_copy(deep=True)
        record.table = self.table
        record.id = record.id or new_id()
        # Servidores que não enviam created_at: usa a data da última alteração
        record.created_at = record.created_at or record.updated_at or utc_now()
        record.sync_status = SyncState.SYNCED
        record.synced_payload = dict(record.payload)
        record.conflict_payload = None
        self._save(record)
        return record

    def apply_merge(
        self,
        entity_id: str,
        payload: Dict[str, Any],
        remote: Entity,
    ) -> Entity:
        """
        Grava o resultado de um merge por campo.
        Se o merge trouxe algo que o servidor ainda não tem, o registro
        continua pendente e ganha um updated_at mais novo que o remoto.
        """
        entity = self._require(entity_id)
        entity.remote_id = remote.remote_id or entity.remote_id
        entity.synced_payload = dict(remote.payload)
        entity.payload = dict(payload)
        if payload == remote.payload:
            entity.updated_at = remote.updated_at or entity.updated_at
            entity.sync_status = SyncState.SYNCED
        else:
            newest = max(entity.updated_at, remote.updated_at or entity.updated_at)
            entity.updated_at = self._next_timestamp(newest)
            entity.sync_status = SyncState.PENDING
        self._save(entity)
        return entity

    def discard(self, entity_id: str) -> None:
        """Remoção física após confirmação do servidor (sem notificação)."""
        self._remove(entity_id)

    def mark_as_synced(
        self,
        entity_id: str,
        remote_id: Optional[str] = None,
        pushed_version: Optional[int] = None,
    ) -> Optional[Entity]:
        """
        Marca o registro como sincronizado.
        Se o registro mudou depois do envio (versão diferente), só grava o remote_id
        e ele continua pendente.
        """
        entity = self.get(entity_id)
        if entity is None:
            return None
        if remote_id:
            entity.remote_id = remote_id
        if pushed_version is None or entity.version == pushed_version:
            entity.sync_status = SyncState.SYNCED
            entity.synced_payload = dict(entity.payload)
            entity.conflict_payload = None
        self._save(entity)
        return entity

    def mark_failed(self, entity_id: str) -> None:
        entity = self.get(entity_id)
        if entity is not None and entity.sync_status != SyncState.CONFLICT:
            entity.sync_status = SyncState.FAILED
            self._save(entity)

    def mark_conflict(self, entity_id: str, remote_payload: Dict[str, Any]) -> Entity:
        entity = self._require(entity_id)
        entity.sync_status = SyncState.CONFLICT
        entity.conflict_payload = dict(remote_payload)
        self._save(entity)
        return entity

    def resolve_conflict(self, entity_id: str, payload: Dict[str, Any]) -> Entity:
        """Decisão do usuário sobre um conflito 'manual'. Volta a ser uma alteração local."""
        entity = self._require(entity_id)
        if entity.sync_status != SyncState.CONFLICT:
            raise ValidationError("Entidade não está em conflito", entity_id)

        entity.payload = dict(payload)
        # O payload remoto vira a base: a decisão do usuário prevalece no próximo push
        entity.synced_payload = entity.conflict_payload
        entity.conflict_payload = None
        entity.updated_at = self._next_timestamp(entity.updated_at)
        entity.sync_status = SyncState.PENDING

        self._save(entity)
        self._notify(entity_id, SyncOperation.UPDATE)
        return entity
