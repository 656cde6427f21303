import logging
from typing import Callable, Dict, List, Optional

from localfirst.data.kv_store import KVStore
from localfirst.models.sync import SyncOperation, SyncQueueEntry

logger = logging.getLogger(__name__)


class SyncQueue:
    """
    Outbox persistido: alterações locais ainda não confirmadas pelo servidor.
    Uma entrada por entidade; novas mutações se fundem na entrada existente.
    """

    def __init__(
        self,
        kv_store: KVStore,
        key: str,
        on_change: Optional[Callable[[int], None]] = None,
    ):
        self.kv_store = kv_store
        self.key = key
        # Chamado com o novo tamanho sempre que o tamanho da fila muda
        self.on_change = on_change
        self._entries: Dict[str, SyncQueueEntry] = {}
        # Conta mutações fundidas por entidade; permite remover só o que foi enviado
        self._revisions: Dict[str, int] = {}

    def load(self) -> None:
        stored = self.kv_store.get(self.key) or []
        self._entries = {}
        for data in stored:
            entry = SyncQueueEntry.model_validate(data)
            self._entries[entry.entity_id] = entry
        self._revisions = {entity_id: 0 for entity_id in self._entries}
        logger.debug(f"Fila '{self.key}' carregada com {len(self._entries)} entradas")

    def _persist(self, previous_size: Optional[int] = None) -> None:
        self.kv_store.set(self.key, [e.model_dump(mode="json") for e in self._entries.values()])
        if self.on_change and previous_size is not None and previous_size != len(self._entries):
            self.on_change(len(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entries

    def get(self, entity_id: str) -> Optional[SyncQueueEntry]:
        return self._entries.get(entity_id)

    def entries(self) -> List[SyncQueueEntry]:
        return list(self._entries.values())

    def revision(self, entity_id: str) -> int:
        return self._revisions.get(entity_id, 0)

    def enqueue(self, entity_id: str, operation: SyncOperation) -> SyncQueueEntry:
        previous_size = len(self._entries)
        current = self._entries.get(entity_id)
        if current is None:
            entry = SyncQueueEntry(entity_id=entity_id, operation=operation)
        else:
            entry = SyncQueueEntry(
                entity_id=entity_id,
                operation=current.operation.escalate(operation),
                enqueued_at=current.enqueued_at,
            )
        self._entries[entity_id] = entry
        self._revisions[entity_id] = self._revisions.get(entity_id, 0) + 1
        self._persist(previous_size)
        return entry

    def remove(self, entity_id: str, revision: Optional[int] = None) -> bool:
        """
        Remove a entrada. Com `revision`, só remove se nenhuma mutação nova
        chegou depois do snapshot (senão a entrada continua para o próximo sync).
        """
        if entity_id not in self._entries:
            return False
        if revision is not None and self._revisions.get(entity_id, 0) != revision:
            return False
        previous_size = len(self._entries)
        del self._entries[entity_id]
        self._revisions.pop(entity_id, None)
        self._persist(previous_size)
        return True

    def clear(self) -> None:
        previous_size = len(self._entries)
        self._entries = {}
        self._revisions = {}
        self._persist(previous_size)
