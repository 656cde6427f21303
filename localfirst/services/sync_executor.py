"""
Uma execução de sync (pull + push) contra o servidor remoto.

Ordem: PULL primeiro (com resolução de conflitos), depois PUSH da fila.
Erros são por item: um registro que falha não aborta o lote.
Só uma falha no pull derruba a execução inteira (o motor re-tenta).
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from localfirst.data.local_repository import LocalRepository
from localfirst.errors import (
    ConflictError,
    LocalFirstError,
    SyncTimeoutError,
    ValidationError,
)
from localfirst.models.base import Entity, SyncState
from localfirst.models.sync import SyncOperation, SyncQueueEntry, SyncResult
from localfirst.services.config_manager import Configuration
from localfirst.services.remote_peer import RemotePeer
from localfirst.services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MISSING = object()


def changed_keys(payload: Dict[str, Any], base: Dict[str, Any]) -> set:
    """Campos que diferem da base (inclui campos adicionados e removidos)."""
    return {
        key for key in set(payload) | set(base)
        if payload.get(key, _MISSING) != base.get(key, _MISSING)
    }


def merge_payloads(
    base: Dict[str, Any],
    local: Dict[str, Any],
    remote: Dict[str, Any],
    remote_is_newer: bool,
) -> Dict[str, Any]:
    """
    Merge por campo: campos alterados só de um lado são unidos.
    Campos alterados nos dois lados caem no last-write-wins.
    """
    local_changed = changed_keys(local, base)
    remote_changed = changed_keys(remote, base)

    merged = dict(base)
    for key in local_changed | remote_changed:
        if key in local_changed and key in remote_changed:
            source = remote if remote_is_newer else local
        elif key in remote_changed:
            source = remote
        else:
            source = local

        value = source.get(key, _MISSING)
        if value is _MISSING:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def _remote_time(remote: Entity) -> datetime:
    return remote.updated_at or remote.created_at or EPOCH


class SyncExecutor:
    """Executa um push/pull. Sem estado entre execuções."""

    async def run(
        self,
        repository: LocalRepository,
        configuration: Configuration,
        remote_peer: RemotePeer,
        owner_id: Optional[str],
        queue: Optional[SyncQueue] = None,
        last_sync_time: Optional[datetime] = None,
        pull_only: bool = False,
    ) -> SyncResult:
        if not owner_id:
            raise ValidationError("Sync exige um usuário autenticado (owner_id)")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + configuration.timeout_seconds
        result = SyncResult()

        logger.info(
            f"Sync '{repository.table}' iniciado "
            f"(desde={last_sync_time.isoformat() if last_sync_time else 'nunca'}, "
            f"pull_only={pull_only})"
        )

        # 1. PULL
        await self._pull(
            repository, configuration, remote_peer, owner_id, queue, last_sync_time, deadline, result
        )

        # 2. PUSH
        if not pull_only:
            await self._push(repository, configuration, remote_peer, queue, deadline, result)

        result.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Sync '{repository.table}' concluído: ▲{result.pushed} ▼{result.pulled} "
            f"conflitos={result.conflicts} erros={len(result.errors)}"
        )
        return result

    # --- PULL ---

    async def _pull(
        self,
        repository: LocalRepository,
        configuration: Configuration,
        remote_peer: RemotePeer,
        owner_id: str,
        queue: Optional[SyncQueue],
        since: Optional[datetime],
        deadline: float,
        result: SyncResult,
    ) -> None:
        remaining = deadline - asyncio.get_running_loop().time()
        try:
            remote_entities = await asyncio.wait_for(
                remote_peer.list_changed(repository.table, owner_id, since),
                timeout=max(remaining, 0),
            )
        except asyncio.TimeoutError as e:
            raise SyncTimeoutError(
                f"Pull de '{repository.table}' excedeu {configuration.sync_timeout}ms"
            ) from e

        for remote in remote_entities:
            if remote.table and remote.table != repository.table:
                logger.warning(f"Ignorando registro {remote.remote_id} da tabela '{remote.table}'")
                continue
            try:
                self._apply_remote(repository, configuration, queue, owner_id, remote, result)
            except LocalFirstError as e:
                logger.warning(f"Falha ao aplicar registro remoto {remote.remote_id}: {e}")
                result.add_error(remote.remote_id or remote.id, str(e))

    def _apply_remote(
        self,
        repository: LocalRepository,
        configuration: Configuration,
        queue: Optional[SyncQueue],
        owner_id: str,
        remote: Entity,
        result: SyncResult,
    ) -> None:
        remote.updated_at = _remote_time(remote)
        remote.owner_id = remote.owner_id or owner_id
        policy = configuration.conflict_resolution

        local = None
        if remote.remote_id:
            local = repository.find_by_remote_id(remote.remote_id)
        if local is None and remote.id:
            local = repository.get(remote.id)

        # Ausente localmente: entra como novo registro
        if local is None:
            if remote.is_deleted:
                return
            repository.apply_remote(remote)
            result.pulled += 1
            logger.debug(f"Pull: novo registro {remote.id}")
            return

        # Conflito manual ainda sem decisão: só atualiza a cópia remota
        if local.sync_status == SyncState.CONFLICT:
            if policy == "manual":
                repository.mark_conflict(local.id, remote.payload)
                result.conflicts += 1
                return

        has_local_changes = (
            local.sync_status != SyncState.SYNCED
            or (queue is not None and local.id in queue)
        )
        remote_is_newer = local.updated_at <= remote.updated_at

        if (
            policy == "merge"
            and has_local_changes
            and not local.is_deleted
            and not remote.is_deleted
        ):
            merged = merge_payloads(
                local.synced_payload or {}, local.payload, remote.payload, remote_is_newer
            )
            merged_entity = repository.apply_merge(local.id, merged, remote)
            if merged_entity.sync_status == SyncState.SYNCED and queue is not None:
                queue.remove(local.id)
            result.pulled += 1
            logger.debug(f"Pull: merge por campo em {local.id}")
            return

        # Local mais novo: o remoto é ignorado, o push sobrescreve
        if not remote_is_newer:
            logger.debug(f"Pull: {local.id} local mais novo, remoto ignorado")
            return

        if policy == "manual" and has_local_changes:
            repository.mark_conflict(local.id, remote.payload)
            result.conflicts += 1
            logger.info(f"Pull: conflito manual em {local.id}")
            return

        # Remoto vence (last-write-wins)
        if remote.is_deleted:
            repository.discard(local.id)
        else:
            updated = local.model_copy(
                update={
                    "remote_id": remote.remote_id or local.remote_id,
                    "owner_id": remote.owner_id,
                    "payload": dict(remote.payload),
                    "updated_at": remote.updated_at,
                    "is_deleted": False,
                }
            )
            repository.apply_remote(updated)
        if queue is not None:
            queue.remove(local.id)
        result.pulled += 1
        logger.debug(f"Pull: remoto vence em {local.id}")

    # --- PUSH ---

    def _pending_entries(
        self, repository: LocalRepository, queue: Optional[SyncQueue]
    ) -> List[SyncQueueEntry]:
        if queue is not None:
            return queue.entries()

        # Sem fila: todo registro local pendente
        entries = []
        for entity in repository.get_pending():
            if entity.is_deleted:
                operation = SyncOperation.DELETE
            elif entity.remote_id:
                operation = SyncOperation.UPDATE
            else:
                operation = SyncOperation.CREATE
            entries.append(SyncQueueEntry(entity_id=entity.id, operation=operation))
        return entries

    async def _push(
        self,
        repository: LocalRepository,
        configuration: Configuration,
        remote_peer: RemotePeer,
        queue: Optional[SyncQueue],
        deadline: float,
        result: SyncResult,
    ) -> None:
        loop = asyncio.get_running_loop()
        entries = self._pending_entries(repository, queue)
        revisions = {e.entity_id: queue.revision(e.entity_id) for e in entries} if queue else {}
        batch_size = configuration.batch_size

        for start in range(0, len(entries), batch_size):
            batch = entries[start:start + batch_size]
            remaining = deadline - loop.time()
            if remaining <= 0:
                for entry in entries[start:]:
                    result.add_error(entry.entity_id, "timeout", retryable=True)
                logger.warning(f"Push interrompido por timeout: {len(entries) - start} itens na fila")
                return

            tasks = {
                asyncio.ensure_future(
                    self._push_item(
                        repository, remote_peer, queue, entry, revisions.get(entry.entity_id), result
                    )
                ): entry
                for entry in batch
            }
            done, pending = await asyncio.wait(tasks, timeout=remaining)

            for task in done:
                error = task.exception()
                if error is not None:
                    entity_id = tasks[task].entity_id
                    logger.error(f"Erro inesperado no push de {entity_id}", exc_info=error)
                    result.add_error(entity_id, str(error))

            if pending:
                for task in pending:
                    task.cancel()
                    result.add_error(tasks[task].entity_id, "timeout", retryable=True)
                await asyncio.gather(*pending, return_exceptions=True)
                for entry in entries[start + batch_size:]:
                    result.add_error(entry.entity_id, "timeout", retryable=True)
                logger.warning(f"Push excedeu {configuration.sync_timeout}ms; itens restantes ficam na fila")
                return

    async def _push_item(
        self,
        repository: LocalRepository,
        remote_peer: RemotePeer,
        queue: Optional[SyncQueue],
        entry: SyncQueueEntry,
        revision: Optional[int],
        result: SyncResult,
    ) -> None:
        entity = repository.get(entry.entity_id)
        if entity is None:
            # Removido fisicamente antes do envio: nada a fazer
            if queue is not None:
                queue.remove(entry.entity_id, revision)
            return
        if not entity.can_sync:
            result.add_error(entity.id, "sem owner_id")
            return
        if entity.sync_status == SyncState.CONFLICT:
            result.add_error(entity.id, "conflito aguardando decisão")
            return

        version = entity.version
        try:
            if entity.is_deleted:
                # Tombstone: só some localmente depois da confirmação remota
                if entity.remote_id:
                    await remote_peer.delete(repository.table, entity.remote_id)
                repository.discard(entity.id)
            else:
                ack = await remote_peer.upsert(entity)
                repository.mark_as_synced(entity.id, ack.remote_id, pushed_version=version)
        except ConflictError as e:
            logger.warning(f"Push de {entity.id} recusado por conflito: {e}")
            result.add_error(entity.id, f"conflict: {e.message}")
            return
        except LocalFirstError as e:
            logger.warning(f"Push de {entity.id} falhou: {e}")
            repository.mark_failed(entity.id)
            result.add_error(entity.id, str(e), retryable=e.retryable)
            return

        if queue is not None:
            queue.remove(entity.id, revision)
        result.pushed += 1
        logger.debug(f"Push: {entry.operation.value} {entity.id}")
