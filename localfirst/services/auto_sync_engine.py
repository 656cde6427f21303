"""
Motor de auto-sync.

Máquina de estados dirigida por timers no event loop:

    UNINITIALIZED -> DISABLED <-> IDLE <-> SYNCING
    IDLE/SYNCING -> ERROR_BACKOFF -> IDLE      (re-tentativas)
    qualquer estado -> UNINITIALIZED           (cleanup)

Mutações do repositório entram na fila e (re)armam o debounce; o disparo do
timer, não cada mutação, inicia uma execução do SyncExecutor. Só existe uma
execução por vez: gatilhos durante a execução apenas re-armam o debounce
para depois do término.
"""
import asyncio
import logging
import os
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Set

from localfirst.data.bookmark_repository import BookmarkRepository
from localfirst.data.kv_store import KVStore, create_kv_store
from localfirst.data.local_repository import LocalRepository
from localfirst.errors import EngineStateError, LocalFirstError
from localfirst.models.bookmark import BOOKMARKS_TABLE
from localfirst.models.sync import (
    ChangeNotification,
    EngineState,
    SyncOperation,
    SyncResult,
    SyncStatus,
)
from localfirst.services.config_manager import Configuration, overrides_from_env, resolve
from localfirst.services.remote_peer import HttpRemotePeer, RemotePeer
from localfirst.services.sync_executor import SyncExecutor
from localfirst.services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

API_BASE_URL = "http://localhost:8000"
MAX_LISTENERS = 50

StatusListener = Callable[[SyncStatus], None]


class AutoSyncEngine:
    def __init__(
        self,
        repository: LocalRepository,
        configuration: Configuration,
        remote_peer: RemotePeer,
        owner_id: Optional[str] = None,
        kv_store: Optional[KVStore] = None,
        executor: Optional[SyncExecutor] = None,
    ):
        self.repository = repository
        self.configuration = configuration
        self.remote_peer = remote_peer
        self.owner_id = owner_id
        self.kv_store = kv_store or repository.kv_store
        self.executor = executor or SyncExecutor()
        self.queue = SyncQueue(self.kv_store, configuration.queue_key, on_change=self._on_queue_size)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._state = EngineState.UNINITIALIZED
        self._enabled = False
        # Guarda de execução única
        self._running = False
        self._rearm = False
        self._stop_retries = False
        self._last_sync_time: Optional[datetime] = None
        self._error: Optional[str] = None
        self._last_result: Optional[SyncResult] = None

        self._listeners: List[StatusListener] = []
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._periodic_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None

    # --- Estado ---

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def status(self) -> SyncStatus:
        return SyncStatus(
            state=self._state,
            enabled=self._enabled,
            is_running=self._running,
            queue_size=len(self.queue),
            last_sync_time=self._last_sync_time,
            error=self._error,
            last_result=self._last_result,
        )

    @property
    def queue_size(self) -> int:
        return len(self.queue)

    def _set_state(self, state: EngineState) -> None:
        if state != self._state:
            logger.debug(f"Estado: {self._state.value} -> {state.value}")
            self._state = state
        self._notify()

    def _resting_state(self) -> EngineState:
        return EngineState.IDLE if self._enabled else EngineState.DISABLED

    def _require_initialized(self) -> None:
        if self._state == EngineState.UNINITIALIZED:
            raise EngineStateError("Motor não inicializado: chame initialize() antes")

    # --- Ciclo de vida ---

    async def initialize(self) -> None:
        """Carrega estado persistido e assina o repositório. Não inicia timers."""
        if self._state != EngineState.UNINITIALIZED:
            return

        self._loop = asyncio.get_running_loop()

        raw_last_sync = self.kv_store.get(self.configuration.last_sync_key)
        self._last_sync_time = datetime.fromisoformat(raw_last_sync) if raw_last_sync else None

        self.queue.load()
        self._enqueue_untracked_pending()

        stored_enabled = self.kv_store.get(self.configuration.enabled_key)
        self._enabled = bool(
            self.configuration.auto_sync_enabled if stored_enabled is None else stored_enabled
        )
        self._stop_retries = False
        self._unsubscribe = self.repository.subscribe(self._on_repository_change)

        logger.info(
            f"Auto-sync '{self.repository.table}' inicializado "
            f"(enabled={self._enabled}, fila={len(self.queue)})"
        )
        self._set_state(self._resting_state())

    def _enqueue_untracked_pending(self) -> None:
        # Mutações feitas sem motor inscrito (antes do initialize ou após cleanup)
        missing = [e for e in self.repository.get_pending() if e.id not in self.queue]
        for entity in missing:
            if entity.is_deleted:
                operation = SyncOperation.DELETE
            elif entity.remote_id:
                operation = SyncOperation.UPDATE
            else:
                operation = SyncOperation.CREATE
            self.queue.enqueue(entity.id, operation)
        if missing:
            logger.info(f"{len(missing)} registro(s) pendente(s) fora da fila foram enfileirados")

    def cleanup(self) -> None:
        """
        Cancela timers, remove listeners e volta para UNINITIALIZED.
        Uma execução em andamento termina e o resultado é aplicado.
        """
        self._cancel_timers()
        self._stop_retries = True
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        if self._state != EngineState.UNINITIALIZED:
            self._enabled = False
            self._set_state(EngineState.UNINITIALIZED)
            logger.info(f"Auto-sync '{self.repository.table}' finalizado")
        self._listeners.clear()

    def set_enabled(self, enabled: bool) -> None:
        self._require_initialized()
        if enabled == self._enabled:
            return

        self._enabled = enabled
        self.kv_store.set(self.configuration.enabled_key, enabled)

        if enabled:
            self._stop_retries = False
            logger.info("Auto-sync habilitado")
            if not self._running:
                self._set_state(EngineState.IDLE)
            self._schedule_periodic()
            if len(self.queue):
                self._schedule_debounce()
            self._spawn(self.refresh_remote_change_detection())
        else:
            # A fila é mantida e será aplicada quando reabilitar
            self._cancel_timers()
            self._stop_retries = True
            logger.info(f"Auto-sync desabilitado ({len(self.queue)} pendentes)")
            if not self._running:
                self._set_state(EngineState.DISABLED)
            else:
                self._notify()

    def set_owner(self, owner_id: Optional[str]) -> None:
        """Troca de sessão. Com o motor ativo, busca o estado remoto do novo usuário."""
        self.owner_id = owner_id
        self._last_sync_time = None
        if owner_id and self._enabled and self._state != EngineState.UNINITIALIZED:
            self._spawn(self.refresh_remote_change_detection())

    # --- Listeners ---

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        if len(self._listeners) >= MAX_LISTENERS:
            raise ValueError(f"Limite de {MAX_LISTENERS} listeners atingido")
        self._listeners.append(listener)
        self._call_listener(listener, self.status)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def remove_status_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _call_listener(self, listener: StatusListener, status: SyncStatus) -> None:
        try:
            listener(status)
        except Exception:
            logger.exception("Listener de status falhou")

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.status
        for listener in list(self._listeners):
            self._call_listener(listener, snapshot)

    def _on_queue_size(self, _size: int) -> None:
        self._notify()

    # --- Fila e timers ---

    def _on_repository_change(self, change: ChangeNotification) -> None:
        if change.purged:
            self.queue.remove(change.entity_id)
            return

        self.queue.enqueue(change.entity_id, change.operation)
        logger.debug(f"Enfileirado {change.operation.value} {change.entity_id} (fila={len(self.queue)})")
        if self._enabled:
            self._schedule_debounce()

    def _schedule_debounce(self) -> None:
        if self._running:
            self._rearm = True
            return
        if self._loop is None:
            return
        if self._debounce_handle:
            self._debounce_handle.cancel()
        self._debounce_handle = self._loop.call_later(
            self.configuration.debounce_seconds, self._on_debounce
        )

    def _on_debounce(self) -> None:
        self._debounce_handle = None
        if self._enabled:
            self._start_run()

    def _schedule_periodic(self) -> None:
        if self._loop is None or self.configuration.periodic_sync_interval <= 0:
            return
        if self._periodic_handle:
            self._periodic_handle.cancel()
        self._periodic_handle = self._loop.call_later(
            self.configuration.periodic_seconds, self._on_periodic
        )

    def _on_periodic(self) -> None:
        self._periodic_handle = None
        if not self._enabled:
            return
        if not self._running:
            self._start_run()
        self._schedule_periodic()

    def _cancel_timers(self) -> None:
        if self._debounce_handle:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._periodic_handle:
            self._periodic_handle.cancel()
            self._periodic_handle = None

    def _spawn(self, coro) -> asyncio.Task:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def clear_queue(self) -> None:
        self.queue.clear()

    # --- Execução ---

    def _start_run(self, pull_only: bool = False) -> Optional[asyncio.Task]:
        if self._running:
            self._rearm = True
            return None
        # Checado e marcado no mesmo passo do loop: nunca duas execuções
        self._running = True
        return self._spawn(self._run_cycle(pull_only))

    async def sync_now(self) -> Optional[SyncResult]:
        """Disparo manual, sem esperar o debounce. None se já havia execução em andamento."""
        self._require_initialized()
        if self._debounce_handle:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        task = self._start_run()
        if task is None:
            return None
        return await task

    async def refresh_remote_change_detection(self) -> Optional[SyncResult]:
        """Pull imediato (ex: após login) para descobrir dados criados em outras sessões."""
        self._require_initialized()
        if not self.owner_id:
            logger.info("Sem usuário autenticado; detecção remota adiada")
            return None
        task = self._start_run(pull_only=True)
        if task is None:
            return None
        return await task

    async def _run_cycle(self, pull_only: bool) -> Optional[SyncResult]:
        """
        Uma execução com re-tentativas.
        max_retries conta re-tentativas: no máximo max_retries + 1 tentativas,
        separadas por retry_delay. Só erros retryable (rede, timeout) são re-tentados.
        """
        result: Optional[SyncResult] = None
        error: Optional[str] = None
        attempt = 0

        if self._state != EngineState.UNINITIALIZED:
            self._set_state(EngineState.SYNCING)
        try:
            while True:
                attempt += 1
                retryable = False
                try:
                    result = await self.executor.run(
                        self.repository,
                        self.configuration,
                        self.remote_peer,
                        self.owner_id,
                        queue=self.queue,
                        last_sync_time=self._last_sync_time,
                        pull_only=pull_only,
                    )
                except LocalFirstError as e:
                    error = str(e)
                    retryable = e.retryable
                    logger.warning(f"Sync falhou (tentativa {attempt}): {e}")
                except Exception as e:
                    error = str(e) or type(e).__name__
                    logger.exception(f"Erro inesperado no sync (tentativa {attempt})")
                else:
                    self._record_result(result)
                    error = self._summarize(result)
                    retryable = result.has_retryable_errors

                if not error:
                    break
                if not retryable or attempt > self.configuration.max_retries or self._stop_retries:
                    break

                # Atraso fixo entre tentativas
                if self._state != EngineState.UNINITIALIZED:
                    self._set_state(EngineState.ERROR_BACKOFF)
                await asyncio.sleep(self.configuration.retry_seconds)
                if self._stop_retries:
                    break
                if self._state != EngineState.UNINITIALIZED:
                    self._set_state(EngineState.SYNCING)
        finally:
            self._running = False

        self._error = error
        if error:
            logger.error(f"Sync desistiu após {attempt} tentativa(s): {error}")

        if self._state != EngineState.UNINITIALIZED:
            self._set_state(self._resting_state())
            if self._rearm and self._enabled and len(self.queue):
                self._schedule_debounce()
        self._rearm = False
        return result

    def _record_result(self, result: SyncResult) -> None:
        # Início da execução, não o término: alterações que chegam no meio não se perdem
        self._last_sync_time = result.started_at
        self.kv_store.set(self.configuration.last_sync_key, result.started_at.isoformat())
        self._last_result = result

    @staticmethod
    def _summarize(result: SyncResult) -> Optional[str]:
        if not result.errors:
            return None
        first = result.errors[0]
        return f"{len(result.errors)} item(ns) com erro; {first.entity_id}: {first.reason}"


def create_auto_sync_engine(
    table_name: str = BOOKMARKS_TABLE,
    owner_id: Optional[str] = None,
    remote_peer: Optional[RemotePeer] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    preset: Optional[str] = None,
    storage_key_prefix: str = "auto_sync",
    db_path: Optional[str] = None,
    api_url: Optional[str] = None,
) -> AutoSyncEngine:
    """
    Monta store, repositório e peer a partir da configuração resolvida.
    Overrides explícitos prevalecem sobre as variáveis LOCALFIRST_*.
    """
    merged = {**overrides_from_env(), **dict(overrides or {})}
    configuration = resolve(table_name, storage_key_prefix, merged, preset)
    kv_store = create_kv_store(configuration, db_path)

    if table_name == BOOKMARKS_TABLE:
        repository: LocalRepository = BookmarkRepository(kv_store)
    else:
        repository = LocalRepository(kv_store, table_name)

    if remote_peer is None:
        remote_peer = HttpRemotePeer(
            api_url or os.getenv("LOCALFIRST_API_URL") or API_BASE_URL,
            timeout=configuration.timeout_seconds,
        )

    return AutoSyncEngine(repository, configuration, remote_peer, owner_id=owner_id, kv_store=kv_store)
