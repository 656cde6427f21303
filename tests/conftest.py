"""Configuração do pytest e fixtures compartilhadas."""

import asyncio
import inspect
from datetime import datetime
from typing import Dict, List, Optional, Set

import pytest

from localfirst.data.bookmark_repository import BookmarkRepository
from localfirst.data.kv_store import MemoryKVStore
from localfirst.errors import NetworkError
from localfirst.models.base import Entity
from localfirst.services.config_manager import resolve
from localfirst.services.remote_peer import RemotePeer, UpsertAck

OWNER = "user-1"


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Executa testes async sem plugins externos."""
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            sig = inspect.signature(testfunction)
            call_kwargs = {name: pyfuncitem.funcargs[name] for name in sig.parameters}
            loop.run_until_complete(testfunction(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


class FakeRemotePeer(RemotePeer):
    """Servidor remoto em memória com falhas e atrasos controláveis."""

    def __init__(self):
        self.records: Dict[str, Entity] = {}
        self.fail_with: Optional[Exception] = None
        self.fail_ids: Set[str] = set()
        self.upsert_delay = 0.0
        self.list_delay = 0.0
        self.list_calls = 0
        self.upserts: List[Entity] = []
        self.deletes: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def seed(self, entity: Entity) -> Entity:
        remote_id = entity.remote_id or entity.id
        stored = entity.model_copy(deep=True, update={"id": remote_id, "remote_id": remote_id})
        self.records[remote_id] = stored
        return stored

    async def list_changed(self, table: str, owner_id: str, since: Optional[datetime]) -> List[Entity]:
        self.list_calls += 1
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.fail_with:
            raise self.fail_with
        return [
            r.model_copy(deep=True)
            for r in self.records.values()
            if r.table == table
            and r.owner_id == owner_id
            and (since is None or r.updated_at > since)
        ]

    async def upsert(self, entity: Entity) -> UpsertAck:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.upsert_delay:
                await asyncio.sleep(self.upsert_delay)
            if self.fail_with:
                raise self.fail_with
            if entity.id in self.fail_ids:
                raise NetworkError("falha simulada", entity.id)
            self.upserts.append(entity.model_copy(deep=True))
            stored = self.seed(entity)
            return UpsertAck(remote_id=stored.remote_id, updated_at=stored.updated_at)
        finally:
            self.in_flight -= 1

    async def delete(self, table: str, remote_id: str) -> None:
        if self.fail_with:
            raise self.fail_with
        self.deletes.append(remote_id)
        self.records.pop(remote_id, None)


@pytest.fixture
def kv_store():
    return MemoryKVStore()


@pytest.fixture
def repository(kv_store):
    return BookmarkRepository(kv_store)


@pytest.fixture
def peer():
    return FakeRemotePeer()


@pytest.fixture
def config():
    """Configuração rápida para testes (timers em milissegundos)."""
    return resolve(
        "bookmarks",
        overrides={
            "debounceDelay": 10,
            "retryDelay": 0,
            "maxRetries": 2,
            "syncTimeout": 2000,
            "periodicSyncInterval": 0,
        },
        preset="testing",
    )


def make_entity(title: str = "A", link: str = "http://x", owner_id: Optional[str] = OWNER, **extra) -> Entity:
    payload = {"title": title, "link": link}
    payload.update(extra)
    return Entity(table="bookmarks", owner_id=owner_id, payload=payload)
