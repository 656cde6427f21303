import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel, col, select

from localfirst.data.db_context import create_db_engine
from localfirst.errors import ValidationError

logger = logging.getLogger(__name__)

# Limite por item do chrome.storage.sync
SYNC_QUOTA_BYTES_PER_ITEM = 8192


class KVEntry(SQLModel, table=True):
    __tablename__ = "sys_meta"

    key: str = Field(primary_key=True)
    value: str


class KVStore(ABC):
    """Mapa durável e opaco (chave -> valor JSON). O núcleo não conhece o backend."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def list(self, prefix: str) -> Dict[str, Any]:
        """Todas as chaves que começam com `prefix`, em ordem de chave."""

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


class MemoryKVStore(KVStore):
    """Backend 'memory'. Guarda cópias serializadas, como um armazenamento real faria."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def list(self, prefix: str) -> Dict[str, Any]:
        return {
            k: json.loads(v)
            for k, v in sorted(self._data.items())
            if k.startswith(prefix)
        }

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class SQLiteKVStore(KVStore):
    """Gerencia persistência chave-valor na tabela sys_meta via SQLModel."""

    def __init__(self, engine: Optional[Engine] = None, db_path: Optional[str] = None):
        self.engine = engine or create_db_engine(db_path)
        # Garante que a tabela exista
        SQLModel.metadata.create_all(self.engine, tables=[KVEntry.__table__])

    def get(self, key: str) -> Optional[Any]:
        with Session(self.engine) as session:
            entry = session.get(KVEntry, key)
            return json.loads(entry.value) if entry else None

    def set(self, key: str, value: Any) -> None:
        with Session(self.engine) as session:
            session.merge(KVEntry(key=key, value=json.dumps(value)))
            session.commit()

    def list(self, prefix: str) -> Dict[str, Any]:
        with Session(self.engine) as session:
            statement = (
                select(KVEntry)
                .where(col(KVEntry.key).startswith(prefix, autoescape=True))
                .order_by(KVEntry.key)
            )
            return {entry.key: json.loads(entry.value) for entry in session.exec(statement)}

    def delete(self, key: str) -> None:
        with Session(self.engine) as session:
            entry = session.get(KVEntry, key)
            if entry:
                session.delete(entry)
                session.commit()


class QuotaKVStore(KVStore):
    """Aplica a cota por item do backend 'chrome-storage-sync' sobre outro store."""

    def __init__(self, inner: KVStore, quota_bytes_per_item: int = SYNC_QUOTA_BYTES_PER_ITEM):
        self.inner = inner
        self.quota_bytes_per_item = quota_bytes_per_item

    def get(self, key: str) -> Optional[Any]:
        return self.inner.get(key)

    def set(self, key: str, value: Any) -> None:
        size = len(key.encode()) + len(json.dumps(value).encode())
        if size > self.quota_bytes_per_item:
            raise ValidationError(
                f"Item de {size} bytes excede a cota de {self.quota_bytes_per_item} bytes"
            )
        self.inner.set(key, value)

    def list(self, prefix: str) -> Dict[str, Any]:
        return self.inner.list(prefix)

    def delete(self, key: str) -> None:
        self.inner.delete(key)


def create_kv_store(config, db_path: Optional[str] = None) -> KVStore:
    """Escolhe o backend a partir de `config.primary_storage`."""
    kind = config.primary_storage
    if kind == "memory":
        store: KVStore = MemoryKVStore()
    elif kind == "chrome-storage-sync":
        store = QuotaKVStore(SQLiteKVStore(db_path=db_path))
    else:
        # 'chrome-storage' e 'indexeddb' persistem no SQLite local
        store = SQLiteKVStore(db_path=db_path)
    logger.info(f"KV store '{kind}' -> {type(store).__name__}")
    return store
