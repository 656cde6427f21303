"""
Configuração do motor de sincronização.

`resolve()` é uma função pura: padrão global < preset nomeado < overrides
explícitos. O resultado é imutável; trocar a configuração exige reconstruir
o motor, evitando corrida entre um sync em andamento e uma mudança de config.
"""
import logging
import os
from typing import Any, Dict, Literal, Mapping, Optional

from dotenv import load_dotenv
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_snake
from sqlmodel import Field, SQLModel

from localfirst.errors import ConfigError

logger = logging.getLogger(__name__)

PrimaryStorage = Literal["chrome-storage", "chrome-storage-sync", "indexeddb", "memory"]
RemoteStorage = Literal["supabase", "firebase", "custom"]
ConflictPolicy = Literal["last-write-wins", "merge", "manual"]

ENV_PREFIX = "LOCALFIRST_"


class Configuration(SQLModel):
    table_name: str = Field(min_length=1)
    storage_key_prefix: str = Field(default="auto_sync", min_length=1)

    primary_storage: PrimaryStorage = "chrome-storage"
    remote_storage: RemoteStorage = "supabase"
    batch_size: int = Field(default=100, gt=0)
    auto_sync_enabled: bool = False

    # Tempos em milissegundos
    debounce_delay: int = Field(default=500, ge=0)
    conflict_resolution: ConflictPolicy = "last-write-wins"
    max_retries: int = Field(default=3, ge=0)
    retry_delay: int = Field(default=10_000, ge=0)
    sync_timeout: int = Field(default=30_000, gt=0)
    periodic_sync_interval: int = Field(default=5 * 60 * 1000, ge=0)

    class Config:
        frozen = True
        extra = "forbid"

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_delay / 1000

    @property
    def retry_seconds(self) -> float:
        return self.retry_delay / 1000

    @property
    def timeout_seconds(self) -> float:
        return self.sync_timeout / 1000

    @property
    def periodic_seconds(self) -> float:
        return self.periodic_sync_interval / 1000

    @property
    def enabled_key(self) -> str:
        return f"{self.storage_key_prefix}_enabled"

    @property
    def last_sync_key(self) -> str:
        return f"{self.storage_key_prefix}_last_sync_time"

    @property
    def queue_key(self) -> str:
        return f"{self.storage_key_prefix}_queue"


DEFAULTS: Dict[str, Any] = {
    "primary_storage": "chrome-storage",
    "remote_storage": "supabase",
    "batch_size": 100,
    "auto_sync_enabled": False,
    "debounce_delay": 500,
    "conflict_resolution": "last-write-wins",
    "max_retries": 3,
    "retry_delay": 10_000,
    "sync_timeout": 30_000,
    "periodic_sync_interval": 5 * 60 * 1000,
}

PRESETS: Dict[str, Dict[str, Any]] = {
    "chrome-extension": {
        "primary_storage": "chrome-storage",
        "batch_size": 50,
        "auto_sync_enabled": True,
        "debounce_delay": 1000,
    },
    "web-app": {
        "primary_storage": "indexeddb",
        "batch_size": 100,
    },
    "testing": {
        "primary_storage": "memory",
        "batch_size": 10,
        "auto_sync_enabled": False,
    },
}


def _normalize(overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Aceita camelCase (batchSize) ou snake_case (batch_size)."""
    normalized = {}
    for key, value in overrides.items():
        name = to_snake(key)
        if name not in Configuration.model_fields:
            raise ConfigError(f"Opção desconhecida: '{key}'")
        normalized[name] = value
    return normalized


def resolve(
    table_name: str,
    storage_key_prefix: str = "auto_sync",
    overrides: Optional[Mapping[str, Any]] = None,
    preset: Optional[str] = None,
) -> Configuration:
    if preset is not None and preset not in PRESETS:
        raise ConfigError(f"Preset desconhecido: '{preset}'")

    values: Dict[str, Any] = dict(DEFAULTS)
    if preset:
        values.update(PRESETS[preset])
    values.update(_normalize(overrides or {}))
    values["table_name"] = table_name
    values["storage_key_prefix"] = storage_key_prefix

    try:
        return Configuration(**values)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Configuração inválida: {problems}") from e


def overrides_from_env(prefix: str = ENV_PREFIX) -> Dict[str, Any]:
    """
    Lê overrides do ambiente (e do .env), ex: LOCALFIRST_BATCH_SIZE=50.
    Variáveis que não são opções de configuração são ignoradas.
    """
    load_dotenv()
    overrides = {}
    for name in Configuration.model_fields:
        if name in ("table_name", "storage_key_prefix"):
            continue
        raw = os.getenv(f"{prefix}{name.upper()}")
        if raw is not None:
            overrides[name] = raw
    if overrides:
        logger.info(f"Overrides do ambiente: {sorted(overrides)}")
    return overrides
