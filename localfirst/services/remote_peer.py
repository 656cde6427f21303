import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import httpx
from sqlmodel import SQLModel

from localfirst.errors import ConflictError, NetworkError, ValidationError
from localfirst.models.base import Entity

logger = logging.getLogger(__name__)

TIMEOUT_SECONDS = 10
# Data epoch: sem last_sync o servidor devolve tudo
EPOCH = "1970-01-01T00:00:00+00:00"


class UpsertAck(SQLModel):
    remote_id: str
    updated_at: Optional[datetime] = None


class RemotePeer(ABC):
    """
    Servidor remoto visto pelo executor: CRUD + feed de alterações.
    A autenticação é responsabilidade de quem constrói o peer.
    """

    @abstractmethod
    async def list_changed(
        self, table: str, owner_id: str, since: Optional[datetime]
    ) -> List[Entity]:
        ...

    @abstractmethod
    async def upsert(self, entity: Entity) -> UpsertAck:
        ...

    @abstractmethod
    async def delete(self, table: str, remote_id: str) -> None:
        ...


def entity_to_wire(entity: Entity) -> Dict[str, Any]:
    """O id remoto preserva o uuid local no primeiro envio."""
    data = entity.model_dump(
        mode="json",
        include={"owner_id", "table", "payload", "created_at", "updated_at", "is_deleted"},
    )
    data["id"] = entity.remote_id or entity.id
    return data


def entity_from_wire(data: Mapping[str, Any]) -> Entity:
    return Entity(
        id=data["id"],
        remote_id=data["id"],
        table=data.get("table"),
        owner_id=data.get("owner_id"),
        payload=data.get("payload") or {},
        created_at=data.get("created_at"),
        updated_at=data.get("updated_at"),
        is_deleted=bool(data.get("is_deleted", False)),
    )


class HttpRemotePeer(RemotePeer):
    """Cliente HTTP do servidor de sync (rotas /sync/pull e /sync/push por recurso)."""

    def __init__(
        self,
        base_url: str,
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers=dict(headers or {}),
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "HttpRemotePeer":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except (httpx.TransportError, httpx.TimeoutException) as e:
            raise NetworkError(f"{method} {url}: {e}") from e

        if response.status_code == 409:
            raise ConflictError(f"{method} {url}: conflito no servidor")
        if response.status_code >= 500:
            raise NetworkError(f"{method} {url}: HTTP {response.status_code}")
        return response

    async def list_changed(
        self, table: str, owner_id: str, since: Optional[datetime]
    ) -> List[Entity]:
        params = {"owner_id": owner_id, "since": since.isoformat() if since else EPOCH}
        response = await self._request("GET", f"/sync/pull/{table}", params=params)
        if response.is_error:
            raise ValidationError(f"Pull de '{table}' recusado: HTTP {response.status_code}")

        changes = response.json().get("changes", [])
        logger.debug(f"Pull {table}: {len(changes)} alterações desde {params['since']}")
        return [entity_from_wire(item) for item in changes]

    async def upsert(self, entity: Entity) -> UpsertAck:
        wire = entity_to_wire(entity)
        response = await self._request("POST", f"/sync/push/{entity.table}", json=[wire])
        if response.is_error:
            raise ValidationError(
                f"Push recusado: HTTP {response.status_code}", entity.id
            )

        result = response.json()
        if wire["id"] not in result.get("processed_ids", []):
            raise ValidationError("Servidor não confirmou o registro", entity.id)
        return UpsertAck(remote_id=wire["id"], updated_at=result.get("current_server_time"))

    async def delete(self, table: str, remote_id: str) -> None:
        response = await self._request("DELETE", f"/sync/{table}/{remote_id}")
        # 404: já removido no servidor, a exclusão está confirmada
        if response.is_error and response.status_code != 404:
            raise ValidationError(
                f"Delete recusado: HTTP {response.status_code}", remote_id
            )
