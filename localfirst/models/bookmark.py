from typing import Any, Dict, List, Optional

from sqlmodel import Field, SQLModel

from .base import Entity

BOOKMARKS_TABLE = "bookmarks"
DEFAULT_TITLE = "Untitled Bookmark"


class Bookmark(SQLModel):
    """
    Visão de domínio de um favorito.
    O motor só conhece `Entity.payload`; esta classe faz a conversão nos dois sentidos.
    """
    id: Optional[str] = None
    owner_id: Optional[str] = None
    title: str = Field(default=DEFAULT_TITLE)
    link: str = Field(default="")
    summary: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    favicon_url: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "title": self.title or DEFAULT_TITLE,
            "link": self.link or "",
            "summary": self.summary,
            "tags": list(self.tags),
            "favicon_url": self.favicon_url,
        }

    def to_entity(self) -> Entity:
        return Entity(
            id=self.id,
            table=BOOKMARKS_TABLE,
            owner_id=self.owner_id,
            payload=self.to_payload(),
        )

    @classmethod
    def from_entity(cls, entity: Entity) -> "Bookmark":
        data = entity.payload
        return cls(
            id=entity.id,
            owner_id=entity.owner_id,
            title=data.get("title") or DEFAULT_TITLE,
            link=data.get("link") or "",
            summary=data.get("summary"),
            tags=data.get("tags") or [],
            favicon_url=data.get("favicon_url"),
        )
