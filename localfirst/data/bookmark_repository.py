from typing import List, Optional

from localfirst.data.kv_store import KVStore
from localfirst.data.local_repository import LocalRepository, QueryCriteria
from localfirst.models.bookmark import BOOKMARKS_TABLE, Bookmark


class BookmarkRepository(LocalRepository):
    def __init__(self, kv_store: KVStore, require_owner: bool = True):
        super().__init__(kv_store, BOOKMARKS_TABLE, require_owner=require_owner)

    def add_bookmark(self, bookmark: Bookmark) -> Bookmark:
        return Bookmark.from_entity(self.create(bookmark.to_entity()))

    def edit_bookmark(self, bookmark: Bookmark) -> Bookmark:
        return Bookmark.from_entity(self.update(bookmark.to_entity()))

    def list_bookmarks(self, owner_id: Optional[str] = None) -> List[Bookmark]:
        entities = self.query(QueryCriteria(owner_id=owner_id))
        return [Bookmark.from_entity(e) for e in entities]

    def search_bookmarks(self, query_text: str = "", owner_id: Optional[str] = None) -> List[Bookmark]:
        """Busca por título, link ou resumo (sem diferenciar maiúsculas)"""
        bookmarks = self.list_bookmarks(owner_id)
        if not query_text:
            return sorted(bookmarks, key=lambda b: b.title.lower())

        pattern = query_text.lower()
        matches = [
            b for b in bookmarks
            if pattern in b.title.lower()
            or pattern in b.link.lower()
            or pattern in (b.summary or "").lower()
        ]
        return sorted(matches, key=lambda b: b.title.lower())
