"""Testes do repositório local (CRUD, soft delete, consultas, notificações)."""

from datetime import timedelta

import pytest

from conftest import OWNER, make_entity
from localfirst.data.kv_store import MemoryKVStore, QuotaKVStore
from localfirst.data.local_repository import LocalRepository, QueryCriteria
from localfirst.errors import NotFoundError, ValidationError
from localfirst.models.base import Entity, SyncState, utc_now
from localfirst.models.sync import SyncOperation


class TestCreateAndGet:

    def test_create_then_get_returns_same_record(self, repository):
        created = repository.create(make_entity("A", "http://x"))
        loaded = repository.get(created.id)

        assert loaded is not None
        assert loaded.payload == {"title": "A", "link": "http://x"}
        assert loaded.table == "bookmarks"
        assert loaded.owner_id == OWNER
        assert loaded.created_at == created.created_at
        assert loaded.updated_at == created.updated_at
        assert loaded.is_deleted is False

    def test_create_assigns_id_and_timestamps(self, repository):
        created = repository.create(make_entity())
        assert created.id
        assert created.created_at is not None
        assert created.updated_at == created.created_at
        assert created.sync_status == SyncState.PENDING

    def test_create_keeps_given_id(self, repository):
        entity = make_entity()
        entity.id = "fixed-id"
        assert repository.create(entity).id == "fixed-id"

    def test_create_does_not_mutate_input(self, repository):
        entity = make_entity()
        repository.create(entity)
        assert entity.id is None

    def test_duplicate_id_is_rejected(self, repository):
        created = repository.create(make_entity())
        again = make_entity()
        again.id = created.id
        with pytest.raises(ValidationError):
            repository.create(again)

    def test_missing_table_is_rejected(self, repository):
        with pytest.raises(ValidationError):
            repository.create(Entity(owner_id=OWNER, payload={"title": "A"}))

    def test_missing_owner_is_rejected(self, repository):
        with pytest.raises(ValidationError):
            repository.create(make_entity(owner_id=None))

    def test_wrong_table_is_rejected(self, repository):
        with pytest.raises(ValidationError):
            repository.create(Entity(table="notes", owner_id=OWNER))

    def test_owner_optional_when_repository_allows(self, kv_store):
        repo = LocalRepository(kv_store, "bookmarks", require_owner=False)
        created = repo.create(make_entity(owner_id=None))
        assert created.can_sync is False

    def test_get_unknown_returns_none(self, repository):
        assert repository.get("nope") is None


class TestUpdate:

    def test_update_overwrites_payload_and_bumps_timestamp(self, repository):
        created = repository.create(make_entity("A"))
        created.payload = {"title": "B", "link": "http://y"}

        updated = repository.update(created)

        assert updated.payload["title"] == "B"
        assert updated.updated_at > created.updated_at
        assert updated.created_at == created.created_at

    def test_update_ignores_backdated_timestamp(self, repository):
        created = repository.create(make_entity())
        original = created.updated_at
        created.updated_at = original - timedelta(days=10)

        updated = repository.update(created)

        assert updated.updated_at > original

    def test_update_unknown_id_raises(self, repository):
        entity = make_entity()
        entity.id = "missing"
        with pytest.raises(NotFoundError):
            repository.update(entity)

    def test_update_deleted_entity_raises(self, repository):
        created = repository.create(make_entity())
        repository.delete(created.id)
        with pytest.raises(NotFoundError):
            repository.update(created)

    def test_update_keeps_timestamps_monotonic(self, repository):
        entity = repository.create(make_entity())
        stamps = [entity.updated_at]
        for i in range(5):
            entity.payload = {"title": str(i)}
            entity = repository.update(entity)
            stamps.append(entity.updated_at)
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == len(stamps)


class TestDeleteAndQuery:

    def test_soft_delete_hides_from_default_query(self, repository):
        created = repository.create(make_entity())
        repository.delete(created.id)

        assert repository.query() == []
        deleted = repository.query(QueryCriteria(include_deleted=True))
        assert [e.id for e in deleted] == [created.id]
        assert deleted[0].is_deleted is True

    def test_delete_bumps_updated_at(self, repository):
        created = repository.create(make_entity())
        deleted = repository.delete(created.id)
        assert deleted.updated_at > created.updated_at

    def test_delete_unknown_raises(self, repository):
        with pytest.raises(NotFoundError):
            repository.delete("missing")

    def test_purge_removes_record(self, repository):
        created = repository.create(make_entity())
        repository.purge(created.id)

        assert repository.get(created.id) is None
        assert repository.query(QueryCriteria(include_deleted=True)) == []

    def test_purge_unknown_raises(self, repository):
        with pytest.raises(NotFoundError):
            repository.purge("missing")

    def test_query_keeps_insertion_order(self, repository):
        ids = [repository.create(make_entity(t)).id for t in ("c", "a", "b")]
        assert [e.id for e in repository.query()] == ids

    def test_query_order_by_updated_at_descending(self, repository):
        first = repository.create(make_entity("1"))
        second = repository.create(make_entity("2"))
        first.payload = {"title": "1b"}
        repository.update(first)

        ordered = repository.query(QueryCriteria(order_by="updated_at", descending=True))
        assert [e.id for e in ordered] == [first.id, second.id]

    def test_query_filters_owner_and_paginates(self, repository):
        for i in range(4):
            repository.create(make_entity(str(i)))
        repository.create(make_entity("other", owner_id="user-2"))

        mine = repository.query(QueryCriteria(owner_id=OWNER, offset=1, limit=2))
        assert [e.payload["title"] for e in mine] == ["1", "2"]

    def test_query_rejects_unknown_order(self, repository):
        with pytest.raises(ValidationError):
            repository.query(QueryCriteria(order_by="title"))


class TestChangeNotifications:

    def test_mutations_emit_notifications(self, repository):
        seen = []
        repository.subscribe(seen.append)

        created = repository.create(make_entity())
        repository.update(created)
        repository.delete(created.id)
        repository.purge(created.id)

        assert [n.operation for n in seen] == [
            SyncOperation.CREATE,
            SyncOperation.UPDATE,
            SyncOperation.DELETE,
            SyncOperation.DELETE,
        ]
        assert seen[-1].purged is True
        assert all(n.entity_id == created.id for n in seen)

    def test_unsubscribe_stops_notifications(self, repository):
        seen = []
        unsubscribe = repository.subscribe(seen.append)
        unsubscribe()
        repository.create(make_entity())
        assert seen == []

    def test_failing_listener_does_not_break_mutation(self, repository):
        def broken(_):
            raise RuntimeError("boom")

        repository.subscribe(broken)
        created = repository.create(make_entity())
        assert repository.get(created.id) is not None

    def test_sync_writes_do_not_notify(self, repository):
        created = repository.create(make_entity())
        seen = []
        repository.subscribe(seen.append)

        repository.mark_as_synced(created.id, "r-1")
        remote = Entity(id="r-2", remote_id="r-2", table="bookmarks", owner_id=OWNER,
                        payload={"title": "remote"}, updated_at=created.updated_at)
        repository.apply_remote(remote)
        repository.discard("r-2")

        assert seen == []


class TestSyncHelpers:

    def test_mark_as_synced_sets_remote_id_and_base(self, repository):
        created = repository.create(make_entity())
        synced = repository.mark_as_synced(created.id, "r-1", pushed_version=created.version)

        assert synced.remote_id == "r-1"
        assert synced.sync_status == SyncState.SYNCED
        assert synced.synced_payload == created.payload
        assert repository.find_by_remote_id("r-1").id == created.id

    def test_mark_as_synced_keeps_pending_when_changed_after_push(self, repository):
        created = repository.create(make_entity())
        version = created.version
        created.payload = {"title": "changed"}
        repository.update(created)

        synced = repository.mark_as_synced(created.id, "r-1", pushed_version=version)

        assert synced.remote_id == "r-1"
        assert synced.sync_status == SyncState.PENDING

    def test_get_pending_includes_tombstones(self, repository):
        kept = repository.create(make_entity("kept"))
        gone = repository.create(make_entity("gone"))
        repository.delete(gone.id)
        repository.mark_as_synced(kept.id, "r-1")

        assert [e.id for e in repository.get_pending()] == [gone.id]

    def test_resolve_conflict_turns_into_local_change(self, repository):
        created = repository.create(make_entity("local"))
        repository.mark_conflict(created.id, {"title": "remote"})
        seen = []
        repository.subscribe(seen.append)

        resolved = repository.resolve_conflict(created.id, {"title": "chosen"})

        assert resolved.sync_status == SyncState.PENDING
        assert resolved.payload == {"title": "chosen"}
        assert resolved.conflict_payload is None
        assert [n.operation for n in seen] == [SyncOperation.UPDATE]

    def test_resolve_conflict_requires_conflict(self, repository):
        created = repository.create(make_entity())
        with pytest.raises(ValidationError):
            repository.resolve_conflict(created.id, {})

    def test_apply_remote_without_created_at_can_be_ordered(self, repository):
        repository.create(make_entity("local"))
        remote = Entity(id="r-1", remote_id="r-1", table="bookmarks", owner_id=OWNER,
                        payload={"title": "remote"}, updated_at=utc_now())

        stored = repository.apply_remote(remote)
        ordered = repository.query(QueryCriteria(order_by="created_at"))

        assert stored.created_at == remote.updated_at
        assert [e.id for e in ordered][-1] == "r-1"

    def test_get_conflicts_lists_flagged_rows(self, repository):
        calm = repository.create(make_entity("calm"))
        flagged = repository.create(make_entity("flagged"))
        repository.mark_conflict(flagged.id, {"title": "remote"})

        assert [e.id for e in repository.get_conflicts()] == [flagged.id]
        assert calm.id not in [e.id for e in repository.get_conflicts()]

    def test_list_all_hides_tombstones(self, repository):
        kept = repository.create(make_entity("kept"))
        gone = repository.create(make_entity("gone"))
        repository.delete(gone.id)

        assert [e.id for e in repository.list_all()] == [kept.id]


class TestQuotaBackedStorage:

    def test_index_overflow_leaves_no_hidden_record(self):
        store = QuotaKVStore(MemoryKVStore())
        repository = LocalRepository(store, "bookmarks")

        with pytest.raises(ValidationError):
            for i in range(1000):
                repository.create(make_entity(str(i)))

        stored = store.list("bookmarks:entity:")
        assert len(stored) == len(repository.query())

    def test_oversized_record_is_rolled_back(self):
        store = QuotaKVStore(MemoryKVStore())
        repository = LocalRepository(store, "bookmarks")
        entity = make_entity(summary="x" * 9000)
        entity.id = "big"

        with pytest.raises(ValidationError):
            repository.create(entity)

        assert repository.get("big") is None
        assert repository.query() == []
        assert store.get("bookmarks:index") == []
