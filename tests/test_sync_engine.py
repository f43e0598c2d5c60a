# tests/test_sync_engine.py

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from shared_todo.tasks.change_feed import ChangeEvent, EventKind
from shared_todo.tasks.errors import TransportError, ValidationError
from shared_todo.tasks.sync_engine import SyncEngine, WriteOp
from shared_todo.tasks.task_models import TaskStatus, task_to_record

from .fakes import FakeCelebrations, FakeClock, make_task, ts


def _record(task_id: str, *, title: str, updated: float, **kw) -> dict:
    return task_to_record(make_task(task_id, title=title, updated=updated, **kw))


@pytest.fixture()
def loaded(engine: SyncEngine) -> SyncEngine:
    engine.load([make_task("a"), make_task("b", title="Order parts")])
    return engine


def test_waiting_on_then_done_clears_link_in_one_write(loaded: SyncEngine, celebrations: FakeCelebrations) -> None:
    first = loaded.apply_local_mutation("a", {"status": "WaitingOn", "waiting_for_task_id": "b"})
    assert first.task is not None
    assert first.task.status is TaskStatus.WAITING_ON
    assert first.task.waiting_for_task_id == "b"

    second = loaded.apply_local_mutation("a", {"status": "Done"})
    assert second.task is not None
    assert second.task.status is TaskStatus.DONE
    assert second.task.waiting_for_task_id is None
    assert second.celebrate

    intents = loaded.take_write_intents()
    assert [i.op for i in intents] == [WriteOp.UPDATE, WriteOp.UPDATE]
    assert intents[1].fields["status"] == "Done"
    assert "waiting_for_task_id" in intents[1].fields
    assert intents[1].fields["waiting_for_task_id"] is None
    assert [t.id for t in celebrations.celebrated] == ["a"]


def test_self_reference_is_rejected_and_task_unchanged(loaded: SyncEngine) -> None:
    before = loaded.get("a")
    with pytest.raises(ValidationError):
        loaded.apply_local_mutation("a", {"waiting_for_task_id": "a"})
    assert loaded.get("a") is before
    assert not loaded.has_pending_writes


def test_unknown_dependency_is_rejected(loaded: SyncEngine) -> None:
    with pytest.raises(ValidationError):
        loaded.apply_local_mutation("a", {"status": "WaitingOn", "waiting_for_task_id": "nope"})
    assert loaded.get("a").status is TaskStatus.OPEN


def test_waiting_on_without_target_keeps_prior_status(loaded: SyncEngine) -> None:
    res = loaded.apply_local_mutation("a", {"status": TaskStatus.WAITING_ON})
    assert res.awaiting_target
    assert res.intent is None
    assert loaded.get("a").status is TaskStatus.OPEN
    assert loaded.is_awaiting_target("a")

    done = loaded.apply_local_mutation("a", {"waiting_for_task_id": "b"})
    assert done.task.status is TaskStatus.WAITING_ON
    assert done.task.waiting_for_task_id == "b"
    assert not loaded.is_awaiting_target("a")


def test_local_mutation_returns_view_and_bumps_updated_at(loaded: SyncEngine) -> None:
    res = loaded.apply_local_mutation("a", {"title": "Call plumber", "description": "after 5pm"})
    assert res.task.updated_at == ts(100)
    assert res.view.find("a").task.title == "Call plumber"
    assert res.intent.fields["description"] == "after 5pm"
    assert res.intent.issued_at == ts(100)


def test_noop_patch_queues_nothing(loaded: SyncEngine) -> None:
    res = loaded.apply_local_mutation("a", {"status": "Open"})
    assert res.intent is None
    assert not loaded.has_pending_writes


def test_mutation_of_unknown_task_is_a_noop(loaded: SyncEngine) -> None:
    res = loaded.apply_local_mutation("ghost", {"title": "x"})
    assert res.task is None
    assert not res.applied
    assert set(loaded.tasks) == {"a", "b"}


@pytest.mark.parametrize("order", [(10, 20), (20, 10)])
def test_conflicting_updates_reconcile_to_newest(loaded: SyncEngine, order: tuple[int, int]) -> None:
    payload = {10: "older", 20: "newer"}
    for stamp in order:
        loaded.on_remote_event(EventKind.UPDATED, _record("a", title=payload[stamp], updated=stamp))

    task = loaded.get("a")
    assert task.title == "newer"
    assert task.updated_at == ts(20)


def test_equal_timestamps_latest_arrival_wins(loaded: SyncEngine) -> None:
    loaded.on_remote_event("Updated", _record("a", title="first", updated=20))
    loaded.on_remote_event("Updated", _record("a", title="second", updated=20))
    assert loaded.get("a").title == "second"


def test_deleted_twice_is_idempotent(loaded: SyncEngine) -> None:
    loaded.on_remote_event(EventKind.DELETED, {"id": "b"})
    snapshot = dict(loaded.tasks)

    assert loaded.on_remote_event(EventKind.DELETED, {"id": "b"}) is None
    assert dict(loaded.tasks) == snapshot
    assert loaded.is_retired("b")


def test_remote_delete_leaves_dangling_link(loaded: SyncEngine) -> None:
    loaded.apply_local_mutation("a", {"status": "WaitingOn", "waiting_for_task_id": "b"})
    loaded.on_remote_event(EventKind.DELETED, {"id": "b"})

    a = loaded.get("a")
    assert a.status is TaskStatus.WAITING_ON
    assert a.waiting_for_task_id == "b"

    row = loaded.current_view().find("a")
    assert row is not None
    assert row.dependency is None


def test_deleted_ids_are_never_resurrected(loaded: SyncEngine) -> None:
    loaded.on_remote_event(EventKind.DELETED, {"id": "b"})
    assert loaded.on_remote_event(EventKind.UPDATED, _record("b", title="late", updated=500)) is None
    assert loaded.on_remote_event(EventKind.CREATED, _record("b", title="again", updated=600)) is None
    assert "b" not in loaded.tasks

    # a delete for an id we never saw still retires it
    loaded.on_remote_event(EventKind.DELETED, "zzz")
    assert loaded.on_remote_event(EventKind.CREATED, _record("zzz", title="z", updated=1)) is None


def test_updated_may_overtake_created(loaded: SyncEngine) -> None:
    loaded.on_remote_event(EventKind.UPDATED, _record("c", title="second", updated=30))
    loaded.on_remote_event(EventKind.CREATED, _record("c", title="first", updated=10))
    assert loaded.get("c").title == "second"


def test_updated_at_never_decreases(loaded: SyncEngine) -> None:
    seen = [loaded.get("a").updated_at]

    res = loaded.apply_local_mutation("a", {"title": "L1"})
    seen.append(loaded.get("a").updated_at)

    loaded.on_remote_event(EventKind.UPDATED, _record("a", title="stale", updated=50))
    seen.append(loaded.get("a").updated_at)

    loaded.on_write_acknowledged("a", task_to_record(res.task), issued_at=res.intent.issued_at)
    seen.append(loaded.get("a").updated_at)

    loaded.on_remote_event(EventKind.UPDATED, _record("a", title="R-new", updated=200))
    seen.append(loaded.get("a").updated_at)

    loaded.apply_local_mutation("a", {"title": "L2"})
    seen.append(loaded.get("a").updated_at)

    assert seen == sorted(seen)
    assert seen[-1] == ts(200) + timedelta(microseconds=1)
    assert loaded.get("a").title == "L2"


def test_ack_replaces_optimistic_snapshot(loaded: SyncEngine) -> None:
    res = loaded.apply_local_mutation("a", {"title": "Local"})
    server = task_to_record(replace(res.task, description="normalized by store"))

    adopted = loaded.on_write_acknowledged("a", server, issued_at=res.intent.issued_at)
    assert adopted is not None
    assert adopted.description == "normalized by store"
    assert loaded.get("a") == adopted


def test_stale_ack_does_not_override_newer_local_mutation(loaded: SyncEngine) -> None:
    one = loaded.apply_local_mutation("a", {"title": "one"})
    two = loaded.apply_local_mutation("a", {"title": "two"})

    loaded.on_write_acknowledged("a", task_to_record(one.task), issued_at=one.intent.issued_at)
    assert loaded.get("a").title == "two"

    loaded.on_write_acknowledged("a", task_to_record(two.task), issued_at=two.intent.issued_at)
    assert loaded.get("a").title == "two"
    assert loaded.get("a").updated_at == two.task.updated_at


def test_ack_with_coarse_timestamp_keeps_updated_at(alice, bob) -> None:
    engine = SyncEngine(users=[alice, bob], clock=FakeClock(start=ts(100.5)))
    engine.load([make_task("a")])
    res = engine.apply_local_mutation("a", {"title": "Local"})

    coarse = task_to_record(res.task)
    coarse["updated_at"] = "2024-05-01T12:01:40+00:00"
    adopted = engine.on_write_acknowledged("a", coarse, issued_at=res.intent.issued_at)

    assert adopted.title == "Local"
    assert adopted.updated_at == ts(100.5)


def test_newer_remote_write_beats_late_ack(loaded: SyncEngine) -> None:
    res = loaded.apply_local_mutation("a", {"title": "mine"})
    loaded.on_remote_event(EventKind.UPDATED, _record("a", title="theirs", updated=300))

    loaded.on_write_acknowledged("a", task_to_record(res.task), issued_at=res.intent.issued_at)
    assert loaded.get("a").title == "theirs"


def test_ack_for_deleted_task_is_ignored(loaded: SyncEngine) -> None:
    res = loaded.apply_local_mutation("a", {"title": "x"})
    loaded.on_remote_event(EventKind.DELETED, {"id": "a"})
    assert loaded.on_write_acknowledged("a", task_to_record(res.task)) is None
    assert "a" not in loaded.tasks


def test_remote_record_cannot_change_owner(loaded: SyncEngine) -> None:
    rec = _record("a", title="hijack", updated=50, owner_id="u-bob")
    merged = loaded.on_remote_event(EventKind.UPDATED, rec)
    assert merged.title == "hijack"
    assert merged.owner_id == "u-alice"


def test_create_and_delete_task(engine: SyncEngine) -> None:
    created = engine.create_task("  Buy milk ", "u-alice")
    task = created.task
    assert task.title == "Buy milk"
    assert task.status is TaskStatus.OPEN
    assert created.intent.op is WriteOp.INSERT
    assert created.intent.fields["owner_id"] == "u-alice"

    with pytest.raises(ValidationError):
        engine.create_task("", "u-alice")
    with pytest.raises(ValidationError):
        engine.create_task("Orphan", "u-nobody")

    removed = engine.delete_task(task.id)
    assert removed.intent.op is WriteOp.DELETE
    assert task.id not in engine.tasks
    assert engine.is_retired(task.id)
    assert not engine.apply_local_mutation(task.id, {"title": "late"}).applied
    assert not engine.delete_task(task.id).applied


def test_inbox_drains_and_skips_malformed_events(loaded: SyncEngine) -> None:
    loaded.post_remote_event(ChangeEvent(EventKind.UPDATED, "tasks", _record("a", title="via inbox", updated=40)))
    loaded.post_remote_event(ChangeEvent(EventKind.UPDATED, "tasks", {}))
    loaded.post_remote_event(
        ChangeEvent(EventKind.CREATED, "users", {"id": "u-carol", "name": "Carol", "created_at": "2024-05-01T00:00:00Z"})
    )

    assert loaded.drain_inbox() == 2
    assert loaded.get("a").title == "via inbox"
    assert loaded.find_user_by_name("carol") is not None


def test_failed_write_keeps_optimistic_state(loaded: SyncEngine) -> None:
    res = loaded.apply_local_mutation("a", {"title": "offline edit"})
    loaded.take_write_intents()

    loaded.on_write_failed(res.intent, TransportError("boom"))
    assert loaded.get("a").title == "offline edit"
    assert len(loaded.failed_writes) == 1
    assert loaded.failed_writes[0].error == "boom"

    assert loaded.retry_failed() == 1
    assert loaded.has_pending_writes
    assert loaded.failed_writes == []


def test_remote_user_update_only_changes_picture(engine: SyncEngine) -> None:
    engine.on_remote_user_event(
        EventKind.UPDATED,
        {"id": "u-alice", "name": "Mallory", "profile_pic_url": "https://pics/new.png", "created_at": "2030-01-01T00:00:00Z"},
    )
    alice = engine.users["u-alice"]
    assert alice.name == "Alice"
    assert alice.profile_pic_url == "https://pics/new.png"

    engine.on_remote_user_event(EventKind.DELETED, {"id": "u-bob"})
    assert "u-bob" not in engine.users


def test_add_user_rejects_duplicate_names(engine: SyncEngine) -> None:
    carol = engine.add_user("Carol", "https://i.pravatar.cc/64?u=Carol")
    assert engine.find_user_by_name("CAROL") == carol
    with pytest.raises(ValidationError):
        engine.add_user("carol")
    intents = engine.take_write_intents()
    assert intents[-1].entity_kind == "users"


def test_retry_resends_insert_with_current_record(engine: SyncEngine) -> None:
    created = engine.create_task("first", "u-alice")
    insert = engine.take_write_intents()[0]
    engine.on_write_failed(insert, TransportError("offline"))

    edited = engine.apply_local_mutation(created.task.id, {"title": "edited"})
    engine.take_write_intents()

    assert engine.retry_failed() == 1
    (retried,) = engine.take_write_intents()
    assert retried.op is WriteOp.INSERT
    assert retried.fields["title"] == "edited"
    assert retried.issued_at == edited.task.updated_at
