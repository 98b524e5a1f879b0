import asyncio
import json
from datetime import timedelta

import pytest

from conftest import T0, make_record
from services.tracking.models import (
    ACTION_ARCHIVE_CHAT,
    ACTION_CREATE_CHAT,
    SNAPSHOT_SCHEMA_VERSION,
    StreamRecord,
    StreamStatus,
)
from shared.errors import StateCorruption
from shared.storage.state_publisher import SnapshotWriter
from shared.storage.state_store import StreamStateStore

pytestmark = pytest.mark.unit


def test_upsert_writes_through(store, state_path):
    store.upsert(make_record("a"))

    data = json.loads(state_path.read_text(encoding="utf-8"))
    assert data["schema_version"] == SNAPSHOT_SCHEMA_VERSION
    assert data["streams"]["a"]["status"] == "scheduled"


def test_upsert_without_persist_defers_until_flush(store, state_path):
    store.upsert(make_record("a"), persist=False)
    assert not state_path.exists()

    store.flush()
    assert "a" in json.loads(state_path.read_text(encoding="utf-8"))["streams"]


def test_upsert_refuses_to_leave_terminal_status(store):
    store.upsert(make_record("a", StreamStatus.ENDED))
    with pytest.raises(ValueError):
        store.upsert(make_record("a", StreamStatus.LIVE))


def test_snapshot_round_trip_keeps_markers(state_path):
    store = StreamStateStore(state_path)
    record = make_record(
        "a",
        StreamStatus.ENDED,
        title="Karaoke",
        chat_channel_id="123",
        alert_message_id="456",
        archived=True,
        end_notice_sent=True,
        logs_exported=True,
        schedule_alert_for=T0,
        rescheduled_from=T0 - timedelta(hours=1),
        failed_actions=frozenset({ACTION_CREATE_CHAT}),
    )
    store.upsert(record)

    restored = StreamStateStore(state_path)
    assert restored.load() == 1
    assert restored.get("a") == record


def test_record_from_dict_rejects_garbage():
    with pytest.raises(StateCorruption):
        StreamRecord.from_dict({"id": "a", "talent_id": "t", "status": "exploded"})
    with pytest.raises(StateCorruption):
        StreamRecord.from_dict({"talent_id": "t", "status": "live"})
    with pytest.raises(StateCorruption):
        StreamRecord.from_dict("not a record")


def test_restore_drops_corrupted_records(store):
    good = make_record("good").to_dict()
    count = store.restore({
        "schema_version": SNAPSHOT_SCHEMA_VERSION,
        "streams": {
            "good": good,
            "bad-status": {"id": "bad-status", "talent_id": "t", "status": "??"},
            "bad-time": {**make_record("bad-time").to_dict(), "scheduled_start": "yesterday"},
            "wrong-key": make_record("other").to_dict(),
        },
    })

    assert count == 1
    assert store.tracked_ids() == ["good"]


def test_load_survives_unreadable_file(state_path):
    state_path.parent.mkdir(parents=True, exist_ok=True)
    state_path.write_text("{not json", encoding="utf-8")

    store = StreamStateStore(state_path)
    assert store.load() == 0
    assert len(store) == 0


def test_load_with_no_file_starts_empty(store):
    assert store.load() == 0


def test_snapshot_writer_mirror(tmp_path):
    writer = SnapshotWriter(tmp_path / "main.json", mirror_path=tmp_path / "mirror" / "copy.json")
    writer.write({"hello": "world"})

    assert json.loads((tmp_path / "mirror" / "copy.json").read_text()) == {"hello": "world"}
    assert writer.read() == {"hello": "world"}


@pytest.mark.asyncio
async def test_mutate_applies_under_lock_and_persists(store, state_path):
    store.upsert(make_record("a", StreamStatus.LIVE))

    updated = await store.mutate("a", lambda r: r.evolve(chat_channel_id="777"))

    assert updated.chat_channel_id == "777"
    on_disk = json.loads(state_path.read_text(encoding="utf-8"))
    assert on_disk["streams"]["a"]["chat_channel_id"] == "777"


@pytest.mark.asyncio
async def test_mutate_returning_none_leaves_store_untouched(store):
    record = make_record("a")
    store.upsert(record)

    assert await store.mutate("a", lambda r: None) == record
    assert await store.mutate("missing", lambda r: None) is None


@pytest.mark.asyncio
async def test_concurrent_mutations_do_not_lose_updates(store):
    store.upsert(make_record("a", StreamStatus.LIVE))

    async def set_chat():
        await asyncio.sleep(0)
        await store.mutate("a", lambda r: r.evolve(chat_channel_id="c"))

    async def set_alert():
        await asyncio.sleep(0)
        await store.mutate("a", lambda r: r.evolve(alert_message_id="m"))

    await asyncio.gather(set_chat(), set_alert())

    record = store.get("a")
    assert record.chat_channel_id == "c"
    assert record.alert_message_id == "m"


def test_needs_reconciliation(store):
    store.upsert(make_record("live-bare", StreamStatus.LIVE))
    store.upsert(make_record("live-done", StreamStatus.LIVE, chat_channel_id="c", alert_message_id="m"))
    store.upsert(make_record("live-no-alert", StreamStatus.LIVE, chat_channel_id="c"))
    store.upsert(make_record("ended-unarchived", StreamStatus.ENDED, chat_channel_id="c"))
    store.upsert(make_record("ended-archived", StreamStatus.ENDED, chat_channel_id="c", archived=True))
    store.upsert(make_record("ended-no-chat", StreamStatus.ENDED))
    store.upsert(make_record(
        "ended-failed",
        StreamStatus.ENDED,
        chat_channel_id="c",
        failed_actions=frozenset({ACTION_ARCHIVE_CHAT}),
    ))
    store.upsert(make_record("scheduled", StreamStatus.SCHEDULED))
    moved = T0 + timedelta(hours=1)
    store.upsert(make_record("scheduled-owed", scheduled_start=moved, rescheduled_from=T0))
    store.upsert(make_record(
        "scheduled-alerted",
        scheduled_start=moved,
        rescheduled_from=T0,
        schedule_alert_for=moved,
    ))

    pending = {r.id for r in store.needs_reconciliation(chat_enabled=True, alerts_enabled=True)}
    assert pending == {"live-bare", "live-no-alert", "ended-unarchived", "scheduled-owed"}

    pending = {r.id for r in store.needs_reconciliation(chat_enabled=True, alerts_enabled=False)}
    assert pending == {"live-bare", "ended-unarchived"}


def test_prune_drops_finished_records_past_retention(state_path):
    store = StreamStateStore(state_path, retention=timedelta(hours=1))
    old = T0 - timedelta(hours=2)

    store.upsert(make_record("archived", StreamStatus.ENDED, chat_channel_id="c", archived=True, last_seen_at=old))
    store.upsert(make_record("unarchived", StreamStatus.ENDED, chat_channel_id="c", last_seen_at=old))
    store.upsert(make_record("missing", StreamStatus.MISSING, last_seen_at=old))
    store.upsert(make_record("missing-chat", StreamStatus.MISSING, chat_channel_id="c", last_seen_at=old))
    store.upsert(make_record("missing-alert", StreamStatus.MISSING, alert_message_id="m", last_seen_at=old))
    store.upsert(make_record("live", StreamStatus.LIVE, last_seen_at=old))
    store.upsert(make_record("fresh", StreamStatus.ENDED, last_seen_at=T0))

    removed = store.prune(T0)

    assert sorted(removed) == ["archived", "missing"]
    assert sorted(store.tracked_ids()) == ["fresh", "live", "missing-alert", "missing-chat", "unarchived"]


def test_prune_evicts_least_recently_seen_over_cap(state_path):
    store = StreamStateStore(state_path, retention=timedelta(days=30), max_records=3)

    for i in range(4):
        store.upsert(make_record(f"done{i}", StreamStatus.ENDED, last_seen_at=T0 + timedelta(minutes=i)))
    store.upsert(make_record("live", StreamStatus.LIVE, last_seen_at=T0 - timedelta(days=1)))

    removed = store.prune(T0 + timedelta(hours=1))

    assert removed == ["done0", "done1"]
    assert "live" in store


def test_missing_record_with_posted_markers_survives_cap(state_path):
    store = StreamStateStore(state_path, retention=timedelta(days=30), max_records=1)
    store.upsert(make_record("vanished", StreamStatus.MISSING, chat_channel_id="c", last_seen_at=T0))
    store.upsert(make_record("done", StreamStatus.ENDED, last_seen_at=T0))

    assert store.prune(T0 + timedelta(days=60)) == ["done"]
    assert "vanished" in store


def test_record_from_dict_rejects_non_bool_markers():
    with pytest.raises(StateCorruption):
        StreamRecord.from_dict({"id": "a", "talent_id": "t", "status": "ended", "logs_exported": "yes"})
