"""
Unit tests for restoring from the change log.

Tests cover:
- Status restore round trip (event, restore entry, displayed value)
- Pending drafts flushed before the restore applies
- Pending drafts discarded under the discard policy
- Failed restores leave the record unchanged
- Restoring a restore entry
- Multi-field restores
"""

import asyncio

import pytest

from collab.recsync_engine.config import PendingPolicy
from collab.recsync_engine.model import ActionType, Record, RestoreRequest, RestoreStatus
from collab.recsync_engine.schema import PARTICIPANT
from collab.recsync_engine.stores.memory import InMemoryChangeLogStore, InMemoryRecordStore
from collab.recsync_engine.sync.audit import AuditWriter
from collab.recsync_engine.sync.drafts import DraftBuffer
from collab.recsync_engine.sync.events import EventKind
from collab.recsync_engine.sync.restore import LogRestorer, RestoreEngine, RestoreState
from collab.recsync_engine.sync.scheduler import CoalescingScheduler
from collab.recsync_engine.sync.timer import ManualTimerFactory


class RestoreHarness:
    """Wires a buffer, scheduler and restore engine over in-memory stores."""

    def __init__(self, pending_policy=PendingPolicy.FLUSH):
        self.store = InMemoryRecordStore()
        self.change_log = InMemoryChangeLogStore()
        self.timers = ManualTimerFactory()
        self.buffer = DraftBuffer()
        self.events = []
        self.scheduler = CoalescingScheduler(
            self.buffer,
            self.store,
            AuditWriter(self.change_log, record_type=PARTICIPANT),
            actor_id="user:42",
            origin="session-1",
            timers=self.timers,
        )
        self.restorer = LogRestorer(self.store, self.change_log, record_type=PARTICIPANT)
        self.engine = RestoreEngine(
            self.restorer.restore_from_log,
            self.scheduler,
            self.buffer,
            self.change_log,
            actor_id="user:42",
            pending_policy=pending_policy,
            emit=self.events.append,
        )

    async def setup_record(self):
        record = await self.store.create(
            "P1", {"name": "홍길동", "call_status": "대기중", "memo": ""}, actor_id="admin"
        )
        self.buffer.load(record)

    def edit(self, field_name, value):
        self.buffer.set_field("P1", field_name, value)
        self.scheduler.schedule("P1", [field_name])

    async def commit(self, field_name, value):
        self.edit(field_name, value)
        result = await self.scheduler.flush("P1")
        assert result.success
        return result.log_entry

    def kinds(self):
        return [e.kind for e in self.events]


@pytest.fixture
async def harness():
    h = RestoreHarness()
    await h.setup_record()
    return h


class TestLogRestorer:
    """Tests for the restore primitive."""

    @pytest.mark.asyncio
    async def test_restore_writes_before_values(self, harness):
        entry = await harness.commit("memo", "VIP")

        result = await harness.restorer.restore_from_log(entry.entry_id, "user:9")

        assert result.success
        assert result.restored_field == "memo"
        assert result.new_value == ""
        assert result.previous_value == "VIP"
        assert (await harness.store.get("P1")).fields["memo"] == ""
        assert result.record.last_modified_by == "user:9"

        log_entry = result.log_entry
        assert log_entry.action_type == ActionType.RESTORE
        assert log_entry.actor_id == "user:9"
        assert log_entry.metadata == {"restored_from": entry.entry_id, "is_status": False}

    @pytest.mark.asyncio
    async def test_previous_value_is_read_with_the_write(self, harness):
        """A write that lands just before the restore is what the restore replaced."""
        entry = await harness.commit("call_status", "응답(참석)")
        harness.store.hold_updates()

        other = asyncio.create_task(
            harness.store.update("P1", {"call_status": "부재중"}, actor_id="user:7")
        )
        assert await harness.store.wait_for_in_flight(1)
        restore = asyncio.create_task(harness.restorer.restore_from_log(entry.entry_id, "user:9"))
        assert await harness.store.wait_for_in_flight(2)

        harness.store.release_updates()
        await other
        result = await restore

        assert result.success
        assert (await harness.store.get("P1")).fields["call_status"] == "대기중"
        assert result.previous_value == "부재중"
        assert result.log_entry.before_value == "부재중"

        again = await harness.restorer.restore_from_log(result.log_entry.entry_id, "user:9")
        assert again.new_value == "부재중"

    @pytest.mark.asyncio
    async def test_unknown_entry(self, harness):
        result = await harness.restorer.restore_from_log("missing", "user:9")

        assert result.status == RestoreStatus.ERROR
        assert result.record_id is None
        assert "missing" in result.error

    @pytest.mark.asyncio
    async def test_append_failure_is_reported(self, harness):
        entry = await harness.commit("memo", "VIP")
        harness.change_log.fail_next_append()

        result = await harness.restorer.restore_from_log(entry.entry_id, "user:9")

        assert result.success
        assert result.audit_error
        assert result.log_entry is None
        assert result.to_log_entry().metadata["restored_from"] == entry.entry_id


class TestRestoreEngine:
    """Tests for RestoreEngine.request_restore()."""

    @pytest.mark.asyncio
    async def test_status_restore(self, harness):
        """Restoring a status change brings the old status back everywhere."""
        entry = await harness.commit("call_status", "응답(참석)")
        assert entry.action_type == ActionType.STATUS_CHANGE

        result = await harness.engine.request_restore(entry.entry_id)

        assert result.success
        assert result.restored_status == "call_status"
        assert result.new_value == "대기중"
        assert result.previous_value == "응답(참석)"
        assert (await harness.store.get("P1")).fields["call_status"] == "대기중"
        assert harness.buffer.get_field("P1", "call_status") == "대기중"

        assert harness.kinds() == [EventKind.RESTORED, EventKind.STATUS_RESTORED]
        assert harness.events[0].message == "복원되었습니다"
        assert harness.events[1].detail["log_entry_id"] == result.log_entry.entry_id

        restore_entry = (await harness.change_log.list("P1", limit=1))[0]
        assert restore_entry.action_type == ActionType.RESTORE
        assert restore_entry.metadata["restored_from"] == entry.entry_id
        assert restore_entry.metadata["is_status"] is True

        op = harness.engine.operations[-1]
        assert op.states == [
            RestoreState.IDLE,
            RestoreState.REQUESTED,
            RestoreState.FLUSHING,
            RestoreState.APPLYING,
            RestoreState.COMMITTED,
        ]

    @pytest.mark.asyncio
    async def test_pending_draft_flushed_before_restore(self, harness):
        """A pending edit cannot overwrite the restored value afterwards."""
        entry = await harness.commit("call_status", "응답(참석)")
        harness.edit("call_status", "부재중")

        result = await harness.engine.request_restore(entry.entry_id)

        assert result.success
        assert result.previous_value == "부재중"

        harness.timers.fire_all()
        await harness.scheduler.wait_idle("P1")

        assert (await harness.store.get("P1")).fields["call_status"] == "대기중"
        assert not harness.buffer.is_dirty("P1")
        actions = [e.action_type for e in harness.change_log.all_entries()]
        assert actions == [ActionType.STATUS_CHANGE, ActionType.STATUS_CHANGE, ActionType.RESTORE]

    @pytest.mark.asyncio
    async def test_unrelated_pending_draft_survives(self, harness):
        entry = await harness.commit("call_status", "응답(참석)")
        harness.edit("memo", "VIP")

        await harness.engine.request_restore(entry.entry_id)

        assert harness.buffer.get_field("P1", "memo") == "VIP"
        harness.timers.fire_all()
        await harness.scheduler.wait_idle("P1")
        record = await harness.store.get("P1")
        assert record.fields == {"name": "홍길동", "call_status": "대기중", "memo": "VIP"}

    @pytest.mark.asyncio
    async def test_discard_policy(self):
        harness = RestoreHarness(pending_policy=PendingPolicy.DISCARD)
        await harness.setup_record()
        entry = await harness.commit("call_status", "응답(참석)")
        harness.edit("call_status", "부재중")
        updates_before = harness.store.update_count

        result = await harness.engine.request_restore(entry.entry_id)

        assert result.success
        assert harness.store.update_count == updates_before + 1
        assert harness.kinds()[0] == EventKind.DRAFTS_DISCARDED
        assert harness.events[0].fields == ("call_status",)
        assert harness.engine.operations[-1].discarded_fields == ["call_status"]
        assert harness.buffer.get_field("P1", "call_status") == "대기중"

    @pytest.mark.asyncio
    async def test_failed_restore_leaves_record_unchanged(self, harness):
        entry = await harness.commit("call_status", "응답(참석)")
        harness.store.fail_next_update()

        result = await harness.engine.request_restore(entry.entry_id)

        assert not result.success
        assert result.record_id == "P1"
        assert (await harness.store.get("P1")).fields["call_status"] == "응답(참석)"
        assert harness.kinds() == [EventKind.RESTORE_FAILED]
        assert harness.events[0].error.code == "RESTORE_ERROR"
        assert harness.engine.operations[-1].states[-2:] == [
            RestoreState.APPLYING,
            RestoreState.FAILED,
        ]

    @pytest.mark.asyncio
    async def test_failed_pre_flush_fails_restore(self, harness):
        entry = await harness.commit("call_status", "응답(참석)")
        harness.edit("call_status", "부재중")
        harness.store.fail_next_update()

        result = await harness.engine.request_restore(entry.entry_id)

        assert not result.success
        assert "Pending edits" in result.error
        assert (await harness.store.get("P1")).fields["call_status"] == "응답(참석)"
        assert harness.buffer.get_field("P1", "call_status") == "부재중"
        assert harness.buffer.is_dirty("P1", "call_status")
        assert harness.engine.operations[-1].states == [
            RestoreState.IDLE,
            RestoreState.REQUESTED,
            RestoreState.FLUSHING,
            RestoreState.FAILED,
        ]

    @pytest.mark.asyncio
    async def test_unknown_entry(self, harness):
        result = await harness.engine.request_restore("missing")

        assert not result.success
        assert result.record_id is None
        assert harness.engine.operations[-1].request == RestoreRequest("missing", "user:42")
        assert harness.kinds() == [EventKind.RESTORE_FAILED]
        assert harness.engine.operations[-1].states == [
            RestoreState.IDLE,
            RestoreState.REQUESTED,
            RestoreState.FAILED,
        ]

    @pytest.mark.asyncio
    async def test_restore_of_a_restore(self, harness):
        entry = await harness.commit("call_status", "응답(참석)")
        first = await harness.engine.request_restore(entry.entry_id)

        second = await harness.engine.request_restore(first.log_entry.entry_id)

        assert second.success
        assert second.is_status
        assert (await harness.store.get("P1")).fields["call_status"] == "응답(참석)"

    @pytest.mark.asyncio
    async def test_multi_field_restore(self, harness):
        harness.edit("memo", "VIP")
        harness.edit("phone", "010-1234-5678")
        flushed = await harness.scheduler.flush("P1")

        result = await harness.engine.request_restore(flushed.log_entry.entry_id)

        assert result.success
        assert not result.is_status
        assert result.new_value == {"memo": "", "phone": None}
        record = await harness.store.get("P1")
        assert record.fields["memo"] == ""
        assert record.fields["phone"] is None
        assert harness.kinds() == [EventKind.RESTORED]

    @pytest.mark.asyncio
    async def test_restore_audit_failure_emits_audit_missing(self, harness):
        entry = await harness.commit("memo", "VIP")
        harness.change_log.fail_next_append()

        result = await harness.engine.request_restore(entry.entry_id)

        assert result.success
        assert harness.kinds() == [EventKind.RESTORED, EventKind.AUDIT_MISSING]

    @pytest.mark.asyncio
    async def test_custom_primitive(self, harness):
        """The engine only relies on the primitive's result."""
        entry = await harness.commit("memo", "VIP")
        calls = []

        async def primitive(entry_id, actor_id):
            calls.append((entry_id, actor_id))
            return await harness.restorer.restore_from_log(entry_id, actor_id)

        harness.engine.restore = primitive
        result = await harness.engine.request_restore(entry.entry_id)

        assert result.success
        assert calls == [(entry.entry_id, "user:42")]

    @pytest.mark.asyncio
    async def test_restore_of_unloaded_record(self, harness):
        entry = await harness.commit("memo", "VIP")
        harness.buffer.drop("P1")

        result = await harness.engine.request_restore(entry.entry_id)

        assert result.success
        assert not harness.buffer.is_loaded("P1")
        assert result.record == Record(
            "P1",
            {"name": "홍길동", "call_status": "대기중", "memo": ""},
            version=result.record.version,
            last_modified_by="user:42",
            last_modified_at=result.record.last_modified_at,
        )
