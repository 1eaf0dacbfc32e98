"""
Unit tests for the audit writer and change history.
"""

import pytest

from collab.recsync_engine.errors import AuditError
from collab.recsync_engine.model import ActionType, ChangeLogEntry
from collab.recsync_engine.schema import PARTICIPANT
from collab.recsync_engine.stores.memory import InMemoryChangeLogStore
from collab.recsync_engine.sync.audit import AuditWriter, describe


class TestAuditWriter:
    """Tests for AuditWriter."""

    @pytest.fixture
    def change_log(self):
        return InMemoryChangeLogStore()

    @pytest.fixture
    def writer(self, change_log):
        return AuditWriter(change_log, record_type=PARTICIPANT, page_size=2)

    def test_classify(self, writer):
        assert writer.classify({"call_status": "대기중"}) == ActionType.STATUS_CHANGE
        assert writer.classify({"memo": "x"}) == ActionType.FIELD_UPDATE
        assert (
            writer.classify({"call_status": "대기중", "memo": "x"}) == ActionType.FIELD_UPDATE
        )

    def test_classify_without_record_type(self, change_log):
        assert AuditWriter(change_log).classify({"call_status": "x"}) == ActionType.FIELD_UPDATE

    @pytest.mark.asyncio
    async def test_record_change_appends(self, writer, change_log):
        entry = await writer.record_change(
            "P1",
            None,
            {"call_status": "대기중"},
            {"call_status": "응답(참석)"},
            "user:42",
            metadata={"flush_id": "f1"},
        )

        assert entry.action_type == ActionType.STATUS_CHANGE
        stored = await writer.get(entry.entry_id)
        assert stored.before_value == "대기중"
        assert stored.metadata == {"flush_id": "f1"}
        assert change_log.count("P1") == 1

    @pytest.mark.asyncio
    async def test_record_change_restricted_fields(self, writer):
        entry = await writer.record_change(
            "P1",
            ActionType.FIELD_UPDATE,
            {"memo": "", "phone": "010"},
            {"memo": "VIP", "phone": "011"},
            "user:42",
            fields=["phone"],
        )
        assert entry.fields == ("phone",)
        assert entry.before_value == "010"

    @pytest.mark.asyncio
    async def test_record_change_needs_a_field(self, writer):
        with pytest.raises(ValueError):
            await writer.record_change("P1", None, {}, {}, "user:42")

    @pytest.mark.asyncio
    async def test_append_failure_raises_audit_error(self, writer, change_log):
        change_log.fail_next_append()

        with pytest.raises(AuditError) as exc_info:
            await writer.record_change("P1", None, {"memo": ""}, {"memo": "x"}, "user:42")

        assert exc_info.value.record_id == "P1"
        assert exc_info.value.action_type == "field_update"
        assert change_log.count() == 0


class TestChangeHistory:
    """Tests for ChangeHistory paging."""

    @pytest.fixture
    async def writer(self):
        writer = AuditWriter(InMemoryChangeLogStore(), record_type=PARTICIPANT, page_size=2)
        for i in range(5):
            await writer.record_change("P1", None, {"memo": str(i)}, {"memo": str(i + 1)}, "u")
        await writer.record_change("P2", None, {"memo": ""}, {"memo": "other"}, "u")
        return writer

    @pytest.mark.asyncio
    async def test_pages_through_everything(self, writer):
        values = [entry.after_value async for entry in writer.history("P1")]
        assert values == ["5", "4", "3", "2", "1"]

    @pytest.mark.asyncio
    async def test_first(self, writer):
        entries = await writer.history("P1").first(3)
        assert [e.after_value for e in entries] == ["5", "4", "3"]
        assert await writer.history("P1").first(0) == []

    @pytest.mark.asyncio
    async def test_iteration_restarts_and_sees_new_entries(self, writer):
        history = writer.history("P1")
        first_pass = [e.entry_id async for e in history]

        await writer.record_change("P1", None, {"memo": "5"}, {"memo": "6"}, "u")
        second_pass = [e.entry_id async for e in history]

        assert len(second_pass) == len(first_pass) + 1
        assert second_pass[1:] == first_pass

    @pytest.mark.asyncio
    async def test_empty_history(self, writer):
        assert [e async for e in writer.history("P9")] == []


class TestDescribe:
    """Tests for describe()."""

    def test_status_change(self):
        entry = ChangeLogEntry.from_patches(
            "P1", ActionType.STATUS_CHANGE, {"call_status": "대기중"}, {"call_status": "응답(참석)"}, "u"
        )
        description = describe(entry)
        assert description.label == "상태 변경"
        assert description.variant == "default"
        assert description.summary == "call_status: 대기중 → 응답(참석)"

    def test_empty_values(self):
        entry = ChangeLogEntry.from_patches(
            "P1", ActionType.FIELD_UPDATE, {"memo": None, "phone": ""}, {"memo": "VIP", "phone": "010"}, "u"
        )
        assert describe(entry).summary == "memo: (없음) → VIP; phone: (없음) → 010"

    def test_restore(self):
        entry = ChangeLogEntry.from_patches(
            "P1",
            ActionType.RESTORE,
            {"child_ages": ["3", "5"]},
            {"child_ages": ["3"]},
            "u",
            metadata={"restored_from": "e1"},
        )
        description = describe(entry)
        assert description.label == "복원"
        assert description.summary == "child_ages: 3, 5 → 3 (기록 e1에서 복원)"
