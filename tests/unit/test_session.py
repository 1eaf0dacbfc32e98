"""
Unit tests for EditingSession.

Tests cover:
- View lifecycle and edits outside a view
- Validation before anything is scheduled
- Status changes flushed immediately
- Session events for saves, failures and missing audit entries
- Closing views and sessions (flush or visible discard)
"""

import asyncio

import pytest

from collab.recsync_engine.config import EngineConfig, SchedulerConfig
from collab.recsync_engine.errors import (
    PersistenceError,
    RecordNotFoundError,
    UnknownFieldError,
    ValidationError,
    ViewNotOpenError,
)
from collab.recsync_engine.model import Confirmed, Failed, Pending
from collab.recsync_engine.schema import PARTICIPANT
from collab.recsync_engine.stores.memory import InMemoryChangeLogStore, InMemoryRecordStore
from collab.recsync_engine.sync.events import EventKind
from collab.recsync_engine.sync.scheduler import FlushState
from collab.recsync_engine.sync.session import EditingSession
from collab.recsync_engine.sync.timer import ManualTimerFactory


class TestEditingSession:
    """Tests for EditingSession."""

    @pytest.fixture
    def store(self):
        return InMemoryRecordStore()

    @pytest.fixture
    def change_log(self):
        return InMemoryChangeLogStore()

    @pytest.fixture
    def timers(self):
        return ManualTimerFactory()

    @pytest.fixture
    async def session(self, store, change_log, timers):
        await store.create(
            "P1", {"name": "홍길동", "call_status": "대기중", "memo": ""}, actor_id="admin"
        )
        session = EditingSession(
            store,
            change_log,
            "user:42",
            record_type=PARTICIPANT,
            timers=timers,
            session_id="s1",
        )
        await session.start()
        yield session
        await session.close()

    @pytest.fixture
    def events(self, session):
        received = []
        session.add_listener(received.append)
        return received

    @pytest.mark.asyncio
    async def test_open_view_returns_snapshot(self, session):
        snapshot = await session.open_view("P1")

        assert snapshot["call_status"] == "대기중"
        assert session.is_open("P1")
        assert session.open_views == ["P1"]

    @pytest.mark.asyncio
    async def test_open_missing_record(self, session):
        with pytest.raises(RecordNotFoundError):
            await session.open_view("P9")
        assert not session.is_open("P9")

    @pytest.mark.asyncio
    async def test_edit_requires_view(self, session):
        with pytest.raises(ViewNotOpenError):
            session.edit("P1", "memo", "x")

    @pytest.mark.asyncio
    async def test_edit_is_visible_immediately(self, session, store):
        await session.open_view("P1")

        value = session.edit("P1", "phone", " 010-1234-5678 ")

        assert value == "010-1234-5678"
        assert session.current_value("P1", "phone") == "010-1234-5678"
        assert isinstance(session.draft_state("P1", "phone"), Pending)
        assert session.scheduler.state("P1") == FlushState.DIRTY
        assert "phone" not in store.peek("P1").fields

    @pytest.mark.asyncio
    async def test_invalid_edit_schedules_nothing(self, session):
        await session.open_view("P1")

        with pytest.raises(ValidationError):
            session.edit("P1", "call_status", "몰라요")
        with pytest.raises(UnknownFieldError):
            session.edit("P1", "call_stauts", "대기중")

        assert not session.is_dirty("P1")
        assert session.scheduler.state("P1") == FlushState.IDLE

    @pytest.mark.asyncio
    async def test_quiet_period_flush_emits_saved(self, session, store, timers, events):
        await session.open_view("P1")
        session.edit("P1", "memo", "VIP")

        timers.advance(500)
        await session.scheduler.wait_idle("P1")

        assert store.peek("P1").fields["memo"] == "VIP"
        assert session.draft_state("P1", "memo") == Confirmed("VIP")
        assert [e.kind for e in events] == [EventKind.SAVED]
        assert events[0].message == "저장되었습니다"
        assert events[0].fields == ("memo",)

    @pytest.mark.asyncio
    async def test_set_status_flushes_now(self, session, store, change_log):
        await session.open_view("P1")

        result = await session.set_status("P1", "call_status", "응답(참석)")

        assert result.success
        assert store.peek("P1").fields["call_status"] == "응답(참석)"
        entries = await session.change_history("P1").first(10)
        assert entries[0].action_type.value == "status_change"

    @pytest.mark.asyncio
    async def test_set_status_rejects_plain_field(self, session):
        await session.open_view("P1")
        with pytest.raises(ValidationError, match="not a status field"):
            await session.set_status("P1", "memo", "x")

    @pytest.mark.asyncio
    async def test_failed_flush_event_and_retry(self, session, store, events):
        await session.open_view("P1")
        session.edit("P1", "memo", "VIP")
        store.fail_next_update()

        result = await session.flush("P1")

        assert not result.success
        assert isinstance(session.draft_state("P1", "memo"), Failed)
        assert session.current_value("P1", "memo") == "VIP"
        assert events[-1].kind == EventKind.FLUSH_FAILED
        assert events[-1].message == "저장 중 오류가 발생했습니다."
        assert isinstance(events[-1].error, PersistenceError)

        retried = await session.retry("P1")

        assert retried.success
        assert events[-1].kind == EventKind.SAVED

    @pytest.mark.asyncio
    async def test_audit_missing_event(self, session, change_log, events):
        await session.open_view("P1")
        session.edit("P1", "memo", "VIP")
        change_log.fail_next_append()

        await session.flush("P1")

        assert [e.kind for e in events] == [EventKind.SAVED, EventKind.AUDIT_MISSING]

    @pytest.mark.asyncio
    async def test_discard(self, session, events):
        await session.open_view("P1")
        session.edit("P1", "memo", "VIP")

        assert session.discard("P1") == ["memo"]

        assert session.current_value("P1", "memo") == ""
        assert events[-1].kind == EventKind.DRAFTS_DISCARDED
        assert events[-1].detail["reason"] == "discarded"

    @pytest.mark.asyncio
    async def test_close_view_flushes(self, session, store):
        await session.open_view("P1")
        session.edit("P1", "memo", "VIP")

        result = await session.close_view("P1")

        assert result.success
        assert store.peek("P1").fields["memo"] == "VIP"
        assert not session.is_open("P1")

    @pytest.mark.asyncio
    async def test_close_view_keeps_view_on_failure(self, session, store):
        await session.open_view("P1")
        session.edit("P1", "memo", "VIP")
        store.fail_next_update()

        result = await session.close_view("P1")

        assert not result.success
        assert session.is_open("P1")
        assert session.current_value("P1", "memo") == "VIP"

    @pytest.mark.asyncio
    async def test_close_view_discard(self, session, store, events):
        await session.open_view("P1")
        session.edit("P1", "memo", "VIP")

        assert await session.close_view("P1", discard=True) is None

        assert store.update_count == 0
        assert events[-1].kind == EventKind.DRAFTS_DISCARDED
        assert not session.is_open("P1")

    @pytest.mark.asyncio
    async def test_close_view_discard_during_flush(self, session, store):
        """A flush finishing after its view closed does not bring the record back."""
        await session.open_view("P1")
        session.edit("P1", "memo", "VIP")
        store.hold_updates()

        flush = asyncio.create_task(session.flush("P1"))
        assert await store.wait_for_in_flight()
        await session.close_view("P1", discard=True)
        store.release_updates()
        result = await flush

        assert result.success
        assert not session.is_open("P1")
        assert not session.buffer.is_loaded("P1")

    @pytest.mark.asyncio
    async def test_close_view_not_open(self, session):
        assert await session.close_view("P1") is None

    @pytest.mark.asyncio
    async def test_remove_listener(self, session):
        received = []
        remove = session.add_listener(received.append)
        remove()
        await session.open_view("P1")
        session.edit("P1", "memo", "VIP")
        await session.flush("P1")
        assert received == []


class TestSessionClose:
    """Tests for closing a session."""

    @pytest.mark.asyncio
    async def test_close_flushes_dirty_drafts(self):
        store = InMemoryRecordStore()
        await store.create("P1", {"memo": ""}, actor_id="admin")

        async with EditingSession(
            store, InMemoryChangeLogStore(), "user:42", timers=ManualTimerFactory()
        ) as session:
            await session.open_view("P1")
            session.edit("P1", "memo", "VIP")

        assert store.peek("P1").fields["memo"] == "VIP"
        assert store.feed.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_close_without_flush_discards(self):
        store = InMemoryRecordStore()
        await store.create("P1", {"memo": ""}, actor_id="admin")
        config = EngineConfig(scheduler=SchedulerConfig(flush_on_close=False))
        session = EditingSession(
            store, InMemoryChangeLogStore(), "user:42", config=config, timers=ManualTimerFactory()
        )
        events = []
        session.add_listener(events.append)
        await session.start()
        await session.open_view("P1")
        session.edit("P1", "memo", "VIP")

        assert await session.close() == []
        assert await session.close() == []

        assert store.update_count == 0
        assert events[-1].kind == EventKind.DRAFTS_DISCARDED
        assert events[-1].detail["reason"] == "session_closed"
