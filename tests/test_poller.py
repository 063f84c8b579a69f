# tests/test_poller.py
"""Tests for the inbox poller"""
import asyncio

import pytest

from app.core.engine.domain import InboxMessage, NoticeKind
from app.infra.memory_store import InMemoryStore

from conftest import FakeInbox, make_engine, make_flow


def _msg(msg_id="m1", text="hello", sender="ig_1"):
    return InboxMessage(id=msg_id, text=text, sender_id=sender, sender_username="ann", account_id="acct_1")


class TestPollOnce:
    @pytest.mark.asyncio
    async def test_same_message_triggers_once(self):
        store = InMemoryStore([make_flow()])
        inbox = FakeInbox(batches=[[_msg("m1")], [_msg("m1")]])
        engine = make_engine(store, inbox=inbox)

        assert await engine.poll_once() == 1
        assert await engine.poll_once() == 0
        await engine.wait_idle()

        runs = [l for l in store.get_logs() if l.status.value == "pending"]
        assert len(runs) == 1
        assert engine.processed_ids == {"m1"}

    @pytest.mark.asyncio
    async def test_inbound_message_broadcast_and_dispatched_as_dm(self):
        store = InMemoryStore([make_flow(triggerKeyword="hello")])
        engine = make_engine(store, inbox=FakeInbox(batches=[[_msg()]]))
        messages = []
        engine.add_listener(messages.append)

        await engine.poll_once()
        await engine.wait_idle()

        assert messages[0].sender == "user"
        assert messages[0].id == "m1"
        assert messages[0].account_id == "acct_1"
        assert messages[1].sender == "bot"
        assert store.get_subscriber("ig_1").username == "ann"

    @pytest.mark.asyncio
    async def test_activity_and_heartbeat_notices(self):
        engine = make_engine(InMemoryStore(), inbox=FakeInbox(batches=[[_msg("a"), _msg("b")]]))
        notices = []
        engine.add_notice_listener(notices.append)

        await engine.poll_once()

        kinds = [n.kind for n in notices]
        assert kinds == [NoticeKind.ACTIVITY, NoticeKind.HEARTBEAT]
        assert notices[0].detail == {"new_messages": 2}

    @pytest.mark.asyncio
    async def test_fetch_failure_swallowed_and_heartbeat_sent(self):
        engine = make_engine(InMemoryStore(), inbox=FakeInbox(error=ConnectionError("inbox down")))
        notices = []
        engine.add_notice_listener(notices.append)

        assert await engine.poll_once() == 0
        assert [n.kind for n in notices] == [NoticeKind.HEARTBEAT]

    @pytest.mark.asyncio
    async def test_concurrent_polls_are_serialized(self):
        class SlowInbox:
            """Yields mid-fetch and returns the same message every time"""
            def __init__(self):
                self.in_flight = 0
                self.max_in_flight = 0

            async def check_new_messages(self):
                self.in_flight += 1
                self.max_in_flight = max(self.max_in_flight, self.in_flight)
                await asyncio.sleep(0.01)
                self.in_flight -= 1
                return [_msg("dup")]

        store = InMemoryStore([make_flow()])
        inbox = SlowInbox()
        engine = make_engine(store, inbox=inbox)

        counts = await asyncio.gather(engine.poll_once(), engine.poll_once())
        await engine.wait_idle()

        assert sorted(counts) == [0, 1]
        assert inbox.max_in_flight == 1
        assert engine.processed_ids == {"dup"}
        pending = [l for l in store.get_logs() if l.status.value == "pending"]
        assert len(pending) == 1

    @pytest.mark.asyncio
    async def test_without_inbox_only_heartbeat(self):
        engine = make_engine(InMemoryStore())
        notices = []
        engine.add_notice_listener(notices.append)

        assert await engine.poll_once() == 0
        assert [n.kind for n in notices] == [NoticeKind.HEARTBEAT]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_polls_immediately(self):
        inbox = FakeInbox()
        engine = make_engine(InMemoryStore(), inbox=inbox, poll_interval_seconds=60)

        engine.start_polling()
        await asyncio.sleep(0.05)

        assert engine.is_polling
        assert inbox.calls == 1
        engine.stop_polling()

    @pytest.mark.asyncio
    async def test_start_twice_keeps_single_loop(self):
        inbox = FakeInbox()
        engine = make_engine(InMemoryStore(), inbox=inbox, poll_interval_seconds=60)
        notices = []
        engine.add_notice_listener(notices.append)

        engine.start_polling()
        first_task = engine.poller._task
        engine.start_polling()
        await asyncio.sleep(0.05)

        assert engine.poller._task is first_task
        assert inbox.calls == 1
        status = [n.detail for n in notices if n.kind == NoticeKind.POLLING_STATUS]
        assert status == [{"is_polling": True}, {"is_polling": True}]
        engine.stop_polling()

    @pytest.mark.asyncio
    async def test_repeats_on_interval(self):
        inbox = FakeInbox()
        engine = make_engine(InMemoryStore(), inbox=inbox, poll_interval_seconds=0.05)

        engine.start_polling()
        await asyncio.sleep(0.2)
        engine.stop_polling()

        assert inbox.calls >= 3

    @pytest.mark.asyncio
    async def test_stop_cancels_future_ticks(self):
        inbox = FakeInbox()
        engine = make_engine(InMemoryStore(), inbox=inbox, poll_interval_seconds=0.05)

        engine.start_polling()
        await asyncio.sleep(0.01)
        engine.stop_polling()
        calls_at_stop = inbox.calls
        await asyncio.sleep(0.15)

        assert not engine.is_polling
        assert inbox.calls == calls_at_stop

    @pytest.mark.asyncio
    async def test_stop_twice_is_safe(self):
        engine = make_engine(InMemoryStore(), inbox=FakeInbox())
        notices = []
        engine.add_notice_listener(notices.append)

        engine.stop_polling()
        engine.stop_polling()

        assert not engine.is_polling
        assert [n.detail for n in notices] == [{"is_polling": False}, {"is_polling": False}]
