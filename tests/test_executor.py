# tests/test_executor.py
"""Tests for the flow graph executor"""
import pytest

from app.core.engine.domain import LogStatus, Platform, Subscriber
from app.core.engine.executor import AI_FALLBACK_REPLY, FlowExecutor, RunOutcome
from app.core.engine.pause_registry import PauseRegistry
from app.infra.memory_store import InMemoryStore

from conftest import FakeTextGenerator, make_flow


class Harness:
    """FlowExecutor wired to recording fakes"""
    def __init__(self, text_generator=None, ai_allowed=True, deliver_error=None, max_node_visits=200):
        self.store = InMemoryStore()
        self.pauses = PauseRegistry()
        self.delivered = []
        self.deliver_error = deliver_error
        self.ai_allowed_value = ai_allowed
        self.executor = FlowExecutor(
            store=self.store,
            pauses=self.pauses,
            deliver=self.deliver,
            ai_allowed=self.ai_allowed,
            text_generator=text_generator,
            settle_seconds=0,
            max_node_visits=max_node_visits,
        )

    async def deliver(self, text, subscriber, account_id):
        if self.deliver_error is not None:
            raise self.deliver_error
        self.delivered.append((text, account_id))

    async def ai_allowed(self):
        return self.ai_allowed_value

    def statuses(self):
        return [(log.node_id, log.status) for log in reversed(self.store.get_logs())]


def _subscriber(**data):
    return Subscriber(id="u1", username="tester", channel=Platform.INSTAGRAM, data=dict(data))


def _condition_flow():
    return make_flow(nodes=[
        {"id": "c", "type": "condition",
         "data": {"conditionVar": "answer", "conditionValue": "YES"},
         "nextId": "yes", "falseNextId": "no"},
        {"id": "yes", "type": "message", "data": {"content": "true branch"}},
        {"id": "no", "type": "message", "data": {"content": "false branch"}},
    ])


class TestConditionNode:
    @pytest.mark.asyncio
    async def test_case_insensitive_match(self):
        h = Harness()
        await h.executor.run(_condition_flow(), _subscriber(answer="yes"), "acct", "c")
        assert h.delivered == [("true branch", "acct")]

    @pytest.mark.asyncio
    async def test_missing_variable_takes_false_branch(self):
        h = Harness()
        outcome = await h.executor.run(_condition_flow(), _subscriber(), "acct", "c")
        assert outcome == RunOutcome.COMPLETED
        assert h.delivered == [("false branch", "acct")]

    @pytest.mark.asyncio
    async def test_different_value_takes_false_branch(self):
        h = Harness()
        await h.executor.run(_condition_flow(), _subscriber(answer="no"), "acct", "c")
        assert h.delivered == [("false branch", "acct")]


class TestLogging:
    @pytest.mark.asyncio
    async def test_pending_then_success_per_node(self):
        h = Harness()
        flow = make_flow(nodes=[
            {"id": "a", "type": "message", "data": {"content": "one"}, "nextId": "b"},
            {"id": "b", "type": "delay", "data": {"delayMs": 1}},
        ])
        outcome = await h.executor.run(flow, _subscriber(), "acct", "a")

        assert outcome == RunOutcome.COMPLETED
        assert h.statuses() == [
            ("a", LogStatus.PENDING), ("a", LogStatus.SUCCESS),
            ("b", LogStatus.PENDING), ("b", LogStatus.SUCCESS),
        ]

    @pytest.mark.asyncio
    async def test_success_log_carries_sent_text(self):
        h = Harness()
        await h.executor.run(make_flow(), _subscriber(), "acct", "n1")
        success = [l for l in h.store.get_logs() if l.status == LogStatus.SUCCESS]
        assert success[0].output == "Hi!"

    @pytest.mark.asyncio
    async def test_dispatch_failure_halts_without_failed_record(self):
        h = Harness(deliver_error=RuntimeError("boom"))
        flow = make_flow(nodes=[
            {"id": "a", "type": "message", "data": {"content": "one"}, "nextId": "b"},
            {"id": "b", "type": "message", "data": {"content": "two"}},
        ])
        outcome = await h.executor.run(flow, _subscriber(), "acct", "a")

        assert outcome == RunOutcome.FAILED
        assert h.statuses() == [("a", LogStatus.PENDING)]


class TestGraphShape:
    @pytest.mark.asyncio
    async def test_dangling_next_id_ends_run(self):
        h = Harness()
        flow = make_flow(nodes=[{"id": "a", "type": "message", "data": {"content": "x"}, "nextId": "ghost"}])
        outcome = await h.executor.run(flow, _subscriber(), "acct", "a")
        assert outcome == RunOutcome.COMPLETED
        assert len(h.delivered) == 1

    @pytest.mark.asyncio
    async def test_unknown_start_node_runs_nothing(self):
        h = Harness()
        outcome = await h.executor.run(make_flow(), _subscriber(), "acct", "nope")
        assert outcome == RunOutcome.COMPLETED
        assert h.store.get_logs() == []

    @pytest.mark.asyncio
    async def test_cycle_stops_at_visit_cap(self):
        h = Harness(max_node_visits=5)
        flow = make_flow(nodes=[
            {"id": "a", "type": "message", "data": {"content": "ping"}, "nextId": "b"},
            {"id": "b", "type": "message", "data": {"content": "pong"}, "nextId": "a"},
        ])
        outcome = await h.executor.run(flow, _subscriber(), "acct", "a")
        assert outcome == RunOutcome.LOOP_LIMIT
        assert len(h.delivered) == 5

    @pytest.mark.asyncio
    async def test_unknown_node_type_is_noop(self):
        h = Harness()
        flow = make_flow(nodes=[
            {"id": "x", "type": "carousel", "data": {}, "nextId": "a"},
            {"id": "a", "type": "message", "data": {"content": "after"}},
        ])
        await h.executor.run(flow, _subscriber(), "acct", "x")
        assert h.delivered == [("after", "acct")]
        assert ("x", LogStatus.SUCCESS) in h.statuses()

    @pytest.mark.asyncio
    async def test_node_account_override(self):
        h = Harness()
        flow = make_flow(nodes=[
            {"id": "a", "type": "message", "data": {"content": "x", "accountId": "acct_override"}, "nextId": "b"},
            {"id": "b", "type": "message", "data": {"content": "y"}},
        ])
        await h.executor.run(flow, _subscriber(), "acct_flow", "a")
        assert h.delivered == [("x", "acct_override"), ("y", "acct_flow")]


class TestQuestionNode:
    @pytest.mark.asyncio
    async def test_registers_pause_and_stops(self):
        h = Harness()
        flow = make_flow(nodes=[
            {"id": "q", "type": "question", "data": {"content": "Email?", "variable": "email"}, "nextId": "b"},
            {"id": "b", "type": "message", "data": {"content": "Thanks"}},
        ])
        outcome = await h.executor.run(flow, _subscriber(), "acct", "q")

        assert outcome == RunOutcome.PAUSED
        assert h.delivered == [("Email?", "acct")]
        paused = h.pauses.get("u1")
        assert (paused.flow_id, paused.next_node_id, paused.variable) == (flow.id, "b", "email")
        assert h.statuses() == [("q", LogStatus.PENDING), ("q", LogStatus.SUCCESS)]

    @pytest.mark.asyncio
    async def test_without_variable_conversation_ends(self):
        h = Harness()
        flow = make_flow(nodes=[
            {"id": "q", "type": "question", "data": {"content": "Anything else?"}, "nextId": "b"},
            {"id": "b", "type": "message", "data": {"content": "never"}},
        ])
        outcome = await h.executor.run(flow, _subscriber(), "acct", "q")
        assert outcome == RunOutcome.COMPLETED
        assert "u1" not in h.pauses
        assert h.delivered == [("Anything else?", "acct")]


class TestAIGenerateNode:
    def _flow(self):
        return make_flow(nodes=[
            {"id": "ai", "type": "ai_generate", "data": {"aiPrompt": "Greet warmly"}, "nextId": "b"},
            {"id": "b", "type": "message", "data": {"content": "after ai"}},
        ])

    @pytest.mark.asyncio
    async def test_generated_text_is_sent(self):
        gen = FakeTextGenerator(reply="Hello tester!")
        h = Harness(text_generator=gen)
        await h.executor.run(self._flow(), _subscriber(), "acct", "ai", initial_input="hi bot")

        assert h.delivered == [("Hello tester!", "acct"), ("after ai", "acct")]
        prompt, persona = gen.calls[0]
        assert prompt == 'Greet warmly\n\nContext - The user just said: "hi bot"'
        assert "tester" in persona
        assert "300" in persona

    @pytest.mark.asyncio
    async def test_no_context_suffix_without_input(self):
        gen = FakeTextGenerator()
        h = Harness(text_generator=gen)
        await h.executor.run(self._flow(), _subscriber(), "acct", "ai")
        assert gen.calls[0][0] == "Greet warmly"

    @pytest.mark.asyncio
    async def test_user_input_only_reaches_first_node(self):
        gen = FakeTextGenerator()
        h = Harness(text_generator=gen)
        flow = make_flow(nodes=[
            {"id": "m", "type": "message", "data": {"content": "x"}, "nextId": "ai"},
            {"id": "ai", "type": "ai_generate", "data": {"aiPrompt": "P"}},
        ])
        await h.executor.run(flow, _subscriber(), "acct", "m", initial_input="hello")
        assert gen.calls[0][0] == "P"

    @pytest.mark.asyncio
    async def test_generator_failure_sends_fallback_and_continues(self):
        h = Harness(text_generator=FakeTextGenerator(error=RuntimeError("quota exceeded")))
        outcome = await h.executor.run(self._flow(), _subscriber(), "acct", "ai")

        assert outcome == RunOutcome.COMPLETED
        assert h.delivered[0] == (AI_FALLBACK_REPLY, "acct")
        assert AI_FALLBACK_REPLY
        assert h.delivered[1] == ("after ai", "acct")

    @pytest.mark.asyncio
    async def test_no_generator_configured_sends_fallback(self):
        h = Harness(text_generator=None)
        await h.executor.run(self._flow(), _subscriber(), "acct", "ai")
        assert h.delivered[0][0] == AI_FALLBACK_REPLY

    @pytest.mark.asyncio
    async def test_gate_denial_stops_before_logging(self):
        gen = FakeTextGenerator()
        h = Harness(text_generator=gen, ai_allowed=False)
        outcome = await h.executor.run(self._flow(), _subscriber(), "acct", "ai")

        assert outcome == RunOutcome.DENIED
        assert gen.calls == []
        assert h.delivered == []
        assert h.store.get_logs() == []
