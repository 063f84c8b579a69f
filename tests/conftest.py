# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.engine import AutomationEngine, GateDecision, flow_from_dict  # noqa: E402
from app.infra.memory_store import InMemoryStore  # noqa: E402


class RecordingSender:
    """Async fake ChannelSender that records deliveries"""
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send(self, channel, recipient, text, account_id):
        if self.fail:
            raise ConnectionError("channel API unreachable")
        self.sent.append((channel, recipient, text, account_id))


class FakeGate:
    """Async fake EntitlementGate with scripted answers"""
    def __init__(self, decision: GateDecision | None = None, ai_decision: GateDecision | None = None, error: Exception | None = None):
        self.decision = decision or GateDecision.allow()
        self.ai_decision = ai_decision or GateDecision.allow()
        self.error = error
        self.calls = []

    async def check_execute(self, uses_ai: bool) -> GateDecision:
        self.calls.append(uses_ai)
        if self.error is not None:
            raise self.error
        return self.ai_decision if uses_ai else self.decision


class FakeTextGenerator:
    def __init__(self, reply: str = "Generated reply", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def generate(self, prompt: str, persona: str) -> str:
        self.calls.append((prompt, persona))
        if self.error is not None:
            raise self.error
        return self.reply


class FakeInbox:
    """Async fake InboxSource returning queued batches"""
    def __init__(self, batches=None, error: Exception | None = None):
        self.batches = list(batches or [])
        self.error = error
        self.calls = 0

    async def check_new_messages(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.batches:
            return self.batches.pop(0)
        return []


def make_flow(flow_id="flow_a", trigger_type="instagram_dm", nodes=None, **extra):
    raw = {
        "id": flow_id,
        "name": flow_id,
        "triggerType": trigger_type,
        "active": True,
        "nodes": nodes if nodes is not None else [
            {"id": "n1", "type": "message", "data": {"content": "Hi!"}},
        ],
    }
    raw.update(extra)
    return flow_from_dict(raw)


def make_engine(store, **kwargs):
    kwargs.setdefault("message_settle_ms", 0)
    return AutomationEngine(store=store, **kwargs)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def subscriber_id():
    return "u1"
