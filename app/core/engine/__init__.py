# app/core/engine/__init__.py
"""
Core engine -- channel-agnostic automation logic.

This package contains the domain models, abstract protocols (ports),
trigger matching, the flow graph executor, the pause registry, the inbox
poller and the ``AutomationEngine`` that ties them together.

Canonical imports:
    from app.core.engine import AutomationEngine
    from app.core.engine.domain import Flow, Subscriber, TriggerType
    from app.core.engine.ports import FlowStore
"""
from app.core.engine.domain import (  # noqa: F401
    TriggerType,
    Platform,
    Flow,
    FlowNode,
    MessageNode,
    DelayNode,
    QuestionNode,
    ConditionNode,
    AIGenerateNode,
    PassThroughNode,
    Subscriber,
    PausedState,
    ExecutionLog,
    AutomationEvent,
    ChatMessage,
    InboxMessage,
    GateDecision,
    EngineNotice,
    NoticeKind,
    VIRTUAL_TEST_ACCOUNT,
    flow_from_dict,
)
from app.core.engine.ports import (  # noqa: F401
    FlowStore,
    ChannelSender,
    TextGenerator,
    EntitlementGate,
    InboxSource,
    SessionAware,
)
from app.core.engine.matcher import EventMatcher  # noqa: F401
from app.core.engine.pause_registry import PauseRegistry  # noqa: F401
from app.core.engine.executor import FlowExecutor, RunOutcome  # noqa: F401
from app.core.engine.poller import InboxPoller  # noqa: F401
from app.core.engine.automation_engine import AutomationEngine  # noqa: F401
