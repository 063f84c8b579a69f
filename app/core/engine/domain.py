# app/core/engine/domain.py
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Any, Dict


# Simulator account: messages are broadcast to listeners only, never sent out,
# and account-scoped flows always match it.
VIRTUAL_TEST_ACCOUNT = "virtual_test_account"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS
# ============================================================================

class TriggerType(str, Enum):
    KEYWORD = "keyword"
    INSTAGRAM_COMMENT = "instagram_comment"
    INSTAGRAM_DM = "instagram_dm"
    INSTAGRAM_STORY_MENTION = "instagram_story_mention"
    INSTAGRAM_REEL_COMMENT = "instagram_reel_comment"
    WHATSAPP_MESSAGE = "whatsapp_message"
    WHATSAPP_BUTTON_REPLY = "whatsapp_button_reply"
    WHATSAPP_LIST_REPLY = "whatsapp_list_reply"
    WHATSAPP_MEDIA = "whatsapp_media"
    MESSENGER_TEXT = "messenger_text"
    MESSENGER_POSTBACK = "messenger_postback"
    MESSENGER_QUICK_REPLY = "messenger_quick_reply"
    MESSENGER_ATTACHMENT = "messenger_attachment"


# Event kinds that carry a conversational reply (answer to a question node,
# keyword filtering on typed text).
CONVERSATIONAL_TYPES = frozenset({
    TriggerType.INSTAGRAM_DM,
    TriggerType.KEYWORD,
    TriggerType.WHATSAPP_MESSAGE,
    TriggerType.MESSENGER_TEXT,
})


class Platform(str, Enum):
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    WHATSAPP = "whatsapp"

    @classmethod
    def for_trigger(cls, trigger: TriggerType) -> "Platform":
        """Derive the channel from the event kind prefix."""
        if trigger.value.startswith("whatsapp"):
            return cls.WHATSAPP
        if trigger.value.startswith("messenger"):
            return cls.FACEBOOK
        return cls.INSTAGRAM


class LogStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


# ============================================================================
# FLOW GRAPH
# ============================================================================

@dataclass
class FlowNode:
    """
    One step of a flow graph.

    Nodes reference successors by id only, so graphs may contain cycles
    and dangling edges. A dangling ``next_id`` simply ends the run.
    """
    id: str
    next_id: Optional[str] = None
    account_id: Optional[str] = None  # per-node override of the sending account
    label: Optional[str] = None

    type: str = field(default="", init=False)


@dataclass
class MessageNode(FlowNode):
    content: str = "..."

    def __post_init__(self) -> None:
        self.type = "message"


@dataclass
class DelayNode(FlowNode):
    delay_ms: int = 1000

    def __post_init__(self) -> None:
        self.type = "delay"


@dataclass
class QuestionNode(FlowNode):
    content: str = "?"
    variable: Optional[str] = None

    def __post_init__(self) -> None:
        self.type = "question"


@dataclass
class ConditionNode(FlowNode):
    condition_var: Optional[str] = None
    condition_value: Optional[str] = None
    false_next_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.type = "condition"


@dataclass
class AIGenerateNode(FlowNode):
    ai_prompt: str = "Say hello"

    def __post_init__(self) -> None:
        self.type = "ai_generate"


@dataclass
class PassThroughNode(FlowNode):
    """Node of a type this engine does not know. Executes as a no-op."""
    raw_type: str = "unknown"

    def __post_init__(self) -> None:
        self.type = self.raw_type


@dataclass
class Flow:
    id: str
    name: str
    trigger_type: TriggerType
    nodes: list[FlowNode] = field(default_factory=list)
    trigger_keyword: Optional[str] = None
    trigger_account_id: Optional[str] = None
    active: bool = True
    created_at: int = field(default_factory=now_ms)

    def get_node(self, node_id: str | None) -> Optional[FlowNode]:
        if not node_id:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def start_node_id(self) -> Optional[str]:
        return self.nodes[0].id if self.nodes else None


# ============================================================================
# CONVERSATION STATE
# ============================================================================

@dataclass
class Subscriber:
    """
    One conversational identity per (channel, external user id).
    ``data`` holds variables collected by question nodes.
    """
    id: str
    username: str
    channel: Platform
    data: Dict[str, Any] = field(default_factory=dict)
    phone_number: Optional[str] = None
    messenger_id: Optional[str] = None
    profile_picture_url: Optional[str] = None
    last_interaction: int = field(default_factory=now_ms)

    @property
    def address(self) -> str:
        """Recipient address for the channel sender."""
        if self.channel == Platform.WHATSAPP and self.phone_number:
            return self.phone_number
        if self.channel == Platform.FACEBOOK and self.messenger_id:
            return self.messenger_id
        return self.id


@dataclass
class PausedState:
    flow_id: str
    next_node_id: str
    variable: str


@dataclass
class ExecutionLog:
    flow_id: str
    subscriber_id: str
    node_id: str
    status: LogStatus
    id: str = field(default_factory=new_id)
    timestamp: int = field(default_factory=now_ms)
    output: Optional[str] = None


# ============================================================================
# MESSAGES & EVENTS
# ============================================================================

@dataclass
class AutomationEvent:
    """Normalized inbound event from a webhook, the simulator or the poller."""
    type: TriggerType
    subscriber_id: str
    username: str
    target_account_id: str
    text: Optional[str] = None
    profile_pic: Optional[str] = None

    def has_text(self) -> bool:
        return bool(self.text)

    @property
    def is_conversational(self) -> bool:
        return self.type in CONVERSATIONAL_TYPES


@dataclass
class ChatMessage:
    sender: str  # "user" | "bot"
    text: str
    id: str = field(default_factory=new_id)
    timestamp: int = field(default_factory=now_ms)
    channel: Optional[Platform] = None
    account_id: Optional[str] = None


@dataclass
class InboxMessage:
    """Message returned by the channel inbox check."""
    id: str
    text: str
    sender_id: str
    sender_username: str
    account_id: str
    timestamp: int = field(default_factory=now_ms)
    sender_picture: Optional[str] = None


@dataclass
class GateDecision:
    allowed: bool
    reason: Optional[str] = None
    upgrade: bool = False

    @classmethod
    def allow(cls) -> "GateDecision":
        return cls(allowed=True)


class NoticeKind(str, Enum):
    POLLING_STATUS = "polling_status"
    HEARTBEAT = "heartbeat"
    ACTIVITY = "activity"
    UPGRADE_REQUIRED = "upgrade_required"


@dataclass
class EngineNotice:
    """UI-facing status notification (polling on/off, heartbeat, upgrade prompt)."""
    kind: NoticeKind
    detail: Dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)


# ============================================================================
# BUILDER JSON PARSING
# ============================================================================

def _opt_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def node_from_dict(raw: dict) -> FlowNode:
    """Parse one node from the flow builder's JSON shape."""
    node_id = raw.get("id")
    if not node_id:
        raise ValueError("flow node is missing 'id'")

    data = raw.get("data") or {}
    common = {
        "id": str(node_id),
        "next_id": _opt_str(raw.get("nextId")),
        "account_id": _opt_str(data.get("accountId")),
        "label": data.get("label"),
    }
    node_type = raw.get("type")

    if node_type == "message":
        return MessageNode(content=data.get("content") or "...", **common)
    if node_type == "delay":
        return DelayNode(delay_ms=int(data.get("delayMs") or 1000), **common)
    if node_type == "question":
        return QuestionNode(
            content=data.get("content") or "?",
            variable=_opt_str(data.get("variable")),
            **common,
        )
    if node_type == "condition":
        return ConditionNode(
            condition_var=_opt_str(data.get("conditionVar")),
            condition_value=data.get("conditionValue"),
            false_next_id=_opt_str(raw.get("falseNextId")),
            **common,
        )
    if node_type == "ai_generate":
        return AIGenerateNode(ai_prompt=data.get("aiPrompt") or "Say hello", **common)
    return PassThroughNode(raw_type=str(node_type or "unknown"), **common)


def flow_from_dict(raw: dict) -> Flow:
    """
    Parse a flow from the builder's camelCase JSON.

    Raises:
        ValueError: missing id or unknown trigger type
    """
    flow_id = raw.get("id")
    if not flow_id:
        raise ValueError("flow is missing 'id'")

    return Flow(
        id=str(flow_id),
        name=raw.get("name") or str(flow_id),
        trigger_type=TriggerType(raw.get("triggerType")),
        trigger_keyword=_opt_str(raw.get("triggerKeyword")),
        trigger_account_id=_opt_str(raw.get("triggerAccountId")),
        nodes=[node_from_dict(n) for n in raw.get("nodes") or []],
        active=bool(raw.get("active", True)),
        created_at=int(raw.get("createdAt") or now_ms()),
    )
