# app/core/engine/ports.py
from __future__ import annotations
from typing import Protocol, Optional, runtime_checkable
from app.core.engine.domain import (
    Flow,
    Subscriber,
    ExecutionLog,
    GateDecision,
    InboxMessage,
    Platform,
)


# ============================================================================
# STORE (synchronous record access)
# ============================================================================

class FlowStore(Protocol):
    def get_flows(self) -> list[Flow]: ...
    def get_flow(self, flow_id: str) -> Optional[Flow]: ...
    def get_subscribers(self) -> list[Subscriber]: ...
    def save_subscriber(self, subscriber: Subscriber) -> None: ...
    def add_log(self, log: ExecutionLog) -> None: ...


# ============================================================================
# ASYNC COLLABORATORS
# ============================================================================

class ChannelSender(Protocol):
    async def send(self, channel: Platform, recipient: str, text: str, account_id: str) -> None:
        """Deliver text to a platform recipient. May raise on transport/API errors."""
        ...


class TextGenerator(Protocol):
    async def generate(self, prompt: str, persona: str) -> str:
        """Return generated text. Raises on quota/auth/network errors."""
        ...


class EntitlementGate(Protocol):
    async def check_execute(self, uses_ai: bool) -> GateDecision: ...


class InboxSource(Protocol):
    async def check_new_messages(self) -> list[InboxMessage]: ...


@runtime_checkable
class SessionAware(Protocol):
    """Collaborator bound to a hosting-platform session token."""
    def set_token(self, token: Optional[str]) -> None: ...
