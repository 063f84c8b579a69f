# app/core/engine/executor.py
"""
Flow graph walker.

One ``run()`` processes nodes strictly in sequence for one subscriber:
    pending log -> dispatch -> success log -> follow successor

A node that raises ends the run (no retry, no ``failed`` record). A
question node ends the run after registering a pause; the conversation
continues from a later inbound message.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable, NamedTuple, Optional

from app.core.engine.domain import (
    AIGenerateNode,
    ConditionNode,
    DelayNode,
    ExecutionLog,
    Flow,
    FlowNode,
    LogStatus,
    MessageNode,
    PausedState,
    QuestionNode,
    Subscriber,
)
from app.core.engine.pause_registry import PauseRegistry
from app.core.engine.ports import FlowStore, TextGenerator
from app.infra.logging_config import get_logger, LogContext
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

AI_FALLBACK_REPLY = "Sorry, I couldn't put a reply together just now. Please try again in a moment."
AI_CONTEXT_SUFFIX = '\n\nContext - The user just said: "{text}"'

Deliver = Callable[[str, Subscriber, str], Awaitable[None]]
AIGate = Callable[[], Awaitable[bool]]


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"
    DENIED = "denied"
    LOOP_LIMIT = "loop_limit"


class StepResult(NamedTuple):
    next_id: Optional[str]
    output: Optional[str] = None


def build_persona(username: str, max_chars: int) -> str:
    return (
        f"You are a friendly assistant replying to {username} in a chat. "
        f"Keep every reply concise: at most {max_chars} characters."
    )


class FlowExecutor:
    """
    Walks a flow graph for one subscriber.

    Collaborators are injected: ``deliver`` performs the outbound send side
    effect (listener broadcast + channel send), ``ai_allowed`` consults the
    entitlement gate before AI nodes.
    """

    def __init__(
        self,
        *,
        store: FlowStore,
        pauses: PauseRegistry,
        deliver: Deliver,
        ai_allowed: AIGate,
        text_generator: TextGenerator | None = None,
        settle_seconds: float = 0.6,
        default_delay_ms: int = 1000,
        max_node_visits: int = 200,
        ai_max_reply_chars: int = 300,
    ) -> None:
        self.store = store
        self.pauses = pauses
        self.deliver = deliver
        self.ai_allowed = ai_allowed
        self.text_generator = text_generator
        self.settle_seconds = settle_seconds
        self.default_delay_ms = default_delay_ms
        self.max_node_visits = max_node_visits
        self.ai_max_reply_chars = ai_max_reply_chars

        self._handlers: dict[type, Callable[..., Awaitable[StepResult]]] = {
            MessageNode: self._run_message,
            DelayNode: self._run_delay,
            ConditionNode: self._run_condition,
            QuestionNode: self._run_question,
            AIGenerateNode: self._run_ai_generate,
        }

    async def run(
        self,
        flow: Flow,
        subscriber: Subscriber,
        account_id: str,
        start_node_id: str | None,
        initial_input: str | None = None,
    ) -> RunOutcome:
        log_ctx = LogContext(logger, subscriber_id=subscriber.id, flow_id=flow.id)
        log_ctx.info(f"Flow run started at node={start_node_id}")

        node_id = start_node_id
        user_input = initial_input
        visits = 0
        outcome = RunOutcome.COMPLETED

        with AppMetrics.track_flow_run():
            while node_id:
                node = flow.get_node(node_id)
                if node is None:
                    # Dangling edge: end of conversation
                    break

                if visits >= self.max_node_visits:
                    log_ctx.warning(
                        f"Flow run stopped after {visits} node visits (possible loop at node={node_id})"
                    )
                    outcome = RunOutcome.LOOP_LIMIT
                    break
                visits += 1

                if isinstance(node, AIGenerateNode) and not await self.ai_allowed():
                    outcome = RunOutcome.DENIED
                    break

                self._log(flow, subscriber, node, LogStatus.PENDING)
                sending_account = node.account_id or account_id

                try:
                    step = await self._dispatch(node, flow, subscriber, sending_account, user_input)
                except Exception as exc:
                    log_ctx.bind(node_id=node.id).error(
                        f"Node failed: type={node.type}, error={exc.__class__.__name__}: {exc}",
                        exc_info=True,
                    )
                    AppMetrics.node_executed(node.type, "failed")
                    outcome = RunOutcome.FAILED
                    break

                self._log(flow, subscriber, node, LogStatus.SUCCESS, output=step.output)
                AppMetrics.node_executed(node.type, "success")

                if step.next_id is None and isinstance(node, QuestionNode):
                    if node.next_id and node.variable:
                        outcome = RunOutcome.PAUSED
                    break

                node_id = step.next_id
                user_input = None

        AppMetrics.flow_run_finished(outcome.value)
        log_ctx.info(f"Flow run finished: outcome={outcome.value}, nodes={visits}")
        return outcome

    def _log(
        self,
        flow: Flow,
        subscriber: Subscriber,
        node: FlowNode,
        status: LogStatus,
        output: str | None = None,
    ) -> None:
        self.store.add_log(ExecutionLog(
            flow_id=flow.id,
            subscriber_id=subscriber.id,
            node_id=node.id,
            status=status,
            output=output,
        ))

    async def _dispatch(
        self,
        node: FlowNode,
        flow: Flow,
        subscriber: Subscriber,
        account_id: str,
        user_input: str | None,
    ) -> StepResult:
        handler = self._handlers.get(type(node))
        if handler is None:
            # Unknown node kinds are forward-compatible no-ops
            return StepResult(node.next_id)
        return await handler(node, flow, subscriber, account_id, user_input)

    # ------------------------------------------------------------------
    # Node kinds
    # ------------------------------------------------------------------

    async def _run_message(self, node: MessageNode, flow, subscriber, account_id, user_input) -> StepResult:
        text = node.content or "..."
        await self.deliver(text, subscriber, account_id)
        if self.settle_seconds > 0:
            await asyncio.sleep(self.settle_seconds)
        return StepResult(node.next_id, text)

    async def _run_delay(self, node: DelayNode, flow, subscriber, account_id, user_input) -> StepResult:
        delay_ms = node.delay_ms if node.delay_ms and node.delay_ms > 0 else self.default_delay_ms
        await asyncio.sleep(delay_ms / 1000)
        return StepResult(node.next_id)

    async def _run_condition(self, node: ConditionNode, flow, subscriber, account_id, user_input) -> StepResult:
        stored = subscriber.data.get(node.condition_var) if node.condition_var else None
        matched = (
            stored is not None
            and node.condition_value is not None
            and str(stored).lower() == str(node.condition_value).lower()
        )
        return StepResult(node.next_id if matched else node.false_next_id)

    async def _run_question(self, node: QuestionNode, flow, subscriber, account_id, user_input) -> StepResult:
        text = node.content or "?"
        await self.deliver(text, subscriber, account_id)
        if node.next_id and node.variable:
            self.pauses.pause(
                subscriber.id,
                PausedState(flow_id=flow.id, next_node_id=node.next_id, variable=node.variable),
            )
        return StepResult(None, text)

    async def _run_ai_generate(self, node: AIGenerateNode, flow, subscriber, account_id, user_input) -> StepResult:
        prompt = node.ai_prompt or "Say hello"
        if user_input:
            prompt += AI_CONTEXT_SUFFIX.format(text=user_input)
        persona = build_persona(subscriber.username, self.ai_max_reply_chars)

        text = await self._generate(prompt, persona, subscriber, flow)
        await self.deliver(text, subscriber, account_id)
        return StepResult(node.next_id, text)

    async def _generate(self, prompt: str, persona: str, subscriber: Subscriber, flow: Flow) -> str:
        log_ctx = LogContext(logger, subscriber_id=subscriber.id, flow_id=flow.id)
        if self.text_generator is None:
            log_ctx.warning("AI node reached but no text generator is configured")
            AppMetrics.ai_generation("unavailable")
            return AI_FALLBACK_REPLY

        try:
            text = await self.text_generator.generate(prompt, persona)
        except Exception as exc:
            log_ctx.error(f"AI generation failed: {exc.__class__.__name__}: {exc}")
            AppMetrics.ai_generation("failed")
            return AI_FALLBACK_REPLY

        AppMetrics.ai_generation("success")
        return (text or "").strip() or AI_FALLBACK_REPLY
