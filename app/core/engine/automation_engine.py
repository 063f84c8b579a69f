# app/core/engine/automation_engine.py
"""
Automation engine: the per-process entry point for inbound events.

Workflow for each event:
    entitlement check -> subscriber upsert -> paused question? resume
                      -> otherwise trigger matching -> background flow run

Flow runs execute as asyncio tasks so delays in one conversation never hold
up another conversation or the inbox poller. The pause registry and the
processed-id set are plain instance state; they rely on single-threaded
cooperative scheduling and are lost on restart.
"""
from __future__ import annotations

import asyncio
from typing import Callable, Optional

from app.core.engine.domain import (
    AutomationEvent,
    ChatMessage,
    EngineNotice,
    Flow,
    NoticeKind,
    Platform,
    Subscriber,
    TriggerType,
    VIRTUAL_TEST_ACCOUNT,
    now_ms,
)
from app.core.engine.executor import FlowExecutor, RunOutcome
from app.core.engine.matcher import EventMatcher
from app.core.engine.pause_registry import PauseRegistry
from app.core.engine.poller import InboxPoller
from app.core.engine.ports import (
    ChannelSender,
    EntitlementGate,
    FlowStore,
    InboxSource,
    SessionAware,
    TextGenerator,
)
from app.infra.logging_config import get_logger, LogContext
from app.infra.metrics import AppMetrics
from app.infra.tasks import log_task_exception, safe_create_task

logger = get_logger(__name__)

MessageListener = Callable[[ChatMessage], None]
NoticeListener = Callable[[EngineNotice], None]


class AutomationEngine:

    def __init__(
        self,
        *,
        store: FlowStore,
        sender: ChannelSender | None = None,
        text_generator: TextGenerator | None = None,
        gate: EntitlementGate | None = None,
        inbox: InboxSource | None = None,
        poll_interval_seconds: float = 5.0,
        message_settle_ms: int = 600,
        default_delay_ms: int = 1000,
        max_node_visits: int = 200,
        ai_max_reply_chars: int = 300,
    ) -> None:
        self.store = store
        self.sender = sender
        self.gate = gate

        self.pauses = PauseRegistry()
        self.processed_ids: set[str] = set()
        self.matcher = EventMatcher()
        self.executor = FlowExecutor(
            store=store,
            pauses=self.pauses,
            deliver=self.send_bot_message,
            ai_allowed=self._ai_allowed,
            text_generator=text_generator,
            settle_seconds=message_settle_ms / 1000,
            default_delay_ms=default_delay_ms,
            max_node_visits=max_node_visits,
            ai_max_reply_chars=ai_max_reply_chars,
        )
        self.poller = InboxPoller(self, inbox, interval_seconds=poll_interval_seconds)

        self._listeners: list[MessageListener] = []
        self._notice_listeners: list[NoticeListener] = []
        self._runs: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, fn: MessageListener) -> None:
        self._listeners.append(fn)

    def remove_listener(self, fn: MessageListener) -> None:
        self._listeners = [l for l in self._listeners if l != fn]

    def broadcast(self, msg: ChatMessage) -> None:
        for listener in list(self._listeners):
            try:
                listener(msg)
            except Exception:
                logger.error("Chat message listener failed", exc_info=True)

    def add_notice_listener(self, fn: NoticeListener) -> None:
        self._notice_listeners.append(fn)

    def remove_notice_listener(self, fn: NoticeListener) -> None:
        self._notice_listeners = [l for l in self._notice_listeners if l != fn]

    def notify(self, kind: NoticeKind, **detail) -> None:
        notice = EngineNotice(kind=kind, detail=detail)
        for listener in list(self._notice_listeners):
            try:
                listener(notice)
            except Exception:
                logger.error(f"Notice listener failed for kind={kind.value}", exc_info=True)

    # ------------------------------------------------------------------
    # Polling lifecycle
    # ------------------------------------------------------------------

    @property
    def is_polling(self) -> bool:
        return self.poller.is_polling

    def start_polling(self) -> None:
        self.poller.start()

    def stop_polling(self) -> None:
        self.poller.stop()

    async def poll_once(self) -> int:
        return await self.poller.poll_once()

    # ------------------------------------------------------------------
    # Host session
    # ------------------------------------------------------------------

    def set_token(self, token: str | None) -> None:
        """
        Hand a new session token to every collaborator bound to the host
        session. A token arriving while polling triggers an immediate poll.
        """
        bound = {id(c): c for c in (self.sender, self.gate, self.poller.inbox) if c is not None}
        for collaborator in bound.values():
            if isinstance(collaborator, SessionAware):
                collaborator.set_token(token)

        if token and self.is_polling:
            logger.info("Session token received while polling, checking inbox now")
            safe_create_task(self.poll_once(), name="inbox_poll_on_token")

    # ------------------------------------------------------------------
    # Entitlements
    # ------------------------------------------------------------------

    async def check_limits(self, uses_ai: bool) -> bool:
        """Ask the gate whether a run (or an AI step) may proceed. Fails open."""
        if self.gate is None:
            return True

        try:
            decision = await self.gate.check_execute(uses_ai)
        except Exception as exc:
            logger.warning(
                f"Entitlement gate unavailable, allowing execution: {exc.__class__.__name__}: {exc}"
            )
            AppMetrics.gate_fail_open()
            return True

        if decision.allowed:
            return True

        logger.warning(f"Execution denied by entitlement gate: reason={decision.reason}, uses_ai={uses_ai}")
        AppMetrics.gate_denied(decision.reason)
        if decision.upgrade:
            self.notify(NoticeKind.UPGRADE_REQUIRED, reason=decision.reason)
        return False

    async def _ai_allowed(self) -> bool:
        return await self.check_limits(uses_ai=True)

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def trigger_event(
        self,
        event_type: TriggerType | str,
        *,
        subscriber_id: str,
        username: str,
        target_account_id: str,
        text: str | None = None,
        profile_pic: str | None = None,
    ) -> Optional[asyncio.Task]:
        """
        Entry point for webhook, simulator and poller events.

        Returns the task running the flow, or None when nothing runs.

        Raises:
            ValueError: unknown event type
        """
        event = AutomationEvent(
            type=TriggerType(event_type),
            subscriber_id=subscriber_id,
            username=username,
            target_account_id=target_account_id,
            text=text,
            profile_pic=profile_pic,
        )
        return await self.handle_event(event)

    async def handle_event(self, event: AutomationEvent) -> Optional[asyncio.Task]:
        AppMetrics.event_received(event.type.value)
        log_ctx = LogContext(logger, subscriber_id=event.subscriber_id)

        if not await self.check_limits(uses_ai=False):
            return None

        subscriber = self._upsert_subscriber(event)

        # A pending question takes precedence over trigger matching
        paused = self.pauses.get(subscriber.id)
        if paused and event.is_conversational and event.has_text():
            self.pauses.consume(subscriber.id)
            subscriber.data[paused.variable] = event.text
            self.store.save_subscriber(subscriber)

            flow = self.store.get_flow(paused.flow_id)
            if flow is not None:
                log_ctx.info(f"Resuming flow={flow.id} at node={paused.next_node_id} ({paused.variable} captured)")
                AppMetrics.paused_resume()
                return self._start_run(flow, subscriber, event.target_account_id, paused.next_node_id, event.text)

            log_ctx.warning(f"Paused flow={paused.flow_id} no longer exists, falling back to matching")

        matched = self.matcher.match(event, self.store.get_flows())
        if matched is None:
            return None

        flow, start_node_id = matched
        log_ctx.info(f"Event type={event.type.value} matched flow={flow.id}")
        AppMetrics.flow_matched()
        return self._start_run(flow, subscriber, event.target_account_id, start_node_id, event.text)

    def _upsert_subscriber(self, event: AutomationEvent) -> Subscriber:
        subscriber = next(
            (s for s in self.store.get_subscribers() if s.id == event.subscriber_id),
            None,
        )
        if subscriber is None:
            subscriber = Subscriber(
                id=event.subscriber_id,
                username=event.username,
                channel=Platform.for_trigger(event.type),
                profile_picture_url=event.profile_pic,
            )
        else:
            subscriber.username = event.username
            subscriber.profile_picture_url = event.profile_pic or subscriber.profile_picture_url
            subscriber.last_interaction = now_ms()

        self.store.save_subscriber(subscriber)
        return subscriber

    def _start_run(
        self,
        flow: Flow,
        subscriber: Subscriber,
        account_id: str,
        start_node_id: str,
        initial_input: str | None,
    ) -> asyncio.Task:
        task = asyncio.create_task(
            self.executor.run(flow, subscriber, account_id, start_node_id, initial_input),
            name=f"flow_{flow.id}_{subscriber.id}",
        )
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)
        task.add_done_callback(log_task_exception)
        return task

    async def run_flow(
        self,
        flow: Flow,
        subscriber: Subscriber,
        account_id: str,
        start_node_id: str | None = None,
        initial_input: str | None = None,
    ) -> RunOutcome:
        """Run a flow in the caller's task (no matching, no entitlement check)."""
        return await self.executor.run(
            flow, subscriber, account_id, start_node_id or flow.start_node_id, initial_input,
        )

    async def wait_idle(self) -> None:
        """Wait for every in-flight flow run to finish."""
        while self._runs:
            await asyncio.gather(*list(self._runs), return_exceptions=True)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_bot_message(self, text: str, subscriber: Subscriber, account_id: str) -> None:
        """Broadcast to listeners, then deliver through the channel (unless simulated)."""
        self.broadcast(ChatMessage(
            sender="bot",
            text=text,
            channel=subscriber.channel,
            account_id=account_id,
        ))

        if account_id == VIRTUAL_TEST_ACCOUNT or self.sender is None:
            return

        channel = subscriber.channel.value
        try:
            await self.sender.send(subscriber.channel, subscriber.address, text, account_id)
            AppMetrics.outbound_message(channel, "sent")
        except Exception as exc:
            LogContext(logger, subscriber_id=subscriber.id).error(
                f"{channel} delivery failed: {exc.__class__.__name__}: {exc}"
            )
            AppMetrics.outbound_message(channel, "failed")
