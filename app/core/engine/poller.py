# app/core/engine/poller.py
"""
Inbox polling loop.

Alternative to push webhooks for channels where the hosting platform only
offers a "check new messages" call. Every cycle fetches a batch, drops ids
already seen, and feeds the rest through the engine's trigger path as
``instagram_dm`` events.

Usage:
    engine.start_polling()
    # ... when the session goes inactive:
    engine.stop_polling()
"""
from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from app.core.engine.domain import (
    ChatMessage,
    NoticeKind,
    Platform,
    TriggerType,
)
from app.core.engine.ports import InboxSource
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics
from app.infra.tasks import safe_create_task

if TYPE_CHECKING:
    from app.core.engine.automation_engine import AutomationEngine

logger = get_logger(__name__)


class InboxPoller:
    """
    Fixed-interval poller.

    The loop awaits each ``poll_once()`` before sleeping, and ``poll_once()``
    itself is serialized by a lock, so two cycles never race over the
    processed-id set.

    Error handling:
    - Fetch errors: logged, cycle counted as failed, heartbeat still sent
    - ``stop()`` ends the loop at its next wait; an in-flight cycle and the
      flow runs it started complete on their own
    """

    def __init__(
        self,
        engine: "AutomationEngine",
        inbox: InboxSource | None,
        interval_seconds: float = 5.0,
    ):
        self.engine = engine
        self.inbox = inbox
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._lock = asyncio.Lock()

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Run one poll now, then every ``interval_seconds``. No-op if already running."""
        if self.is_polling:
            self._announce()
            return

        self._stop_event = asyncio.Event()
        self._task = safe_create_task(
            self._poll_loop(self._stop_event),
            name="inbox_poller",
        )
        logger.info(f"Inbox poller started (interval={self.interval_seconds}s)")
        self._announce()

    def stop(self) -> None:
        """Cancel the pending tick. Safe to call when not running."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            logger.info("Inbox poller stopped")
        self._task = None
        self._stop_event = None
        self._announce()

    def _announce(self) -> None:
        self.engine.notify(NoticeKind.POLLING_STATUS, is_polling=self.is_polling)

    async def _poll_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def poll_once(self) -> int:
        """Fetch and dispatch one batch. Returns the number of new messages."""
        async with self._lock:
            new_messages = 0
            try:
                if self.inbox is None:
                    return 0

                messages = await self.inbox.check_new_messages()
                for msg in messages:
                    if msg.id in self.engine.processed_ids:
                        continue
                    self.engine.processed_ids.add(msg.id)
                    new_messages += 1

                    self.engine.broadcast(ChatMessage(
                        id=msg.id,
                        sender="user",
                        text=msg.text,
                        timestamp=msg.timestamp,
                        channel=Platform.INSTAGRAM,
                        account_id=msg.account_id,
                    ))

                    await self.engine.trigger_event(
                        TriggerType.INSTAGRAM_DM,
                        subscriber_id=msg.sender_id,
                        username=msg.sender_username,
                        target_account_id=msg.account_id,
                        text=msg.text,
                        profile_pic=msg.sender_picture,
                    )

                if new_messages:
                    logger.info(f"Inbox poll: {new_messages} new message(s)")
                    self.engine.notify(NoticeKind.ACTIVITY, new_messages=new_messages)
                AppMetrics.poll_cycle("ok", new_messages)

            except Exception as exc:
                logger.warning(f"Inbox poll cycle failed: {exc.__class__.__name__}: {exc}")
                AppMetrics.poll_cycle("failed")

            finally:
                self.engine.notify(NoticeKind.HEARTBEAT)

            return new_messages
