# app/core/engine/matcher.py
"""
Trigger matching: picks the flow an inbound event starts.

Flows are scanned in store order and the first fit wins. There is no
scoring between flows that would both match.
"""
from __future__ import annotations

from typing import Iterable, Optional

from app.core.engine.domain import (
    AutomationEvent,
    Flow,
    TriggerType,
    VIRTUAL_TEST_ACCOUNT,
)
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


def _account_matches(flow: Flow, event: AutomationEvent) -> bool:
    if not flow.trigger_account_id:
        return True
    if event.target_account_id == VIRTUAL_TEST_ACCOUNT:
        return True
    return flow.trigger_account_id == event.target_account_id


def _keyword_matches(flow: Flow, event: AutomationEvent) -> bool:
    needs_keyword = flow.trigger_type == TriggerType.KEYWORD or (
        event.is_conversational and flow.trigger_keyword
    )
    if needs_keyword:
        if not event.has_text():
            return False
        keyword = (flow.trigger_keyword or "").lower()
        return keyword in (event.text or "").lower()
    # Conversational without keyword, or a non-text trigger: type match is enough.
    return True


def flow_matches(flow: Flow, event: AutomationEvent) -> bool:
    """Check a single flow against an event."""
    if not flow.active:
        return False
    if flow.trigger_type != event.type and flow.trigger_type != TriggerType.KEYWORD:
        return False
    if not _account_matches(flow, event):
        return False
    return _keyword_matches(flow, event)


class EventMatcher:

    def match(
        self,
        event: AutomationEvent,
        flows: Iterable[Flow],
    ) -> Optional[tuple[Flow, str]]:
        """
        Return ``(flow, start_node_id)`` for the first matching flow, else None.

        A first match with no nodes has nothing to run; later flows are
        not consulted.
        """
        for flow in flows:
            if not flow_matches(flow, event):
                continue
            start = flow.start_node_id
            if start is None:
                logger.debug(f"Flow {flow.id} matched but has no nodes")
                return None
            return flow, start

        logger.debug(f"No flow matched event type={event.type.value}")
        return None
