# app/infra/memory_store.py
"""
In-process record store for flows, subscribers and execution logs.

Records are deep-copied on the way in and out so callers get the same
isolation a real database gives them: mutating a returned Subscriber does
nothing until it is saved again.

Flows can be loaded from a JSON array exported by the flow builder
(``load_flows_file``) or seeded with the demo flow.
"""
from __future__ import annotations

import copy
import json
from pathlib import Path
from threading import Lock
from typing import Optional

from app.core.engine.domain import (
    ExecutionLog,
    Flow,
    Subscriber,
    flow_from_dict,
)
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

MAX_LOGS = 500

DEMO_FLOW = {
    "id": "flow_1",
    "name": "Welcome & Discount",
    "triggerType": "instagram_dm",
    "triggerKeyword": "hello",
    "active": True,
    "nodes": [
        {"id": "node_1", "type": "message",
         "data": {"content": "Hey there! 👋 Welcome to our store."}, "nextId": "node_2"},
        {"id": "node_2", "type": "delay", "data": {"delayMs": 1500}, "nextId": "node_3"},
        {"id": "node_3", "type": "question",
         "data": {"content": 'Would you like a 20% discount code? (Reply "yes")',
                  "variable": "wants_discount"},
         "nextId": "node_4"},
        {"id": "node_4", "type": "condition",
         "data": {"conditionVar": "wants_discount", "conditionValue": "yes"},
         "nextId": "node_5", "falseNextId": "node_6"},
        {"id": "node_5", "type": "message",
         "data": {"content": "Awesome! Use code: AUTO20 at checkout. 🚀"}},
        {"id": "node_6", "type": "message",
         "data": {"content": "No problem! Let us know if you change your mind."}},
    ],
}


class InMemoryStore:
    """
    Store implementation backed by dicts.

    Iteration order of ``get_flows()`` is insertion order, which is the
    order trigger matching scans. Logs are kept newest-first and capped.
    """

    def __init__(self, flows: list[Flow] | None = None, max_logs: int = MAX_LOGS):
        self._flows: dict[str, Flow] = {}
        self._subscribers: dict[str, Subscriber] = {}
        self._logs: list[ExecutionLog] = []
        self._max_logs = max_logs
        self._lock = Lock()

        for flow in flows or []:
            self.save_flow(flow)

    # --- FLOWS ---

    def get_flows(self) -> list[Flow]:
        with self._lock:
            return copy.deepcopy(list(self._flows.values()))

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        with self._lock:
            flow = self._flows.get(flow_id)
            return copy.deepcopy(flow) if flow is not None else None

    def save_flow(self, flow: Flow) -> None:
        with self._lock:
            self._flows[flow.id] = copy.deepcopy(flow)

    def delete_flow(self, flow_id: str) -> None:
        with self._lock:
            self._flows.pop(flow_id, None)

    # --- SUBSCRIBERS ---

    def get_subscribers(self) -> list[Subscriber]:
        with self._lock:
            return copy.deepcopy(list(self._subscribers.values()))

    def get_subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        with self._lock:
            sub = self._subscribers.get(subscriber_id)
            return copy.deepcopy(sub) if sub is not None else None

    def save_subscriber(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers[subscriber.id] = copy.deepcopy(subscriber)

    # --- LOGS ---

    def add_log(self, log: ExecutionLog) -> None:
        with self._lock:
            self._logs.insert(0, copy.deepcopy(log))
            del self._logs[self._max_logs:]

    def get_logs(self, flow_id: str | None = None) -> list[ExecutionLog]:
        """Logs newest first, optionally for one flow."""
        with self._lock:
            logs = [l for l in self._logs if flow_id is None or l.flow_id == flow_id]
            return copy.deepcopy(logs)


def load_flows_file(path: str | Path) -> list[Flow]:
    """
    Parse a builder export (JSON array of flows).

    Raises:
        ValueError: malformed JSON or invalid flow definitions
    """
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a JSON array of flows")
    flows = [flow_from_dict(item) for item in raw]
    logger.info(f"Loaded {len(flows)} flow(s) from {path}")
    return flows


def build_store(flows_file: str | None = None, seed_demo_flow: bool = True) -> InMemoryStore:
    if flows_file:
        return InMemoryStore(load_flows_file(flows_file))
    if seed_demo_flow:
        return InMemoryStore([flow_from_dict(DEMO_FLOW)])
    return InMemoryStore()
