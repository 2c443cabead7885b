"""
Dispatch subscriptions for inbound calls.

A subscription routes incoming-call events for a DID to our webhook. The
backend-assigned subscriptionId is persisted per (workflowId, nodeId) so a
later unregister knows what to remove.
"""
import json
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from logging_setup import get_logger, Component
from observability.events import Component as ObsComponent, EventEmitter
from voicenet_agent.command_client import CommandClient
from voicenet_agent.models import Outcome


logger = get_logger(Component.SUBSCRIPTIONS)


@dataclass
class SubscriptionRecord:
    subscription_id: str
    workflow_id: str
    node_id: str
    callback_url: str
    did: str
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def key(self) -> str:
        return subscription_key(self.workflow_id, self.node_id)

    def to_payload(self) -> Dict[str, str]:
        return {
            "subscriptionId": self.subscription_id,
            "workflowId": self.workflow_id,
            "nodeId": self.node_id,
            "callbackUrl": self.callback_url,
            "did": self.did,
            "createdAt": self.created_at,
        }


def subscription_key(workflow_id: str, node_id: str) -> str:
    return f"{workflow_id}:{node_id}"


class SubscriptionStore:
    """
    JSON file of subscription records keyed by "workflowId:nodeId".
    A missing file is an empty store.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def get(self, workflow_id: str, node_id: str) -> Optional[SubscriptionRecord]:
        with self._lock:
            data = self._read()
        raw = data.get(subscription_key(workflow_id, node_id))
        return SubscriptionRecord(**raw) if raw else None

    def put(self, record: SubscriptionRecord) -> None:
        with self._lock:
            data = self._read()
            data[record.key] = asdict(record)
            self._write(data)

    def delete(self, workflow_id: str, node_id: str) -> bool:
        with self._lock:
            data = self._read()
            if data.pop(subscription_key(workflow_id, node_id), None) is None:
                return False
            self._write(data)
            return True

    def list_records(self) -> List[SubscriptionRecord]:
        with self._lock:
            data = self._read()
        return [SubscriptionRecord(**raw) for raw in data.values()]

    def _read(self) -> Dict[str, Dict[str, str]]:
        if not self.path.exists():
            return {}
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Subscription store {self.path} must contain a JSON object")
        return data

    def _write(self, data: Dict[str, Dict[str, str]]) -> None:
        if self.path.parent and not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)


class SubscriptionManager:
    """Registers and unregisters dispatch subscriptions."""

    def __init__(
        self,
        client: CommandClient,
        store: SubscriptionStore,
        emitter: Optional[EventEmitter] = None,
    ):
        self.client = client
        self.store = store
        self.emitter = emitter or EventEmitter(ObsComponent.SUBSCRIPTIONS)

    async def register(
        self, workflow_id: str, node_id: str, callback_url: str, did: str,
    ) -> Outcome:
        """Idempotent: an existing record is returned without a backend call."""
        existing = self.store.get(workflow_id, node_id)
        if existing is not None:
            logger.info("Subscription already registered",
                        subscription_id=existing.subscription_id, workflow_id=workflow_id,
                        node_id=node_id)
            return Outcome.success(None, subscriptionId=existing.subscription_id,
                                   created=False)

        outcome = await self.client.register_subscription(workflow_id, node_id, callback_url, did)
        if not outcome.ok:
            return outcome

        record = SubscriptionRecord(
            subscription_id=outcome.data["subscriptionId"],
            workflow_id=workflow_id,
            node_id=node_id,
            callback_url=callback_url,
            did=did,
        )
        self.store.put(record)
        self.emitter.emit("subscription.registered", None,
                          correlation_id=record.subscription_id,
                          workflow_id=workflow_id, node_id=node_id, did=did)
        logger.info("Subscription registered", subscription_id=record.subscription_id, did=did)
        return Outcome.success(None, subscriptionId=record.subscription_id, created=True)

    async def unregister(self, workflow_id: str, node_id: str) -> Outcome:
        """Missing record counts as success; the record is kept if the backend refuses."""
        record = self.store.get(workflow_id, node_id)
        if record is None:
            return Outcome.success(None, removed=False)

        outcome = await self.client.unregister_subscription(record.subscription_id)
        if not outcome.ok:
            logger.warning("Subscription unregister failed",
                           subscription_id=record.subscription_id,
                           error=outcome.error.message if outcome.error else None)
            return outcome

        self.store.delete(workflow_id, node_id)
        self.emitter.emit("subscription.unregistered", None,
                          correlation_id=record.subscription_id,
                          workflow_id=workflow_id, node_id=node_id)
        logger.info("Subscription unregistered", subscription_id=record.subscription_id)
        return Outcome.success(None, subscriptionId=record.subscription_id, removed=True)
