"""
Outbound notifications.

The engine only builds events and hands them to a dispatcher after its writes
are done. Delivery is best-effort: `dispatch_all` logs and swallows every
failure so an assignment or claim never fails because a notification did.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

import requests

from utils import config

logger = logging.getLogger("notifications")


class NotificationDispatcher:
    """Interface: deliver one event to one agent."""

    def notify(self, agent_id, event: Mapping[str, Any]) -> None:
        raise NotImplementedError


class MongoInboxDispatcher(NotificationDispatcher):
    """Writes the event into the Notifications collection the frontend polls."""

    def __init__(self, db):
        self.coll = db[config.COLL_NOTIFICATIONS]

    def notify(self, agent_id, event):
        doc = dict(event)
        doc.update({
            "recipients": [agent_id],
            "read_by": [],
            "created_at": datetime.now(timezone.utc),
        })
        self.coll.insert_one(doc)


class WebhookDispatcher(NotificationDispatcher):
    """POSTs the event as JSON to an external delivery service (WhatsApp/email bridge)."""

    def __init__(self, url: str, timeout: float | None = None, session: requests.Session | None = None):
        self.url = url
        self.timeout = timeout if timeout is not None else config.NOTIFY_TIMEOUT_SEC
        self.session = session or requests.Session()

    def notify(self, agent_id, event):
        payload = {"agent_id": str(agent_id), "event": event}
        resp = self.session.post(self.url, json=payload, timeout=self.timeout)
        resp.raise_for_status()


class FanoutDispatcher(NotificationDispatcher):
    def __init__(self, *dispatchers: NotificationDispatcher):
        self.dispatchers = dispatchers

    def notify(self, agent_id, event):
        for d in self.dispatchers:
            dispatch_safely(d, agent_id, event)


def default_dispatcher(db) -> NotificationDispatcher:
    inbox = MongoInboxDispatcher(db)
    if config.NOTIFY_WEBHOOK_URL:
        return FanoutDispatcher(inbox, WebhookDispatcher(config.NOTIFY_WEBHOOK_URL))
    return inbox


def dispatch_safely(dispatcher: NotificationDispatcher | None, agent_id, event: Mapping[str, Any]) -> bool:
    if dispatcher is None:
        return False
    try:
        dispatcher.notify(agent_id, event)
        return True
    except Exception as e:
        logger.warning("Notification '%s' to %s failed: %s", event.get("type"), agent_id, e)
        return False


def dispatch_all(dispatcher: NotificationDispatcher | None, outbox: Iterable[tuple[Any, Mapping[str, Any]]]) -> int:
    """Deliver queued (agent_id, event) pairs. Returns how many were delivered."""
    return sum(1 for agent_id, event in outbox if dispatch_safely(dispatcher, agent_id, event))


# --- Event builders ---

def lead_assignment_event(lead: Mapping[str, Any], agent_id, assigned_by) -> dict:
    return {
        "type": "lead_assignment",
        "title": "New Lead Assigned",
        "message": f'A new lead "{lead.get("name") or lead.get("number") or lead["_id"]}" has been assigned to you.',
        "priority": "high",
        "related": {
            "lead_id": str(lead["_id"]),
            "employee_id": str(agent_id),
            "assigned_by": str(assigned_by) if assigned_by else None,
        },
    }


def payment_available_event(payment: Mapping[str, Any]) -> dict:
    return {
        "type": "payment_claim",
        "title": "Payment Collection Available",
        "message": f"A payment of ₹{payment['amount']} is available for claim.",
        "priority": "high",
        "requires_action": True,
        "related": {
            "payment_id": str(payment["_id"]),
            "lead_id": str(payment["lead_id"]) if payment.get("lead_id") else None,
        },
    }
