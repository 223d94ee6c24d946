"""
Pytest configuration and fixtures for the reconciliation engine.

Everything runs against an in-memory mongomock database; no test needs a live
MongoDB or Key Vault.
"""

import json
import os
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
import azure.functions as func
from bson import ObjectId

# Keep header-based identity available and stop config from reaching Key Vault
os.environ.setdefault("AZURE_FUNCTIONS_ENVIRONMENT", "Development")
os.environ.pop("KEY_VAULT_URL", None)
os.environ.pop("NOTIFY_WEBHOOK_URL", None)

from utils import config  # noqa: E402

_BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def fresh_engine_config():
    config.reset_engine_config_cache()
    yield
    config.reset_engine_config_cache()


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    yield client["Lead_Reconciliation_Test"]
    client.close()


@pytest.fixture
def make_agent(db):
    """Insert an Employees doc. Active and online unless told otherwise."""
    counter = {"n": 0}

    def _make(name=None, **overrides):
        counter["n"] += 1
        n = counter["n"]
        doc = {
            "_id": ObjectId(),
            "name": name or f"Agent {n}",
            "employee_id": f"EMP{n:03d}",
            "email": f"agent{n}@example.com",
            "is_active": True,
            "is_blocked": False,
            "status": "online",
            "access": {"sales": True, "lead_add": False},
            "leads_assigned": 0,
            "leads_pending": 0,
            "payment_collection": 0,
        }
        doc.update(overrides)
        db[config.COLL_EMPLOYEES].insert_one(doc)
        return doc

    return _make


@pytest.fixture
def make_lead(db):
    """Insert a Leads doc. `fees` is a list of bucket dicts, oldest first."""
    counter = {"n": 0}

    def _make(number="9000000000", assigned_to=None, fees=None, **overrides):
        counter["n"] += 1
        created = _BASE_TIME + timedelta(minutes=counter["n"])
        entries = []
        for i, f in enumerate(fees or []):
            entry = {"govt_fees": 0.0, "professional_fees": 0.0, "stamp_fees": 0.0, "other_fees": 0.0}
            entry.update(f)
            entry["created_at"] = created + timedelta(seconds=i)
            entries.append(entry)
        doc = {
            "_id": ObjectId(),
            "name": f"Lead {counter['n']}",
            "number": number,
            "mobile_numbers": [number] if number else [],
            "assigned_to": assigned_to,
            "fee_entries": entries,
            "ledger_version": 0,
            "created_at": created,
        }
        doc.update(overrides)
        db[config.COLL_LEADS].insert_one(doc)
        return doc

    return _make


@pytest.fixture
def make_payment(db):
    def _make(amount, status="pending", **overrides):
        doc = {
            "_id": ObjectId(),
            "amount": amount,
            "currency": "INR",
            "payment_method": "upi",
            "lead_id": None,
            "status": status,
            "claimed_by": None,
            "claimed_amount": None,
            "claimed_at": None,
            "created_at": _BASE_TIME,
        }
        doc.update(overrides)
        db[config.COLL_PAYMENTS].insert_one(doc)
        return doc

    return _make


class RecordingDispatcher:
    """Collects (agent_id, event) pairs instead of delivering them."""

    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def notify(self, agent_id, event):
        if self.fail:
            raise RuntimeError("delivery down")
        self.sent.append((agent_id, event))


@pytest.fixture
def recorder():
    return RecordingDispatcher()


@pytest.fixture
def failing_recorder():
    return RecordingDispatcher(fail=True)


@pytest.fixture
def http_request():
    """Build an azure.functions.HttpRequest with dev identity headers."""

    def _build(method, url, action="", body=None, params=None, user=None, role="employee", email="", headers=None):
        headers = {"Content-Type": "application/json", **(headers or {})}
        if user is not None:
            headers["X-User-Id"] = str(user)
            headers["X-User-Role"] = role
            if email:
                headers["X-User-Email"] = email
        return func.HttpRequest(
            method=method,
            url=url,
            headers=headers,
            params=params or {},
            route_params={"action": action},
            body=json.dumps(body).encode() if body is not None else b"",
        )

    return _build
