"""
Payment Claim Allocator.

An agent claims a pending payment against one of their own leads. The claim is
capped at the lead's outstanding ledger total; any excess is split off into a
fresh pending payment so it can be claimed against another lead later.

State machine: pending -> claimed -> {verified | rejected}.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Mapping

from pymongo import ReturnDocument

from utils import config

from .errors import (
    AlreadyClaimed,
    BelowMinimumThreshold,
    NotFoundError,
    NotYourLead,
    PreconditionError,
    ValidationError,
)
from .fee_ledger import deduct, ledger_total, load_entries
from .leads import update_ledger
from .notifications import NotificationDispatcher, dispatch_all, payment_available_event
from .round_robin import active_agent_filter
from .store import as_actor_id, as_object_id, persistence, utcnow

logger = logging.getLogger("payment-claims")

STATUS_PENDING = "pending"
STATUS_CLAIMED = "claimed"
STATUS_VERIFIED = "verified"
STATUS_REJECTED = "rejected"

REVIEW_ACTIONS = {"verify": STATUS_VERIFIED, "reject": STATUS_REJECTED}

# Receipt metadata carried over onto a remainder payment
_CARRY_FIELDS = ("payment_method", "currency", "account_name", "receipt_number", "transaction_id", "created_by")


def _audit_event(action: str, by, **extra) -> dict:
    event = {"action": action, "by": str(by) if by is not None else None, "at": utcnow().isoformat()}
    event.update(extra)
    return event


def _get_payment(db, payment_id) -> dict:
    oid = as_object_id(payment_id, "payment_id")
    payment = db[config.COLL_PAYMENTS].find_one({"_id": oid})
    if not payment:
        raise NotFoundError(f"Payment {payment_id} not found", payment_id=str(payment_id))
    return payment


def _get_own_lead(db, lead_id, agent_id) -> dict:
    lead_oid = as_object_id(lead_id, "lead_id")
    lead = db[config.COLL_LEADS].find_one({"_id": lead_oid})
    if not lead:
        raise NotFoundError(f"Lead {lead_id} not found", lead_id=str(lead_id))
    if lead.get("assigned_to") != agent_id:
        raise NotYourLead(
            f"Lead {lead_id} is not assigned to you",
            lead_id=str(lead_id),
            assigned_to=str(lead.get("assigned_to")) if lead.get("assigned_to") else None,
        )
    return lead


def _already_claimed(payment: Mapping[str, Any]) -> AlreadyClaimed:
    return AlreadyClaimed(
        f"Payment {payment['_id']} has already been {payment.get('status')}"
        + (f" by {payment['claimed_by']}" if payment.get("claimed_by") else ""),
        payment_id=str(payment["_id"]),
        status=payment.get("status"),
        claimed_by=str(payment["claimed_by"]) if payment.get("claimed_by") else None,
    )


def _resolve_min_claim(db, min_claim_amount: float | None) -> float:
    if min_claim_amount is not None:
        return float(min_claim_amount)
    return float(config.load_engine_config(db).get("min_claim_amount", config.MIN_CLAIM_AMOUNT))


def create_pending_payment(
    db,
    amount: Any,
    payment_method: str,
    created_by,
    lead_id=None,
    notifier: NotificationDispatcher | None = None,
    **metadata: Any,
) -> dict:
    """Record a collected payment waiting to be claimed, and tell sales agents about it."""
    try:
        amount = round(float(amount), 2)
    except (TypeError, ValueError):
        raise ValidationError("Payment amount must be a number", amount=str(amount))
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than zero", amount=amount)
    if not payment_method:
        raise ValidationError("Payment method is required")

    created_by = as_actor_id(created_by)
    now = utcnow()
    doc = {
        "amount": amount,
        "currency": metadata.pop("currency", None) or "INR",
        "payment_method": payment_method,
        "lead_id": as_object_id(lead_id, "lead_id") if lead_id else None,
        "status": STATUS_PENDING,
        "claimed_by": None,
        "claimed_amount": None,
        "claimed_at": None,
        "created_by": created_by,
        "created_at": now,
        "updated_at": now,
        "audit": {"events": [_audit_event("CREATED", created_by, amount=amount)]},
    }
    for key in ("description", "receipt_number", "transaction_id", "account_name", "due_date"):
        if metadata.get(key) is not None:
            doc[key] = metadata[key]

    with persistence("create_payment"):
        res = db[config.COLL_PAYMENTS].insert_one(doc)
    doc["_id"] = res.inserted_id
    logger.info("Created pending payment %s for %.2f via %s", res.inserted_id, amount, payment_method)

    if notifier is not None:
        query = active_agent_filter(config.load_engine_config(db).get("active_statuses"))
        query["access.sales"] = True
        recipients = [a["_id"] for a in db[config.COLL_EMPLOYEES].find(query, {"_id": 1})]
        event = payment_available_event(doc)
        dispatch_all(notifier, [(agent_id, event) for agent_id in recipients])

    return doc


def list_available_payments(db) -> list[dict]:
    fields = {
        "amount": 1, "currency": 1, "payment_method": 1, "account_name": 1,
        "description": 1, "remainder_of": 1, "created_at": 1,
    }
    return list(db[config.COLL_PAYMENTS].find({"status": STATUS_PENDING}, fields).sort("created_at", -1))


def lead_payment_status(db, lead_id, agent_id, min_claim_amount: float | None = None) -> dict:
    """How much an agent could claim against one of their leads right now."""
    agent_id = as_object_id(agent_id, "agent_id")
    lead = _get_own_lead(db, lead_id, agent_id)
    total = ledger_total(load_entries(lead.get("fee_entries")))
    min_claim = _resolve_min_claim(db, min_claim_amount)
    can_claim = total >= min_claim
    return {
        "lead_id": lead["_id"],
        "lead_name": lead.get("name", ""),
        "total_available": total,
        "can_claim": can_claim,
        "message": (
            f"This lead has ₹{total} payment available."
            if can_claim
            else f"This lead has no payment or payment is less than ₹{min_claim:g}."
        ),
    }


def claim_pending_payment(
    db,
    payment_id,
    lead_id,
    agent_id,
    min_claim_amount: float | None = None,
    ledger_retries: int | None = None,
) -> dict:
    """
    Claim a pending payment against the agent's own lead.

    Precondition failures (AlreadyClaimed, NotYourLead, BelowMinimumThreshold) write
    nothing. After the conditional claim succeeds the remaining steps are
    best-effort: a crash between them can leave the remainder payment or the
    agent counter unwritten.
    """
    agent_id = as_object_id(agent_id, "agent_id")
    payment = _get_payment(db, payment_id)
    if payment.get("status") != STATUS_PENDING:
        raise _already_claimed(payment)

    lead = _get_own_lead(db, lead_id, agent_id)
    if payment.get("lead_id") and payment["lead_id"] != lead["_id"]:
        raise ValidationError(
            f"Payment {payment['_id']} is bound to lead {payment['lead_id']}",
            payment_id=str(payment["_id"]),
            bound_lead_id=str(payment["lead_id"]),
        )

    available = ledger_total(load_entries(lead.get("fee_entries")))
    min_claim = _resolve_min_claim(db, min_claim_amount)
    if available < min_claim:
        raise BelowMinimumThreshold(
            f"This lead has no payment or payment is less than ₹{min_claim:g} (available: ₹{available:g})",
            lead_id=str(lead["_id"]),
            available_amount=available,
        )

    amount = round(float(payment["amount"]), 2)
    claimable = min(amount, available)
    remainder = round(amount - claimable, 2)
    now = utcnow()

    with persistence("claim_payment"):
        claimed = db[config.COLL_PAYMENTS].find_one_and_update(
            {"_id": payment["_id"], "status": STATUS_PENDING},
            {
                "$set": {
                    "status": STATUS_CLAIMED,
                    "claimed_by": agent_id,
                    "claimed_amount": claimable,
                    "claimed_at": now,
                    "lead_id": lead["_id"],
                    "updated_at": now,
                },
                "$push": {
                    "audit.events": _audit_event(
                        "CLAIMED", agent_id, lead_id=str(lead["_id"]), claimed_amount=claimable
                    )
                },
            },
            return_document=ReturnDocument.AFTER,
        )
    if claimed is None:
        # Lost the race to another claimer
        raise _already_claimed(_get_payment(db, payment["_id"]))

    remainder_id = None
    with persistence("claim_payment"):
        if remainder > 0:
            remainder_doc = {k: payment.get(k) for k in _CARRY_FIELDS if payment.get(k) is not None}
            remainder_doc.update({
                "amount": remainder,
                "lead_id": None,
                "status": STATUS_PENDING,
                "claimed_by": None,
                "claimed_amount": None,
                "claimed_at": None,
                "remainder_of": payment["_id"],
                "description": (
                    f"Remaining amount from payment {payment['_id']} "
                    f"(original: ₹{amount:g}, claimed: ₹{claimable:g})"
                ),
                "created_at": now,
                "updated_at": now,
                "audit": {"events": [_audit_event("REMAINDER_SPLIT", agent_id, source=str(payment["_id"]))]},
            })
            remainder_id = db[config.COLL_PAYMENTS].insert_one(remainder_doc).inserted_id

        db[config.COLL_EMPLOYEES].update_one(
            {"_id": agent_id}, {"$inc": {"payment_collection": claimable}}
        )

        before, after, deducted = update_ledger(
            db, lead["_id"], lambda entries: deduct(entries, claimable), ledger_retries
        )
    if deducted < claimable:
        logger.warning(
            "Lead %s ledger short: deducted %.2f of %.2f (ledger changed after the claim was capped)",
            lead["_id"], deducted, claimable,
        )

    logger.info(
        "Agent %s claimed %.2f of payment %s against lead %s (remainder %.2f, ledger %.2f -> %.2f)",
        agent_id, claimable, payment["_id"], lead["_id"], remainder, before, after,
    )

    return {
        "payment_id": payment["_id"],
        "amount": amount,
        "claimed_amount": claimable,
        "claimed_by": agent_id,
        "claimed_at": now,
        "lead_id": lead["_id"],
        "ledger_before": before,
        "ledger_deducted": deducted,
        "ledger_after": after,
        "remainder_amount": remainder,
        "remainder_payment_id": remainder_id,
    }


def review_claim(db, payment_id, action: str, notes: str, reviewed_by) -> dict:
    """
    Verify or reject a claimed payment.

    Rejection reverses the claiming agent's payment_collection by the claimed
    amount. The ledger deduction and any remainder split are left as they are.
    """
    if action not in REVIEW_ACTIONS:
        raise ValidationError(f"Unknown action '{action}'. Use 'verify' or 'reject'.", action=action)
    if not notes:
        raise ValidationError("Verification notes are required")

    target = REVIEW_ACTIONS[action]
    reviewed_by = as_actor_id(reviewed_by)
    payment = _get_payment(db, payment_id)
    now = utcnow()

    with persistence("review_claim"):
        updated = db[config.COLL_PAYMENTS].find_one_and_update(
            {"_id": payment["_id"], "status": STATUS_CLAIMED},
            {
                "$set": {
                    "status": target,
                    "verified_by": reviewed_by,
                    "verified_at": now,
                    "verification_notes": notes,
                    "updated_at": now,
                },
                "$push": {"audit.events": _audit_event(target.upper(), reviewed_by, notes=notes)},
            },
            return_document=ReturnDocument.AFTER,
        )
    if updated is None:
        current = _get_payment(db, payment["_id"])
        raise PreconditionError(
            f"Payment {payment['_id']} must be claimed before verification (status: {current.get('status')})",
            payment_id=str(payment["_id"]),
            status=current.get("status"),
        )

    if target == STATUS_REJECTED and updated.get("claimed_by"):
        reversal = float(updated.get("claimed_amount") or 0)
        with persistence("review_claim"):
            db[config.COLL_EMPLOYEES].update_one(
                {"_id": updated["claimed_by"]},
                {"$inc": {"payment_collection": -reversal}},
            )
        logger.info("Rejected claim on payment %s; reversed %.2f for agent %s", payment["_id"], reversal, updated["claimed_by"])
    else:
        logger.info("Payment %s %s by %s", payment["_id"], target, reviewed_by)

    return updated


STATS_PERIODS = ("daily", "weekly", "monthly")


def _period_start(period: str, now: datetime) -> datetime:
    if period == "daily":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "weekly":
        return now - timedelta(days=7)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def payment_stats(db, period: str = "monthly", now: datetime | None = None) -> dict:
    """
    Claimed and verified totals since the start of `period`.

    daily counts from midnight UTC, weekly covers the last seven days, monthly
    counts from the 1st. Anything else is treated as monthly. Amounts are the
    claimed amounts, so they line up with the agents' payment_collection.
    """
    if period not in STATS_PERIODS:
        period = "monthly"
    since = _period_start(period, now or utcnow())

    pipeline = [
        {"$match": {"status": {"$in": [STATUS_CLAIMED, STATUS_VERIFIED]}, "claimed_at": {"$gte": since}}},
        {"$group": {"_id": "$status", "amount": {"$sum": "$claimed_amount"}, "count": {"$sum": 1}}},
    ]
    with persistence("payment_stats"):
        groups = {g["_id"]: g for g in db[config.COLL_PAYMENTS].aggregate(pipeline)}

    verified = groups.get(STATUS_VERIFIED, {})
    pending = groups.get(STATUS_CLAIMED, {})
    verified_amount = round(float(verified.get("amount") or 0), 2)
    pending_amount = round(float(pending.get("amount") or 0), 2)
    return {
        "period": period,
        "since": since,
        "total_amount": round(verified_amount + pending_amount, 2),
        "total_payments": verified.get("count", 0) + pending.get("count", 0),
        "verified_amount": verified_amount,
        "verified_count": verified.get("count", 0),
        "pending_amount": pending_amount,
        "pending_count": pending.get("count", 0),
    }


def payments_by_agent(db, agent_id, status: str | None = None, page: int = 1, limit: int = 10) -> dict:
    """One agent's claimed payments, newest first, a page at a time."""
    agent_oid = as_object_id(agent_id, "agent_id")
    try:
        page, limit = int(page), int(limit)
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers", page=str(page), limit=str(limit))
    if page < 1 or not 1 <= limit <= 100:
        raise ValidationError("page must be at least 1 and limit between 1 and 100", page=page, limit=limit)

    query: dict[str, Any] = {"claimed_by": agent_oid}
    if status and status != "all":
        query["status"] = status

    payments = db[config.COLL_PAYMENTS]
    total = payments.count_documents(query)
    docs = list(payments.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit))
    return {
        "payments": docs,
        "pagination": {
            "current": page,
            "total_pages": -(-total // limit),
            "total_records": total,
        },
    }
