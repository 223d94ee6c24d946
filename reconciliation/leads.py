"""Lead intake: single-lead creation on the round-robin path, and new charges on a lead's ledger."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from utils import config

from .errors import NotFoundError, PersistenceError, ValidationError
from .fee_ledger import FeeEntry, ledger_total, load_entries, parse_fee_input
from .notifications import NotificationDispatcher, dispatch_safely, lead_assignment_event
from .phone_ownership import normalize_phone
from .round_robin import RoundRobinCursor
from .store import as_actor_id, as_object_id, persistence, utcnow

logger = logging.getLogger("lead-intake")

# Free-form lead fields accepted at intake and stored as-is
_LEAD_FIELDS = (
    "name", "email", "city", "brand_name", "firm_type", "services", "classes",
    "prospect_status", "lead_status", "follow_up_status", "next_follow_up_date",
    "additional_notes", "country", "country_code",
)


def _normalized_numbers(data: Mapping[str, Any]) -> tuple[str, list[str]]:
    mobiles = data.get("mobile_numbers") or []
    if isinstance(mobiles, str):
        mobiles = [mobiles]
    mobiles = [n for n in (normalize_phone(m) for m in mobiles) if n]
    number = normalize_phone(data.get("number")) or (mobiles[0] if mobiles else "")
    return number, mobiles


def create_lead(
    db,
    data: Mapping[str, Any],
    created_by,
    cursor: RoundRobinCursor | None = None,
    notifier: NotificationDispatcher | None = None,
) -> dict:
    """
    Create one lead and hand it to the next agent in the rotation.

    The rotation does not check phone ownership: this path is for numbers that
    have never been seen before. Pass cursor=None to leave the lead unassigned.
    """
    number, mobiles = _normalized_numbers(data)
    if not number:
        raise ValidationError("A lead needs at least one phone number")

    created_by = as_actor_id(created_by)
    now = utcnow()
    entries = [parse_fee_input(e, created_at=now) for e in (data.get("fee_entries") or [])]

    doc: dict[str, Any] = {k: data[k] for k in _LEAD_FIELDS if data.get(k) is not None}
    doc.update({
        "number": number,
        "mobile_numbers": mobiles,
        "fee_entries": [e.to_doc() for e in entries],
        "claim_summary": {"total": ledger_total(entries)},
        "ledger_version": 0,
        "assigned_to": None,
        "assigned_by": None,
        "assigned_at": None,
        "status": "pending",
        "created_by": created_by,
        "created_at": now,
        "updated_at": now,
    })

    agent_id = cursor.next() if cursor is not None else None
    if agent_id is not None:
        doc.update({"assigned_to": agent_id, "assigned_by": created_by, "assigned_at": now})

    with persistence("create_lead"):
        doc["_id"] = db[config.COLL_LEADS].insert_one(doc).inserted_id
        if agent_id is not None:
            db[config.COLL_EMPLOYEES].update_one(
                {"_id": agent_id}, {"$inc": {"leads_assigned": 1, "leads_pending": 1}}
            )

    logger.info("Created lead %s (%s) assigned to %s", doc["_id"], number, agent_id)
    if agent_id is not None:
        dispatch_safely(notifier, agent_id, lead_assignment_event(doc, agent_id, created_by))
    return doc


def update_ledger(
    db,
    lead_id,
    mutate: Callable[[list[FeeEntry]], tuple[list[FeeEntry], Any]],
    retries: int | None = None,
) -> tuple[float, float, Any]:
    """
    Rewrite a lead's fee entries with `mutate` and store the recomputed total.

    The write is conditional on ledger_version, so a concurrent ledger change
    makes it re-read and retry instead of overwriting the other writer.
    Returns (total_before, total_after, whatever `mutate` returned alongside the entries).
    """
    retries = retries if retries is not None else config.LEDGER_WRITE_RETRIES
    leads = db[config.COLL_LEADS]
    for attempt in range(1, retries + 1):
        lead = leads.find_one({"_id": lead_id}, {"fee_entries": 1, "ledger_version": 1})
        if lead is None:
            raise NotFoundError(f"Lead {lead_id} not found", lead_id=str(lead_id))

        entries = load_entries(lead.get("fee_entries"))
        version = lead.get("ledger_version", 0)
        updated, result = mutate(entries)
        before, after = ledger_total(entries), ledger_total(updated)

        version_filter: dict = {"ledger_version": version}
        if version == 0:
            version_filter = {"$or": [{"ledger_version": 0}, {"ledger_version": {"$exists": False}}]}
        res = leads.update_one(
            {"_id": lead_id, **version_filter},
            {
                "$set": {
                    "fee_entries": [e.to_doc() for e in updated],
                    "claim_summary.total": after,
                    "updated_at": utcnow(),
                },
                "$inc": {"ledger_version": 1},
            },
        )
        if res.matched_count:
            return before, after, result
        logger.info("Ledger of lead %s changed underneath us (attempt %d/%d); retrying", lead_id, attempt, retries)

    raise PersistenceError(
        f"Could not update ledger of lead {lead_id} after {retries} attempts",
        lead_id=str(lead_id),
    )


def add_fee_entry(db, lead_id, body: Mapping[str, Any], recorded_by=None) -> dict:
    """Append a new charge to the end of the lead's ledger."""
    lead_oid = as_object_id(lead_id, "lead_id")
    entry = parse_fee_input(body, created_at=utcnow())
    if entry.total <= 0:
        raise ValidationError("A fee entry must charge a positive amount")

    with persistence("add_fee_entry"):
        before, after, _ = update_ledger(db, lead_oid, lambda entries: (entries + [entry], None))

    logger.info("Recorded charge of %.2f on lead %s by %s (ledger %.2f -> %.2f)", entry.total, lead_oid, recorded_by, before, after)
    return {"lead_id": lead_oid, "entry": entry.to_doc(), "ledger_total": after}
