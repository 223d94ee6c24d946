"""
Assignment Allocator: batch assignment of leads to agents.

Round-robin over the requested agents (in the order given), with phone-number
stickiness: a number that already belongs to an agent can only go to that
agent. A lead whose number belongs to someone other than the current
round-robin target is reported back as a conflict and skipped; it does not
consume the target's turn.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Callable, Iterable, Sequence

from bson import ObjectId

from utils import config

from .errors import ValidationError
from .notifications import NotificationDispatcher, dispatch_all, lead_assignment_event
from .phone_ownership import Ownership, PhoneOwnershipResolver, describe_agent, primary_phone
from .round_robin import active_agent_filter
from .store import as_actor_id, persistence, split_object_ids, utcnow

logger = logging.getLogger("lead-assignment")


def _dedupe(values: Iterable[Any]) -> list[Any]:
    seen = set()
    out = []
    for v in values:
        key = str(v)
        if key not in seen:
            seen.add(key)
            out.append(v)
    return out


def _describe_agent(agent: dict | None, fallback) -> str:
    if not agent:
        return describe_agent(fallback)
    return describe_agent(agent["_id"], agent.get("name", ""), agent.get("employee_id", ""))


def load_leads(db, lead_ids: Sequence[Any]) -> list[dict]:
    """Leads in input order. Raises ValidationError naming every id that was not found."""
    oids, bad = split_object_ids(lead_ids)
    found = {d["_id"]: d for d in db[config.COLL_LEADS].find({"_id": {"$in": oids}})}
    missing = bad + [str(o) for o in oids if o not in found]
    if missing:
        raise ValidationError(
            f"Some selected leads were not found: {', '.join(missing)}",
            missing_lead_ids=missing,
        )
    return [found[o] for o in oids]


def load_agents(db, agent_ids: Sequence[Any], statuses: Sequence[str] | None = None) -> list[dict]:
    """
    Active agents in input order. Ids may be Mongo _ids or employee codes (EMP...).
    Raises ValidationError naming every id that is missing, inactive or blocked.
    """
    oids, codes = split_object_ids(agent_ids)
    query = active_agent_filter(statuses)
    query["$or"] = [{"_id": {"$in": oids}}, {"employee_id": {"$in": codes}}]
    docs = list(db[config.COLL_EMPLOYEES].find(query))
    by_id = {str(d["_id"]): d for d in docs}
    by_code = {d["employee_id"]: d for d in docs if d.get("employee_id")}

    agents: list[dict] = []
    missing: list[str] = []
    seen: set = set()
    for raw in agent_ids:
        doc = by_id.get(str(raw)) or by_code.get(str(raw))
        if doc is None:
            missing.append(str(raw))
        elif doc["_id"] not in seen:
            seen.add(doc["_id"])
            agents.append(doc)

    if missing:
        raise ValidationError(
            f"Some selected employees are not found or inactive: {', '.join(missing)}",
            missing_agent_ids=missing,
        )
    return agents


def plan_assignments(
    leads: Sequence[dict],
    agents: Sequence[dict],
    resolve: Callable[[str], Ownership | None],
) -> tuple[list[dict], list[dict]]:
    """
    Decide, without writing anything, which lead goes to which agent.

    Returns (accepted, rejected). Each accepted item records the target agent,
    the normalized number, whether the number was already owned, and the
    assignee seen at read time (used as the compare-and-swap guard later).
    """
    if not agents:
        raise ValidationError("no leads or agents")

    agent_ids = [a["_id"] for a in agents]
    agents_by_id = {a["_id"]: a for a in agents}
    planned_owner: dict[str, ObjectId] = {}

    accepted: list[dict] = []
    rejected: list[dict] = []
    cursor = 0

    for lead in leads:
        phone = primary_phone(lead)
        if not phone:
            rejected.append({
                "lead_id": lead["_id"],
                "phone_number": "",
                "error": f"Lead {lead['_id']} has no valid phone number",
            })
            continue

        target = agent_ids[cursor % len(agent_ids)]

        # Numbers accepted earlier in this batch stick to the agent they were planned to
        if phone in planned_owner:
            owner_id = planned_owner[phone]
            owner_label = _describe_agent(agents_by_id.get(owner_id), owner_id)
        else:
            owner = resolve(phone)
            owner_id = owner.agent_id if owner else None
            owner_label = owner.describe() if owner else ""

        if owner_id is not None and owner_id != target:
            rejected.append({
                "lead_id": lead["_id"],
                "phone_number": phone,
                "owner_id": owner_id,
                "error": (
                    f"Phone number {phone} is already assigned to {owner_label}. "
                    f"Cannot assign to different employee."
                ),
            })
            continue

        accepted.append({
            "lead_id": lead["_id"],
            "employee_id": target,
            "phone_number": phone,
            "is_reassignment": owner_id is not None,
            "previous_assignee": lead.get("assigned_to"),
        })
        planned_owner[phone] = target
        cursor += 1

    return accepted, rejected


def assign_leads_to_agents(
    db,
    lead_ids: Sequence[Any],
    agent_ids: Sequence[Any],
    requested_by,
    notifier: NotificationDispatcher | None = None,
    statuses: Sequence[str] | None = None,
) -> dict:
    """
    Assign a batch of leads across a batch of agents.

    Whole-batch ValidationError for empty input or unknown/inactive ids. Otherwise
    a partial-success result: accepted leads are written, conflicting ones come
    back in `errors` for the caller to retry or resolve.
    """
    if not lead_ids or not agent_ids:
        raise ValidationError("no leads or agents")

    requested_by = as_actor_id(requested_by)
    statuses = statuses or config.load_engine_config(db).get("active_statuses")
    leads = load_leads(db, _dedupe(lead_ids))
    agents = load_agents(db, _dedupe(agent_ids), statuses)
    resolver = PhoneOwnershipResolver(db)

    accepted, rejected = plan_assignments(leads, agents, resolver.resolve)
    leads_by_id = {l["_id"]: l for l in leads}
    agents_by_id = {a["_id"]: a for a in agents}

    written: list[dict] = []
    received: Counter = Counter()
    outbox: list[tuple[Any, dict]] = []
    now = utcnow()

    with persistence("assign_leads"):
        for item in accepted:
            lead_id, target = item["lead_id"], item["employee_id"]

            # Re-check ownership right before the write; the plan may be stale
            owner = resolver.resolve(item["phone_number"])
            if owner and owner.agent_id != target:
                rejected.append({
                    "lead_id": lead_id,
                    "phone_number": item["phone_number"],
                    "owner_id": owner.agent_id,
                    "error": (
                        f"Phone number {item['phone_number']} is already assigned to {owner.describe()}. "
                        f"Cannot assign to different employee."
                    ),
                })
                continue

            res = db[config.COLL_LEADS].update_one(
                {"_id": lead_id, "assigned_to": item["previous_assignee"]},
                {"$set": {
                    "assigned_to": target,
                    "assigned_by": requested_by,
                    "assigned_at": now,
                    "updated_at": now,
                }},
            )
            if res.matched_count == 0:
                logger.warning("Lead %s changed assignee since it was read; skipped", lead_id)
                rejected.append({
                    "lead_id": lead_id,
                    "phone_number": item["phone_number"],
                    "error": f"Lead {lead_id} was reassigned by another request. Reload and retry.",
                })
                continue

            written.append(item)
            if item["previous_assignee"] != target:
                received[target] += 1
                outbox.append((target, lead_assignment_event(leads_by_id[lead_id], target, requested_by)))

        for agent_id, count in received.items():
            db[config.COLL_EMPLOYEES].update_one(
                {"_id": agent_id},
                {"$inc": {"leads_assigned": count, "leads_pending": count}},
            )

    reassignments = sum(1 for w in written if w["is_reassignment"])
    logger.info(
        "Assigned %d leads (%d new, %d reassignments, %d rejected) across %d agents by %s",
        len(written), len(written) - reassignments, reassignments, len(rejected), len(agents), requested_by,
    )

    # Fire-and-forget, after all conditional writes
    dispatch_all(notifier, outbox)

    return {
        "assignments": [
            {
                "lead_id": w["lead_id"],
                "employee_id": w["employee_id"],
                "employee": _describe_agent(agents_by_id.get(w["employee_id"]), w["employee_id"]),
                "phone_number": w["phone_number"],
                "is_reassignment": w["is_reassignment"],
            }
            for w in written
        ],
        "new_assignments": len(written) - reassignments,
        "reassignments": reassignments,
        "total_assigned": len(written),
        "errors": [r["error"] for r in rejected],
        "rejected": rejected,
    }
