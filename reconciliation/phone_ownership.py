"""
Phone Ownership Resolver.

"Number P belongs to agent A" is never stored; it is recomputed from the Leads
collection on every call: P is owned by A iff some lead carrying P (as its
primary number or in its mobile_numbers list) is assigned to A.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping, NamedTuple

from bson import ObjectId

from utils import config

logger = logging.getLogger("phone-ownership")

_STRIP_RE = re.compile(r"[\s\-\(\)]")


def normalize_phone(number: Any) -> str:
    """Strip whitespace, hyphens and parentheses. No country-code canonicalization."""
    if number is None:
        return ""
    return _STRIP_RE.sub("", str(number))


def primary_phone(lead: Mapping[str, Any]) -> str:
    """The number a lead is routed by: `number`, else the first of `mobile_numbers`."""
    number = lead.get("number")
    if not number:
        mobiles = lead.get("mobile_numbers") or []
        number = mobiles[0] if mobiles else ""
    return normalize_phone(number)


def describe_agent(agent_id, name: str = "", code: str = "") -> str:
    """How conflict messages name an agent: "Name (EMP001)", else the name, else the id."""
    if code:
        return f"{name} ({code})"
    return name or str(agent_id)


class Ownership(NamedTuple):
    agent_id: ObjectId
    agent_name: str
    agent_code: str
    lead_id: ObjectId

    def describe(self) -> str:
        return describe_agent(self.agent_id, self.agent_name, self.agent_code)


def _phone_query(phone: str) -> dict:
    return {"$or": [{"number": phone}, {"mobile_numbers": phone}]}


class PhoneOwnershipResolver:
    def __init__(self, db):
        self.leads = db[config.COLL_LEADS]
        self.employees = db[config.COLL_EMPLOYEES]

    def resolve(self, phone_number: Any) -> Ownership | None:
        """
        Return the owner of `phone_number`, or None when no assigned lead carries it.
        If manual edits left the number under two agents, the first hit wins.
        """
        phone = normalize_phone(phone_number)
        if not phone:
            return None

        query = _phone_query(phone)
        query["assigned_to"] = {"$ne": None}
        lead = self.leads.find_one(query, {"_id": 1, "assigned_to": 1})
        if not lead:
            return None

        agent = self.employees.find_one(
            {"_id": lead["assigned_to"]}, {"name": 1, "employee_id": 1}
        ) or {}
        logger.debug("Number %s owned by %s via lead %s", phone, lead["assigned_to"], lead["_id"])
        return Ownership(
            agent_id=lead["assigned_to"],
            agent_name=agent.get("name", ""),
            agent_code=agent.get("employee_id", ""),
            lead_id=lead["_id"],
        )

    def find_leads_by_phone(self, phone_number: Any) -> list[dict]:
        """Every lead sharing the number (assigned or not), newest first, with assignee details."""
        phone = normalize_phone(phone_number)
        if not phone:
            return []

        leads = list(self.leads.find(_phone_query(phone)).sort("created_at", -1))
        agent_ids = {l["assigned_to"] for l in leads if l.get("assigned_to")}
        agents = {
            a["_id"]: a
            for a in self.employees.find({"_id": {"$in": list(agent_ids)}}, {"name": 1, "employee_id": 1})
        } if agent_ids else {}

        out = []
        for lead in leads:
            agent = agents.get(lead.get("assigned_to"))
            out.append({
                "id": str(lead["_id"]),
                "phone_number": primary_phone(lead),
                "name": lead.get("name", ""),
                "assigned_to": {
                    "id": str(agent["_id"]),
                    "name": agent.get("name", ""),
                    "employee_id": agent.get("employee_id", ""),
                } if agent else None,
                "assigned_by": str(lead["assigned_by"]) if lead.get("assigned_by") else None,
                "assigned_at": lead.get("assigned_at"),
                "created_at": lead.get("created_at"),
            })
        return out
