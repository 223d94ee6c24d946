"""
Round-Robin Cursor for the single-lead creation path.

The active-agent list is re-queried on every call so membership can change
between calls. The index lives on the cursor instance, not in a module global;
a restart resets fairness but never correctness.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Sequence

from bson import ObjectId

from utils import config

logger = logging.getLogger("round-robin")


def active_agent_filter(statuses: Sequence[str] | None = None) -> dict:
    return {
        "is_active": True,
        "is_blocked": {"$ne": True},
        "status": {"$in": list(statuses or config.ACTIVE_AGENT_STATUSES)},
    }


def fetch_active_agent_ids(db, statuses: Sequence[str] | None = None) -> list[ObjectId]:
    statuses = statuses or config.load_engine_config(db).get("active_statuses")
    cursor = db[config.COLL_EMPLOYEES].find(active_agent_filter(statuses), {"_id": 1}).sort("_id", 1)
    return [doc["_id"] for doc in cursor]


class RoundRobinCursor:
    def __init__(self, db=None, fetch_agents: Callable[[], Sequence[ObjectId]] | None = None):
        if fetch_agents is None:
            if db is None:
                raise ValueError("RoundRobinCursor needs a db or a fetch_agents callable")
            fetch_agents = lambda: fetch_active_agent_ids(db)
        self._fetch_agents = fetch_agents
        self._index = 0
        self._lock = threading.Lock()

    def next(self) -> ObjectId | None:
        """Return the next active agent's id, or None when nobody is active."""
        with self._lock:
            agents = list(self._fetch_agents())
            if not agents:
                logger.info("No active agents available for round-robin")
                return None

            agent_id = agents[self._index % len(agents)]
            self._index = (self._index + 1) % len(agents)
            logger.debug("Round-robin selected %s (%d active)", agent_id, len(agents))
            return agent_id

    def reset(self) -> None:
        with self._lock:
            self._index = 0
