"""Small helpers shared by the engine modules for talking to Mongo."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError

from .errors import PersistenceError, ValidationError

logger = logging.getLogger("reconciliation-store")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_object_id(value: Any, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label} format: {value}", **{label: str(value)})


def as_actor_id(value: Any) -> Any:
    """Caller ids from the identity context: ObjectId when they look like one, else left as-is."""
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


def split_object_ids(values: Iterable[Any]) -> tuple[list[ObjectId], list[str]]:
    """Partition raw ids into parsed ObjectIds and the strings that are not ObjectIds."""
    oids, others = [], []
    for v in values:
        if isinstance(v, ObjectId) or ObjectId.is_valid(str(v)):
            oids.append(ObjectId(str(v)))
        else:
            others.append(str(v))
    return oids, others


@contextmanager
def persistence(operation: str):
    """Translate driver failures into PersistenceError so callers know to retry."""
    try:
        yield
    except PyMongoError as e:
        logger.error("[%s] store write failed: %s", operation, e)
        raise PersistenceError(f"{operation} failed: {e}", operation=operation) from e
