import logging

import pymongo

from utils import config

# Global cache for the MongoDB client to enable connection pooling across invocations
_CLIENT_CACHE = None
_INDEXED_DBS: set[str] = set()


def get_db_client(**kwargs):
    """
    Returns a PyMongo client using the connection string from Key Vault / environment.
    Uses a global cache to reuse the client across Azure Function invocations.
    """
    global _CLIENT_CACHE

    if _CLIENT_CACHE:
        return _CLIENT_CACHE

    uri = None
    for key in config.MONGO_URI_KEYS:
        val = config.get_secret(key)
        if val:
            uri = val
            break

    if not uri:
        # CRITICAL: Prevent fallback to localhost:27017
        error_msg = f"MongoDB Connection String not found in environment variables. Checked: {config.MONGO_URI_KEYS}"
        logging.critical(error_msg)
        raise RuntimeError(error_msg)

    kwargs.setdefault("serverSelectionTimeoutMS", 5000)
    try:
        client = pymongo.MongoClient(uri, **kwargs)
        _CLIENT_CACHE = client
        return client
    except Exception as e:
        logging.critical(f"Failed to create MongoClient: {e}")
        raise


def get_db(db_name: str | None = None):
    """
    Returns the database object.
    """
    client = get_db_client()
    db = client[db_name or config.DB_NAME]
    if db.name not in _INDEXED_DBS:
        ensure_indexes(db)
        _INDEXED_DBS.add(db.name)
    return db


def ensure_indexes(db) -> None:
    """Indexes backing the ownership lookup, claim pool and agent rotation. Idempotent."""
    try:
        db[config.COLL_LEADS].create_index([("number", 1), ("assigned_to", 1)])
        db[config.COLL_LEADS].create_index([("mobile_numbers", 1), ("assigned_to", 1)])
        db[config.COLL_PAYMENTS].create_index([("status", 1), ("created_at", -1)])
        db[config.COLL_PAYMENTS].create_index([("lead_id", 1), ("status", 1)])
        db[config.COLL_EMPLOYEES].create_index([("is_active", 1), ("status", 1)])
        db[config.COLL_EMPLOYEES].create_index("employee_id", unique=True, sparse=True)
    except pymongo.errors.PyMongoError as e:
        logging.warning("[Indexes] ensure failed: %s", e)
