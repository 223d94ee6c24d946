import os
import logging
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv, find_dotenv

# --- Azure Key Vault ---
from azure.identity import DefaultAzureCredential
from azure.keyvault.secrets import SecretClient


def _load_dotenvs() -> None:
    """Load .env in a predictable order:
    1) Path provided via LEAD_ENV_PATH
    2) Project-local candidates (repo root, current working directory)
    3) CWD-based auto discovery via find_dotenv(usecwd=True)

    Existing environment variables always win (override=False).
    """
    here = Path(__file__).resolve()
    candidates = []
    if os.getenv("LEAD_ENV_PATH"):
        candidates.append(Path(os.getenv("LEAD_ENV_PATH", "")).expanduser().resolve())
    candidates += [
        here.parent.parent / ".env",
        Path.cwd() / ".env",
    ]

    loaded = False
    for p in candidates:
        try:
            if p.is_file():
                load_dotenv(dotenv_path=str(p), override=False)
                logging.info("Loaded .env from: %s", p)
                loaded = True
        except Exception as _e:
            logging.warning("Failed loading .env at %s: %s", p, _e)

    if not loaded:
        auto = find_dotenv(usecwd=True)
        if auto:
            load_dotenv(dotenv_path=auto, override=False)
            logging.info("Loaded .env via find_dotenv: %s", auto)


_load_dotenvs()

# Key Vault is only consulted when a vault URL is configured
KEY_VAULT_URL = os.getenv("KEY_VAULT_URL", "")

# Simple in-process cache for secrets
_SECRET_CACHE: dict[str, str] = {}


def get_secret(name: str, default: str | None = None) -> str | None:
    """
    Fetch a secret: in-process cache, then Azure Key Vault (if KEY_VAULT_URL is
    set; tries the hyphenated name too), then environment variables, then default.
    """
    if name in _SECRET_CACHE:
        return _SECRET_CACHE[name]

    if KEY_VAULT_URL:
        lookup_names = [name]
        if "_" in name:
            lookup_names.append(name.replace("_", "-"))
        try:
            client = SecretClient(vault_url=KEY_VAULT_URL, credential=DefaultAzureCredential())
            for _nm in lookup_names:
                try:
                    val = client.get_secret(_nm).value
                except Exception:
                    # Try next candidate name
                    continue
                if isinstance(val, str) and val:
                    _SECRET_CACHE[name] = val
                    return val
        except Exception as e:
            logging.warning("Secrets: Key Vault lookup failed for '%s': %s", name, e)

    env_val = os.getenv(name)
    if env_val:
        _SECRET_CACHE[name] = env_val
        return env_val

    return default


# --- Database ---
DB_NAME = os.getenv("LEAD_DB_NAME", "Lead_Reconciliation")

# Checked in order when resolving the Mongo connection string
MONGO_URI_KEYS = [
    "MongoDb-Connection-String",
    "MONGODB_CONNECTION_STRING",
    "CUSTOMCONNSTR_MongoDb-Connection-String",
    "MONGO_URI",
]

# Collections
COLL_LEADS = "Leads"
COLL_EMPLOYEES = "Employees"
COLL_PAYMENTS = "Payment_Collections"
COLL_NOTIFICATIONS = "Notifications"
COLL_PERMISSIONS = "Admin_Permissions"
COLL_CONFIG = "config"
CONFIG_ID = "Reconciliation_Schema"
SCHEMA_VERSION = "2025-11-15.r1"

# --- Engine defaults (env overridable) ---
MIN_CLAIM_AMOUNT = float(os.getenv("MIN_CLAIM_AMOUNT", "1"))
ACTIVE_AGENT_STATUSES = [
    s.strip() for s in os.getenv("ACTIVE_AGENT_STATUSES", "online,offline").split(",") if s.strip()
]
LEDGER_WRITE_RETRIES = int(os.getenv("LEDGER_WRITE_RETRIES", "3"))

# --- Notifications ---
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "")
NOTIFY_TIMEOUT_SEC = float(os.getenv("NOTIFY_TIMEOUT_SEC", "5"))

_DEFAULT_CONFIG: dict[str, object] = {
    "min_claim_amount": MIN_CLAIM_AMOUNT,
    "active_statuses": ACTIVE_AGENT_STATUSES,
}

_config_cache: dict[str, object] | None = None


def load_engine_config(db, refresh: bool = False) -> dict[str, object]:
    """
    Load runtime engine config from the `config` collection.
    Bootstraps a Reconciliation_Schema document with defaults if missing;
    values under `defaults` override the env-derived defaults.
    """
    global _config_cache

    if _config_cache is not None and not refresh:
        return _config_cache

    doc = db[COLL_CONFIG].find_one({"_id": CONFIG_ID})
    if not doc:
        now_iso = datetime.now(timezone.utc).isoformat()
        doc = {
            "_id": CONFIG_ID,
            "module": "Reconciliation",
            "schema_version": SCHEMA_VERSION,
            "status": "active",
            "description": "Runtime config for lead assignment and payment-claim reconciliation.",
            "createdAt": now_iso,
            "updatedAt": now_iso,
            "defaults": dict(_DEFAULT_CONFIG),
            "meta": {
                "notes": "Auto-created at runtime. Safe to edit values under `defaults`.",
            },
        }
        db[COLL_CONFIG].insert_one(doc)
        logging.info("[Config] Bootstrapped default runtime config: %s/%s", COLL_CONFIG, CONFIG_ID)

    defaults_raw = doc.get("defaults") or {}
    if not isinstance(defaults_raw, dict):
        defaults_raw = {}

    cfg: dict[str, object] = {**_DEFAULT_CONFIG, **defaults_raw}
    _config_cache = cfg
    return cfg


def reset_engine_config_cache() -> None:
    global _config_cache
    _config_cache = None
