import os
import logging

from bson import ObjectId

from utils import config
from utils.auth_utils import get_claims_from_jwt

ADMIN_ROLES = {"admin", "super-admin"}
EMPLOYEE_ROLE = "employee"


def get_allowed_emails(env_var_name: str) -> set[str]:
    raw = os.getenv(env_var_name, "")
    return {e.strip().lower() for e in raw.split(",") if e.strip()}


def _is_dev_or_test() -> bool:
    return (
        os.getenv("AZURE_FUNCTIONS_ENVIRONMENT") != "Production" or
        os.getenv("DEBUG_RBAC") == "1" or
        os.getenv("E2E_MODE") == "1"
    )


def get_identity(req) -> dict | None:
    """
    Resolve {agent_id, role, email} for the caller. The engine trusts this as-is.
    """
    # 1. Signed JWT from the login service (cookie or bearer) - ALWAYS honored
    claims = get_claims_from_jwt(req)
    if claims and (claims.get("id") or claims.get("sub")):
        return {
            "agent_id": str(claims.get("id") or claims.get("sub")),
            "role": (claims.get("role") or EMPLOYEE_ROLE).lower(),
            "email": (claims.get("email") or "").lower(),
        }

    # 2. Dev/Test-only: plain headers (E2E tests, local development)
    # CRITICAL: In Production, ignore these to prevent spoofing
    if _is_dev_or_test():
        uid = req.headers.get("X-User-Id")
        if uid:
            return {
                "agent_id": uid,
                "role": (req.headers.get("X-User-Role") or EMPLOYEE_ROLE).lower(),
                "email": (req.headers.get("X-User-Email") or "").lower(),
            }

    return None


def _check_db_role(db, email: str, roles: set[str]) -> bool:
    if not email or db is None:
        return False
    try:
        user = db[config.COLL_PERMISSIONS].find_one({"email": email})
    except Exception as e:
        logging.error(f"RBAC DB check failed: {e}")
        return False
    if not user:
        return False
    return bool(roles & set(user.get("roles", [])))


def is_admin(identity: dict | None, db=None) -> bool:
    if not identity:
        return False
    if identity.get("role") in ADMIN_ROLES:
        return True

    email = identity.get("email", "")
    if email and email in get_allowed_emails("LEAD_ADMIN_EMAILS"):
        return True

    return _check_db_role(db, email, ADMIN_ROLES)


def is_employee(identity: dict | None) -> bool:
    return bool(identity) and identity.get("role") == EMPLOYEE_ROLE


def can_add_leads(identity: dict | None, db=None) -> bool:
    """Admins always; employees only with the lead_add access flag."""
    if is_admin(identity, db):
        return True
    if not is_employee(identity) or db is None:
        return False

    if not ObjectId.is_valid(identity["agent_id"]):
        return False
    emp = db[config.COLL_EMPLOYEES].find_one(
        {"_id": ObjectId(identity["agent_id"])}, {"access": 1}
    ) or {}
    return bool((emp.get("access") or {}).get("lead_add"))
