import logging
import azure.functions as func

from utils import rbac
from utils.db_utils import get_db
from utils.http import respond, error_response, options_response, get_json_body
from reconciliation import (
    EngineError,
    PhoneOwnershipResolver,
    RoundRobinCursor,
    add_fee_entry,
    assign_leads_to_agents,
    create_lead,
)
from reconciliation.notifications import default_dispatcher

LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(name)s] %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

logger = logging.getLogger("Lead_Assignment_API")

for noisy_logger in ("pymongo", "azure", "azure.identity", "azure.core", "urllib3"):
    logging.getLogger(noisy_logger).setLevel(logging.WARNING)

# One rotation per worker process; reset on restart
_CURSOR = None


def get_cursor(db) -> RoundRobinCursor:
    global _CURSOR
    if _CURSOR is None:
        _CURSOR = RoundRobinCursor(db)
    return _CURSOR


def main(req: func.HttpRequest) -> func.HttpResponse:
    method = req.method
    action = req.route_params.get("action", "") or ""

    if method == "OPTIONS":
        return options_response()

    try:
        # Router
        if method == "POST" and action in ("", "/"):
            return create_lead_handler(req)
        elif method == "POST" and action == "assign":
            return assign_leads_handler(req)
        elif method == "POST" and action == "fees":
            return add_fee_entry_handler(req)
        elif method == "GET" and action == "phone":
            return phone_lookup_handler(req)
    except EngineError as e:
        logger.info("Request rejected (%s): %s", e.code, e.message)
        return error_response(e)
    except Exception as e:
        logger.error(f"Lead_Assignment_API Critical Error: {e}", exc_info=True)
        return respond({"error": str(e)}, status=500)

    return respond({"error": "Not Found"}, status=404)


def create_lead_handler(req):
    identity = rbac.get_identity(req)
    if not identity:
        return respond({"error": "Unauthorized"}, status=401)

    db = get_db()
    if not rbac.can_add_leads(identity, db):
        return respond({"error": "You do not have permission to add leads."}, status=403)

    body = get_json_body(req)
    if body is None:
        return respond({"error": "Invalid JSON"}, status=400)

    lead = create_lead(db, body, identity["agent_id"], cursor=get_cursor(db), notifier=default_dispatcher(db))
    return respond({"message": "Lead added successfully", "lead": lead}, status=201)


def assign_leads_handler(req):
    identity = rbac.get_identity(req)
    db = get_db()
    if not rbac.is_admin(identity, db):
        return respond({"error": "Only admin or super-admin can distribute leads."}, status=403)

    body = get_json_body(req)
    if body is None:
        return respond({"error": "Invalid JSON"}, status=400)

    lead_ids = body.get("leadIds", body.get("lead_ids"))
    employee_ids = body.get("employeeIds", body.get("employee_ids"))
    if not isinstance(lead_ids, list) or not isinstance(employee_ids, list):
        return respond({"error": "leadIds and employeeIds arrays are required."}, status=400)

    result = assign_leads_to_agents(
        db, lead_ids, employee_ids, identity["agent_id"], notifier=default_dispatcher(db)
    )
    result["message"] = (
        "Leads assigned successfully" if not result["errors"]
        else "Some leads could not be assigned"
    )
    return respond(result)


def add_fee_entry_handler(req):
    identity = rbac.get_identity(req)
    db = get_db()
    if not rbac.is_admin(identity, db):
        return respond({"error": "Forbidden: Admins only"}, status=403)

    body = get_json_body(req)
    if body is None:
        return respond({"error": "Invalid JSON"}, status=400)
    if not body.get("lead_id"):
        return respond({"error": "Missing 'lead_id'"}, status=400)

    result = add_fee_entry(db, body["lead_id"], body, recorded_by=identity["agent_id"])
    return respond(result, status=201)


def phone_lookup_handler(req):
    identity = rbac.get_identity(req)
    if not identity:
        return respond({"error": "Unauthorized"}, status=401)

    phone = req.params.get("phoneNumber") or req.params.get("phone")
    if not phone:
        return respond({"error": "phoneNumber is required."}, status=400)

    leads = PhoneOwnershipResolver(get_db()).find_leads_by_phone(phone)
    return respond({"existing_leads": leads, "count": len(leads)})
