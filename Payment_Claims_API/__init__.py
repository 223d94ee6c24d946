import logging
import azure.functions as func

from utils import rbac
from utils.db_utils import get_db
from utils.http import respond, error_response, options_response, get_json_body
from reconciliation import (
    EngineError,
    claim_pending_payment,
    create_pending_payment,
    lead_payment_status,
    list_available_payments,
    payment_stats,
    payments_by_agent,
    review_claim,
)
from reconciliation.notifications import default_dispatcher

LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(name)s] %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

logger = logging.getLogger("Payment_Claims_API")

for noisy_logger in ("pymongo", "azure", "azure.identity", "azure.core", "urllib3"):
    logging.getLogger(noisy_logger).setLevel(logging.WARNING)

_PAYMENT_META = ("description", "receipt_number", "transaction_id", "account_name", "due_date", "currency")


def main(req: func.HttpRequest) -> func.HttpResponse:
    method = req.method
    action = req.route_params.get("action", "") or ""

    if method == "OPTIONS":
        return options_response()

    try:
        # Router
        if method == "POST" and action in ("", "/"):
            return create_payment_handler(req)
        elif method == "GET" and action == "available":
            return available_payments_handler(req)
        elif method == "GET" and action == "lead-status":
            return lead_status_handler(req)
        elif method == "POST" and action == "claim":
            return claim_handler(req)
        elif method == "POST" and action == "verify":
            return verify_handler(req)
        elif method == "GET" and action == "stats":
            return stats_handler(req)
        elif method == "GET" and action == "by-agent":
            return payments_by_agent_handler(req)
    except EngineError as e:
        logger.info("Request rejected (%s): %s", e.code, e.message)
        return error_response(e)
    except Exception as e:
        logger.error(f"Payment_Claims_API Critical Error: {e}", exc_info=True)
        return respond({"error": str(e)}, status=500)

    return respond({"error": "Not Found"}, status=404)


def create_payment_handler(req):
    identity = rbac.get_identity(req)
    db = get_db()
    if not rbac.is_admin(identity, db):
        return respond({"error": "Forbidden: Admins only"}, status=403)

    body = get_json_body(req)
    if body is None:
        return respond({"error": "Invalid JSON"}, status=400)

    required = ["amount", "payment_method"]
    if not all(k in body for k in required):
        return respond({"error": "Missing required fields"}, status=400)

    meta = {k: body[k] for k in _PAYMENT_META if body.get(k) is not None}
    payment = create_pending_payment(
        db,
        body["amount"],
        body["payment_method"],
        identity["agent_id"],
        lead_id=body.get("lead_id"),
        notifier=default_dispatcher(db),
        **meta,
    )
    return respond({"message": "Payment entry created successfully", "payment": payment}, status=201)


def available_payments_handler(req):
    identity = rbac.get_identity(req)
    if not rbac.is_employee(identity):
        return respond({"error": "Only employees can view available payments."}, status=403)

    payments = list_available_payments(get_db())
    return respond({"payments": payments, "total": len(payments)})


def lead_status_handler(req):
    identity = rbac.get_identity(req)
    if not rbac.is_employee(identity):
        return respond({"error": "Only employees can check lead payment status."}, status=403)

    lead_id = req.params.get("leadId") or req.params.get("lead_id")
    if not lead_id:
        return respond({"error": "Lead ID is required."}, status=400)

    return respond(lead_payment_status(get_db(), lead_id, identity["agent_id"]))


def claim_handler(req):
    identity = rbac.get_identity(req)
    if not rbac.is_employee(identity):
        return respond({"error": "Only employees can claim payments."}, status=403)

    body = get_json_body(req)
    if body is None:
        return respond({"error": "Invalid JSON"}, status=400)

    payment_id = body.get("paymentId") or body.get("payment_id")
    lead_id = body.get("leadId") or body.get("lead_id")
    if not payment_id or not lead_id:
        return respond({"error": "paymentId and leadId are required for claiming payment."}, status=400)

    result = claim_pending_payment(get_db(), payment_id, lead_id, identity["agent_id"])
    remainder = result["remainder_amount"]
    return respond({
        "message": "Payment claimed successfully",
        "claim": result,
        "remaining_payment": {
            "amount": remainder,
            "id": result["remainder_payment_id"],
            "message": f"₹{remainder:g} returned to Payment Claims for future claims",
        } if remainder > 0 else None,
    })


def verify_handler(req):
    identity = rbac.get_identity(req)
    db = get_db()
    if not rbac.is_admin(identity, db):
        return respond({"error": "Forbidden: Admins only"}, status=403)

    body = get_json_body(req)
    if body is None:
        return respond({"error": "Invalid JSON"}, status=400)

    payment_id = body.get("paymentId") or body.get("payment_id")
    if not payment_id:
        return respond({"error": "Missing 'paymentId'"}, status=400)

    payment = review_claim(db, payment_id, body.get("action", ""), body.get("notes", ""), identity["agent_id"])
    return respond({"message": f"Payment {payment['status']} successfully", "payment": payment})


def stats_handler(req):
    identity = rbac.get_identity(req)
    db = get_db()
    if not rbac.is_admin(identity, db):
        return respond({"error": "Forbidden: Admins only"}, status=403)

    return respond(payment_stats(db, req.params.get("period") or "monthly"))


def payments_by_agent_handler(req):
    identity = rbac.get_identity(req)
    db = get_db()
    if not rbac.is_admin(identity, db):
        return respond({"error": "Forbidden: Admins only"}, status=403)

    agent_id = req.params.get("agentId") or req.params.get("agent_id")
    if not agent_id:
        return respond({"error": "Missing 'agentId'"}, status=400)

    return respond(payments_by_agent(
        db,
        agent_id,
        status=req.params.get("status"),
        page=req.params.get("page") or 1,
        limit=req.params.get("limit") or 10,
    ))
