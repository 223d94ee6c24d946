"""Lead assignment and payment-claim reconciliation engine."""

from .assignment import assign_leads_to_agents
from .errors import (
    AlreadyClaimed,
    BelowMinimumThreshold,
    ConflictError,
    EngineError,
    NotFoundError,
    NotYourLead,
    PersistenceError,
    PreconditionError,
    ValidationError,
)
from .leads import add_fee_entry, create_lead
from .payment_claims import (
    claim_pending_payment,
    create_pending_payment,
    lead_payment_status,
    list_available_payments,
    payment_stats,
    payments_by_agent,
    review_claim,
)
from .phone_ownership import PhoneOwnershipResolver, normalize_phone
from .round_robin import RoundRobinCursor
