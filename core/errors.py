# core/errors.py
from typing import Any, Dict, Optional


# ========================================
# ❌ Billing error taxonomy
# ========================================
class BillingError(Exception):
    """Base class for failures raised by the billing services."""

    status_code: int = 400
    code: str = "billing_error"
    retryable: bool = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.context}


class NotFoundError(BillingError):
    """Missing box, subscription, plan or request. Retrying will not help."""

    status_code = 404
    code = "not_found"


class InvalidStateError(BillingError):
    """Operation attempted against a record that is not in the required state."""

    status_code = 409
    code = "invalid_state"


class ExternalServiceError(BillingError):
    """Payment gateway or notification call failed. A retry may succeed."""

    status_code = 502
    code = "external_service_error"
    retryable = True


class InvalidWebhookError(BillingError):
    """Webhook payload could not be parsed or its signature did not verify."""

    status_code = 400
    code = "invalid_webhook"


class PersistenceConflictError(BillingError):
    """Unique constraint violated and no existing row could be recovered."""

    status_code = 409
    code = "persistence_conflict"
