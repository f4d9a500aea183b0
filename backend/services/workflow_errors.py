"""
Validation workflow error taxonomy.

Every external-call failure in the validation workflow is converted to one of
these at the handler boundary; routes map them to HTTP responses through
`to_http_detail()`.
"""
from datetime import date
from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    """Base class for validation workflow errors."""
    error_code = "WORKFLOW_ERROR"
    status_code = 400
    recoverable = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_http_detail(self) -> Dict[str, Any]:
        detail = {"error_code": self.error_code, "message": self.message}
        if self.details:
            detail["details"] = self.details
        return detail


class DocumentNotFound(WorkflowError):
    """Document id does not resolve. Terminal: the link is wrong or the document was deleted."""
    error_code = "DOCUMENT_NOT_FOUND"
    status_code = 404
    recoverable = False

    def __init__(self, document_id: str, document_type: str):
        super().__init__(
            "Ce document n'existe pas ou a été supprimé.",
            {"document_id": document_id, "document_type": document_type},
        )


class DocumentExpired(WorkflowError):
    """Validity or due date has passed. Terminal: the client must contact the issuer."""
    error_code = "DOCUMENT_EXPIRED"
    status_code = 410
    recoverable = False

    def __init__(self, number: str, issuer_name: str, expired_on: date):
        super().__init__(
            f"Le document {number} n'est plus valide. Veuillez contacter {issuer_name or 'l’émetteur'}.",
            {"number": number, "issuer_name": issuer_name, "expired_on": expired_on.isoformat()},
        )
        self.expired_on = expired_on


class SignerValidationError(WorkflowError):
    """Malformed signer input. Blocks only the submit action."""
    error_code = "SIGNER_VALIDATION_ERROR"
    status_code = 422

    def __init__(self, fields: List[str], message: str = "Informations du signataire invalides."):
        super().__init__(message, {"fields": fields})
        self.fields = fields


class TransientServiceError(WorkflowError):
    """Store write, checkout creation or verification failed. The user may retry the same action."""
    error_code = "SERVICE_UNAVAILABLE"
    status_code = 503

    def __init__(self, operation: str, cause: Optional[str] = None):
        super().__init__(
            "Une erreur est survenue. Veuillez réessayer.",
            {"operation": operation, **({"cause": cause} if cause else {})},
        )
        self.operation = operation


class TransitionConflict(WorkflowError):
    """A conditional write found the document in an unexpected state (concurrent edit)."""
    error_code = "TRANSITION_CONFLICT"
    status_code = 409

    def __init__(self, document_id: str, transition: str):
        super().__init__(
            "Ce document a été modifié entre-temps. Veuillez recharger la page.",
            {"document_id": document_id, "transition": transition},
        )


class NavigationRejected(WorkflowError):
    """Requested step move is not allowed from the current step."""
    error_code = "NAVIGATION_REJECTED"
    status_code = 409

    def __init__(self, current: str, target: str, reason: str):
        super().__init__(reason, {"current": current, "target": target})


class ReconciliationGap(WorkflowError):
    """Stripe confirmed the payment but the document could not be marked paid."""
    error_code = "PAYMENT_RECONCILIATION_PENDING"
    status_code = 502
    recoverable = False

    def __init__(self, document_id: str, session_id: str, issue_id: Optional[str] = None):
        super().__init__(
            "Paiement reçu, confirmation en attente. Contactez le support si ce message persiste.",
            {"document_id": document_id, "session_id": session_id, "issue_id": issue_id},
        )
        self.session_id = session_id
