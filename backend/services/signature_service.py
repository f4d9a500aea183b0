"""
Signature Handler - electronic acceptance of a quote.

A quote is signed at most once. A replayed submission (double click, second tab,
reload after success) finds the quote already accepted and only advances the
step; a concurrent first submission loses the conditional write and gets a
TransitionConflict.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
import logging
import re

from pymongo.errors import PyMongoError

from models import AuditAction, Document, QuoteStatus, Signature
from services.document_service import document_store
from services.validation_workflow import Step, next_step_after_signature
from services.workflow_errors import SignerValidationError, TransientServiceError, TransitionConflict
from services.workflow_notifications import notify_quote_signed
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

SIGNED_STATUSES = [QuoteStatus.ACCEPTED.value, QuoteStatus.PAID.value]


@dataclass
class SignerInput:
    first_name: str
    last_name: str
    email: str

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass
class SignatureOutcome:
    document: Document
    next_step: Step
    replayed: bool = False

    @property
    def celebrate(self) -> bool:
        return self.next_step == Step.CONFIRMATION


def validate_signer(first_name: str, last_name: str, email: str) -> SignerInput:
    """Trim and check signer fields. Raises SignerValidationError listing every bad field."""
    first = (first_name or "").strip()
    last = (last_name or "").strip()
    mail = (email or "").strip()
    invalid = []
    if not first:
        invalid.append("first_name")
    if not last:
        invalid.append("last_name")
    if not mail or not EMAIL_PATTERN.match(mail):
        invalid.append("email")
    if invalid:
        raise SignerValidationError(invalid, "Veuillez renseigner un prénom, un nom et un email valides.")
    return SignerInput(first, last, mail)


async def sign_quote(
    document: Document,
    steps: List[Step],
    first_name: str,
    last_name: str,
    email: str,
    ip_address: Optional[str] = None,
) -> SignatureOutcome:
    """
    Accept a quote on behalf of the signer and return the step to land on.
    Notifications follow the committed write and never block it.
    """
    if not document.is_quote:
        raise SignerValidationError(["document_type"], "Seuls les devis peuvent être signés.")

    signer = validate_signer(first_name, last_name, email)
    next_step = next_step_after_signature(steps)

    if document.is_accepted:
        logger.info(f"Quote {document.id} already accepted; signature replay ignored")
        return SignatureOutcome(document, next_step, replayed=True)

    signature = Signature(name=signer.full_name, email=signer.email, signed_at=datetime.now(timezone.utc))
    fields = {
        "status": QuoteStatus.ACCEPTED.value,
        "signature": signature.model_dump(mode="json"),
    }
    try:
        matched = await document_store.patch(
            document.id, document.document_type, fields,
            expected={"status": {"$nin": SIGNED_STATUSES}},
        )
    except PyMongoError as e:
        logger.error(f"Failed to record signature on quote {document.id}: {e}")
        raise TransientServiceError("sign_quote", str(e))

    if not matched:
        logger.warning(f"SIGNATURE_CONFLICT quote={document.id} signer={signer.email}")
        await create_audit_log(
            action=AuditAction.SIGNATURE_CONFLICT,
            actor_role="client",
            resource_type=document.document_type.value,
            resource_id=document.id,
            metadata={"signer_email": signer.email},
            ip_address=ip_address,
        )
        raise TransitionConflict(document.id, "sign")

    updated = document.model_copy(update={"status": QuoteStatus.ACCEPTED, "signature": signature})
    logger.info(f"QUOTE_SIGNED quote={document.id} number={document.number} signer={signer.email}")
    await create_audit_log(
        action=AuditAction.QUOTE_SIGNED,
        actor_role="client",
        resource_type=document.document_type.value,
        resource_id=document.id,
        before_state={"status": document.status.value if document.status else None},
        after_state={"status": QuoteStatus.ACCEPTED.value},
        metadata={"signer_name": signer.full_name, "signer_email": signer.email},
        ip_address=ip_address,
    )

    await notify_quote_signed(
        updated, signer.full_name, signer.email,
        notify_signer=next_step == Step.CONFIRMATION,
    )
    return SignatureOutcome(updated, next_step)
