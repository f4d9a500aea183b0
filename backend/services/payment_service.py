"""
Payment Completion Handler and bank transfer acknowledgement.

complete_payment() is the only writer of the paid state. It is reached from the
client's return on the Stripe success URL and from the checkout.session.completed
webhook, in either order and any number of times; at most one write and one set
of notifications happen per session.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from pymongo.errors import PyMongoError

from database import database
from models import (
    AuditAction, Document, PaymentRecord, PaymentStatus, QuoteStatus, ReconciliationIssue,
)
from services.amounts import amount_due
from services.bank_transfer import bank_transfer_details
from services.document_service import document_store
from services.stripe_service import SessionVerification, stripe_service
from services.workflow_errors import (
    NavigationRejected, ReconciliationGap, TransientServiceError, TransitionConflict,
)
from services.workflow_notifications import notify_bank_transfer, notify_payment_received
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

OUTCOME_RECORDED = "recorded"
OUTCOME_ALREADY_RECORDED = "already_recorded"
OUTCOME_UNVERIFIED = "unverified"

UNVERIFIED_NOTICE = "Le paiement n'a pas pu être confirmé. Vous pouvez réessayer."


@dataclass
class PaymentOutcome:
    outcome: str
    document: Document
    notice: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def celebrate(self) -> bool:
        return self.outcome == OUTCOME_RECORDED


@dataclass
class BankTransferOutcome:
    document: Document
    details: Dict[str, Any]
    notified: int = 0
    bank_transfer_pending: bool = True


async def _record_reconciliation_issue(document: Document, session_id: str, amount: float,
                                       source: str, error: str) -> Optional[str]:
    issue = ReconciliationIssue(
        document_id=document.id,
        document_type=document.document_type,
        session_id=session_id,
        amount=amount,
        currency=document.effective_currency,
        source=source,
        error=error[:500],
    )
    try:
        db = database.get_db()
        await db.payment_reconciliation_issues.insert_one(issue.model_dump(mode="json"))
        return issue.issue_id
    except PyMongoError as e:
        logger.critical(f"Could not record reconciliation issue for {document.id} / {session_id}: {e}")
        return None


async def complete_payment(
    document: Document,
    session_id: str,
    source: str,
    verification: Optional[SessionVerification] = None,
) -> PaymentOutcome:
    """
    Record a completed checkout session on the document.

    source: "return" (success redirect) or "webhook".
    verification: pass a result built from a trusted session object to skip the
    Stripe round-trip (webhook path). Otherwise the session is retrieved.

    Raises ReconciliationGap when Stripe has the money but the write failed, and
    TransientServiceError when Stripe cannot be reached to verify.
    """
    if document.is_paid:
        logger.info(f"Payment already recorded for {document.document_type.value} {document.id} (session {session_id}, source={source})")
        return PaymentOutcome(OUTCOME_ALREADY_RECORDED, document)

    if verification is None:
        verification = await stripe_service.verify_checkout_session(session_id, document.id)

    if not verification.verified:
        logger.warning(
            f"PAYMENT_UNVERIFIED document={document.id} session={session_id} "
            f"reason={verification.reason} source={source}"
        )
        await create_audit_log(
            action=AuditAction.PAYMENT_UNVERIFIED,
            actor_role="client" if source == "return" else "system",
            resource_type=document.document_type.value,
            resource_id=document.id,
            metadata={"session_id": session_id, "reason": verification.reason, "source": source},
        )
        return PaymentOutcome(OUTCOME_UNVERIFIED, document, notice=UNVERIFIED_NOTICE,
                              details={"reason": verification.reason})

    amount = amount_due(document)
    if verification.amount_total is not None and round(verification.amount_total, 2) != amount:
        logger.warning(
            f"Checkout amount {verification.amount_total} differs from amount due {amount} "
            f"for {document.id} (session {session_id})"
        )

    payment = PaymentRecord(
        session_id=session_id,
        amount=amount,
        currency=document.effective_currency,
        paid_at=datetime.now(timezone.utc),
        payer_email=verification.payer_email,
    )
    fields = {
        "payment": payment.model_dump(mode="json"),
        "payment_status": PaymentStatus.PAID.value,
    }
    if document.is_quote:
        fields["status"] = QuoteStatus.PAID.value
    expected = {"payment_status": {"$ne": PaymentStatus.PAID.value}, "payment.session_id": None}

    try:
        matched = await document_store.patch(document.id, document.document_type, fields, expected=expected)
        if not matched:
            current = await document_store.get(document.id, document.document_type)
            if current is not None and current.is_paid:
                logger.info(f"Payment for {document.id} recorded concurrently (session {session_id}, source={source})")
                return PaymentOutcome(OUTCOME_ALREADY_RECORDED, current)
            raise TransitionConflict(document.id, "mark_paid")
    except (PyMongoError, TransientServiceError, TransitionConflict) as e:
        error = f"{type(e).__name__}: {e}"
        issue_id = await _record_reconciliation_issue(document, session_id, amount, source, error)
        logger.critical(
            f"PAYMENT_RECONCILIATION_GAP document={document.id} type={document.document_type.value} "
            f"session={session_id} amount={amount} source={source} issue={issue_id} error={error}"
        )
        await create_audit_log(
            action=AuditAction.PAYMENT_RECONCILIATION_GAP,
            actor_role="system",
            resource_type=document.document_type.value,
            resource_id=document.id,
            metadata={"session_id": session_id, "amount": amount, "source": source, "issue_id": issue_id, "error": error},
        )
        raise ReconciliationGap(document.id, session_id, issue_id)

    updated = document.model_copy(update={
        "payment": payment,
        "payment_status": PaymentStatus.PAID,
        **({"status": QuoteStatus.PAID} if document.is_quote else {}),
    })
    logger.info(
        f"PAYMENT_RECORDED document={document.id} type={document.document_type.value} "
        f"session={session_id} amount={amount} {payment.currency.value} source={source}"
    )
    await create_audit_log(
        action=AuditAction.PAYMENT_RECORDED,
        actor_role="client" if source == "return" else "system",
        resource_type=document.document_type.value,
        resource_id=document.id,
        before_state={"payment_status": document.payment_status.value if document.payment_status else None,
                      "status": document.status.value if document.status else None},
        after_state={"payment_status": PaymentStatus.PAID.value,
                     "status": updated.status.value if updated.status else None},
        metadata={"session_id": session_id, "amount": amount, "currency": payment.currency.value, "source": source},
    )
    await notify_payment_received(updated, amount, session_id, verification.payer_email)
    return PaymentOutcome(OUTCOME_RECORDED, updated)


async def acknowledge_bank_transfer(document: Document) -> BankTransferOutcome:
    """
    Client chose to pay by transfer. Nothing is written on the document:
    payment_status stays as is until the owner reconciles the transfer.
    """
    details = bank_transfer_details(document)
    if details is None:
        raise NavigationRejected("payment", "confirmation", "Aucun compte bancaire n'est configuré pour ce document.")

    results = await notify_bank_transfer(document, details)
    logger.info(f"BANK_TRANSFER_ACKNOWLEDGED document={document.id} type={document.document_type.value} notified={len(results)}")
    await create_audit_log(
        action=AuditAction.BANK_TRANSFER_ACKNOWLEDGED,
        actor_role="client",
        resource_type=document.document_type.value,
        resource_id=document.id,
        metadata={"amount": details["amount"], "currency": details["currency"], "reference": details["reference"]},
    )
    return BankTransferOutcome(document=document, details=details, notified=len(results))
