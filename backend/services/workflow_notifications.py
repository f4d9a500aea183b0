"""
Notifications sent after validation workflow transitions.
All sends go through notification_orchestrator.dispatch: a failure is logged
and never reaches the caller, whose document write is already committed.
"""
from typing import Dict, List, Optional
import os
import logging

from models import Document, EmailTemplateAlias
from services import email_templates
from services.amounts import format_document_amount
from services.notification_orchestrator import notification_orchestrator, NotificationResult

logger = logging.getLogger(__name__)


def owner_recipient(document: Document) -> Optional[str]:
    """Issuer inbox: OWNER_NOTIFICATION_EMAIL, else the company email on the document."""
    configured = (os.getenv("OWNER_NOTIFICATION_EMAIL") or "").strip()
    return configured or (document.company.email or "").strip() or None


async def _dispatch(recipient: Optional[str], template: Dict[str, str], alias: EmailTemplateAlias,
                    document: Document, idempotency_key: str) -> Optional[NotificationResult]:
    if not recipient:
        logger.info(f"No recipient for {alias.value} on {document.document_type.value} {document.id}; skipped")
        return None
    return await notification_orchestrator.dispatch(
        recipient=recipient,
        subject=template["subject"],
        html_body=template["html"],
        template_alias=alias,
        idempotency_key=idempotency_key,
        document_id=document.id,
    )


async def notify_quote_signed(document: Document, signer_name: str, signer_email: str,
                              notify_signer: bool) -> List[NotificationResult]:
    """Owner always; the signer only when no payment step follows."""
    results = []
    owner = await _dispatch(
        owner_recipient(document),
        email_templates.build_quote_signed_owner_email(document, signer_name, signer_email),
        EmailTemplateAlias.QUOTE_SIGNED_OWNER,
        document,
        f"quote-signed:{document.id}:owner",
    )
    results.append(owner)
    if notify_signer:
        results.append(await _dispatch(
            signer_email,
            email_templates.build_quote_signed_client_email(document, signer_name),
            EmailTemplateAlias.QUOTE_SIGNED_CLIENT,
            document,
            f"quote-signed:{document.id}:client",
        ))
    return [r for r in results if r is not None]


async def notify_payment_received(document: Document, amount: float, session_id: str,
                                  payer_email: Optional[str]) -> List[NotificationResult]:
    """Payer and owner, keyed by document id + session id so a replayed completion sends nothing."""
    amount_display = format_document_amount(document, amount)
    payer = payer_email or (document.signature.email if document.signature else None) or document.client.email
    results = [
        await _dispatch(
            payer,
            email_templates.build_payment_received_client_email(document, amount_display),
            EmailTemplateAlias.PAYMENT_RECEIVED_CLIENT,
            document,
            f"payment:{document.id}:{session_id}:client",
        ),
        await _dispatch(
            owner_recipient(document),
            email_templates.build_payment_received_owner_email(document, amount_display, payer, session_id),
            EmailTemplateAlias.PAYMENT_RECEIVED_OWNER,
            document,
            f"payment:{document.id}:{session_id}:owner",
        ),
    ]
    return [r for r in results if r is not None]


async def notify_bank_transfer(document: Document, details: Dict) -> List[NotificationResult]:
    """Quotes only: owner and signer. Billing invoices send nothing."""
    if not document.is_quote:
        return []
    signer_email = document.signature.email if document.signature else document.client.email
    results = [
        await _dispatch(
            owner_recipient(document),
            email_templates.build_bank_transfer_owner_email(document, details),
            EmailTemplateAlias.BANK_TRANSFER_OWNER,
            document,
            f"bank-transfer:{document.id}:owner",
        ),
        await _dispatch(
            signer_email,
            email_templates.build_bank_transfer_client_email(document, details),
            EmailTemplateAlias.BANK_TRANSFER_CLIENT,
            document,
            f"bank-transfer:{document.id}:client",
        ),
    ]
    return [r for r in results if r is not None]
