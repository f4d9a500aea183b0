"""
Document Mailer - emails a quote or billing invoice to the client.

The message is free text written by the issuer. A [VALIDATION_BUTTON] marker in
it becomes a button to /validation/{id}; an optional PDF is attached.
"""
from dataclasses import dataclass
from typing import Optional
import base64
import binascii
import logging

from models import AuditAction, Document, EmailTemplateAlias
from services.email_templates import build_document_email
from services.notification_orchestrator import notification_orchestrator, NotificationResult
from services.workflow_errors import SignerValidationError, TransientServiceError
from utils.audit import create_audit_log
from utils.public_app_url import build_validation_url

logger = logging.getLogger(__name__)


@dataclass
class Attachment:
    filename: str
    content: str  # base64


def _check_attachment(attachment: Attachment) -> None:
    try:
        base64.b64decode(attachment.content, validate=True)
    except (binascii.Error, ValueError):
        raise SignerValidationError(["attachment"], "La pièce jointe n'est pas un contenu base64 valide.")


async def send_document_email(
    document: Document,
    recipient: str,
    subject: str,
    message: str,
    with_payment: bool = False,
    attachment: Optional[Attachment] = None,
    base_url: Optional[str] = None,
) -> NotificationResult:
    """
    Send the document to the client. Unlike workflow notifications the email is
    the requested action itself, so a permanent failure is raised to the caller.
    A transient failure is already queued for retry and comes back as the result.
    """
    if attachment is not None:
        _check_attachment(attachment)

    # Billing invoices always open with the payment step
    effective_with_payment = with_payment or not document.is_quote
    try:
        validation_url = build_validation_url(document.id, document.document_type, effective_with_payment, base_url)
    except ValueError as e:
        logger.error(f"Cannot build validation link for {document.id}: {e}")
        raise TransientServiceError("build_validation_url", str(e))
    rendered = build_document_email(
        document,
        message,
        validation_url=validation_url,
        with_payment=effective_with_payment,
        attachment_name=attachment.filename if attachment else None,
    )
    attachments = None
    if attachment is not None:
        attachments = [{"Name": attachment.filename, "Content": attachment.content, "ContentType": "application/pdf"}]

    result = await notification_orchestrator.send(
        recipient=recipient,
        subject=subject,
        html_body=rendered["html"],
        text_body=rendered["text"],
        template_alias=EmailTemplateAlias.DOCUMENT_SENT,
        document_id=document.id,
        attachments=attachments,
    )
    if result.outcome == "failed" and result.details.get("transient"):
        logger.warning(f"Document email for {document.id} to {recipient} queued for retry: {result.error_message}")
        return result
    if result.outcome == "failed":
        logger.error(f"Document email for {document.id} to {recipient} failed: {result.error_message}")
        raise TransientServiceError("send_document_email", result.error_message)

    await create_audit_log(
        action=AuditAction.DOCUMENT_EMAIL_SENT,
        actor_role="owner",
        resource_type=document.document_type.value,
        resource_id=document.id,
        metadata={"recipient": recipient, "message_id": result.message_id, "with_payment": effective_with_payment},
    )
    logger.info(f"Document {document.number or document.id} emailed to {recipient}")
    return result
