"""
Document API - issuer-side access to quotes and billing invoices.

GET  /api/quotes/{id}                     - normalized quote
GET  /api/billing-invoices/{id}           - normalized billing invoice
GET  /api/documents/{type}/{id}/audit     - audit timeline of a document
POST /api/documents/{type}/{id}/send      - email the document with its validation link
"""
from fastapi import APIRouter, Query
from pydantic import BaseModel, EmailStr, Field
from typing import Optional
import logging

from models import Document, DocumentType
from services.amounts import amount_due
from services.document_mailer import Attachment, send_document_email
from services.document_service import document_store
from services.workflow_errors import DocumentNotFound
from utils.audit import get_audit_logs_for_document

logger = logging.getLogger(__name__)

router = APIRouter(tags=["documents"])


class AttachmentPayload(BaseModel):
    filename: str
    content: str = Field(..., description="Base64 encoded file content")


class SendDocumentRequest(BaseModel):
    email: EmailStr
    subject: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    with_payment: bool = False
    attachment: Optional[AttachmentPayload] = None


async def _get_or_404(document_id: str, document_type: DocumentType) -> Document:
    document = await document_store.get(document_id, document_type)
    if document is None:
        raise DocumentNotFound(document_id, document_type.value)
    return document


def _document_response(document: Document) -> dict:
    data = document.model_dump(mode="json")
    data["amount_due"] = amount_due(document)
    data["is_paid"] = document.is_paid
    return data


@router.get("/api/quotes/{document_id}")
async def get_quote(document_id: str):
    return _document_response(await _get_or_404(document_id, DocumentType.QUOTE))


@router.get("/api/billing-invoices/{document_id}")
async def get_billing_invoice(document_id: str):
    return _document_response(await _get_or_404(document_id, DocumentType.BILLING))


@router.get("/api/documents/{document_type}/{document_id}/audit")
async def get_document_audit(document_type: DocumentType, document_id: str, limit: int = Query(50, ge=1, le=200)):
    """Signature, payment, email and webhook events for one document, newest first."""
    await _get_or_404(document_id, document_type)
    logs = await get_audit_logs_for_document(document_id, limit=limit)
    return {"document_id": document_id, "document_type": document_type.value, "events": logs}


@router.post("/api/documents/{document_type}/{document_id}/send")
async def send_document(document_type: DocumentType, document_id: str, body: SendDocumentRequest):
    """
    Email a quote or billing invoice. A [VALIDATION_BUTTON] marker in the
    message becomes the button linking to the validation page.
    """
    document = await _get_or_404(document_id, document_type)
    attachment = None
    if body.attachment is not None:
        attachment = Attachment(filename=body.attachment.filename, content=body.attachment.content)

    result = await send_document_email(
        document,
        recipient=str(body.email),
        subject=body.subject,
        message=body.message,
        with_payment=body.with_payment,
        attachment=attachment,
    )
    return {
        "status": "queued" if result.outcome == "failed" else result.outcome,
        "message_id": result.message_id,
    }
