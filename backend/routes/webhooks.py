"""Webhook Routes - Stripe and Postmark webhooks.

POST /api/webhook/stripe - Stripe webhook (checkout.session.completed)
POST /api/webhooks/postmark - Postmark delivery/bounce/spam; validated by X-Postmark-Token when POSTMARK_WEBHOOK_TOKEN is set.
"""
from datetime import datetime, timezone
from typing import Optional
import logging
import os

from fastapi import APIRouter, HTTPException, Request, Header, status
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

from database import database
from models import AuditAction
from services.stripe_webhook_service import stripe_webhook_service
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


def _postmark_webhook_token_ok(header_token: Optional[str] = None) -> bool:
    """True if the Postmark request is authorized. When POSTMARK_WEBHOOK_TOKEN is set, the header must match."""
    configured = os.getenv("POSTMARK_WEBHOOK_TOKEN")
    if not configured or not configured.strip():
        return True
    return bool(header_token and header_token.strip() == configured.strip())


@router.post("/api/webhook/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
):
    """
    Stripe webhook endpoint.

    400 only for an invalid signature or payload. Handling errors are logged
    and recorded on the stripe_events entry, and Stripe still gets a 200.
    """
    payload = await request.body()
    success, message, details = await stripe_webhook_service.process_webhook(
        payload=payload,
        signature=stripe_signature,
    )
    if not success:
        logger.error(f"Stripe webhook rejected: {message}")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"status": "error", "message": message})
    return {"status": "received", "message": message, "details": details}


@router.post("/api/webhooks/postmark")
async def postmark_webhook(
    request: Request,
    x_postmark_token: str = Header(None, alias="X-Postmark-Token"),
):
    """Delivered, Bounce and SpamComplaint records update the matching message log."""
    if not _postmark_webhook_token_ok(x_postmark_token):
        logger.warning("Postmark webhook rejected: missing or invalid X-Postmark-Token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    body = await request.json()
    message_id = body.get("MessageID") or body.get("MessageId")
    record_type = (body.get("RecordType") or "").strip()
    if not message_id:
        return {"status": "ignored"}

    now = datetime.now(timezone.utc)
    if record_type in ("Delivery", "Delivered"):
        update, action = {"status": "DELIVERED", "delivered_at": body.get("DeliveredAt") or now}, AuditAction.EMAIL_DELIVERED
    elif record_type in ("Bounce", "HardBounce", "SoftBounce"):
        update = {
            "status": "BOUNCED",
            "bounced_at": body.get("BouncedAt") or now,
            "error_message": body.get("Description") or "Bounced",
        }
        action = AuditAction.EMAIL_BOUNCED
    elif record_type == "SpamComplaint":
        update, action = {"status": "BOUNCED", "error_message": "Spam complaint"}, AuditAction.EMAIL_BOUNCED
    else:
        return {"status": "ignored", "RecordType": record_type}

    try:
        db = database.get_db()
        log = await db.message_logs.find_one(
            {"postmark_message_id": message_id},
            {"_id": 0, "message_id": 1, "document_id": 1},
        )
        await db.message_logs.update_many({"postmark_message_id": message_id}, {"$set": update})
    except PyMongoError as e:
        logger.error(f"Postmark webhook error: {e}")
        return {"status": "error"}

    if log:
        await create_audit_log(
            action=action,
            actor_role="system",
            resource_type="message",
            resource_id=log.get("document_id"),
            metadata={"message_id": log.get("message_id"), "postmark_message_id": message_id, "record_type": record_type},
        )
    logger.info(f"Postmark {record_type} for {message_id}")
    return {"status": "received"}
