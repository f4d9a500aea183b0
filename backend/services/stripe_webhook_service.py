"""Stripe Webhook Service - checkout completion handling with idempotency.

Key Principles:
1. Idempotency: every event id is processed once (stripe_events collection)
2. Signature verification: events must be signed when STRIPE_WEBHOOK_SECRET is set
3. Same writer: checkout.session.completed goes through complete_payment(),
   exactly like the client's return on the success URL
4. Stripe gets a 2xx once the event is logged, even when handling failed

Events Handled:
- checkout.session.completed
"""
import json
import stripe
import os
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from database import database
from models import AuditAction
from services.document_service import document_store, parse_document_type
from services.payment_service import complete_payment
from services.stripe_service import stripe_field, verification_from_session
from services.workflow_errors import DocumentNotFound
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def _get_webhook_secret() -> str:
    explicit = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
    if explicit:
        return explicit
    key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
    if key.startswith("sk_live_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_LIVE") or "").strip()
    if key.startswith("sk_test_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_TEST") or "").strip()
    return ""


def _extract_webhook_context(event: Any) -> Dict[str, Any]:
    """Safe fields for structured logging."""
    obj = stripe_field(stripe_field(event, "data"), "object") or {}
    metadata = stripe_field(obj, "metadata") or {}
    return {
        "event_id": stripe_field(event, "id"),
        "event_type": stripe_field(event, "type"),
        "livemode": stripe_field(event, "livemode"),
        "document_id": stripe_field(metadata, "documentId") or stripe_field(metadata, "quoteId"),
        "document_type": stripe_field(metadata, "documentType"),
        "checkout_session_id": stripe_field(obj, "id"),
    }


class StripeWebhookService:
    """Stripe webhook handler with idempotency."""

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Returns:
            (success, message, details). success is False only for an invalid
            signature or payload; the route answers 400 in that case.
        """
        webhook_secret = _get_webhook_secret()
        try:
            if webhook_secret:
                event = stripe.Webhook.construct_event(payload, signature or "", webhook_secret)
            else:
                # Development mode - parse without verification
                event = stripe.Event.construct_from(json.loads(payload), stripe.api_key)
                logger.warning("STRIPE_WEBHOOK_SECRET not set - skipping signature verification")
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            return False, "Invalid signature", {"error": str(e)}
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            return False, "Invalid payload", {"error": str(e)}

        ctx = _extract_webhook_context(event)
        event_id = ctx["event_id"]
        event_type = ctx["event_type"]
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s document_id=%s checkout_session_id=%s",
            event_id, event_type, ctx.get("livemode"), ctx.get("document_id"), ctx.get("checkout_session_id"),
        )

        db = database.get_db()
        existing = await db.stripe_events.find_one({"event_id": event_id}, {"_id": 0})
        if existing and existing.get("status") == "PROCESSED":
            logger.info(f"Event {event_id} already processed - skipping")
            return True, "Already processed", {"event_id": event_id}

        event_record = {
            "event_id": event_id,
            "type": event_type,
            "created": datetime.now(timezone.utc),
            "processed_at": None,
            "status": "PROCESSING",
            "error": None,
            "related_document_id": ctx.get("document_id"),
            "checkout_session_id": ctx.get("checkout_session_id"),
        }
        if existing:
            await db.stripe_events.update_one({"event_id": event_id}, {"$set": event_record})
        else:
            try:
                await db.stripe_events.insert_one(event_record)
            except DuplicateKeyError:
                logger.info(f"Event {event_id} duplicate insert (race) - skipping")
                return True, "Already processed", {"event_id": event_id}

        try:
            result = await self._handle_event(event_type, stripe_field(stripe_field(event, "data"), "object"))
            await db.stripe_events.update_one(
                {"event_id": event_id},
                {"$set": {"status": "PROCESSED", "processed_at": datetime.now(timezone.utc), "result": result.get("outcome")}},
            )
            logger.info("WEBHOOK_PROCESSED_OK event_id=%s event_type=%s outcome=%s", event_id, event_type, result.get("outcome"))
            return True, "Processed", result
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
                exc_info=True,
            )
            await db.stripe_events.update_one(
                {"event_id": event_id},
                {"$set": {"status": "FAILED", "processed_at": datetime.now(timezone.utc), "error": str(e)}},
            )
            await create_audit_log(
                action=AuditAction.STRIPE_EVENT_FAILED,
                actor_role="system",
                resource_type=ctx.get("document_type"),
                resource_id=ctx.get("document_id"),
                metadata={"event_id": event_id, "event_type": event_type, "error": str(e)},
            )
            # Return 200 to prevent Stripe retries (we've logged the failure)
            return True, "Event logged with error", {"error": str(e), "event_id": event_id}

    async def _handle_event(self, event_type: str, obj: Any) -> Dict[str, Any]:
        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled event type: {event_type}")
            return {"outcome": "ignored"}
        return await handler(obj)

    async def _handle_checkout_completed(self, session: Any) -> Dict[str, Any]:
        metadata = stripe_field(session, "metadata") or {}
        document_id = stripe_field(metadata, "documentId") or stripe_field(metadata, "quoteId")
        session_id = stripe_field(session, "id")
        if not document_id:
            logger.info(f"Checkout session {session_id} has no documentId metadata - ignoring")
            return {"outcome": "ignored"}

        document_type = parse_document_type(stripe_field(metadata, "documentType"))
        document = await document_store.get(document_id, document_type)
        if document is None:
            raise DocumentNotFound(document_id, document_type.value)

        # Session object comes from a verified event: no second round-trip to Stripe
        outcome = await complete_payment(
            document,
            session_id,
            source="webhook",
            verification=verification_from_session(session, document_id),
        )
        return {"outcome": outcome.outcome, "document_id": document_id, "session_id": session_id}


stripe_webhook_service = StripeWebhookService()
