"""Stripe Service - Hosted checkout sessions for quotes and billing invoices.

This service handles:
- Creating one-off payment checkout sessions for the amount due
- Verifying a session when the client returns on the success URL

Key Principles:
- The amount always comes from amount_due(document), never from the caller
- Metadata carries documentId/documentType for webhook tracing
- Stripe failures surface as TransientServiceError
"""
import stripe
import os
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

from models import AuditAction, Document
from services.amounts import amount_due, to_minor_units
from services.workflow_errors import TransientServiceError
from utils.audit import create_audit_log
from utils.public_app_url import build_checkout_return_urls, get_public_app_url

logger = logging.getLogger(__name__)

# Initialize Stripe (no placeholder default; missing key fails at checkout with clear error)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()


@dataclass
class SessionVerification:
    verified: bool
    session_id: str
    payer_email: Optional[str] = None
    amount_total: Optional[float] = None
    reason: Optional[str] = None


def product_label(document: Document) -> str:
    label = "Facture" if not document.is_quote else "Devis"
    if document.is_quote and document.deposit_percent and document.deposit_percent > 0:
        return f"Acompte {document.deposit_percent:g}% - {label} {document.number}".strip()
    return f"{label} {document.number}".strip() if document.number else f"Document {document.id}"


class StripeService:
    """Stripe checkout operations service."""

    async def create_checkout_session(
        self,
        document: Document,
        payer_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a Stripe checkout session for the document's amount due.

        Args:
            document: Loaded quote or billing invoice
            payer_email: Optional customer email for prefill (signer email for quotes)

        Returns:
            Dict with redirect_url and session_id
        """
        if not (stripe.api_key or "").strip():
            logger.error("STRIPE_SECRET_KEY or STRIPE_API_KEY is not set; cannot create checkout session")
            raise TransientServiceError("create_checkout_session", "stripe key not configured")

        base = get_public_app_url().strip().rstrip("/")
        if not base.startswith("http://") and not base.startswith("https://"):
            raise TransientServiceError("create_checkout_session", "invalid redirect base URL")

        amount = amount_due(document)
        currency = document.effective_currency
        success_url, cancel_url = build_checkout_return_urls(document.id, document.document_type, base)

        session_params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.value.lower(),
                        "unit_amount": to_minor_units(amount),
                        "product_data": {"name": product_label(document)},
                    },
                    "quantity": 1,
                },
            ],
            "metadata": {
                "documentId": document.id,  # MANDATORY for webhook
                "documentType": document.document_type.value,
            },
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if payer_email:
            session_params["customer_email"] = payer_email

        try:
            session = stripe.checkout.Session.create(**session_params)
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout error for document {document.id}: {e}")
            raise TransientServiceError("create_checkout_session", str(e))

        logger.info(f"Checkout session created for {document.document_type.value} {document.id}: {session.id} ({amount} {currency.value})")
        await create_audit_log(
            action=AuditAction.CHECKOUT_SESSION_CREATED,
            actor_role="client",
            resource_type=document.document_type.value,
            resource_id=document.id,
            metadata={"session_id": session.id, "amount": amount, "currency": currency.value},
        )
        return {"redirect_url": session.url, "session_id": session.id}

    async def verify_checkout_session(self, session_id: str, document_id: str) -> SessionVerification:
        """
        Confirm with Stripe that a returned session is paid and belongs to the document.
        Raises TransientServiceError when Stripe cannot be reached.
        """
        if not (stripe.api_key or "").strip():
            raise TransientServiceError("verify_checkout_session", "stripe key not configured")
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.InvalidRequestError as e:
            logger.warning(f"Unknown checkout session {session_id} for document {document_id}: {e}")
            return SessionVerification(verified=False, session_id=session_id, reason="unknown_session")
        except stripe.StripeError as e:
            logger.error(f"Stripe verification error for session {session_id}: {e}")
            raise TransientServiceError("verify_checkout_session", str(e))

        return verification_from_session(session, document_id)


def stripe_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a plain dict or a StripeObject."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def verification_from_session(session: Any, document_id: str) -> SessionVerification:
    """Check a checkout session object (from retrieve or a webhook) against a document id."""
    metadata = stripe_field(session, "metadata") or {}
    session_document_id = stripe_field(metadata, "documentId") or stripe_field(metadata, "quoteId")
    payer_email = stripe_field(stripe_field(session, "customer_details"), "email") or stripe_field(session, "customer_email")
    amount_total = stripe_field(session, "amount_total")
    amount = amount_total / 100 if amount_total is not None else None
    session_id = stripe_field(session, "id")

    if session_document_id != document_id:
        return SessionVerification(False, session_id, payer_email, amount, "document_mismatch")
    if stripe_field(session, "payment_status") != "paid":
        return SessionVerification(False, session_id, payer_email, amount, "not_paid")
    return SessionVerification(True, session_id, payer_email, amount)


stripe_service = StripeService()
