"""
Validation API - client-facing quote/invoice validation flow.

Backs the /validation/{document_id} page. Every endpoint reloads the document,
so the step shown is always resolved from stored state plus the URL query
(type, withPayment, payment, session_id).

GET  /api/validation/{id}                           - load + resolve (+ complete a success return)
POST /api/validation/{id}/sign                      - sign a quote
POST /api/validation/{id}/navigate                  - backward step navigation check
POST /api/validation/{id}/checkout                  - start hosted checkout
GET  /api/validation/{id}/bank-transfer             - bank transfer details
POST /api/validation/{id}/bank-transfer/acknowledge - client will pay by transfer
"""
from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field
from typing import List, Optional, Tuple
import logging

from models import Document
from services.bank_transfer import bank_transfer_details
from services.document_service import load_document
from services.payment_service import complete_payment, acknowledge_bank_transfer, OUTCOME_UNVERIFIED
from services.signature_service import sign_quote
from services.stripe_service import stripe_service
from services.validation_workflow import (
    Resolution, Step, ValidationQuery, bounded_current_step, build_steps, build_view, has_payment_step,
    navigate_back, resolve_step, resolve_unpaid_step,
)
from services.workflow_errors import NavigationRejected

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/validation", tags=["validation"])


# ============================================
# Request Models
# ============================================

class SignRequest(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: str = ""


class NavigateRequest(BaseModel):
    current: Step
    target: Step


class CheckoutRequest(BaseModel):
    payer_email: Optional[str] = Field(None, description="Prefill for the checkout page; defaults to the signer email")


# ============================================
# Helpers
# ============================================

def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def _load(document_id: str, query: ValidationQuery) -> Tuple[Document, List[Step]]:
    document = await load_document(document_id, query.document_type.value)
    return document, build_steps(query.document_type, query.with_payment)


def _require_payment_step(document: Document, steps: List[Step]) -> None:
    """Online and bank transfer actions need a payment step the document has reached (billing, or signed quote)."""
    if document.is_paid:
        raise NavigationRejected(Step.CONFIRMATION.value, Step.PAYMENT.value, "Ce document est déjà réglé.")
    if not has_payment_step(steps) or (document.is_quote and not document.is_accepted):
        current = resolve_unpaid_step(document, ValidationQuery(document.document_type), steps).step
        raise NavigationRejected(current.value, Step.PAYMENT.value, "Le paiement n'est pas disponible à cette étape.")


# ============================================
# Endpoints
# ============================================

@router.get("/{document_id}")
async def get_validation(
    document_id: str,
    type: Optional[str] = Query(None),
    withPayment: Optional[str] = Query(None),
    payment: Optional[str] = Query(None),
    session_id: Optional[str] = Query(None),
):
    """
    Resolve the page state. On a success return from checkout the payment is
    verified and recorded before answering.
    """
    query = ValidationQuery.from_params(type, withPayment, payment, session_id)
    document, steps = await _load(document_id, query)

    resolution = resolve_step(document, query, steps)
    celebrate = False
    notice = None
    if resolution.action == Resolution.COMPLETE_RETURN:
        outcome = await complete_payment(document, query.session_id, source="return")
        document = outcome.document
        if outcome.outcome == OUTCOME_UNVERIFIED:
            fallback = ValidationQuery(query.document_type, query.with_payment, payment="cancelled")
            resolution = resolve_unpaid_step(document, fallback, steps)
            notice = outcome.notice
        else:
            celebrate = outcome.celebrate

    return build_view(document, steps, resolution.step, celebrate=celebrate, notice=notice)


@router.post("/{document_id}/sign")
async def sign(
    document_id: str,
    body: SignRequest,
    request: Request,
    type: Optional[str] = Query(None),
    withPayment: Optional[str] = Query(None),
):
    query = ValidationQuery.from_params(type, withPayment)
    document, steps = await _load(document_id, query)
    if document.is_paid:
        return build_view(document, steps, Step.CONFIRMATION)

    outcome = await sign_quote(
        document, steps, body.first_name, body.last_name, body.email,
        ip_address=_client_ip(request),
    )
    return build_view(outcome.document, steps, outcome.next_step, celebrate=outcome.celebrate)


@router.post("/{document_id}/navigate")
async def navigate(
    document_id: str,
    body: NavigateRequest,
    type: Optional[str] = Query(None),
    withPayment: Optional[str] = Query(None),
):
    """Check a click on a step indicator. Only completed steps are reachable."""
    query = ValidationQuery.from_params(type, withPayment)
    document, steps = await _load(document_id, query)
    resolved = resolve_step(document, query, steps).step
    if resolved == Step.CONFIRMATION:
        raise NavigationRejected(Step.CONFIRMATION.value, body.target.value, "Le document est confirmé, retour impossible.")
    current = bounded_current_step(steps, resolved, body.current)
    target = navigate_back(steps, current, body.target)
    return build_view(document, steps, target)


@router.post("/{document_id}/checkout")
async def create_checkout(
    document_id: str,
    body: Optional[CheckoutRequest] = None,
    type: Optional[str] = Query(None),
    withPayment: Optional[str] = Query(None),
):
    """Create a Stripe checkout session for the amount due and return its redirect URL."""
    query = ValidationQuery.from_params(type, withPayment)
    document, steps = await _load(document_id, query)
    _require_payment_step(document, steps)

    payer_email = body.payer_email if body and body.payer_email else None
    if not payer_email and document.signature:
        payer_email = document.signature.email
    return await stripe_service.create_checkout_session(document, payer_email=payer_email)


@router.get("/{document_id}/bank-transfer")
async def get_bank_transfer(
    document_id: str,
    type: Optional[str] = Query(None),
    withPayment: Optional[str] = Query(None),
):
    query = ValidationQuery.from_params(type, withPayment)
    document, steps = await _load(document_id, query)
    _require_payment_step(document, steps)

    details = bank_transfer_details(document)
    if details is None:
        raise NavigationRejected(Step.PAYMENT.value, Step.PAYMENT.value, "Aucun compte bancaire n'est configuré pour ce document.")
    return details


@router.post("/{document_id}/bank-transfer/acknowledge")
async def acknowledge_transfer(
    document_id: str,
    type: Optional[str] = Query(None),
    withPayment: Optional[str] = Query(None),
):
    """Client will pay by transfer: land on confirmation, payment stays pending."""
    query = ValidationQuery.from_params(type, withPayment)
    document, steps = await _load(document_id, query)
    _require_payment_step(document, steps)

    outcome = await acknowledge_bank_transfer(document)
    view = build_view(document, steps, Step.CONFIRMATION, bank_transfer_pending=True)
    view["bank_transfer"] = outcome.details
    return view
