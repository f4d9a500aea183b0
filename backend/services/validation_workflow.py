"""
Validation Workflow State Machine
Defines the steps of the client-facing validation page, how the step list is
built for a document, and how the current step is resolved from the document
state and the URL query parameters.

This is the single source of truth for step resolution. Everything here is
pure: no store, Stripe or email access.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from models import Document, DocumentType, PaymentMethod
from services.amounts import amount_due, format_document_amount
from services.document_service import parse_document_type
from services.workflow_errors import NavigationRejected


class Step(str, Enum):
    """Validation page steps."""
    PREVIEW = "preview"
    SIGNATURE = "signature"           # Quotes only
    PAYMENT = "payment"               # Conditional
    CONFIRMATION = "confirmation"     # Terminal


class Resolution(str, Enum):
    """Outcome of resolve_step when it is not a plain step."""
    SHOW = "show"
    COMPLETE_RETURN = "complete_return"   # Run the payment completion handler first


STEP_LABELS: Dict[Step, str] = {
    Step.PREVIEW: "Aperçu",
    Step.SIGNATURE: "Signature",
    Step.PAYMENT: "Paiement",
    Step.CONFIRMATION: "Confirmation",
}

PAYMENT_SUCCESS = "success"
PAYMENT_CANCELLED = "cancelled"


@dataclass(frozen=True)
class ValidationQuery:
    """Typed view of the /validation/{id} query string.

    Malformed or missing values are treated as absent.
    """
    document_type: DocumentType = DocumentType.QUOTE
    with_payment: bool = False
    payment: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    def from_params(
        cls,
        type: Optional[str] = None,
        withPayment: Optional[str] = None,
        payment: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> "ValidationQuery":
        payment_value = (payment or "").strip().lower()
        if payment_value not in (PAYMENT_SUCCESS, PAYMENT_CANCELLED):
            payment_value = None
        session_value = (session_id or "").strip() or None
        return cls(
            document_type=parse_document_type(type),
            with_payment=(withPayment or "").strip().lower() == "true",
            payment=payment_value,
            session_id=session_value,
        )

    @property
    def is_success_return(self) -> bool:
        return self.payment == PAYMENT_SUCCESS and self.session_id is not None

    @property
    def is_cancelled_return(self) -> bool:
        return self.payment == PAYMENT_CANCELLED


@dataclass(frozen=True)
class StepResolution:
    step: Step
    action: Resolution = Resolution.SHOW


def build_steps(document_type: DocumentType, with_payment: bool) -> List[Step]:
    """Ordered step list. Billing invoices always include payment."""
    if document_type == DocumentType.BILLING:
        return [Step.PREVIEW, Step.PAYMENT, Step.CONFIRMATION]
    if with_payment:
        return [Step.PREVIEW, Step.SIGNATURE, Step.PAYMENT, Step.CONFIRMATION]
    return [Step.PREVIEW, Step.SIGNATURE, Step.CONFIRMATION]


def has_payment_step(steps: List[Step]) -> bool:
    return Step.PAYMENT in steps


def step_number(steps: List[Step], step: Step) -> int:
    """1-based position of a step."""
    return steps.index(step) + 1


def resolve_step(document: Document, query: ValidationQuery, steps: List[Step]) -> StepResolution:
    """
    Current step for a freshly loaded document. First match wins:
    1. payment already complete -> confirmation
    2. success return with session id -> complete the payment, then confirmation
    3. cancelled return -> payment (billing, or accepted quote) else preview
    4. accepted quote -> payment if present, else confirmation
    5. preview
    """
    if document.is_paid:
        return StepResolution(Step.CONFIRMATION)

    if query.is_success_return:
        return StepResolution(Step.CONFIRMATION, Resolution.COMPLETE_RETURN)

    return resolve_unpaid_step(document, query, steps)


def resolve_unpaid_step(document: Document, query: ValidationQuery, steps: List[Step]) -> StepResolution:
    """Rules 3-5 of resolve_step. Also the fallback when a success return could not be verified."""
    if query.is_cancelled_return:
        if has_payment_step(steps) and (not document.is_quote or document.is_accepted):
            return StepResolution(Step.PAYMENT)
        return StepResolution(Step.PREVIEW)

    if document.is_quote and document.is_accepted:
        return StepResolution(next_step_after_signature(steps))

    return StepResolution(Step.PREVIEW)


def next_step_after_signature(steps: List[Step]) -> Step:
    return Step.PAYMENT if has_payment_step(steps) else Step.CONFIRMATION


def completed_steps(steps: List[Step], current: Step) -> List[Step]:
    return steps[:steps.index(current)]


def bounded_current_step(steps: List[Step], resolved: Step, claimed: Step) -> Step:
    """
    Step the client may actually be on. Leaving preview happens client-side,
    so from a resolved preview the next step is also accepted; anything later
    than that falls back to the resolved step.
    """
    if claimed not in steps or resolved not in steps:
        return claimed
    furthest = resolved
    if resolved == Step.PREVIEW and len(steps) > 1:
        furthest = steps[1]
    if steps.index(claimed) > steps.index(furthest):
        return resolved
    return claimed


def navigate_back(steps: List[Step], current: Step, target: Step) -> Step:
    """
    Validate a click on a step indicator. Only already-completed steps are
    reachable, and nothing is reachable once on confirmation.
    """
    if current not in steps or target not in steps:
        raise NavigationRejected(current.value, target.value, "Étape inconnue pour ce document.")
    if current == Step.CONFIRMATION:
        raise NavigationRejected(current.value, target.value, "Le document est confirmé, retour impossible.")
    if target not in completed_steps(steps, current):
        raise NavigationRejected(current.value, target.value, "Seules les étapes terminées sont accessibles.")
    return target


def available_payment_methods(document: Document) -> List[PaymentMethod]:
    if document.payment_account is not None:
        return [PaymentMethod.ONLINE, PaymentMethod.BANK_TRANSFER]
    return [PaymentMethod.ONLINE]


def shows_method_selector(document: Document, chosen: Optional[PaymentMethod] = None) -> bool:
    return chosen is None and len(available_payment_methods(document)) > 1


def describe_steps(steps: List[Step], current: Step) -> List[Dict]:
    """Step indicator rows for the page header."""
    done = set(completed_steps(steps, current))
    return [
        {
            "step": step.value,
            "number": index,
            "label": STEP_LABELS[step],
            "completed": step in done,
            "current": step == current,
            "clickable": step in done and current != Step.CONFIRMATION,
        }
        for index, step in enumerate(steps, start=1)
    ]


def build_view(
    document: Document,
    steps: List[Step],
    current: Step,
    celebrate: bool = False,
    notice: Optional[str] = None,
    bank_transfer_pending: bool = False,
) -> Dict:
    """JSON payload rendered by the validation page."""
    due = amount_due(document)
    methods = available_payment_methods(document)
    signature = document.signature.model_dump(mode="json") if document.signature else None
    payment = document.payment.model_dump(mode="json") if document.payment else None
    return {
        "document": document.model_dump(mode="json"),
        "document_type": document.document_type.value,
        "steps": describe_steps(steps, current),
        "current_step": current.value,
        "current_step_number": step_number(steps, current),
        "amount_due": due,
        "amount_due_display": format_document_amount(document, due),
        "currency": document.effective_currency.value,
        "payment_methods": [m.value for m in methods],
        "show_method_selector": current == Step.PAYMENT and shows_method_selector(document),
        "signer": signature,
        "payment": payment,
        "is_paid": document.is_paid,
        "bank_transfer_pending": bank_transfer_pending,
        "celebrate": celebrate,
        "notice": notice,
    }
