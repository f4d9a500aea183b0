from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, date, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class DocumentType(str, Enum):
    QUOTE = "quote"
    BILLING = "billing"

class QuoteStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PAID = "paid"

class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"

class Currency(str, Enum):
    EUR = "EUR"
    CHF = "CHF"

class BillingCountry(str, Enum):
    FR = "FR"
    CH = "CH"

class PaymentMethod(str, Enum):
    ONLINE = "online"
    BANK_TRANSFER = "bank_transfer"

class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"

class EmailTemplateAlias(str, Enum):
    QUOTE_SIGNED_CLIENT = "quote-signed-client"
    QUOTE_SIGNED_OWNER = "quote-signed-owner"
    PAYMENT_RECEIVED_CLIENT = "payment-received-client"
    PAYMENT_RECEIVED_OWNER = "payment-received-owner"
    BANK_TRANSFER_CLIENT = "bank-transfer-client"
    BANK_TRANSFER_OWNER = "bank-transfer-owner"
    DOCUMENT_SENT = "document-sent"

class AuditAction(str, Enum):
    # Validation workflow
    QUOTE_SIGNED = "QUOTE_SIGNED"
    SIGNATURE_CONFLICT = "SIGNATURE_CONFLICT"
    PAYMENT_RECORDED = "PAYMENT_RECORDED"
    PAYMENT_UNVERIFIED = "PAYMENT_UNVERIFIED"
    PAYMENT_RECONCILIATION_GAP = "PAYMENT_RECONCILIATION_GAP"
    BANK_TRANSFER_ACKNOWLEDGED = "BANK_TRANSFER_ACKNOWLEDGED"
    CHECKOUT_SESSION_CREATED = "CHECKOUT_SESSION_CREATED"

    # Documents
    DOCUMENT_EMAIL_SENT = "DOCUMENT_EMAIL_SENT"

    # Email
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_FAILED = "EMAIL_FAILED"
    EMAIL_DELIVERED = "EMAIL_DELIVERED"
    EMAIL_BOUNCED = "EMAIL_BOUNCED"
    NOTIFICATION_FAILED_PERMANENT = "NOTIFICATION_FAILED_PERMANENT"

    # Stripe
    STRIPE_EVENT_FAILED = "STRIPE_EVENT_FAILED"


# ============================================================================
# DOCUMENT MODELS
# ============================================================================

class Party(BaseModel):
    """Issuer or client block printed on quotes and invoices."""
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    address: str = ""
    postal_code: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    siren: Optional[str] = None
    email: Optional[str] = None
    logo: Optional[str] = None

class ServiceLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    quantity: float = 1
    description: str = ""
    unit_price: float = 0
    amount: float = 0

class Discount(BaseModel):
    type: DiscountType = DiscountType.PERCENTAGE
    value: float = 0

class PaymentAccount(BaseModel):
    """Bank account offered for payment by transfer."""
    model_config = ConfigDict(extra="ignore")

    iban: str
    bic: Optional[str] = None
    account_holder: str
    country: Optional[str] = None
    address: Optional[str] = None
    zip: Optional[str] = None
    city: Optional[str] = None

class Signature(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    email: str
    signed_at: Optional[datetime] = None

class PaymentRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_id: Optional[str] = None
    amount: float = 0
    currency: Currency = Currency.EUR
    paid_at: Optional[datetime] = None
    payer_email: Optional[str] = None

class Document(BaseModel):
    """A quote or a billing invoice, discriminated by document_type."""
    model_config = ConfigDict(extra="ignore")

    id: str
    number: str = ""
    document_type: DocumentType = DocumentType.QUOTE
    issue_date: Optional[date] = None

    company: Party = Field(default_factory=Party)
    client: Party = Field(default_factory=Party)
    services: List[ServiceLine] = []
    subtotal: float = 0
    discount: Discount = Field(default_factory=Discount)

    total_amount: float = 0
    deposit_percent: float = 0
    tax_rate: float = 0
    tax_amount: float = 0
    total_with_tax: Optional[float] = None
    show_tax: bool = False
    currency: Optional[Currency] = None
    billing_country: BillingCountry = BillingCountry.FR

    valid_until: Optional[date] = None
    due_date: Optional[date] = None

    status: Optional[QuoteStatus] = None
    payment_status: Optional[PaymentStatus] = None
    signature: Optional[Signature] = None
    payment: Optional[PaymentRecord] = None
    payment_account: Optional[PaymentAccount] = None

    payment_terms: Optional[str] = None
    delivery_time: Optional[str] = None
    quote_number: Optional[str] = None

    @property
    def is_quote(self) -> bool:
        return self.document_type == DocumentType.QUOTE

    @property
    def effective_currency(self) -> Currency:
        if self.currency:
            return self.currency
        return Currency.CHF if self.billing_country == BillingCountry.CH else Currency.EUR

    @property
    def validity_date(self) -> Optional[date]:
        return self.valid_until if self.is_quote else self.due_date

    @property
    def is_paid(self) -> bool:
        """Single source of truth for 'payment complete'."""
        if self.payment is not None and self.payment.session_id:
            return True
        return self.payment_status == PaymentStatus.PAID

    @property
    def is_accepted(self) -> bool:
        return self.status in (QuoteStatus.ACCEPTED, QuoteStatus.PAID)


# ============================================================================
# LOG MODELS
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class MessageLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    postmark_message_id: Optional[str] = None
    document_id: Optional[str] = None
    recipient: EmailStr
    template_alias: EmailTemplateAlias
    subject: str
    status: str = "PENDING"
    attempt_count: int = 1
    idempotency_key: Optional[str] = None
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class ReconciliationIssue(BaseModel):
    """Payment confirmed by the processor but not recorded on the document."""
    model_config = ConfigDict(extra="ignore")

    issue_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    document_id: str
    document_type: DocumentType
    session_id: str
    amount: float
    currency: Currency
    source: str
    error: str
    status: str = "OPEN"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
