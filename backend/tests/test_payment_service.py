"""
Payment completion and bank transfer acknowledgement.
- Verified session marks the document paid once (quote -> status paid too)
- Second completion (return after webhook, reload) is already_recorded, no notification
- Unverified session leaves the document untouched
- Write failure after Stripe confirmed the payment -> ReconciliationGap, recorded
- Bank transfer: no write, quote notifies, billing does not
"""
import pytest
from unittest.mock import AsyncMock, patch
from pymongo.errors import AutoReconnect

from conftest import make_billing, make_quote
from models import AuditAction, DocumentType, PaymentStatus, QuoteStatus
from services.document_service import normalize_document
from services.payment_service import (
    OUTCOME_ALREADY_RECORDED, OUTCOME_RECORDED, OUTCOME_UNVERIFIED,
    acknowledge_bank_transfer, complete_payment,
)
from services.stripe_service import SessionVerification
from services.workflow_errors import NavigationRejected, ReconciliationGap, TransientServiceError

VERIFIED = SessionVerification(True, "cs_1", payer_email="payer@example.com", amount_total=300.0)


@pytest.mark.asyncio
async def test_completion_marks_quote_paid(fake_db):
    await fake_db.quotes.insert_one(make_quote(status="accepted"))
    quote = normalize_document(make_quote(status="accepted"), DocumentType.QUOTE)

    with patch("services.payment_service.stripe_service.verify_checkout_session",
               new_callable=AsyncMock, return_value=VERIFIED), \
         patch("services.payment_service.create_audit_log", new_callable=AsyncMock) as audit, \
         patch("services.payment_service.notify_payment_received", new_callable=AsyncMock) as notify:
        outcome = await complete_payment(quote, "cs_1", source="return")

    assert outcome.outcome == OUTCOME_RECORDED
    assert outcome.celebrate is True
    assert outcome.document.is_paid
    assert outcome.document.status == QuoteStatus.PAID
    stored = await fake_db.quotes.find_one({"id": "q1"})
    assert stored["payment_status"] == "paid"
    assert stored["status"] == "paid"
    assert stored["payment"]["session_id"] == "cs_1"
    assert stored["payment"]["amount"] == 300.0
    assert stored["payment"]["payer_email"] == "payer@example.com"
    assert audit.call_args.kwargs["action"] == AuditAction.PAYMENT_RECORDED
    notify.assert_awaited_once()


@pytest.mark.asyncio
async def test_billing_completion_keeps_status_field(fake_db):
    await fake_db.billing_invoices.insert_one(make_billing())
    billing = normalize_document(make_billing(), DocumentType.BILLING)
    verification = SessionVerification(True, "cs_9", amount_total=600.0)

    with patch("services.payment_service.create_audit_log", new_callable=AsyncMock), \
         patch("services.payment_service.notify_payment_received", new_callable=AsyncMock):
        outcome = await complete_payment(billing, "cs_9", source="webhook", verification=verification)

    assert outcome.outcome == OUTCOME_RECORDED
    assert outcome.document.payment_status == PaymentStatus.PAID
    stored = await fake_db.billing_invoices.find_one({"id": "b1"})
    assert "status" not in stored
    assert stored["payment"]["amount"] == 600.0


@pytest.mark.asyncio
async def test_completion_is_idempotent(fake_db):
    """Webhook then return (or a reload of the success URL) records one payment and notifies once."""
    await fake_db.quotes.insert_one(make_quote(status="accepted"))
    quote = normalize_document(make_quote(status="accepted"), DocumentType.QUOTE)

    with patch("services.payment_service.stripe_service.verify_checkout_session",
               new_callable=AsyncMock, return_value=VERIFIED) as verify, \
         patch("services.payment_service.create_audit_log", new_callable=AsyncMock), \
         patch("services.payment_service.notify_payment_received", new_callable=AsyncMock) as notify:
        first = await complete_payment(quote, "cs_1", source="webhook", verification=VERIFIED)
        reloaded = normalize_document(await fake_db.quotes.find_one({"id": "q1"}), DocumentType.QUOTE)
        second = await complete_payment(reloaded, "cs_1", source="return")

    assert first.outcome == OUTCOME_RECORDED
    assert second.outcome == OUTCOME_ALREADY_RECORDED
    assert second.celebrate is False
    verify.assert_not_awaited()
    assert notify.await_count == 1


@pytest.mark.asyncio
async def test_concurrent_completion_with_stale_document(fake_db):
    """The other path wrote first: conditional write misses, re-read shows paid."""
    await fake_db.quotes.insert_one(make_quote(
        status="paid", payment_status="paid", payment={"session_id": "cs_1", "amount": 300},
    ))
    stale = normalize_document(make_quote(status="accepted"), DocumentType.QUOTE)

    with patch("services.payment_service.create_audit_log", new_callable=AsyncMock), \
         patch("services.payment_service.notify_payment_received", new_callable=AsyncMock) as notify:
        outcome = await complete_payment(stale, "cs_1", source="return", verification=VERIFIED)

    assert outcome.outcome == OUTCOME_ALREADY_RECORDED
    assert outcome.document.is_paid
    notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_unverified_session_changes_nothing(fake_db):
    await fake_db.quotes.insert_one(make_quote(status="accepted"))
    quote = normalize_document(make_quote(status="accepted"), DocumentType.QUOTE)
    unverified = SessionVerification(False, "cs_x", reason="document_mismatch")

    with patch("services.payment_service.stripe_service.verify_checkout_session",
               new_callable=AsyncMock, return_value=unverified), \
         patch("services.payment_service.create_audit_log", new_callable=AsyncMock) as audit, \
         patch("services.payment_service.notify_payment_received", new_callable=AsyncMock) as notify:
        outcome = await complete_payment(quote, "cs_x", source="return")

    assert outcome.outcome == OUTCOME_UNVERIFIED
    assert outcome.notice
    assert outcome.details["reason"] == "document_mismatch"
    stored = await fake_db.quotes.find_one({"id": "q1"})
    assert "payment_status" not in stored
    assert audit.call_args.kwargs["action"] == AuditAction.PAYMENT_UNVERIFIED
    notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_stripe_unreachable_propagates_transient():
    quote = normalize_document(make_quote(status="accepted"), DocumentType.QUOTE)
    with patch("services.payment_service.stripe_service.verify_checkout_session",
               new_callable=AsyncMock, side_effect=TransientServiceError("verify_checkout_session")):
        with pytest.raises(TransientServiceError):
            await complete_payment(quote, "cs_1", source="return")


@pytest.mark.asyncio
async def test_write_failure_is_a_reconciliation_gap(fake_db):
    quote = normalize_document(make_quote(status="accepted"), DocumentType.QUOTE)

    with patch("services.payment_service.document_store") as store, \
         patch("services.payment_service.create_audit_log", new_callable=AsyncMock) as audit, \
         patch("services.payment_service.notify_payment_received", new_callable=AsyncMock) as notify:
        store.patch = AsyncMock(side_effect=AutoReconnect("connection reset"))
        with pytest.raises(ReconciliationGap) as exc:
            await complete_payment(quote, "cs_1", source="return", verification=VERIFIED)

    assert exc.value.status_code == 502
    assert exc.value.error_code == "PAYMENT_RECONCILIATION_PENDING"
    issues = await fake_db.payment_reconciliation_issues.find({}).to_list(10)
    assert len(issues) == 1
    assert issues[0]["session_id"] == "cs_1"
    assert issues[0]["amount"] == 300.0
    assert exc.value.details["issue_id"] == issues[0]["issue_id"]
    assert audit.call_args.kwargs["action"] == AuditAction.PAYMENT_RECONCILIATION_GAP
    notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_bank_transfer_on_billing_writes_and_sends_nothing(fake_db):
    await fake_db.billing_invoices.insert_one(make_billing())
    billing = normalize_document(make_billing(), DocumentType.BILLING)

    with patch("services.payment_service.create_audit_log", new_callable=AsyncMock) as audit, \
         patch("services.workflow_notifications.notification_orchestrator.dispatch", new_callable=AsyncMock) as dispatch:
        outcome = await acknowledge_bank_transfer(billing)

    assert outcome.bank_transfer_pending is True
    assert outcome.notified == 0
    assert outcome.details["amount"] == 600.0
    dispatch.assert_not_awaited()
    stored = await fake_db.billing_invoices.find_one({"id": "b1"})
    assert stored["payment_status"] == "pending"
    assert audit.call_args.kwargs["action"] == AuditAction.BANK_TRANSFER_ACKNOWLEDGED


@pytest.mark.asyncio
async def test_bank_transfer_on_quote_notifies_owner_and_signer():
    quote = normalize_document(make_quote(
        status="accepted",
        signature={"name": "Marie Curie", "email": "marie@example.com"},
        payment_account={"iban": "FR7630006000011234567890189", "account_holder": "Atelier Dupont"},
    ), DocumentType.QUOTE)

    with patch("services.payment_service.create_audit_log", new_callable=AsyncMock), \
         patch("services.workflow_notifications.notification_orchestrator.dispatch", new_callable=AsyncMock) as dispatch:
        outcome = await acknowledge_bank_transfer(quote)

    assert outcome.notified == 2
    recipients = sorted(c.kwargs["recipient"] for c in dispatch.call_args_list)
    assert recipients == ["marie@example.com", "owner@atelier.fr"]
    keys = sorted(c.kwargs["idempotency_key"] for c in dispatch.call_args_list)
    assert keys == ["bank-transfer:q1:client", "bank-transfer:q1:owner"]


@pytest.mark.asyncio
async def test_bank_transfer_without_account_is_rejected():
    quote = normalize_document(make_quote(status="accepted"), DocumentType.QUOTE)
    with pytest.raises(NavigationRejected):
        await acknowledge_bank_transfer(quote)
