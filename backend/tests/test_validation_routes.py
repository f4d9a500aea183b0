"""
Validation API scenarios (TestClient + in-memory store, Postmark in dev mode, Stripe mocked):
- Not found -> 404, expired -> 410
- Quote with payment: preview -> sign -> payment -> checkout -> success return -> confirmation
- Quote without payment: sign -> confirmation, owner and signer notified
- Billing invoice by bank transfer: confirmation with payment still pending
- Cancelled checkout return lands on payment; unverified success return too, with a notice
- Backward navigation rejected from confirmation
"""
from datetime import date, timedelta

import pytest
from unittest.mock import patch

from conftest import make_billing, make_quote
from services.notification_orchestrator import notification_orchestrator


def _paid_session(document_id, session_id="cs_test_1", amount_total=30000):
    return {
        "id": session_id,
        "payment_status": "paid",
        "amount_total": amount_total,
        "customer_details": {"email": "payer@example.com"},
        "metadata": {"documentId": document_id},
    }


class _Session:
    id = "cs_test_1"
    url = "https://checkout.stripe.com/c/pay/cs_test_1"


@pytest.fixture
def api(client, fake_db):
    with patch.object(notification_orchestrator, "_postmark_client", None), \
         patch("services.stripe_service.stripe.api_key", "sk_test_123"):
        yield client, fake_db


def _message_keys(db):
    return sorted(log.get("idempotency_key") for log in db.message_logs.docs)


def test_unknown_document_is_404(api):
    client, _ = api
    response = client.get("/api/validation/missing")
    assert response.status_code == 404
    assert response.json()["detail"]["error_code"] == "DOCUMENT_NOT_FOUND"


def test_expired_quote_is_410(api):
    client, db = api
    db.quotes.docs.append(make_quote(valid_until=(date.today() - timedelta(days=1)).isoformat()))
    response = client.get("/api/validation/q1")
    assert response.status_code == 410
    assert response.json()["detail"]["error_code"] == "DOCUMENT_EXPIRED"


def test_quote_valid_until_today_opens(api):
    client, db = api
    db.quotes.docs.append(make_quote(valid_until=date.today().isoformat()))
    assert client.get("/api/validation/q1").status_code == 200


def test_quote_with_payment_full_flow(api):
    client, db = api
    db.quotes.docs.append(make_quote())

    view = client.get("/api/validation/q1", params={"withPayment": "true"}).json()
    assert view["current_step"] == "preview"
    assert [s["step"] for s in view["steps"]] == ["preview", "signature", "payment", "confirmation"]

    # Checkout before signing is not available
    early = client.post("/api/validation/q1/checkout", params={"withPayment": "true"})
    assert early.status_code == 409

    signed = client.post(
        "/api/validation/q1/sign", params={"withPayment": "true"},
        json={"first_name": "Marie", "last_name": "Curie", "email": "marie@example.com"},
    )
    assert signed.status_code == 200
    assert signed.json()["current_step"] == "payment"
    assert signed.json()["celebrate"] is False
    # Signer is not emailed yet: payment follows
    assert _message_keys(db) == ["quote-signed:q1:owner"]

    with patch("services.stripe_service.stripe.checkout.Session.create", return_value=_Session()) as create:
        checkout = client.post("/api/validation/q1/checkout", params={"withPayment": "true"})
    assert checkout.status_code == 200
    assert checkout.json()["redirect_url"] == _Session.url
    params = create.call_args.kwargs
    assert params["customer_email"] == "marie@example.com"
    assert params["metadata"] == {"documentId": "q1", "documentType": "quote"}
    assert params["line_items"][0]["price_data"]["unit_amount"] == 30000
    assert params["success_url"] == (
        "https://app.example.com/validation/q1?payment=success&session_id={CHECKOUT_SESSION_ID}&withPayment=true"
    )
    assert params["cancel_url"] == "https://app.example.com/validation/q1?payment=cancelled&withPayment=true"

    with patch("services.stripe_service.stripe.checkout.Session.retrieve", return_value=_paid_session("q1")):
        returned = client.get("/api/validation/q1", params={
            "withPayment": "true", "payment": "success", "session_id": "cs_test_1",
        })
    body = returned.json()
    assert body["current_step"] == "confirmation"
    assert body["celebrate"] is True
    assert body["is_paid"] is True
    assert db.quotes.docs[0]["status"] == "paid"
    assert "payment:q1:cs_test_1:client" in _message_keys(db)

    # Reloading the success URL records nothing new
    with patch("services.stripe_service.stripe.checkout.Session.retrieve") as retrieve:
        reloaded = client.get("/api/validation/q1", params={
            "withPayment": "true", "payment": "success", "session_id": "cs_test_1",
        }).json()
    retrieve.assert_not_called()
    assert reloaded["current_step"] == "confirmation"
    assert reloaded["celebrate"] is False
    assert len([k for k in _message_keys(db) if k.startswith("payment:")]) == 2

    back = client.post("/api/validation/q1/navigate", params={"withPayment": "true"},
                       json={"current": "confirmation", "target": "payment"})
    assert back.status_code == 409
    assert back.json()["detail"]["error_code"] == "NAVIGATION_REJECTED"


def test_quote_without_payment_signs_to_confirmation(api):
    client, db = api
    db.quotes.docs.append(make_quote())

    response = client.post("/api/validation/q1/sign",
                           json={"first_name": "Marie", "last_name": "Curie", "email": "marie@example.com"})
    body = response.json()
    assert body["current_step"] == "confirmation"
    assert body["celebrate"] is True
    assert body["signer"]["email"] == "marie@example.com"
    assert _message_keys(db) == ["quote-signed:q1:client", "quote-signed:q1:owner"]

    # Second tab submits again: no new write, no new email
    again = client.post("/api/validation/q1/sign",
                        json={"first_name": "Other", "last_name": "Tab", "email": "other@example.com"})
    assert again.status_code == 200
    assert again.json()["signer"]["email"] == "marie@example.com"
    assert len(db.message_logs.docs) == 2

    reopened = client.get("/api/validation/q1").json()
    assert reopened["current_step"] == "confirmation"


def test_invalid_signer_is_422(api):
    client, db = api
    db.quotes.docs.append(make_quote())
    response = client.post("/api/validation/q1/sign", json={"first_name": "Marie", "last_name": "", "email": "x"})
    assert response.status_code == 422
    assert response.json()["detail"]["details"]["fields"] == ["last_name", "email"]
    assert "status" not in db.quotes.docs[0] or db.quotes.docs[0]["status"] == "sent"


def test_billing_bank_transfer_leaves_payment_pending(api):
    client, db = api
    db.billing_invoices.docs.append(make_billing())

    view = client.get("/api/validation/b1", params={"type": "billing"}).json()
    assert view["current_step"] == "preview"
    assert [s["step"] for s in view["steps"]] == ["preview", "payment", "confirmation"]
    assert view["payment_methods"] == ["online", "bank_transfer"]

    details = client.get("/api/validation/b1/bank-transfer", params={"type": "billing"}).json()
    assert details["amount"] == 600
    assert details["iban"] == "FR76 3000 6000 0112 3456 7890 189"

    ack = client.post("/api/validation/b1/bank-transfer/acknowledge", params={"type": "billing"}).json()
    assert ack["current_step"] == "confirmation"
    assert ack["bank_transfer_pending"] is True
    assert ack["bank_transfer"]["reference"] == "Facture F-2026-001"
    assert db.billing_invoices.docs[0]["payment_status"] == "pending"
    assert db.message_logs.docs == []


def test_cancelled_return_lands_on_payment(api):
    client, db = api
    db.billing_invoices.docs.append(make_billing())
    view = client.get("/api/validation/b1", params={
        "type": "billing", "withPayment": "true", "payment": "cancelled",
    }).json()
    assert view["current_step"] == "payment"
    assert view["show_method_selector"] is True
    assert view["notice"] is None


def test_unverified_success_return_falls_back_to_payment(api):
    client, db = api
    db.quotes.docs.append(make_quote(status="accepted"))
    with patch("services.stripe_service.stripe.checkout.Session.retrieve",
               return_value=_paid_session("another-document")):
        view = client.get("/api/validation/q1", params={
            "withPayment": "true", "payment": "success", "session_id": "cs_forged",
        }).json()
    assert view["current_step"] == "payment"
    assert view["notice"]
    assert view["celebrate"] is False
    assert "payment" not in db.quotes.docs[0]


def test_paid_document_cannot_start_checkout(api):
    client, db = api
    db.billing_invoices.docs.append(make_billing(payment_status="paid"))
    response = client.post("/api/validation/b1/checkout", params={"type": "billing"})
    assert response.status_code == 409


def test_checkout_failure_is_503(api):
    import stripe

    client, db = api
    db.billing_invoices.docs.append(make_billing())
    with patch("services.stripe_service.stripe.checkout.Session.create",
               side_effect=stripe.APIConnectionError("network down")):
        response = client.post("/api/validation/b1/checkout", params={"type": "billing"})
    assert response.status_code == 503
    assert response.json()["detail"]["error_code"] == "SERVICE_UNAVAILABLE"


def test_signed_quote_without_payment_cannot_go_back(api):
    client, db = api
    db.quotes.docs.append(make_quote(status="accepted"))
    assert client.get("/api/validation/q1").json()["current_step"] == "confirmation"

    back = client.post("/api/validation/q1/navigate", json={"current": "signature", "target": "preview"})
    assert back.status_code == 409
    assert back.json()["detail"]["error_code"] == "NAVIGATION_REJECTED"


def test_navigation_uses_stored_progress(api):
    client, db = api
    db.quotes.docs.append(make_quote())

    # Leaving preview is client-side, so signature -> preview is allowed
    back = client.post("/api/validation/q1/navigate", params={"withPayment": "true"},
                       json={"current": "signature", "target": "preview"})
    assert back.status_code == 200
    assert back.json()["current_step"] == "preview"

    # An unsigned quote has not reached payment
    skipped = client.post("/api/validation/q1/navigate", params={"withPayment": "true"},
                          json={"current": "payment", "target": "signature"})
    assert skipped.status_code == 409
