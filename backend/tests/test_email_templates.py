"""Email template rendering: validation button, paragraphs, escaping, footer."""
from conftest import make_billing, make_quote
from models import DocumentType
from services.document_service import normalize_document
from services.email_templates import (
    build_bank_transfer_client_email, build_document_email, build_payment_received_owner_email,
    build_quote_signed_owner_email, get_button_label, message_to_html,
)
from services.bank_transfer import bank_transfer_details


def _quote(**overrides):
    return normalize_document(make_quote(**overrides), DocumentType.QUOTE)


def test_button_labels():
    assert get_button_label(DocumentType.QUOTE, False) == "Accepter"
    assert get_button_label(DocumentType.QUOTE, True) == "Accepter et payer"
    assert get_button_label(DocumentType.BILLING, False) == "Régler cette facture"


def test_placeholder_is_replaced_by_button():
    rendered = build_document_email(
        _quote(),
        "Bonjour,\n\nVoici votre devis.\n\n[VALIDATION_BUTTON]\n\nCordialement",
        validation_url="https://app.example.com/validation/q1?withPayment=true",
        with_payment=True,
    )
    assert "[VALIDATION_BUTTON]" not in rendered["html"]
    assert 'href="https://app.example.com/validation/q1?withPayment=true"' in rendered["html"]
    assert "Accepter et payer" in rendered["html"]
    assert "Accepter et payer : https://app.example.com/validation/q1?withPayment=true" in rendered["text"]


def test_message_without_placeholder_has_no_button():
    html = message_to_html("Bonjour", "<a>button</a>")
    assert "<a>button</a>" not in html
    assert "Bonjour" in html


def test_paragraphs_and_line_breaks():
    html = message_to_html("Ligne 1\nLigne 2\n\nParagraphe 2", "")
    assert html.count("<p ") == 2
    assert "Ligne 1<br>Ligne 2" in html


def test_message_is_escaped():
    html = message_to_html("<script>alert(1)</script>", "")
    assert "<script>" not in html
    assert "&lt;script&gt;" in html


def test_siren_only_in_french_footer():
    french = build_document_email(_quote(), "Bonjour")["html"]
    assert "SIREN 123456789" in french
    swiss = build_document_email(_quote(billing_country="CH"), "Bonjour")["html"]
    assert "SIREN" not in swiss


def test_attachment_name_is_listed():
    rendered = build_document_email(_quote(), "Bonjour", attachment_name="devis-D-2026-001.pdf")
    assert "devis-D-2026-001.pdf" in rendered["html"]


def test_workflow_email_subjects():
    quote = _quote(number="D-9")
    signed = build_quote_signed_owner_email(quote, "Marie Curie", "marie@example.com")
    assert "D-9" in signed["subject"]
    assert "Marie Curie" in signed["html"]

    paid = build_payment_received_owner_email(quote, "300,00 €", "payer@example.com", "cs_1")
    assert "300,00 €" in paid["html"]

    billing = normalize_document(make_billing(), DocumentType.BILLING)
    transfer = build_bank_transfer_client_email(billing, bank_transfer_details(billing))
    assert "FR76 3000 6000 0112 3456 7890 189" in transfer["html"]
