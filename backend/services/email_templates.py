"""
Validation Email Templates - Branded HTML + plaintext emails for quotes and invoices.
Includes: document sent with validation button, quote signed (client/owner),
payment received (client/owner), bank transfer announced (client/owner).
"""
from html import escape
from typing import Dict, Optional
import os

from models import Document, DocumentType

# Branding constants
BRAND_COLOR_PRIMARY = "#0f172a"  # Slate 900
BRAND_COLOR_BACKGROUND = "#f5f4f0"
BRAND_COLOR_TEXT = "#1e293b"
FONT_STACK = "-apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif"
SUPPORT_EMAIL = os.getenv("EMAIL_SENDER", "contact@example.com")

VALIDATION_BUTTON_PLACEHOLDER = "[VALIDATION_BUTTON]"


def document_label(document_type: DocumentType) -> str:
    return "Facture" if document_type == DocumentType.BILLING else "Devis"


def reference_label(document: Document) -> str:
    label = document_label(document.document_type)
    return f"{label} {document.number}" if document.number else label


def get_button_label(document_type: DocumentType, with_payment: bool) -> str:
    if document_type == DocumentType.QUOTE:
        return "Accepter et payer" if with_payment else "Accepter"
    return "Régler cette facture"


def build_button_html(url: str, label: str) -> str:
    return f"""
        <table role="presentation" width="100%" cellpadding="0" cellspacing="0" border="0">
        <tr><td align="center" style="padding: 12px 0 4px;">
            <a href="{escape(url, quote=True)}" target="_blank"
               style="display: inline-block; padding: 14px 36px; background-color: {BRAND_COLOR_PRIMARY};
                      border-radius: 6px; font-family: {FONT_STACK}; font-size: 14px; font-weight: 600;
                      color: #ffffff; text-decoration: none;">
                {escape(label)} &rarr;
            </a>
        </td></tr>
        </table>
    """


def _paragraphs(text: str) -> str:
    """Blank-line separated blocks become <p>, single newlines become <br>."""
    blocks = []
    for block in text.split("\n\n"):
        trimmed = block.strip()
        if not trimmed:
            continue
        lines = escape(trimmed).replace("\n", "<br>")
        blocks.append(
            f'<p style="margin: 0 0 16px; font-family: {FONT_STACK}; font-size: 15px; '
            f'line-height: 1.7; color: {BRAND_COLOR_TEXT};">{lines}</p>'
        )
    return "\n".join(blocks)


def message_to_html(message: str, button_html: str) -> str:
    """Render the free-text message; each [VALIDATION_BUTTON] marker is replaced by the button."""
    parts = message.split(VALIDATION_BUTTON_PLACEHOLDER)
    if len(parts) == 1:
        return _paragraphs(parts[0])
    rendered = []
    for index, part in enumerate(parts):
        rendered.append(_paragraphs(part))
        if index < len(parts) - 1:
            rendered.append(button_html)
    return "\n".join(rendered)


def _build_email_header(document: Document, title: str) -> str:
    company = document.company
    logo_html = ""
    if company.logo:
        logo_html = (
            f'<img src="{escape(company.logo, quote=True)}" width="40" height="40" alt="{escape(company.name)}" '
            f'style="display: block; width: 40px; height: 40px; border-radius: 6px; margin-bottom: 12px;" />'
        )
    return f"""
        <div style="border-top: 3px solid {BRAND_COLOR_PRIMARY}; background-color: #ffffff; padding: 32px 40px 0;">
            {logo_html}
            <p style="margin: 0; font-family: {FONT_STACK}; font-size: 15px; font-weight: 600; color: {BRAND_COLOR_PRIMARY};">{escape(company.name)}</p>
            <p style="margin: 4px 0 0; font-family: {FONT_STACK}; font-size: 13px; color: #64748b;">{escape(title)}</p>
        </div>
    """


def _build_email_footer(document: Document) -> str:
    company = document.company
    parts = [escape(company.name)]
    if company.address:
        parts.append(escape(company.address))
    if company.siren and document.billing_country.value == "FR":
        parts.append(f"SIREN {escape(company.siren)}")
    footer_line = " &middot; ".join(p for p in parts if p)
    return f"""
        <div style="padding: 20px 40px; font-family: {FONT_STACK}; font-size: 12px; color: #94a3b8;">
            {footer_line}
        </div>
    """


def _wrap(document: Document, title: str, content_html: str, attachment_name: Optional[str] = None) -> str:
    attachment_html = ""
    if attachment_name:
        attachment_html = f"""
            <p style="margin: 16px 0 0; font-family: {FONT_STACK}; font-size: 13px; color: #64748b;">
                Pièce jointe : {escape(attachment_name)}
            </p>
        """
    return f"""<!DOCTYPE html>
    <html lang="fr">
    <head><meta charset="UTF-8"><title>{escape(title)}</title></head>
    <body style="margin: 0; padding: 48px 24px; background-color: {BRAND_COLOR_BACKGROUND};">
        <div style="max-width: 600px; margin: 0 auto;">
            {_build_email_header(document, title)}
            <div style="background-color: #ffffff; padding: 28px 40px 32px;">
                {content_html}
                {attachment_html}
            </div>
            {_build_email_footer(document)}
        </div>
    </body>
    </html>
    """


def _text_footer(document: Document) -> str:
    return f"""
--
{document.company.name}
{document.company.address}
"""


# ============================================================================
# DOCUMENT SENT (quote or invoice emailed to the client)
# ============================================================================

def build_document_email(
    document: Document,
    message: str,
    validation_url: Optional[str] = None,
    with_payment: bool = False,
    attachment_name: Optional[str] = None,
) -> Dict[str, str]:
    """
    Build the email carrying a quote/invoice to the client.

    Returns dict with 'html' and 'text' keys. The subject is chosen by the sender.
    """
    button_html = ""
    button_text = ""
    if validation_url:
        label = get_button_label(document.document_type, with_payment)
        button_html = build_button_html(validation_url, label)
        button_text = f"{label} : {validation_url}"
    content_html = message_to_html(message, button_html)
    text = message.replace(VALIDATION_BUTTON_PLACEHOLDER, button_text) + _text_footer(document)
    return {
        "html": _wrap(document, reference_label(document), content_html, attachment_name),
        "text": text,
    }


# ============================================================================
# QUOTE SIGNED
# ============================================================================

def build_quote_signed_client_email(document: Document, signer_name: str) -> Dict[str, str]:
    subject = f"Confirmation de signature - {reference_label(document)}"
    content = _paragraphs(
        f"Bonjour {signer_name},\n\n"
        f"Nous vous confirmons la signature du {reference_label(document).lower()} "
        f"émis par {document.company.name}.\n\n"
        "Merci pour votre confiance."
    )
    return {"subject": subject, "html": _wrap(document, subject, content)}


def build_quote_signed_owner_email(document: Document, signer_name: str, signer_email: str) -> Dict[str, str]:
    subject = f"{reference_label(document)} accepté par {signer_name}"
    content = _paragraphs(
        f"Le {reference_label(document).lower()} pour {document.client.name} a été signé.\n\n"
        f"Signataire : {signer_name}\nEmail : {signer_email}"
    )
    return {"subject": subject, "html": _wrap(document, subject, content)}


# ============================================================================
# PAYMENT RECEIVED
# ============================================================================

def build_payment_received_client_email(document: Document, amount_display: str) -> Dict[str, str]:
    subject = f"Paiement reçu - {reference_label(document)}"
    content = _paragraphs(
        f"Bonjour {document.client.name},\n\n"
        f"Nous avons bien reçu votre paiement de {amount_display} pour le "
        f"{reference_label(document).lower()}.\n\n"
        "Merci pour votre règlement."
    )
    return {"subject": subject, "html": _wrap(document, subject, content)}


def build_payment_received_owner_email(
    document: Document,
    amount_display: str,
    payer_email: Optional[str],
    session_id: str,
) -> Dict[str, str]:
    subject = f"Paiement en ligne reçu - {reference_label(document)}"
    content = _paragraphs(
        f"{document.client.name} a réglé {amount_display} en ligne.\n\n"
        f"Email du payeur : {payer_email or 'non communiqué'}\nSession : {session_id}"
    )
    return {"subject": subject, "html": _wrap(document, subject, content)}


# ============================================================================
# BANK TRANSFER ANNOUNCED
# ============================================================================

def build_bank_transfer_client_email(document: Document, details: Dict) -> Dict[str, str]:
    subject = f"Coordonnées de virement - {reference_label(document)}"
    content = _paragraphs(
        f"Bonjour {document.client.name},\n\n"
        f"Pour régler le {reference_label(document).lower()}, merci d'effectuer un virement de "
        f"{details['amount_display']} sur le compte suivant :\n\n"
        f"Titulaire : {details['account_holder']}\nIBAN : {details['iban']}\n"
        f"BIC : {details.get('bic') or '-'}\nRéférence : {details['reference']}"
    )
    return {"subject": subject, "html": _wrap(document, subject, content)}


def build_bank_transfer_owner_email(document: Document, details: Dict) -> Dict[str, str]:
    subject = f"Virement annoncé - {reference_label(document)}"
    content = _paragraphs(
        f"{document.client.name} a choisi de régler {details['amount_display']} par virement bancaire.\n\n"
        f"Référence attendue : {details['reference']}\n\n"
        "Le statut de paiement reste en attente jusqu'à réception des fonds."
    )
    return {"subject": subject, "html": _wrap(document, subject, content)}
