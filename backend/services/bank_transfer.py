"""Bank transfer details shown on the payment step.

EUR accounts get a SEPA EPC QR payload (EPC069-12, version 002); CHF accounts
get Swiss QR-bill data, which requires a CH/LI IBAN and a complete creditor
address.
"""
import re
from typing import Any, Dict, List, Optional

from models import Currency, Document, PaymentAccount
from services.amounts import amount_due, format_document_amount

SWISS_IBAN_LENGTH = 21
SWISS_QR_MIN_AMOUNT = 0.01
SWISS_QR_MAX_AMOUNT = 999999999.99


def clean_iban(iban: str) -> str:
    return re.sub(r"\s", "", iban or "").upper()


def format_iban(iban: str) -> str:
    """Group an IBAN by 4 characters for display."""
    cleaned = clean_iban(iban)
    return " ".join(cleaned[i:i + 4] for i in range(0, len(cleaned), 4))


def is_swiss_iban(iban: str) -> bool:
    return clean_iban(iban).startswith(("CH", "LI"))


def validate_swiss_iban(iban: str) -> bool:
    cleaned = clean_iban(iban)
    return is_swiss_iban(cleaned) and len(cleaned) == SWISS_IBAN_LENGTH


def transfer_reference(document: Document) -> str:
    label = "Facture" if not document.is_quote else "Devis"
    return f"{label} {document.number}".strip()


def build_epc_payload(account: PaymentAccount, amount: float, number: str) -> str:
    """SEPA Credit Transfer QR payload, one field per line."""
    lines = [
        "BCD",                              # Service tag
        "002",                              # Version
        "1",                                # UTF-8
        "SCT",                              # SEPA Credit Transfer
        account.bic or "",
        account.account_holder[:70],
        clean_iban(account.iban),
        f"EUR{amount:.2f}",
        "",                                 # Purpose code
        number[:35],                        # Remittance reference
        f"Paiement facture {number}"[:140],
        "",                                 # Beneficiary to originator info
    ]
    return "\n".join(lines)


def validate_swiss_invoice(document: Document, amount: Optional[float] = None) -> List[str]:
    """French error messages for anything blocking Swiss QR-bill generation. Empty means valid."""
    errors = []
    company = document.company
    if not company.name.strip():
        errors.append("Nom de l'entreprise requis")
    if not company.address.strip():
        errors.append("Adresse de l'entreprise requise")
    if not (company.postal_code or "").strip():
        errors.append("Code postal requis pour la facturation suisse")
    if not (company.city or "").strip():
        errors.append("Ville requise pour la facturation suisse")

    account = document.payment_account
    if account is None or not account.iban:
        errors.append("IBAN requis pour la facturation suisse")
    elif not is_swiss_iban(account.iban):
        errors.append("IBAN suisse (CH/LI) requis pour la QR-Facture")
    elif not validate_swiss_iban(account.iban):
        errors.append("Format IBAN suisse invalide (21 caractères attendus)")

    if amount is not None:
        if amount < SWISS_QR_MIN_AMOUNT:
            errors.append("Le montant doit être supérieur à 0.01 CHF")
        if amount > SWISS_QR_MAX_AMOUNT:
            errors.append("Le montant dépasse la limite maximale (999'999'999.99 CHF)")
    return errors


def build_swiss_qr_bill_data(document: Document, amount: float) -> Dict[str, Any]:
    """Creditor comes from the payment account, falling back to the company address."""
    account = document.payment_account
    company = document.company
    client = document.client
    data = {
        "creditor": {
            "account": clean_iban(account.iban),
            "name": account.account_holder[:70],
            "address": account.address or company.address or "",
            "zip": account.zip or company.postal_code or "",
            "city": account.city or company.city or "",
            "country": "LI" if clean_iban(account.iban).startswith("LI") else "CH",
        },
        "amount": round(amount, 2),
        "currency": document.effective_currency.value,
        "message": f"Facture {document.number}"[:140],
    }
    if client.name:
        data["debtor"] = {
            "name": client.name[:70],
            "address": (client.address or "")[:70],
            "zip": client.postal_code or "",
            "city": client.city or "",
            "country": "CH" if client.country == "CH" else "FR",
        }
    return data


def bank_transfer_details(document: Document) -> Optional[Dict[str, Any]]:
    """Everything the client needs to pay by transfer, or None when no account is configured."""
    account = document.payment_account
    if account is None:
        return None

    amount = amount_due(document)
    currency = document.effective_currency
    details = {
        "account_holder": account.account_holder,
        "iban": format_iban(account.iban),
        "bic": account.bic,
        "amount": amount,
        "amount_display": format_document_amount(document, amount),
        "currency": currency.value,
        "reference": transfer_reference(document),
        "epc_payload": None,
        "swiss_qr_bill": None,
        "swiss_qr_errors": [],
    }
    if currency == Currency.EUR:
        details["epc_payload"] = build_epc_payload(account, amount, document.number)
    else:
        errors = validate_swiss_invoice(document, amount)
        details["swiss_qr_errors"] = errors
        if not errors:
            details["swiss_qr_bill"] = build_swiss_qr_bill_data(document, amount)
    return details
