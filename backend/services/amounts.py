"""Amount due and money formatting.

amount_due() is the only place the payable amount of a document is computed.
The validation preview, checkout session creation and payment reconciliation
all call it with the loaded document.
"""
from models import Document, BillingCountry, Currency


def amount_due(document: Document) -> float:
    """Amount the client pays now, rounded to cents.

    Quotes: the deposit share when deposit_percent > 0, else the full total.
    Billing invoices: total with tax when show_tax is set, else the total.
    """
    if document.is_quote:
        if document.deposit_percent and document.deposit_percent > 0:
            value = document.total_amount * document.deposit_percent / 100
        else:
            value = document.total_amount
    elif document.show_tax:
        value = document.total_with_tax if document.total_with_tax is not None else document.total_amount
    else:
        value = document.total_amount
    return round(value, 2)


def to_minor_units(amount: float) -> int:
    """Cents for Stripe unit_amount."""
    return int(round(amount * 100))


def _group_thousands(value: float, separator: str) -> tuple:
    integer_part, decimals = f"{value:.2f}".split(".")
    negative = integer_part.startswith("-")
    digits = integer_part.lstrip("-")
    groups = []
    while len(digits) > 3:
        groups.insert(0, digits[-3:])
        digits = digits[:-3]
    groups.insert(0, digits)
    return ("-" if negative else "") + separator.join(groups), decimals


def format_french_number(value: float) -> str:
    """1234.56 -> 1 234,56"""
    integer_part, decimals = _group_thousands(value, " ")
    return f"{integer_part},{decimals}"


def format_swiss_number(value: float) -> str:
    """1234.56 -> 1'234.56"""
    integer_part, decimals = _group_thousands(value, "'")
    return f"{integer_part}.{decimals}"


def format_amount(value: float, currency: Currency = Currency.EUR,
                  country: BillingCountry = BillingCountry.FR) -> str:
    if country == BillingCountry.CH:
        return f"{format_swiss_number(value)} {currency.value}"
    symbol = "€" if currency == Currency.EUR else currency.value
    return f"{format_french_number(value)} {symbol}"


def format_document_amount(document: Document, value: float) -> str:
    return format_amount(value, document.effective_currency, document.billing_country)
