"""
Canonical public frontend base URL and the /validation/{id} links built on it.
Validation links in emails and Stripe return URLs are built here only.
"""
from typing import Optional
from urllib.parse import quote
import os
import logging

from models import DocumentType

logger = logging.getLogger(__name__)


def get_public_app_url(for_email_links: bool = False) -> str:
    """
    Return normalized public frontend base URL (no trailing slash).
    Fallback order: FRONTEND_PUBLIC_URL, PUBLIC_APP_URL, FRONTEND_URL, VERCEL_URL (as https).

    Rules:
    - Result is stripped and trailing slash removed.
    - Non-localhost http is upgraded to https.
    - If for_email_links=True and no public URL is configured (or localhost in production),
      raises ValueError so callers do not send broken links.
    """
    raw = (
        (os.getenv("FRONTEND_PUBLIC_URL") or "").strip()
        or (os.getenv("PUBLIC_APP_URL") or "").strip()
        or (os.getenv("FRONTEND_URL") or "").strip()
    )
    if not raw and os.getenv("VERCEL_URL"):
        raw = f"https://{os.getenv('VERCEL_URL', '').strip()}"
    raw = raw.rstrip("/")
    if not raw:
        if for_email_links:
            raise ValueError(
                "FRONTEND_PUBLIC_URL or PUBLIC_APP_URL or FRONTEND_URL must be set for validation links. "
                "Set FRONTEND_PUBLIC_URL=https://<your-frontend-domain> (no trailing slash)."
            )
        return "http://localhost:3000"
    if raw.startswith("http://") and "localhost" not in raw:
        raw = "https://" + raw.split("://", 1)[1]
    if for_email_links and "localhost" in raw.lower():
        env = (os.getenv("ENVIRONMENT") or os.getenv("ENV") or "").strip().lower()
        if env in ("production", "prod"):
            raise ValueError(
                "FRONTEND_PUBLIC_URL must be your public frontend URL in production (no localhost)."
            )
        logger.warning("get_public_app_url(for_email_links=True): using localhost; set FRONTEND_PUBLIC_URL for production emails.")
    return raw


def build_validation_url(
    document_id: str,
    document_type: DocumentType,
    with_payment: bool = False,
    base_url: Optional[str] = None,
) -> str:
    """Link sent to the client: {base}/validation/{id}[?type=billing][&withPayment=true]."""
    base = (base_url or get_public_app_url(for_email_links=True)).rstrip("/")
    params = []
    if document_type == DocumentType.BILLING:
        params.append("type=billing")
    if with_payment:
        params.append("withPayment=true")
    url = f"{base}/validation/{quote(document_id, safe='')}"
    return f"{url}?{'&'.join(params)}" if params else url


def build_checkout_return_urls(document_id: str, document_type: DocumentType, base_url: str):
    """
    (success_url, cancel_url) for hosted checkout. Both always carry withPayment=true;
    the success URL keeps Stripe's {CHECKOUT_SESSION_ID} template literal.
    """
    base = base_url.rstrip("/")
    page = f"{base}/validation/{quote(document_id, safe='')}"
    type_param = "&type=billing" if document_type == DocumentType.BILLING else ""
    success_url = f"{page}?payment=success&session_id={{CHECKOUT_SESSION_ID}}{type_param}&withPayment=true"
    cancel_url = f"{page}?payment=cancelled{type_param}&withPayment=true"
    return success_url, cancel_url
