"""
Document Store and Document Loader.

Quotes and billing invoices live in separate collections. Reads project out
`_id` and normalize date fields; writes are `$set` partial updates, optionally
conditioned on the expected prior state so that a concurrent transition is
detected instead of silently overwritten.
"""
from datetime import date, datetime
from typing import Any, Dict, Optional
import logging

from pymongo.errors import PyMongoError

from database import database, QUOTES_COLLECTION, BILLING_INVOICES_COLLECTION
from models import Document, DocumentType
from services.workflow_errors import DocumentNotFound, DocumentExpired, TransientServiceError

logger = logging.getLogger(__name__)

COLLECTIONS = {
    DocumentType.QUOTE: QUOTES_COLLECTION,
    DocumentType.BILLING: BILLING_INVOICES_COLLECTION,
}

DATE_FIELDS = ("issue_date", "valid_until", "due_date")


def parse_document_type(raw: Optional[str]) -> DocumentType:
    """Resolve the `type` query parameter. Missing or unknown values mean quote."""
    if raw:
        try:
            return DocumentType(raw.strip().lower())
        except ValueError:
            logger.info(f"Unknown document type '{raw}', defaulting to quote")
    return DocumentType.QUOTE


def _to_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            return date.fromisoformat(text[:10])
    raise ValueError(f"Unsupported date value: {value!r}")


def normalize_document(raw: Dict[str, Any], document_type: DocumentType) -> Document:
    """Build a Document from a stored record (dates may be datetimes or ISO strings)."""
    data = dict(raw)
    data.pop("_id", None)
    data["document_type"] = document_type.value
    for field in DATE_FIELDS:
        if field in data:
            try:
                data[field] = _to_date(data[field])
            except ValueError as e:
                logger.error(f"Unreadable {field} on {document_type.value} {data.get('id')}: {e}")
                raise TransientServiceError("load_document", f"invalid {field}")
    return Document(**data)


class DocumentStore:
    """MongoDB-backed store for quotes and billing invoices."""

    def _collection(self, document_type: DocumentType):
        return database.get_db()[COLLECTIONS[document_type]]

    async def get(self, document_id: str, document_type: DocumentType) -> Optional[Document]:
        try:
            raw = await self._collection(document_type).find_one({"id": document_id}, {"_id": 0})
        except PyMongoError as e:
            logger.error(f"Failed to read {document_type.value} {document_id}: {e}")
            raise TransientServiceError("load_document", str(e))
        if not raw:
            return None
        return normalize_document(raw, document_type)

    async def patch(
        self,
        document_id: str,
        document_type: DocumentType,
        fields: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Partial update. `expected` is merged into the filter; returns False when
        no document matched (missing, or not in the expected state).
        PyMongoError propagates to the caller, which decides the error kind.
        """
        query = {"id": document_id}
        if expected:
            query.update(expected)
        result = await self._collection(document_type).update_one(query, {"$set": fields})
        return result.matched_count > 0


document_store = DocumentStore()


def check_expiry(document: Document, today: Optional[date] = None) -> None:
    """Raise DocumentExpired when the validity/due date is strictly before today."""
    validity = document.validity_date
    if validity is None:
        return
    today = today or date.today()
    if validity < today:
        raise DocumentExpired(document.number, document.company.name, validity)


async def load_document(
    document_id: str,
    raw_type: Optional[str],
    today: Optional[date] = None,
    check_validity: bool = True,
) -> Document:
    """
    Fetch and normalize a quote or billing invoice for the validation page.

    Raises DocumentNotFound for an empty or unknown id and DocumentExpired for a
    document past its validity date. Read-only.
    """
    document_type = parse_document_type(raw_type)
    if not document_id or not document_id.strip():
        raise DocumentNotFound(document_id or "", document_type.value)

    document = await document_store.get(document_id, document_type)
    if document is None:
        logger.info(f"Document not found: {document_type.value} {document_id}")
        raise DocumentNotFound(document_id, document_type.value)

    if check_validity:
        check_expiry(document, today)
    return document
