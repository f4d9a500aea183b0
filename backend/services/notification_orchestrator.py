"""
Notification Orchestrator.
Single entry point for all transactional email of the validation workflow.
Every message is written to message_logs before it is handed to Postmark, and
transient failures are queued in notification_retry_queue for the retry worker.
"""
from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional

from postmarker.core import PostmarkClient
from pymongo.errors import DuplicateKeyError

from database import database
from models import AuditAction, EmailTemplateAlias, MessageLog
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "contact@example.com")
POSTMARK_MESSAGE_STREAM = os.getenv("POSTMARK_MESSAGE_STREAM", "outbound").strip() or "outbound"
EMAIL_REPLY_TO = (os.getenv("EMAIL_REPLY_TO") or "").strip()

# Retry backoff seconds: 30s, 2m, 10m (first send + 3 retries)
EMAIL_BACKOFFS = [30, 120, 600]
MAX_EMAIL_ATTEMPTS = 1 + len(EMAIL_BACKOFFS)


@dataclass
class NotificationResult:
    outcome: str  # sent | failed | duplicate_ignored
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


def _is_transient_error(exc: Exception) -> bool:
    """True if error is retryable (timeout, connection, 5xx)."""
    s = str(exc).lower()
    if "timeout" in s or "timed out" in s or "connection" in s:
        return True
    if hasattr(exc, "code"):
        c = getattr(exc, "code", None)
        if c and (isinstance(c, int) and 500 <= c < 600 or str(c).startswith("5")):
            return True
    if hasattr(exc, "status_code") and isinstance(getattr(exc, "status_code"), int):
        sc = getattr(exc, "status_code")
        if 500 <= sc < 600:
            return True
    return False


def backoff_for_attempt(attempt: int) -> Optional[int]:
    """Delay before the retry that follows failed attempt `attempt` (1-based), None once retries are exhausted."""
    if attempt < 1 or attempt >= MAX_EMAIL_ATTEMPTS:
        return None
    return EMAIL_BACKOFFS[attempt - 1]


class NotificationOrchestrator:
    """Single entry point for client and owner transactional email."""

    def __init__(self):
        self._postmark_client = None
        postmark_token = os.getenv("POSTMARK_SERVER_TOKEN")
        if postmark_token:
            try:
                self._postmark_client = PostmarkClient(server_token=postmark_token)
            except Exception as e:
                logger.warning(f"Postmark client init failed: {e}")

    async def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        template_alias: EmailTemplateAlias,
        idempotency_key: Optional[str] = None,
        document_id: Optional[str] = None,
        text_body: Optional[str] = None,
        attachments: Optional[List[Dict[str, str]]] = None,
    ) -> NotificationResult:
        """
        Log then send one email.
        Returns NotificationResult with outcome: sent | failed | duplicate_ignored.
        Store errors on the message log propagate; provider errors are reported in the result.
        """
        db = database.get_db()

        if idempotency_key:
            existing = await db.message_logs.find_one(
                {"idempotency_key": idempotency_key},
                {"_id": 0, "message_id": 1, "status": 1},
            )
            if existing:
                return NotificationResult(
                    outcome="duplicate_ignored",
                    message_id=existing.get("message_id"),
                    details={"idempotency_key": idempotency_key},
                )

        message_log = MessageLog(
            document_id=document_id,
            recipient=recipient,
            template_alias=template_alias,
            subject=subject,
            idempotency_key=idempotency_key,
        )
        log_doc = message_log.model_dump(mode="python")
        log_doc["template_alias"] = template_alias.value
        log_doc["html_body"] = html_body
        log_doc["text_body"] = text_body
        if attachments:
            log_doc["attachments"] = attachments
        if not idempotency_key:
            # sparse unique index: leave the field out rather than storing null
            log_doc.pop("idempotency_key", None)
        try:
            await db.message_logs.insert_one(log_doc)
        except DuplicateKeyError:
            existing = await db.message_logs.find_one(
                {"idempotency_key": idempotency_key},
                {"_id": 0, "message_id": 1},
            )
            return NotificationResult(
                outcome="duplicate_ignored",
                message_id=existing.get("message_id") if existing else None,
                details={"idempotency_key": idempotency_key},
            )

        message_id = message_log.message_id
        result = await self._send_email(db, log_doc, attempt=1)

        if result.outcome == "failed":
            if result.details.get("transient"):
                await self._enqueue_retry(db, message_id, document_id, attempt=1)
            else:
                await create_audit_log(
                    action=AuditAction.NOTIFICATION_FAILED_PERMANENT,
                    resource_type="message",
                    resource_id=document_id,
                    metadata={
                        "message_id": message_id,
                        "template_alias": template_alias.value,
                        "error": result.error_message,
                    },
                )
        return result

    async def dispatch(self, **kwargs) -> NotificationResult:
        """
        Best-effort send: never raises. Used after a committed document transition
        where a notification failure must not undo or block the transition.
        """
        try:
            result = await self.send(**kwargs)
        except Exception as e:
            logger.error(
                f"Notification dispatch failed for {kwargs.get('template_alias')} "
                f"to {kwargs.get('recipient')}: {e}",
                exc_info=True,
            )
            return NotificationResult(outcome="failed", error_message=str(e)[:500])
        if result.outcome == "failed":
            logger.warning(
                f"Notification {result.message_id} not delivered: {result.error_message} "
                f"(transient={result.details.get('transient')})"
            )
        return result

    async def _send_email(self, db, log_doc: Dict[str, Any], attempt: int) -> NotificationResult:
        message_id = log_doc["message_id"]
        recipient = log_doc["recipient"]
        template_alias = log_doc.get("template_alias")

        if not self._postmark_client:
            # Dev mode - just log
            await db.message_logs.update_one(
                {"message_id": message_id},
                {"$set": {"status": "SENT", "sent_at": datetime.now(timezone.utc), "dev_mode": True, "attempt_count": attempt}},
            )
            logger.info(f"[DEV MODE] Email logged (not sent) to {recipient}: {log_doc.get('subject')}")
            return NotificationResult(outcome="sent", message_id=message_id, details={"dev_mode": True})

        try:
            send_kw = dict(
                From=DEFAULT_SENDER,
                To=recipient,
                Subject=log_doc.get("subject"),
                HtmlBody=log_doc.get("html_body"),
                TrackOpens=True,
                TrackLinks="HtmlOnly",
                Tag=template_alias,
                MessageStream=POSTMARK_MESSAGE_STREAM,
            )
            if log_doc.get("text_body"):
                send_kw["TextBody"] = log_doc["text_body"]
            if EMAIL_REPLY_TO:
                send_kw["ReplyTo"] = EMAIL_REPLY_TO
            attachments = log_doc.get("attachments")
            if attachments:
                send_kw["Attachments"] = [
                    {"Name": a.get("Name", "document.pdf"), "Content": a.get("Content"), "ContentType": a.get("ContentType", "application/pdf")}
                    for a in attachments if a.get("Content")
                ]
            response = self._postmark_client.emails.send(**send_kw)
            provider_id = response.get("MessageID")
            await db.message_logs.update_one(
                {"message_id": message_id},
                {
                    "$set": {
                        "status": "SENT",
                        "postmark_message_id": provider_id,
                        "sent_at": datetime.now(timezone.utc),
                        "attempt_count": attempt,
                    }
                },
            )
            await create_audit_log(
                action=AuditAction.EMAIL_SENT,
                resource_type="message",
                resource_id=log_doc.get("document_id"),
                metadata={"template_alias": template_alias, "message_id": message_id, "postmark_id": provider_id},
            )
            logger.info(f"Email sent to {recipient}: {provider_id}")
            return NotificationResult(outcome="sent", message_id=message_id, details={"provider_message_id": provider_id})
        except Exception as e:
            transient = _is_transient_error(e)
            err_msg = str(e)[:500]
            logger.error(f"Failed to send email to {recipient}: {e}")
            await db.message_logs.update_one(
                {"message_id": message_id},
                {"$set": {"status": "FAILED", "error_message": err_msg, "attempt_count": attempt}},
            )
            await create_audit_log(
                action=AuditAction.EMAIL_FAILED,
                resource_type="message",
                resource_id=log_doc.get("document_id"),
                metadata={"template_alias": template_alias, "message_id": message_id, "error": err_msg},
            )
            return NotificationResult(
                outcome="failed",
                message_id=message_id,
                error_message=err_msg,
                details={"transient": transient, "attempt_count": attempt},
            )

    async def _enqueue_retry(self, db, message_id: str, document_id: Optional[str], attempt: int) -> bool:
        delay = backoff_for_attempt(attempt)
        if delay is None:
            return False
        now = datetime.now(timezone.utc)
        await db.notification_retry_queue.insert_one({
            "message_id": message_id,
            "document_id": document_id,
            "attempt_count": attempt + 1,
            "next_run_at": now + timedelta(seconds=delay),
            "status": "PENDING",
            "created_at": now,
        })
        logger.info(f"Queued retry {attempt + 1} for message {message_id} in {delay}s")
        return True

    async def process_retry(self, message_id: str) -> NotificationResult:
        """Process one message from the retry queue (called by retry worker)."""
        db = database.get_db()
        log_doc = await db.message_logs.find_one({"message_id": message_id}, {"_id": 0})
        await db.notification_retry_queue.delete_many({"message_id": message_id})
        if not log_doc:
            return NotificationResult(outcome="failed", error_message="message_log not found")
        if log_doc.get("status") == "SENT":
            return NotificationResult(outcome="duplicate_ignored", message_id=message_id)

        attempt = int(log_doc.get("attempt_count", 1)) + 1
        result = await self._send_email(db, log_doc, attempt=attempt)
        if result.outcome != "failed":
            return result

        if result.details.get("transient") and attempt < MAX_EMAIL_ATTEMPTS:
            await self._enqueue_retry(db, message_id, log_doc.get("document_id"), attempt)
        else:
            await create_audit_log(
                action=AuditAction.NOTIFICATION_FAILED_PERMANENT,
                resource_type="message",
                resource_id=log_doc.get("document_id"),
                metadata={"message_id": message_id, "template_alias": log_doc.get("template_alias"), "attempts": attempt},
            )
        return result


notification_orchestrator = NotificationOrchestrator()
