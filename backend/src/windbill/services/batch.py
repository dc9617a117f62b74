"""
Batch actions over invoices, documents and invoice emails.

process_batch is the generic runner: items are processed in sequential
chunks, concurrently within a chunk, so at most ``chunk_size`` database
sessions are open at a time. Every item runs in its own transaction and
a failing item never stops the others.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from windbill.config import get_settings
from windbill.domain.models import BatchFailure, BatchResult, InvoiceStatus
from windbill.exceptions import NotFoundError, ValidationError
from windbill.infrastructure.database import Document, Invoice, utcnow

from .notifications import NotificationQueue

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Awaitable[None] | None]

INVOICE_EMAIL_EVENT = "invoice.email_requested"


async def process_batch(
    ids: Sequence[str],
    operation: Callable[[str], Awaitable[Any]],
    chunk_size: int | None = None,
    on_progress: ProgressCallback | None = None,
) -> BatchResult:
    """
    Run ``operation`` for every id, chunk by chunk.

    Args:
        ids: Items to process, in order
        operation: Coroutine function called with one id
        chunk_size: Items run concurrently per chunk
        on_progress: Called with (processed, total) after each chunk;
            may be sync or async

    Returns:
        BatchResult listing succeeded ids and failures with their message
    """
    if chunk_size is None:
        chunk_size = get_settings().batch_chunk_size
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")

    result = BatchResult()
    total = len(ids)

    for start in range(0, total, chunk_size):
        chunk = ids[start:start + chunk_size]
        outcomes = await asyncio.gather(
            *(operation(item_id) for item_id in chunk),
            return_exceptions=True,
        )
        for item_id, outcome in zip(chunk, outcomes):
            if isinstance(outcome, BaseException):
                # Cancellation and interpreter exits are not item failures
                if not isinstance(outcome, Exception):
                    raise outcome
                result.failed.append(BatchFailure(id=item_id, error=str(outcome) or type(outcome).__name__))
            else:
                result.success.append(item_id)

        result.total_processed += len(chunk)
        if on_progress is not None:
            progress = on_progress(result.total_processed, total)
            if inspect.isawaitable(progress):
                await progress

    return result


class BatchEntity(Enum):
    INVOICES = "invoices"
    DOCUMENTS = "documents"
    EMAILS = "emails"


class BatchAction(Enum):
    MARK_SENT = "mark_sent"
    MARK_PAID = "mark_paid"
    CANCEL = "cancel"
    ARCHIVE = "archive"
    DELETE = "delete"
    SEND = "send"


ENTITY_ACTIONS: dict[BatchEntity, set[BatchAction]] = {
    BatchEntity.INVOICES: {BatchAction.MARK_SENT, BatchAction.MARK_PAID, BatchAction.CANCEL},
    BatchEntity.DOCUMENTS: {BatchAction.ARCHIVE, BatchAction.DELETE},
    BatchEntity.EMAILS: {BatchAction.SEND},
}

# action -> (allowed source states, target state, timestamp attribute)
INVOICE_TRANSITIONS: dict[BatchAction, tuple[set[InvoiceStatus], InvoiceStatus, str]] = {
    BatchAction.MARK_SENT: ({InvoiceStatus.DRAFT}, InvoiceStatus.SENT, "sent_at"),
    BatchAction.MARK_PAID: ({InvoiceStatus.SENT}, InvoiceStatus.PAID, "paid_at"),
    BatchAction.CANCEL: ({InvoiceStatus.DRAFT, InvoiceStatus.SENT}, InvoiceStatus.CANCELLED, "cancelled_at"),
}

ACTION_VERBS = {
    BatchAction.MARK_SENT: "marked as sent",
    BatchAction.MARK_PAID: "marked as paid",
    BatchAction.CANCEL: "cancelled",
    BatchAction.ARCHIVE: "archived",
    BatchAction.DELETE: "deleted",
    BatchAction.SEND: "queued for sending",
}


@dataclass
class BatchActionOutcome:
    """Response of a batch action."""
    entity: BatchEntity
    action: BatchAction
    result: BatchResult
    summary: str


def summarize(entity: BatchEntity, action: BatchAction, result: BatchResult) -> str:
    """Human-readable one-liner, e.g. '4 of 5 invoices cancelled, 1 failed'."""
    text = f"{len(result.success)} of {result.total_processed} {entity.value} {ACTION_VERBS[action]}"
    if result.failed:
        text += f", {len(result.failed)} failed"
    return text


class BatchActionService:
    """Applies one action to many entities of a tenant."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifications: NotificationQueue | None = None,
        chunk_size: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.notifications = notifications
        self.chunk_size = get_settings().batch_chunk_size if chunk_size is None else chunk_size

    @staticmethod
    def validate_ids(entity: BatchEntity, ids: Sequence[str]) -> list[str]:
        """
        Check the id list before anything is touched.

        Duplicates are dropped, first occurrence wins.

        Raises:
            ValidationError: If the list is empty, has blank ids or is too long
        """
        if not ids:
            raise ValidationError("No ids given")
        if any(not item_id or not item_id.strip() for item_id in ids):
            raise ValidationError("Ids must not be empty")

        unique = list(dict.fromkeys(item_id.strip() for item_id in ids))
        limit = get_settings().batch_limit_for(entity.value)
        if len(unique) > limit:
            raise ValidationError(f"At most {limit} {entity.value} per batch, got {len(unique)}")
        return unique

    async def run(
        self,
        tenant_id: str,
        entity: BatchEntity,
        action: BatchAction,
        ids: Sequence[str],
        on_progress: ProgressCallback | None = None,
    ) -> BatchActionOutcome:
        """
        Validate the request, then process every id.

        Raises:
            ValidationError: If the action does not apply to the entity
                or the id list is invalid
        """
        if action not in ENTITY_ACTIONS[entity]:
            raise ValidationError(f"Action {action.value} is not available for {entity.value}")
        if entity == BatchEntity.EMAILS and self.notifications is None:
            raise ValidationError("Email delivery is not configured")

        unique_ids = self.validate_ids(entity, ids)
        now = utcnow()

        if entity == BatchEntity.INVOICES:
            operation = partial(self._transition_invoice, tenant_id, action, now)
        elif entity == BatchEntity.DOCUMENTS:
            operation = partial(self._update_document, tenant_id, action, now)
        else:
            operation = partial(self._queue_invoice_email, tenant_id)

        result = await process_batch(unique_ids, operation, self.chunk_size, on_progress)
        summary = summarize(entity, action, result)

        if result.failed:
            logger.warning(f"Batch {entity.value}/{action.value} for tenant {tenant_id}: {summary}")
        else:
            logger.info(f"Batch {entity.value}/{action.value} for tenant {tenant_id}: {summary}")
        return BatchActionOutcome(entity=entity, action=action, result=result, summary=summary)

    async def _load_invoice(self, session: AsyncSession, tenant_id: str, invoice_id: str) -> Invoice:
        invoice = await session.scalar(
            select(Invoice).where(Invoice.id == invoice_id, Invoice.tenant_id == tenant_id)
        )
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    async def _transition_invoice(
        self,
        tenant_id: str,
        action: BatchAction,
        now: datetime,
        invoice_id: str,
    ) -> None:
        allowed, target, timestamp_field = INVOICE_TRANSITIONS[action]
        async with self._session_factory() as session:
            async with session.begin():
                invoice = await self._load_invoice(session, tenant_id, invoice_id)
                current = InvoiceStatus(invoice.status)
                if current not in allowed:
                    raise ValidationError(
                        f"Invoice {invoice.invoice_number} is {current.value}, "
                        f"cannot change to {target.value}"
                    )
                invoice.status = target.value
                setattr(invoice, timestamp_field, now)

    async def _update_document(
        self,
        tenant_id: str,
        action: BatchAction,
        now: datetime,
        document_id: str,
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                document = await session.scalar(
                    select(Document).where(
                        Document.id == document_id,
                        Document.tenant_id == tenant_id,
                        Document.deleted_at.is_(None),
                    )
                )
                if document is None:
                    raise NotFoundError(f"Document {document_id} not found")

                if action == BatchAction.ARCHIVE:
                    if document.is_archived:
                        raise ValidationError(f"Document {document.title} is already archived")
                    document.is_archived = True
                    document.archived_at = now
                else:
                    document.deleted_at = now

    async def _queue_invoice_email(self, tenant_id: str, invoice_id: str) -> None:
        async with self._session_factory() as session:
            invoice = await self._load_invoice(session, tenant_id, invoice_id)

        if invoice.status in (InvoiceStatus.DRAFT.value, InvoiceStatus.CANCELLED.value):
            raise ValidationError(f"Invoice {invoice.invoice_number} is {invoice.status} and cannot be emailed")

        queued = self.notifications.enqueue(
            INVOICE_EMAIL_EVENT,
            {
                "tenantId": tenant_id,
                "invoiceId": invoice.id,
                "invoiceNumber": invoice.invoice_number,
                "recipientName": invoice.recipient_name,
            },
        )
        if not queued:
            raise ValidationError(f"Notification queue is full, invoice {invoice.invoice_number} not queued")
