"""
FastAPI dependencies: tenant scoping and service construction.

Tests override get_db_session_factory and get_notification_queue to run
against a throwaway database.
"""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from windbill.exceptions import WindbillError
from windbill.infrastructure.database import get_session_factory
from windbill.infrastructure.storage import ExportArchive
from windbill.services.batch import BatchActionService
from windbill.services.billing import BillingRuleEngine, BillingRuleService
from windbill.services.notifications import NotificationQueue
from windbill.services.sepa import SepaExportService
from windbill.services.sequences import SequenceAllocator

_notification_queue: NotificationQueue | None = None


def get_tenant_id(
    x_tenant_id: Annotated[str | None, Header(description="Tenant the request acts for")] = None,
) -> str:
    """Tenant id from the X-Tenant-ID header."""
    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing X-Tenant-ID header",
        )
    return x_tenant_id.strip()


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


def get_notification_queue(request: Request) -> NotificationQueue:
    """The queue started in the lifespan, or a process-wide fallback."""
    queue = getattr(request.app.state, "notifications", None)
    if queue is not None:
        return queue
    global _notification_queue
    if _notification_queue is None:
        _notification_queue = NotificationQueue()
    return _notification_queue


SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_db_session_factory)]
Notifications = Annotated[NotificationQueue, Depends(get_notification_queue)]
TenantId = Annotated[str, Depends(get_tenant_id)]


def get_rule_service(session_factory: SessionFactory) -> BillingRuleService:
    return BillingRuleService(session_factory)


def get_rule_engine(session_factory: SessionFactory, notifications: Notifications) -> BillingRuleEngine:
    return BillingRuleEngine(session_factory, notifications=notifications)


def get_sequence_allocator(session_factory: SessionFactory) -> SequenceAllocator:
    return SequenceAllocator(session_factory)


def get_batch_service(session_factory: SessionFactory, notifications: Notifications) -> BatchActionService:
    return BatchActionService(session_factory, notifications=notifications)


def get_export_archive() -> ExportArchive:
    return ExportArchive()


def get_sepa_service(
    session_factory: SessionFactory,
    archive: Annotated[ExportArchive, Depends(get_export_archive)],
) -> SepaExportService:
    return SepaExportService(session_factory, archive=archive)


def to_http_error(exc: WindbillError) -> HTTPException:
    """Map an application error to the HTTP error the router raises."""
    return HTTPException(status_code=exc.status_code, detail=exc.message)
