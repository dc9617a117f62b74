"""
Invoice number sequence allocation.

Each tenant owns one counter row per document type. Allocation is a
read-compute-conditional-write cycle on that row:

    1. read the row and its version
    2. compute the number (resetting to 1 when the calendar year changed)
    3. UPDATE ... WHERE version = <read version>

If the UPDATE touches no row another writer got there first; the cycle
is retried with exponential backoff. No in-process lock is involved, so
any number of service instances can allocate concurrently.

Allocation runs inside the caller's transaction: the number is only
consumed when the caller commits the document that uses it.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from windbill.config import get_settings
from windbill.domain.models import DocumentType
from windbill.domain.numbering import generate_preview, validate_format
from windbill.exceptions import SequenceConflictError, ValidationError
from windbill.infrastructure.database import InvoiceNumberSequence, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AllocatedNumber:
    """A number handed out by the allocator."""
    invoice_number: str
    sequence_value: int
    year: int


@dataclass(frozen=True)
class SequenceState:
    """Settings and upcoming number of a sequence, for display."""
    document_type: DocumentType
    format: str
    digit_count: int
    current_year: int
    next_number: int
    next_invoice_number: str
    persisted: bool


def next_value(sequence: InvoiceNumberSequence, year: int) -> int:
    """Counter value the next allocation in ``year`` would receive."""
    if sequence.current_year != year:
        return 1
    return sequence.next_number


class SequenceAllocator:
    """
    Hands out unique, gap-free invoice and credit note numbers.

    Example:
        allocator = SequenceAllocator(get_session_factory())

        async with session_factory() as session:
            async with session.begin():
                allocated = await allocator.allocate(session, tenant_id, DocumentType.INVOICE)
                session.add(Invoice(invoice_number=allocated.invoice_number, ...))
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int | None = None,
        base_delay: float | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self.max_attempts = max_attempts or settings.sequence_max_attempts
        self.base_delay = settings.sequence_retry_base_delay if base_delay is None else base_delay

    @staticmethod
    async def _load(
        session: AsyncSession,
        tenant_id: str,
        document_type: DocumentType,
    ) -> InvoiceNumberSequence | None:
        result = await session.execute(
            select(InvoiceNumberSequence)
            .where(
                InvoiceNumberSequence.tenant_id == tenant_id,
                InvoiceNumberSequence.document_type == document_type.value,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _default_sequence(
        tenant_id: str,
        document_type: DocumentType,
        year: int,
    ) -> InvoiceNumberSequence:
        settings = get_settings()
        return InvoiceNumberSequence(
            tenant_id=tenant_id,
            document_type=document_type.value,
            format=settings.number_format_for(document_type.value),
            current_year=year,
            next_number=1,
            digit_count=settings.invoice_number_digits,
            version=0,
        )

    async def get_or_create(
        self,
        tenant_id: str,
        document_type: DocumentType,
        year: int | None = None,
    ) -> InvoiceNumberSequence:
        """
        Return the tenant's sequence, creating it with defaults on first use.

        Creation commits in its own short transaction. If a concurrent
        request created the row first, the unique constraint fires and
        the existing row is returned instead.
        """
        async with self._session_factory() as session:
            sequence = await self._load(session, tenant_id, document_type)
            if sequence is not None:
                return sequence

            session.add(self._default_sequence(tenant_id, document_type, year or date.today().year))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    f"Sequence {document_type.value} for tenant {tenant_id} created concurrently"
                )

            sequence = await self._load(session, tenant_id, document_type)
            if sequence is None:
                raise SequenceConflictError(
                    f"Could not create {document_type.value} sequence for tenant {tenant_id}"
                )
            logger.info(f"Initialized {document_type.value} sequence for tenant {tenant_id}")
            return sequence

    async def state(
        self,
        tenant_id: str,
        document_type: DocumentType,
        today: date | None = None,
    ) -> SequenceState:
        """
        Describe a sequence without changing anything.

        A sequence that does not exist yet is described with the
        defaults it would be created with.
        """
        today = today or date.today()
        async with self._session_factory() as session:
            sequence = await self._load(session, tenant_id, document_type)

        persisted = sequence is not None
        if sequence is None:
            sequence = self._default_sequence(tenant_id, document_type, today.year)

        number = next_value(sequence, today.year)
        return SequenceState(
            document_type=document_type,
            format=sequence.format,
            digit_count=sequence.digit_count,
            current_year=sequence.current_year,
            next_number=number,
            next_invoice_number=generate_preview(sequence.format, number, sequence.digit_count, today),
            persisted=persisted,
        )

    async def preview(
        self,
        tenant_id: str,
        document_type: DocumentType,
        today: date | None = None,
        offset: int = 0,
    ) -> str:
        """
        Number the next allocation would produce, ``offset`` allocations ahead.

        Read-only: across a year boundary this shows number 1 of the new
        year while the stored row still holds the old year.
        """
        today = today or date.today()
        state = await self.state(tenant_id, document_type, today)
        if offset == 0:
            return state.next_invoice_number
        return generate_preview(state.format, state.next_number + offset, state.digit_count, today)

    async def allocate(
        self,
        session: AsyncSession,
        tenant_id: str,
        document_type: DocumentType,
        today: date | None = None,
    ) -> AllocatedNumber:
        """
        Claim the next number inside the caller's transaction.

        Raises:
            SequenceConflictError: If every attempt lost to a concurrent writer
        """
        today = today or date.today()

        if await self._load(session, tenant_id, document_type) is None:
            await self.get_or_create(tenant_id, document_type, today.year)

        for attempt in range(self.max_attempts):
            sequence = await self._load(session, tenant_id, document_type)
            value = next_value(sequence, today.year)

            result = await session.execute(
                update(InvoiceNumberSequence)
                .where(
                    InvoiceNumberSequence.id == sequence.id,
                    InvoiceNumberSequence.version == sequence.version,
                )
                .values(
                    current_year=today.year,
                    next_number=value + 1,
                    version=sequence.version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 1:
                if sequence.current_year != today.year:
                    logger.info(
                        f"{document_type.value} sequence for tenant {tenant_id} "
                        f"rolled over from {sequence.current_year} to {today.year}"
                    )
                number = generate_preview(sequence.format, value, sequence.digit_count, today)
                logger.debug(f"Allocated {number} for tenant {tenant_id}")
                return AllocatedNumber(invoice_number=number, sequence_value=value, year=today.year)

            delay = self.base_delay * (2 ** attempt)
            logger.warning(
                f"Sequence conflict for tenant {tenant_id} ({document_type.value}), "
                f"attempt {attempt + 1}/{self.max_attempts}, retrying in {delay:.3f}s"
            )
            await asyncio.sleep(delay)

        raise SequenceConflictError(
            f"Could not allocate a {document_type.value} number after {self.max_attempts} attempts"
        )

    async def update_settings(
        self,
        tenant_id: str,
        document_type: DocumentType,
        format: str | None = None,
        digit_count: int | None = None,
    ) -> SequenceState:
        """
        Change the template or pad width of a sequence.

        The counter itself is never touched here.

        Raises:
            ValidationError: If the template is unusable or the width out of range
        """
        if format is not None:
            problems = validate_format(format)
            if problems:
                raise ValidationError("; ".join(problems))
        if digit_count is not None and not 1 <= digit_count <= 12:
            raise ValidationError("Digit count must be between 1 and 12")

        sequence = await self.get_or_create(tenant_id, document_type)
        values = {"version": InvoiceNumberSequence.version + 1, "updated_at": utcnow()}
        if format is not None:
            values["format"] = format
        if digit_count is not None:
            values["digit_count"] = digit_count

        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(InvoiceNumberSequence)
                    .where(InvoiceNumberSequence.id == sequence.id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )

        logger.info(f"Updated {document_type.value} sequence settings for tenant {tenant_id}")
        return await self.state(tenant_id, document_type)
