"""Invoice number allocation against a real database."""

import asyncio
from datetime import date
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from windbill.domain.models import DocumentType
from windbill.exceptions import SequenceConflictError, ValidationError
from windbill.infrastructure.database import InvoiceNumberSequence
from windbill.services.sequences import SequenceAllocator

from conftest import OTHER_TENANT_ID, TENANT_ID


async def allocate(
    allocator: SequenceAllocator,
    factory: async_sessionmaker[AsyncSession],
    today: date,
    document_type: DocumentType = DocumentType.INVOICE,
    tenant_id: str = TENANT_ID,
) -> str:
    async with factory() as session:
        async with session.begin():
            allocated = await allocator.allocate(session, tenant_id, document_type, today)
    return allocated.invoice_number


@pytest.mark.asyncio
class TestAllocation:
    async def test_sequential_numbers(self, session_factory) -> None:
        allocator = SequenceAllocator(session_factory)
        today = date(2025, 5, 2)

        numbers = [await allocate(allocator, session_factory, today) for _ in range(3)]

        assert numbers == ["RG-2025-0001", "RG-2025-0002", "RG-2025-0003"]

    async def test_document_types_and_tenants_are_independent(self, session_factory) -> None:
        allocator = SequenceAllocator(session_factory)
        today = date(2025, 5, 2)

        await allocate(allocator, session_factory, today)
        credit_note = await allocate(allocator, session_factory, today, DocumentType.CREDIT_NOTE)
        other_tenant = await allocate(allocator, session_factory, today, tenant_id=OTHER_TENANT_ID)

        assert credit_note == "GS-2025-0001"
        assert other_tenant == "RG-2025-0001"

    async def test_concurrent_allocations_are_distinct_and_contiguous(self, session_factory) -> None:
        allocator = SequenceAllocator(session_factory, max_attempts=10)
        today = date(2025, 5, 2)
        await allocator.get_or_create(TENANT_ID, DocumentType.INVOICE, today.year)

        numbers = await asyncio.gather(*(allocate(allocator, session_factory, today) for _ in range(8)))

        assert sorted(numbers) == [f"RG-2025-{n:04d}" for n in range(1, 9)]

    async def test_number_is_not_consumed_when_transaction_rolls_back(self, session_factory) -> None:
        allocator = SequenceAllocator(session_factory)
        today = date(2025, 5, 2)
        await allocate(allocator, session_factory, today)

        with pytest.raises(RuntimeError):
            async with session_factory() as session:
                async with session.begin():
                    await allocator.allocate(session, TENANT_ID, DocumentType.INVOICE, today)
                    raise RuntimeError("document insert failed")

        assert await allocate(allocator, session_factory, today) == "RG-2025-0002"

    async def test_year_rollover_resets_counter(self, session_factory) -> None:
        allocator = SequenceAllocator(session_factory)

        assert await allocate(allocator, session_factory, date(2024, 12, 31)) == "RG-2024-0001"
        assert await allocate(allocator, session_factory, date(2024, 12, 31)) == "RG-2024-0002"
        assert await allocate(allocator, session_factory, date(2025, 1, 1)) == "RG-2025-0001"
        assert await allocate(allocator, session_factory, date(2025, 1, 1)) == "RG-2025-0002"

    async def test_conflict_after_retry_budget(self, session_factory) -> None:
        class StaleAllocator(SequenceAllocator):
            """Always reads a version that is no longer current."""

            @staticmethod
            async def _load(session, tenant_id, document_type):
                sequence = await SequenceAllocator._load(session, tenant_id, document_type)
                if sequence is None:
                    return None
                return SimpleNamespace(
                    id=sequence.id,
                    version=sequence.version + 100,
                    current_year=sequence.current_year,
                    next_number=sequence.next_number,
                    format=sequence.format,
                    digit_count=sequence.digit_count,
                )

        allocator = StaleAllocator(session_factory, max_attempts=3, base_delay=0)

        with pytest.raises(SequenceConflictError):
            await allocate(allocator, session_factory, date(2025, 5, 2))


@pytest.mark.asyncio
class TestPreviewAndSettings:
    async def test_preview_does_not_create_or_mutate(self, session_factory) -> None:
        allocator = SequenceAllocator(session_factory)

        assert await allocator.preview(TENANT_ID, DocumentType.INVOICE, date(2025, 1, 5)) == "RG-2025-0001"
        assert await allocator.preview(TENANT_ID, DocumentType.INVOICE, date(2025, 1, 5), offset=2) == "RG-2025-0003"

        async with session_factory() as session:
            count = await session.scalar(select(func.count()).select_from(InvoiceNumberSequence))
        assert count == 0

    async def test_preview_at_year_boundary_matches_next_allocation(self, session_factory) -> None:
        allocator = SequenceAllocator(session_factory)
        await allocate(allocator, session_factory, date(2024, 12, 30))
        await allocate(allocator, session_factory, date(2024, 12, 31))

        preview = await allocator.preview(TENANT_ID, DocumentType.INVOICE, date(2025, 1, 1))
        state = await allocator.state(TENANT_ID, DocumentType.INVOICE, date(2025, 1, 1))

        assert preview == "RG-2025-0001"
        assert state.current_year == 2024
        assert await allocate(allocator, session_factory, date(2025, 1, 1)) == preview

    async def test_update_settings_keeps_counter(self, session_factory) -> None:
        allocator = SequenceAllocator(session_factory)
        today = date(2025, 7, 1)
        await allocate(allocator, session_factory, today)

        state = await allocator.update_settings(
            TENANT_ID, DocumentType.INVOICE, format="INV/{YY}/{MONTH}/{NUMBER}", digit_count=6
        )

        assert state.format == "INV/{YY}/{MONTH}/{NUMBER}"
        assert await allocate(allocator, session_factory, today) == "INV/25/07/000002"

    async def test_update_settings_rejects_format_without_number(self, session_factory) -> None:
        allocator = SequenceAllocator(session_factory)

        with pytest.raises(ValidationError):
            await allocator.update_settings(TENANT_ID, DocumentType.INVOICE, format="RG-{YEAR}")
