"""
Shared fixtures.

Every test gets its own SQLite file database. NullPool keeps connections
from outliving the event loop of the test that opened them.
"""

from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from windbill.config import get_settings
from windbill.infrastructure.database import (
    Base,
    BillingRule,
    Fund,
    IncomingInvoice,
    Invoice,
    Lease,
    Shareholder,
    Tenant,
)

TENANT_ID = "tenant-nordwind"
OTHER_TENANT_ID = "tenant-suedwind"
TENANT_IBAN = "DE89370400440532013000"
TENANT_BIC = "COBADEFFXXX"


@pytest.fixture(autouse=True)
def settings_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Fast retries and a throwaway archive for every test."""
    monkeypatch.setenv("ARCHIVE_PATH", str(tmp_path / "archive"))
    monkeypatch.setenv("SEQUENCE_RETRY_BASE_DELAY", "0.001")
    monkeypatch.setenv("NOTIFICATION_RETRY_DELAY", "0")
    monkeypatch.setenv("SCHEDULER_INTERVAL_SECONDS", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'windbill.db'}"


async def prepare_database(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create all tables and the two test tenants; the second has no bank account."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        session.add_all(
            [
                Tenant(id=TENANT_ID, name="Windpark Nordwind GmbH & Co. KG", iban=TENANT_IBAN, bic=TENANT_BIC),
                Tenant(id=OTHER_TENANT_ID, name="Suedwind Betriebs GmbH", iban=None, bic=None),
            ]
        )
        await session.commit()
    return factory


@pytest_asyncio.fixture
async def session_factory(database_url: str):
    engine = create_async_engine(database_url, poolclass=NullPool)
    yield await prepare_database(engine)
    await engine.dispose()


async def add_fund(
    factory: async_sessionmaker[AsyncSession],
    percentages: list[str],
    tenant_id: str = TENANT_ID,
    total_capital: str = "1000000.00",
) -> Fund:
    """A fund with one active shareholder per distribution percentage."""
    async with factory() as session:
        fund = Fund(tenant_id=tenant_id, name="Buergerwindpark Nordwind", total_capital=Decimal(total_capital))
        session.add(fund)
        await session.flush()
        for index, percentage in enumerate(percentages, start=1):
            session.add(
                Shareholder(
                    tenant_id=tenant_id,
                    fund_id=fund.id,
                    shareholder_number=f"K-{index:03d}",
                    name=f"Gesellschafter {index}",
                    street=f"Deichstrasse {index}",
                    postal_code="25813",
                    city="Husum",
                    bank_iban="GB82WEST12345698765432",
                    distribution_percentage=Decimal(percentage),
                    capital_contribution=Decimal("10000.00") * index,
                )
            )
        await session.commit()
        return fund


async def add_rule(
    factory: async_sessionmaker[AsyncSession],
    rule_type: str,
    parameters: dict,
    tenant_id: str = TENANT_ID,
    **fields,
) -> BillingRule:
    values = {"name": f"{rule_type.title()} rule", "frequency": "MONTHLY", "day_of_month": 1}
    values.update(fields)
    async with factory() as session:
        rule = BillingRule(tenant_id=tenant_id, rule_type=rule_type, parameters=parameters, **values)
        session.add(rule)
        await session.commit()
        return rule


async def add_lease(
    factory: async_sessionmaker[AsyncSession],
    lessor_name: str,
    monthly_rent: str,
    start_date: date,
    end_date: date | None = None,
    tenant_id: str = TENANT_ID,
) -> Lease:
    async with factory() as session:
        lease = Lease(
            tenant_id=tenant_id,
            lessor_name=lessor_name,
            monthly_rent=Decimal(monthly_rent),
            start_date=start_date,
            end_date=end_date,
        )
        session.add(lease)
        await session.commit()
        return lease


async def add_invoice(
    factory: async_sessionmaker[AsyncSession],
    number: str,
    status: str = "DRAFT",
    tenant_id: str = TENANT_ID,
) -> str:
    """An outgoing invoice of 100.00 net plus 19% VAT."""
    async with factory() as session:
        invoice = Invoice(
            tenant_id=tenant_id,
            invoice_type="INVOICE",
            invoice_number=number,
            invoice_date=date(2025, 3, 1),
            recipient_name="Netzbetreiber Nord",
            net_amount=Decimal("100.00"),
            tax_rate=Decimal("19.00"),
            tax_amount=Decimal("19.00"),
            gross_amount=Decimal("119.00"),
            status=status,
        )
        session.add(invoice)
        await session.commit()
        return invoice.id


async def add_incoming_invoice(
    factory: async_sessionmaker[AsyncSession],
    tenant_id: str = TENANT_ID,
    **fields,
) -> str:
    """An approved vendor invoice, payable unless ``fields`` say otherwise."""
    values = {
        "vendor_name": "Rotorservice Müller GmbH",
        "invoice_number": "RS-2025-114",
        "creditor_iban": "GB82 WEST 1234 5698 7654 32",
        "creditor_bic": "WESTGB2L",
        "gross_amount": Decimal("1190.00"),
        "status": "APPROVED",
    }
    values.update(fields)
    async with factory() as session:
        invoice = IncomingInvoice(tenant_id=tenant_id, **values)
        session.add(invoice)
        await session.commit()
        return invoice.id
