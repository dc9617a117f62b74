"""
Database configuration and session management with SQLAlchemy.

Uses async SQLAlchemy for non-blocking database operations.
Every table except tenants is partitioned by tenant_id.

Design Decisions:
- AsyncSession for non-blocking operations
- Connection pooling with sensible defaults
- Explicit transaction management, one transaction per billed entity
- Numeric columns for money, returned as Decimal
- Optimistic version column on number sequences instead of row locks
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from windbill.config import get_settings

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _uuid() -> str:
    return str(uuid4())


Money = Numeric(12, 2, asdecimal=True)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class Tenant(Base):
    """
    An isolated customer organization.

    The tenant's bank account is the debtor account of SEPA exports.
    """
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    name: Mapped[str] = mapped_column(String(256))
    iban: Mapped[str | None] = mapped_column(String(34))
    bic: Mapped[str | None] = mapped_column(String(11))
    payment_term_days: Mapped[int | None] = mapped_column(Integer)


class InvoiceNumberSequence(Base):
    """
    Per-tenant, per-document-type counter behind invoice numbers.

    ``version`` is bumped on every allocation; writers update the row
    only if the version they read is still current.
    """
    __tablename__ = "invoice_number_sequences"
    __table_args__ = (
        UniqueConstraint("tenant_id", "document_type", name="uq_sequence_tenant_type"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), index=True)
    document_type: Mapped[str] = mapped_column(String(16))  # INVOICE, CREDIT_NOTE

    format: Mapped[str] = mapped_column(String(50))
    current_year: Mapped[int] = mapped_column(Integer)
    next_number: Mapped[int] = mapped_column(Integer, default=1)
    digit_count: Mapped[int] = mapped_column(Integer, default=4)
    version: Mapped[int] = mapped_column(Integer, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class BillingRule(Base):
    """
    A configured, optionally scheduled billing rule.

    Rules are deactivated rather than deleted so execution history
    keeps its reference.
    """
    __tablename__ = "billing_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), index=True)

    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text)
    rule_type: Mapped[str] = mapped_column(String(32))
    frequency: Mapped[str] = mapped_column(String(32))
    cron_pattern: Mapped[str | None] = mapped_column(String(100))
    day_of_month: Mapped[int | None] = mapped_column(Integer)
    parameters: Mapped[dict] = mapped_column(JSON, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    # Bumped by every scheduled run claim and every schedule edit
    version: Mapped[int] = mapped_column(Integer, default=0)

    executions: Mapped[list["BillingRuleExecution"]] = relationship(
        back_populates="rule", order_by="BillingRuleExecution.started_at.desc()"
    )


class BillingRuleExecution(Base):
    """Audit record of one rule run, dry or committed."""
    __tablename__ = "billing_rule_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    rule_id: Mapped[str] = mapped_column(String(36), ForeignKey("billing_rules.id"), index=True)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)

    status: Mapped[str] = mapped_column(String(16))  # success, failed
    dry_run: Mapped[bool] = mapped_column(Boolean, default=False)
    forced: Mapped[bool] = mapped_column(Boolean, default=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    invoices_created: Mapped[int] = mapped_column(Integer, default=0)
    total_amount: Mapped[Decimal | None] = mapped_column(Money)
    error_message: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict] = mapped_column(JSON, default=dict)

    rule: Mapped[BillingRule] = relationship(back_populates="executions")


class Invoice(Base):
    """Outgoing invoice or credit note."""
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("tenant_id", "invoice_number", name="uq_invoice_tenant_number"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), index=True)

    invoice_type: Mapped[str] = mapped_column(String(16))  # INVOICE, CREDIT_NOTE
    invoice_number: Mapped[str] = mapped_column(String(64))
    invoice_date: Mapped[date] = mapped_column(Date)
    due_date: Mapped[date | None] = mapped_column(Date)

    recipient_type: Mapped[str | None] = mapped_column(String(32))
    recipient_name: Mapped[str | None] = mapped_column(String(256))
    recipient_address: Mapped[str | None] = mapped_column(Text)
    payment_reference: Mapped[str | None] = mapped_column(String(140))
    internal_reference: Mapped[str | None] = mapped_column(String(64), index=True)
    service_start_date: Mapped[date | None] = mapped_column(Date)
    service_end_date: Mapped[date | None] = mapped_column(Date)

    net_amount: Mapped[Decimal] = mapped_column(Money)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2))
    tax_amount: Mapped[Decimal] = mapped_column(Money)
    gross_amount: Mapped[Decimal] = mapped_column(Money)

    status: Mapped[str] = mapped_column(String(16), default="DRAFT")
    notes: Mapped[str | None] = mapped_column(Text)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    fund_id: Mapped[str | None] = mapped_column(String(36))
    park_id: Mapped[str | None] = mapped_column(String(36))
    shareholder_id: Mapped[str | None] = mapped_column(String(36))
    lease_id: Mapped[str | None] = mapped_column(String(36))
    billing_rule_id: Mapped[str | None] = mapped_column(String(36), index=True)

    items: Mapped[list["InvoiceItem"]] = relationship(
        back_populates="invoice", cascade="all, delete-orphan", order_by="InvoiceItem.position"
    )


class InvoiceItem(Base):
    """A line of an outgoing invoice."""
    __tablename__ = "invoice_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    invoice_id: Mapped[str] = mapped_column(String(36), ForeignKey("invoices.id"), index=True)
    position: Mapped[int] = mapped_column(Integer)

    description: Mapped[str] = mapped_column(String(512))
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4))
    unit: Mapped[str] = mapped_column(String(32))
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 4))
    net_amount: Mapped[Decimal] = mapped_column(Money)
    tax_type: Mapped[str] = mapped_column(String(16))
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2))
    tax_amount: Mapped[Decimal] = mapped_column(Money)
    gross_amount: Mapped[Decimal] = mapped_column(Money)

    reference_type: Mapped[str | None] = mapped_column(String(32))
    reference_id: Mapped[str | None] = mapped_column(String(36))

    invoice: Mapped[Invoice] = relationship(back_populates="items")


class Fund(Base):
    """An investment company owning wind parks."""
    __tablename__ = "funds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(256))
    total_capital: Mapped[Decimal | None] = mapped_column(Money)
    status: Mapped[str] = mapped_column(String(16), default="ACTIVE")

    shareholders: Mapped[list["Shareholder"]] = relationship(back_populates="fund")


class Shareholder(Base):
    """An investor in a fund, recipient of distributions."""
    __tablename__ = "shareholders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), index=True)
    fund_id: Mapped[str] = mapped_column(String(36), ForeignKey("funds.id"), index=True)
    shareholder_number: Mapped[str | None] = mapped_column(String(32))

    name: Mapped[str] = mapped_column(String(256))
    street: Mapped[str | None] = mapped_column(String(256))
    postal_code: Mapped[str | None] = mapped_column(String(16))
    city: Mapped[str | None] = mapped_column(String(128))
    email: Mapped[str | None] = mapped_column(String(256))

    bank_iban: Mapped[str | None] = mapped_column(String(34))
    bank_bic: Mapped[str | None] = mapped_column(String(11))
    bank_name: Mapped[str | None] = mapped_column(String(128))

    distribution_percentage: Mapped[Decimal | None] = mapped_column(Numeric(7, 4))
    capital_contribution: Mapped[Decimal | None] = mapped_column(Money)
    status: Mapped[str] = mapped_column(String(16), default="ACTIVE")

    fund: Mapped[Fund] = relationship(back_populates="shareholders")


class Lease(Base):
    """Land lease for turbine sites, paid monthly to the lessor."""
    __tablename__ = "leases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), index=True)
    park_id: Mapped[str | None] = mapped_column(String(36), index=True)

    lessor_name: Mapped[str] = mapped_column(String(256))
    lessor_address: Mapped[str | None] = mapped_column(Text)
    monthly_rent: Mapped[Decimal] = mapped_column(Money)
    tax_type: Mapped[str] = mapped_column(String(16), default="EXEMPT")
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[date | None] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String(16), default="ACTIVE")


class FundPark(Base):
    """Link between a fund and a wind park it holds."""
    __tablename__ = "fund_parks"
    __table_args__ = (
        UniqueConstraint("fund_id", "park_id", name="uq_fund_park"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    fund_id: Mapped[str] = mapped_column(String(36), ForeignKey("funds.id"), index=True)
    park_id: Mapped[str] = mapped_column(String(36), index=True)


class EnergySettlement(Base):
    """
    Grid operator settlement of a park's feed-in revenue.

    ``month`` is None for annual settlements.
    """
    __tablename__ = "energy_settlements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), index=True)
    park_id: Mapped[str] = mapped_column(String(36), index=True)
    year: Mapped[int] = mapped_column(Integer)
    month: Mapped[int | None] = mapped_column(Integer)
    net_operator_revenue: Mapped[Decimal] = mapped_column(Money)


class IncomingInvoice(Base):
    """
    A vendor invoice the tenant has to pay.

    Approved invoices are paid through SEPA exports.
    """
    __tablename__ = "incoming_invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), index=True)

    vendor_name: Mapped[str | None] = mapped_column(String(256))
    invoice_number: Mapped[str | None] = mapped_column(String(64))
    payment_reference: Mapped[str | None] = mapped_column(String(140))
    creditor_iban: Mapped[str | None] = mapped_column(String(34))
    creditor_bic: Mapped[str | None] = mapped_column(String(11))

    gross_amount: Mapped[Decimal | None] = mapped_column(Money)
    currency: Mapped[str] = mapped_column(String(3), default="EUR")
    invoice_date: Mapped[date | None] = mapped_column(Date)
    due_date: Mapped[date | None] = mapped_column(Date)

    # Early payment discount
    skonto_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    skonto_deadline: Mapped[date | None] = mapped_column(Date)

    status: Mapped[str] = mapped_column(String(16), default="RECEIVED")
    exported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sepa_message_id: Mapped[str | None] = mapped_column(String(35), index=True)


class SepaExport(Base):
    """
    One payment file handed to the bank.

    The unique message id keeps two exports from sharing an identifier.
    """
    __tablename__ = "sepa_exports"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), index=True)

    message_id: Mapped[str] = mapped_column(String(35), unique=True)
    execution_date: Mapped[date] = mapped_column(Date)
    payment_count: Mapped[int] = mapped_column(Integer, default=0)
    control_sum: Mapped[Decimal | None] = mapped_column(Money)
    archive_path: Mapped[str | None] = mapped_column(String(512))
    document_hash: Mapped[str | None] = mapped_column(String(80))


class Document(Base):
    """Metadata of a stored tenant document."""
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), index=True)

    title: Mapped[str] = mapped_column(String(256))
    category: Mapped[str | None] = mapped_column(String(64))
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


# Engine and session factory (initialized lazily)
_engine = None
_session_factory = None


def get_engine():
    """Get or create the async database engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
        )
        logger.info(f"Database engine created for {_engine.url.host or 'local'}")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory for creating database sessions."""
    global _session_factory
    if _session_factory is None:
        engine = get_engine()
        _session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def init_db() -> None:
    """
    Initialize database tables.

    Call this on application startup to ensure tables exist.
    In production, use Alembic migrations instead.
    """
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


async def close_db() -> None:
    """Close database connections on shutdown."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
    logger.info("Database connections closed")
