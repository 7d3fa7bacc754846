# 📂 backend/hostbill/models.py — SQLAlchemy ORM models (full version)
# -----------------------------------------------------------------------------
# Purpose:
#   • One set of ORM models for the hosting/billing core: users and their
#     activity, hosting spaces, the hardware catalogue and its procurement
#     history, miners with their rate history, electricity rates, the
#     cost-payment ledger, the daily accrual log, invoices, recurring invoice
#     templates, per-customer pricing, audit logs, invoice notifications,
#     bulk e-mail runs, customer groups and crypto payments.
#
# Business rules (summary):
#   • Ledger (cost_payments) is append-only. Charges are negative, payments
#     positive; `balance` holds the customer's running balance after the row.
#   • Daily accrual writes at most one charge per (user, accrual_date); the
#     daily_accrual_log unique key is the idempotency guard.
#   • Invoices: DRAFT → ISSUED → PAID / OVERDUE / CANCELLED. Payments against
#     an invoice are ledger rows with invoice_id set.
#   • Miner names are unique per user. Hardware and miners are soft-deleted.
#
# Notes:
#   • Column types stay portable (JSON with a JSONB variant, non-native enums,
#     UUID strings) so the same models run on PostgreSQL and on SQLite in tests.
#   • Every DateTime column stores naive UTC (utils.utcnow()).
# -----------------------------------------------------------------------------

from __future__ import annotations

import enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

from .utils import gen_uuid, utcnow

# -----------------------------------------------------------------------------
# Shared ORM base and column helpers
# -----------------------------------------------------------------------------
Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum(enum_cls):
    return Enum(enum_cls, native_enum=False, length=40, validate_strings=True)


def _pk():
    return Column(String(36), primary_key=True, default=gen_uuid)


# =============================================================================
# Enumerations
# =============================================================================
class UserRole(str, enum.Enum):
    CLIENT = "CLIENT"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


ADMIN_ROLES = (UserRole.ADMIN, UserRole.SUPER_ADMIN)


class ActivityType(str, enum.Enum):
    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_RESET = "PASSWORD_RESET"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"


class SpaceStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    OCCUPIED = "OCCUPIED"


class MinerStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    AUTO = "AUTO"
    DEPLOYMENT_IN_PROGRESS = "DEPLOYMENT_IN_PROGRESS"


class PaymentType(str, enum.Enum):
    PAYMENT = "PAYMENT"
    ELECTRICITY_CHARGES = "ELECTRICITY_CHARGES"
    ADJUSTMENT = "ADJUSTMENT"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    ISSUED = "ISSUED"
    OVERDUE = "OVERDUE"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class InvoiceType(str, enum.Enum):
    ELECTRICITY_CHARGES = "ELECTRICITY_CHARGES"
    HARDWARE_PURCHASE = "HARDWARE_PURCHASE"


class AuditAction(str, enum.Enum):
    INVOICE_CREATED = "INVOICE_CREATED"
    INVOICE_UPDATED = "INVOICE_UPDATED"
    INVOICE_ISSUED = "INVOICE_ISSUED"
    INVOICE_SENT_TO_CUSTOMER = "INVOICE_SENT_TO_CUSTOMER"
    INVOICE_CANCELLED = "INVOICE_CANCELLED"
    INVOICE_DELETED = "INVOICE_DELETED"
    INVOICE_PAID = "INVOICE_PAID"
    PAYMENT_ADDED = "PAYMENT_ADDED"
    PAYMENT_REMOVED = "PAYMENT_REMOVED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
    RECURRING_INVOICE_CREATED = "RECURRING_INVOICE_CREATED"
    RECURRING_INVOICE_UPDATED = "RECURRING_INVOICE_UPDATED"
    RECURRING_INVOICE_DELETED = "RECURRING_INVOICE_DELETED"
    RECURRING_INVOICE_PAUSED = "RECURRING_INVOICE_PAUSED"
    RECURRING_INVOICE_RESUMED = "RECURRING_INVOICE_RESUMED"
    PRICING_CONFIG_CREATED = "PRICING_CONFIG_CREATED"
    PRICING_CONFIG_UPDATED = "PRICING_CONFIG_UPDATED"
    PRICING_CONFIG_ARCHIVED = "PRICING_CONFIG_ARCHIVED"
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_FAILED = "EMAIL_FAILED"
    EMAIL_RETRY = "EMAIL_RETRY"


class NotificationType(str, enum.Enum):
    INVOICE_ISSUED = "INVOICE_ISSUED"
    INVOICE_CANCELLED = "INVOICE_CANCELLED"
    PAYMENT_REMINDER = "PAYMENT_REMINDER"
    OVERDUE_REMINDER = "OVERDUE_REMINDER"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    INVOICE_VIEWED = "INVOICE_VIEWED"


class NotificationStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    BOUNCED = "BOUNCED"
    UNSUBSCRIBED = "UNSUBSCRIBED"


class EmailRunType(str, enum.Enum):
    INVOICE = "INVOICE"
    STATEMENT = "STATEMENT"


class EmailRunStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class CryptoPaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


# =============================================================================
# Users
# =============================================================================
class User(Base):
    """
    Platform account. CLIENTs own miners and receive invoices; ADMIN and
    SUPER_ADMIN operate the dashboard.
    """
    __tablename__ = "users"

    id = _pk()
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(_enum(UserRole), nullable=False, default=UserRole.CLIENT)
    phone = Column(String(64), nullable=True)
    company_name = Column(String(255), nullable=True)
    company_url = Column(String(255), nullable=True)
    image_url = Column(Text, nullable=True)
    pool_subaccount_name = Column(String(255), nullable=True)  # mining pool sub-account

    two_factor_enabled = Column(Boolean, nullable=False, default=False)
    two_factor_secret = Column(String(64), nullable=True)
    backup_codes = Column(JSONType, nullable=True)  # sha256 hashes, single use

    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


class UserActivity(Base):
    """Login / security events of a user."""
    __tablename__ = "user_activities"
    __table_args__ = (Index("ix_user_activities_user_created", "user_id", "created_at"),)

    id = _pk()
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type = Column(_enum(ActivityType), nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# =============================================================================
# Fleet: spaces, hardware, miners, rates
# =============================================================================
class Space(Base):
    """Physical hosting space (container / hall) with unit and power capacity."""
    __tablename__ = "spaces"

    id = _pk()
    name = Column(String(255), nullable=False, unique=True)
    location = Column(String(255), nullable=False)
    capacity = Column(Integer, nullable=False, default=0)            # miner slots
    power_capacity = Column(Numeric(12, 3), nullable=False, default=0)  # kW
    status = Column(_enum(SpaceStatus), nullable=False, default=SpaceStatus.AVAILABLE)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Hardware(Base):
    """
    Catalogue entry for a miner model.
    power_usage is in kW, hash_rate in TH/s, quantity is the stock not yet
    assigned to a miner.
    """
    __tablename__ = "hardware"

    id = _pk()
    model = Column(String(255), nullable=False, unique=True)
    power_usage = Column(Numeric(10, 3), nullable=False)
    hash_rate = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class HardwareProcurement(Base):
    """Stock added to a hardware model (purchase history)."""
    __tablename__ = "hardware_procurements"

    id = _pk()
    hardware_id = Column(String(36), ForeignKey("hardware.id", ondelete="CASCADE"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price_per_unit = Column(Numeric(12, 2), nullable=True)
    note = Column(Text, nullable=True)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Miner(Base):
    """A hosted machine: one unit of hardware owned by a user in a space."""
    __tablename__ = "miners"
    __table_args__ = (
        UniqueConstraint("name", "user_id", name="uq_miners_name_user"),
        Index("ix_miners_user", "user_id"),
    )

    id = _pk()
    name = Column(String(255), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    space_id = Column(String(36), ForeignKey("spaces.id", ondelete="SET NULL"), nullable=True)  # NULL once a retired miner's space is removed
    hardware_id = Column(String(36), ForeignKey("hardware.id"), nullable=False)
    status = Column(_enum(MinerStatus), nullable=False, default=MinerStatus.DEPLOYMENT_IN_PROGRESS)
    rate_per_kwh = Column(Numeric(10, 4), nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    user = relationship("User", lazy="raise")
    space = relationship("Space", lazy="raise")
    hardware = relationship("Hardware", lazy="raise")


class MinerRateHistory(Base):
    """Per-miner electricity rate changes; the latest effective row wins."""
    __tablename__ = "miner_rate_history"
    __table_args__ = (Index("ix_miner_rate_history_miner_from", "miner_id", "effective_from"),)

    id = _pk()
    miner_id = Column(String(36), ForeignKey("miners.id", ondelete="CASCADE"), nullable=False)
    rate_per_kwh = Column(Numeric(10, 4), nullable=False)
    effective_from = Column(DateTime, nullable=False, default=utcnow)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ElectricityRate(Base):
    """Global electricity rate (USD per kWh) valid from a timestamp."""
    __tablename__ = "electricity_rates"

    id = _pk()
    rate_per_kwh = Column(Numeric(10, 4), nullable=False)
    valid_from = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# =============================================================================
# Ledger
# =============================================================================
class CostPayment(Base):
    """
    Append-only ledger row.
      amount       - signed (charges < 0, payments > 0), 2 dp
      consumption  - kWh behind an electricity charge (0 for payments)
      balance      - customer's running balance after this row
    """
    __tablename__ = "cost_payments"
    __table_args__ = (
        Index("ix_cost_payments_user_created", "user_id", "created_at"),
        Index("ix_cost_payments_invoice", "invoice_id"),
    )

    id = _pk()
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    consumption = Column(Numeric(14, 3), nullable=False, default=0)
    balance = Column(Numeric(14, 2), nullable=False, default=0)
    type = Column(_enum(PaymentType), nullable=False, default=PaymentType.PAYMENT)
    narration = Column(Text, nullable=True)
    invoice_id = Column(String(36), ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class DailyAccrualLog(Base):
    """Idempotency journal of the daily electricity accrual."""
    __tablename__ = "daily_accrual_log"
    __table_args__ = (UniqueConstraint("user_id", "accrual_date", name="uq_daily_accrual_user_date"),)

    id = _pk()
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    accrual_date = Column(Date, nullable=False)
    miner_count = Column(Integer, nullable=False)
    consumption = Column(Numeric(14, 3), nullable=False)   # kW drawn
    cost = Column(Numeric(12, 2), nullable=False)
    rate_per_kwh = Column(Numeric(10, 4), nullable=False)  # global rate of the run
    cost_payment_id = Column(String(36), ForeignKey("cost_payments.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# =============================================================================
# Accounting
# =============================================================================
class Invoice(Base):
    """Billing document. total_amount = total_miners × unit_price."""
    __tablename__ = "invoices"
    __table_args__ = (
        Index("ix_invoices_user", "user_id"),
        Index("ix_invoices_status", "status"),
        Index("ix_invoices_due", "due_date"),
        Index("ix_invoices_created", "created_at"),
    )

    id = _pk()
    invoice_number = Column(String(64), nullable=False, unique=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    invoice_type = Column(_enum(InvoiceType), nullable=False, default=InvoiceType.ELECTRICITY_CHARGES)
    hardware_id = Column(String(36), ForeignKey("hardware.id"), nullable=True)
    total_miners = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(_enum(InvoiceStatus), nullable=False, default=InvoiceStatus.DRAFT)
    invoice_generated_date = Column(DateTime, nullable=False, default=utcnow)
    issued_date = Column(DateTime, nullable=True)
    due_date = Column(DateTime, nullable=False)
    paid_date = Column(DateTime, nullable=True)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    updated_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    user = relationship("User", foreign_keys=[user_id], lazy="raise")


class RecurringInvoice(Base):
    """Monthly invoice template of a customer."""
    __tablename__ = "recurring_invoices"

    id = _pk()
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    day_of_month = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_generated_date = Column(DateTime, nullable=True)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    updated_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    user = relationship("User", foreign_keys=[user_id], lazy="raise")


class CustomerPricingConfig(Base):
    """Default per-miner price of a customer for a date range."""
    __tablename__ = "customer_pricing_config"
    __table_args__ = (UniqueConstraint("user_id", "effective_from", name="uq_pricing_user_from"),)

    id = _pk()
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    default_unit_price = Column(Numeric(10, 2), nullable=False)
    effective_from = Column(DateTime, nullable=False)
    effective_to = Column(DateTime, nullable=True)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    updated_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class AuditLog(Base):
    """Immutable record of an administrative action with a JSON diff."""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
        Index("ix_audit_logs_created", "created_at"),
    )

    id = _pk()
    action = Column(_enum(AuditAction), nullable=False)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(String(36), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    changes = Column(JSONType, nullable=True)
    description = Column(Text, nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class InvoiceNotification(Base):
    __tablename__ = "invoice_notifications"

    id = _pk()
    invoice_id = Column(String(36), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    notification_type = Column(_enum(NotificationType), nullable=False)
    sent_to = Column(String(255), nullable=False)
    sent_at = Column(DateTime, nullable=False, default=utcnow)
    status = Column(_enum(NotificationStatus), nullable=False)
    failure_reason = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class EmailSendRun(Base):
    """One bulk e-mail operation."""
    __tablename__ = "email_send_runs"

    id = _pk()
    run_type = Column(_enum(EmailRunType), nullable=False, default=EmailRunType.INVOICE)
    status = Column(_enum(EmailRunStatus), nullable=False, default=EmailRunStatus.IN_PROGRESS)
    total_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    started_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)


class EmailSendResult(Base):
    """Per-invoice outcome inside an EmailSendRun."""
    __tablename__ = "email_send_results"
    __table_args__ = (Index("ix_email_send_results_run", "run_id"),)

    id = _pk()
    run_id = Column(String(36), ForeignKey("email_send_runs.id", ondelete="CASCADE"), nullable=False)
    invoice_id = Column(String(36), ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True)
    customer_id = Column(String(36), nullable=True)
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    success = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# =============================================================================
# Groups (relationship managers) and crypto payments
# =============================================================================
class Group(Base):
    """Customer group handled by a relationship manager (CC on invoice mail)."""
    __tablename__ = "groups"

    id = _pk()
    name = Column(String(255), nullable=False, unique=True)
    relationship_manager = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class GroupSubaccount(Base):
    __tablename__ = "group_subaccounts"
    __table_args__ = (UniqueConstraint("group_id", "subaccount_name", name="uq_group_subaccount"),)

    id = _pk()
    group_id = Column(String(36), ForeignKey("groups.id", ondelete="CASCADE"), nullable=False)
    subaccount_name = Column(String(255), nullable=False)
    added_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class CryptoPayment(Base):
    """Payment link created at the crypto gateway for an invoice."""
    __tablename__ = "crypto_payments"

    id = _pk()
    invoice_id = Column(String(36), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, unique=True)
    gateway_invoice_id = Column(String(128), nullable=False, unique=True)
    payment_url = Column(Text, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(16), nullable=False, default="USD")
    settlement_currency = Column(String(16), nullable=True)
    status = Column(_enum(CryptoPaymentStatus), nullable=False, default=CryptoPaymentStatus.PENDING)
    customer_email = Column(String(255), nullable=True)
    notify_email = Column(String(255), nullable=True)
    reference = Column(String(64), nullable=True)
    paid_amount = Column(Numeric(20, 8), nullable=True)
    paid_currency = Column(String(16), nullable=True)
    transaction_hash = Column(String(255), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class PaymentSettings(Base):
    """Single-row payment configuration (bank details, crypto gateway switch)."""
    __tablename__ = "payment_settings"

    id = Column(Integer, primary_key=True, default=1)
    crypto_enabled = Column(Boolean, nullable=False, default=False)
    settlement_currency = Column(String(16), nullable=False, default="USDC")
    bank_name = Column(String(255), nullable=True)
    account_name = Column(String(255), nullable=True)
    account_number = Column(String(64), nullable=True)
    iban = Column(String(64), nullable=True)
    swift = Column(String(32), nullable=True)
    notes = Column(Text, nullable=True)
    updated_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
