# 📂 backend/hostbill/schemas.py — request payloads of the HostBill API
# -----------------------------------------------------------------------------
# JSON bodies use camelCase (userId, unitPrice, ...); models accept both the
# camelCase alias and the Python field name. Required-field checks that carry
# a business message (e.g. "Missing required fields: ...") stay in the
# services, so such fields are Optional here.
# Responses are plain dicts built by the services.
# -----------------------------------------------------------------------------

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from .models import InvoiceStatus, InvoiceType, MinerStatus, PaymentType, SpaceStatus, UserRole


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ======================
# 🔐 Auth
# ======================
class LoginRequest(CamelModel):
    email: str
    password: str


class TwoFactorValidateRequest(CamelModel):
    user_id: str
    code: Optional[str] = Field(None, description="6 digit TOTP code")
    backup_code: Optional[str] = Field(None, description="Single use backup code")


class TwoFactorCodeRequest(CamelModel):
    code: str


class TwoFactorDisableRequest(CamelModel):
    password: str
    code: Optional[str] = None


class ForgotPasswordRequest(CamelModel):
    email: str


class ChangePasswordRequest(CamelModel):
    current_password: str
    new_password: str


# ======================
# 👤 Users
# ======================
class UserCreateRequest(CamelModel):
    email: EmailStr
    name: str
    role: UserRole = UserRole.CLIENT
    phone: Optional[str] = None
    company_name: Optional[str] = None
    company_url: Optional[str] = None
    pool_subaccount_name: Optional[str] = None


class UserUpdateRequest(CamelModel):
    email: Optional[EmailStr] = None
    name: Optional[str] = None
    role: Optional[UserRole] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None
    company_url: Optional[str] = None
    pool_subaccount_name: Optional[str] = None


class ProfileUpdateRequest(CamelModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None
    company_url: Optional[str] = None


# ======================
# 🧰 Fleet
# ======================
class HardwareCreateRequest(CamelModel):
    model: str
    power_usage: Decimal = Field(..., description="kW drawn by one unit")
    hash_rate: Decimal = Field(..., description="TH/s")
    quantity: int = 0


class HardwareUpdateRequest(CamelModel):
    model: Optional[str] = None
    power_usage: Optional[Decimal] = None
    hash_rate: Optional[Decimal] = None
    quantity: Optional[int] = None


class ProcureRequest(CamelModel):
    quantity: int
    price_per_unit: Optional[Decimal] = None
    note: Optional[str] = None


class SpaceCreateRequest(CamelModel):
    name: str
    location: str
    capacity: int = 0
    power_capacity: Decimal = Decimal("0")
    status: SpaceStatus = SpaceStatus.AVAILABLE


class SpaceUpdateRequest(CamelModel):
    name: Optional[str] = None
    location: Optional[str] = None
    capacity: Optional[int] = None
    power_capacity: Optional[Decimal] = None
    status: Optional[SpaceStatus] = None


class MinerCreateRequest(CamelModel):
    name: Optional[str] = None
    hardware_id: Optional[str] = None
    user_id: Optional[str] = None
    space_id: Optional[str] = None
    rate_per_kwh: Optional[Decimal] = Field(None, alias="rate_per_kwh")
    status: Optional[MinerStatus] = None


class MinerUpdateRequest(CamelModel):
    name: Optional[str] = None
    hardware_id: Optional[str] = None
    user_id: Optional[str] = None
    space_id: Optional[str] = None
    rate_per_kwh: Optional[Decimal] = Field(None, alias="rate_per_kwh")
    status: Optional[MinerStatus] = None


class MinerIdsRequest(CamelModel):
    miner_ids: List[str] = Field(default_factory=list)


class MinerBulkUpdates(CamelModel):
    status: Optional[MinerStatus] = None
    space_id: Optional[str] = None
    rate_per_kwh: Optional[Decimal] = Field(None, alias="rate_per_kwh")


class MinerBulkEditRequest(CamelModel):
    miner_ids: List[str] = Field(default_factory=list)
    updates: MinerBulkUpdates = Field(default_factory=MinerBulkUpdates)


class ElectricityRateRequest(CamelModel):
    rate_per_kwh: Decimal
    valid_from: Optional[datetime] = None


# ======================
# 💵 Ledger
# ======================
class PaymentCreateRequest(CamelModel):
    user_id: str
    amount: Decimal
    type: PaymentType = PaymentType.PAYMENT
    narration: Optional[str] = None


# ======================
# 🧾 Invoices
# ======================
class InvoiceCreateRequest(CamelModel):
    customer_id: Optional[str] = None
    total_miners: Optional[int] = None
    unit_price: Optional[Decimal] = None
    due_date: Optional[datetime] = None
    invoice_type: InvoiceType = InvoiceType.ELECTRICITY_CHARGES
    hardware_id: Optional[str] = None
    status: InvoiceStatus = InvoiceStatus.DRAFT


class InvoicePatchRequest(CamelModel):
    total_miners: Optional[int] = None
    unit_price: Optional[Decimal] = None
    due_date: Optional[datetime] = None


class InvoiceStatusRequest(CamelModel):
    status: Optional[InvoiceStatus] = None
    issued_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    paid_date: Optional[datetime] = None


class RecordPaymentRequest(CamelModel):
    amount_paid: Optional[Decimal] = None
    payment_date: Optional[datetime] = None
    notes: Optional[str] = None
    mark_as_paid: bool = False


class BulkSendRequest(CamelModel):
    invoice_ids: List[str] = Field(default_factory=list)


class ResendRequest(CamelModel):
    result_ids: List[str] = Field(default_factory=list)


class StatementEmailRequest(CamelModel):
    customer_id: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


# ======================
# 🔁 Recurring / pricing
# ======================
class RecurringCreateRequest(CamelModel):
    user_id: str
    day_of_month: int
    unit_price: Optional[Decimal] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class RecurringUpdateRequest(CamelModel):
    day_of_month: Optional[int] = None
    unit_price: Optional[Decimal] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None


class GenerateInvoiceRequest(CamelModel):
    customer_id: str
    month: int
    year: int


class PricingCreateRequest(CamelModel):
    user_id: str
    default_unit_price: Decimal
    effective_from: datetime
    effective_to: Optional[datetime] = None


class PricingUpdateRequest(CamelModel):
    default_unit_price: Optional[Decimal] = None
    effective_to: Optional[datetime] = None


# ======================
# 👥 Groups / settings
# ======================
class GroupCreateRequest(CamelModel):
    name: str
    relationship_manager: Optional[str] = None
    email: Optional[EmailStr] = None
    description: Optional[str] = None


class GroupUpdateRequest(CamelModel):
    name: Optional[str] = None
    relationship_manager: Optional[str] = None
    email: Optional[EmailStr] = None
    description: Optional[str] = None


class SubaccountsRequest(CamelModel):
    subaccount_names: List[str] = Field(default_factory=list)


class SubaccountRequest(CamelModel):
    subaccount_name: str


class PaymentSettingsRequest(CamelModel):
    crypto_enabled: Optional[bool] = None
    settlement_currency: Optional[str] = None
    bank_name: Optional[str] = None
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    iban: Optional[str] = None
    swift: Optional[str] = None
    notes: Optional[str] = None
