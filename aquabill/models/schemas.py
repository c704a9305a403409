from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List
from decimal import Decimal

from aquabill.models.enums import BillStatus, PaymentMethod, PaymentStatus, Role


class AccountBase(BaseModel):
    name: str = Field(..., description="Display name")
    email: Optional[str] = Field(None, description="Contact email")
    phone: Optional[str] = Field(None, description="Contact phone")


class AccountCreate(AccountBase):
    account_id: str = Field(..., description="Account id issued by the identity provider")
    role: Role = Field(..., description="owner or tenant")


class TenantSignup(AccountBase):
    account_id: str = Field(..., description="Account id issued by the identity provider")
    flat_code: str = Field(..., description="Invite code shared by the owner")


class BindRequest(BaseModel):
    flat_code: str = Field(..., description="Invite code of a vacant flat")


class Account(AccountBase):
    id: str
    role: Role
    flat_id: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PropertyBase(BaseModel):
    name: str = Field(..., description="Name of the property")
    address: Optional[str] = Field(None, description="Street address")
    city: Optional[str] = Field(None, description="City")
    property_code: str = Field(..., description="Owner-chosen code, prefix of flat codes")
    water_rate_per_unit: Decimal = Field(..., description="Charge per consumed unit")
    fixed_charge: Decimal = Field(..., description="Fixed charge added to every bill")


class PropertyCreate(PropertyBase):
    pass


class RatesUpdate(BaseModel):
    water_rate_per_unit: Decimal = Field(..., description="Charge per consumed unit")
    fixed_charge: Decimal = Field(..., description="Fixed charge added to every bill")


class Property(PropertyBase):
    id: int
    owner_id: str
    created_at: datetime

    class Config:
        from_attributes = True


class PropertySummary(BaseModel):
    property: Property
    total_flats: int
    occupied_flats: int


class FlatCreate(BaseModel):
    flat_number: str = Field(..., description="Flat number within the property")
    floor: Optional[str] = Field(None, description="Floor")
    tenant_name: Optional[str] = Field(None, description="Expected tenant, informational")
    tenant_phone: Optional[str] = Field(None, description="Expected tenant phone, informational")


class FreeAllowanceUpdate(BaseModel):
    free_water_units: Decimal = Field(..., description="Units excluded from future bills")


class VacateRequest(BaseModel):
    final_reading: Optional[Decimal] = Field(None, description="Meter value when the tenant left")


class Flat(BaseModel):
    id: int
    property_id: int
    flat_number: str
    floor: Optional[str] = None
    flat_code: str
    tenant_id: Optional[str] = None
    tenant_name: Optional[str] = None
    tenant_phone: Optional[str] = None
    previous_tenant_id: Optional[str] = None
    free_water_units: Decimal
    vacated_at: Optional[datetime] = None
    final_reading: Optional[Decimal] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReadingCreate(BaseModel):
    current_reading: Decimal = Field(..., description="Meter value now")
    bill_month: str = Field(..., description="Billing period label, e.g. Jan 2025")


class Bill(BaseModel):
    id: int
    flat_id: int
    property_id: int
    previous_reading: Decimal
    current_reading: Decimal
    units_consumed: Decimal
    free_water_units: Decimal
    billable_units: Decimal
    bill_amount: Decimal
    bill_month: str
    status: BillStatus
    due_date: datetime
    created_at: datetime
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    screenshot_submitted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class FlatWithLatestBill(BaseModel):
    flat: Flat
    latest_reading: Optional[Bill] = None


class AmountCorrection(BaseModel):
    bill_amount: Decimal = Field(..., description="Replacement amount")


class Checkout(BaseModel):
    bill_id: int
    amount: Decimal
    amount_minor: int = Field(..., description="Amount in the currency's minor unit")
    currency: str
    description: str

    class Config:
        from_attributes = True


class GatewayConfirmation(BaseModel):
    external_reference: str = Field(..., description="Gateway transaction id")
    success: bool = Field(..., description="Whether the gateway captured the payment")


class Payment(BaseModel):
    id: int
    bill_id: int
    tenant_id: str
    amount: Decimal
    method: PaymentMethod
    external_reference: Optional[str] = None
    proof_reference: Optional[str] = None
    status: PaymentStatus
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentReminder(BaseModel):
    bill_id: int
    subject: str
    body: str
    tenant_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    class Config:
        from_attributes = True


class OwnerOverview(BaseModel):
    properties: List[PropertySummary]
    total_properties: int
    total_flats: int
    occupied_flats: int
    unpaid_bills: int


class TenantOverview(BaseModel):
    flat: Flat
    property: Property
    bills: List[Bill]
    total_pending: Decimal


class Notification(BaseModel):
    bill_id: int
    type: str
    message: str
    amount: Decimal
    created_at: datetime


class UnreadMessages(BaseModel):
    count: int = Field(..., ge=0, description="Unread chat messages for the flat")


class ErrorResponse(BaseModel):
    error: str
    message: str


class HealthResponse(BaseModel):
    status: str
    message: str
