from pydantic import BaseModel, Field, model_validator
from datetime import datetime
from decimal import Decimal
from typing import Optional
from .models import BillingUnit, PaymentStatus, SubStatus, TxStatus

class VendorTypeOut(BaseModel):
    id: int
    name: str
    billing_cycle: BillingUnit
    class Config:
        from_attributes = True

class PackageIn(BaseModel):
    vendor_type_id: int
    name: str
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    price_2weeks: Optional[Decimal] = Field(default=None, ge=0)
    max_products: int = Field(default=1, ge=1)
    duration_months: int = Field(default=1, ge=1)
    is_popular: bool = False

class PackageUpdate(BaseModel):
    vendor_type_id: Optional[int] = None
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    price_2weeks: Optional[Decimal] = Field(default=None, ge=0)
    max_products: Optional[int] = Field(default=None, ge=1)
    duration_months: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None
    is_popular: Optional[bool] = None

class PackageDeleteOut(BaseModel):
    id: int
    deleted: bool
    is_active: bool

class PackageOut(BaseModel):
    id: int
    vendor_type_id: int
    name: str
    description: Optional[str] = None
    price: Decimal
    price_2weeks: Optional[Decimal] = None
    max_products: int
    duration_months: int
    is_active: bool
    is_popular: bool
    class Config:
        from_attributes = True

class SubscribeIn(BaseModel):
    package_id: int
    duration_months: int = Field(default=0, ge=0)
    duration_days: int = Field(default=0, ge=0)
    num_products: int = Field(default=0, ge=0)
    auto_renew: bool = True
    force: bool = False  # cambiar de paquete cancelando el actual

    @model_validator(mode="after")
    def check_request(self):
        if self.duration_months and self.duration_days:
            raise ValueError("duration_months and duration_days are mutually exclusive")
        if not (self.duration_months or self.duration_days or self.num_products):
            raise ValueError("At least a duration or num_products is required")
        return self

class AssignIn(SubscribeIn):
    user_id: int
    mark_paid: bool = True

class SubscriptionOut(BaseModel):
    id: int
    user_id: int
    package_id: int
    package_name: Optional[str] = None
    vendor_type_id: int
    start_date: datetime
    end_date: datetime
    status: SubStatus
    payment_status: PaymentStatus
    billing_unit: BillingUnit
    max_products: int
    amount_paid: Decimal
    auto_renew: bool
    is_first_month_free: bool
    days_left: int
    products_used: Optional[int] = None

class PaymentOut(BaseModel):
    id: int
    subscription_id: int
    user_id: int
    amount: Decimal
    payment_method: str
    status: TxStatus
    created_at: Optional[datetime] = None
    class Config:
        from_attributes = True

class SubscribeOut(BaseModel):
    action: str
    charge: Decimal
    slot_charge: Optional[Decimal] = None
    duration_charge: Optional[Decimal] = None
    subscription: SubscriptionOut
    payment: Optional[PaymentOut] = None

class EntitlementOut(BaseModel):
    allowed: bool
    remaining: Optional[int] = None
    reason: Optional[str] = None

class VendorStatusOut(BaseModel):
    has_subscription: bool
    status: str
    message: str
    product_limit: int
    current_products: int
    remaining_products: int
    warning_level: Optional[str] = None
    package_name: Optional[str] = None
    end_date: Optional[datetime] = None
    days_left: int
    payment_status: Optional[str] = None

class StatsOut(BaseModel):
    total_subscriptions: int
    active_subscriptions: int
    expired_subscriptions: int
    cancelled_subscriptions: int
    total_revenue: Decimal
    free_trials_given: int

class ProductIn(BaseModel):
    name: str
    price: Decimal = Field(default=Decimal("0"), ge=0)
    vendor_id: Optional[int] = None

class ProductOut(BaseModel):
    id: int
    vendor_id: int
    name: str
    price: Decimal
    deleted: bool
    class Config:
        from_attributes = True
