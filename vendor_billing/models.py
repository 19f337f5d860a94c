import enum
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum, Numeric, Boolean, Index, text
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from .db import Base
from .roles import Role

class SubStatus(str, enum.Enum):
    pending = "PENDING"
    active = "ACTIVE"
    cancelled = "CANCELLED"
    expired = "EXPIRED"

class PaymentStatus(str, enum.Enum):
    pending = "PENDING"
    paid = "PAID"

class TxStatus(str, enum.Enum):
    pending = "PENDING"
    completed = "COMPLETED"

class BillingUnit(str, enum.Enum):
    monthly = "MONTHLY"
    biweekly = "BIWEEKLY"

class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False, default="")
    email = Column(String, unique=True, nullable=False)
    role_id = Column(Integer, nullable=False, default=int(Role.customer))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    subscriptions = relationship("Subscription", back_populates="user")

    @property
    def role(self):
        try:
            return Role(self.role_id)
        except ValueError:
            return None

class VendorType(Base):
    __tablename__ = "vendor_types"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    billing_cycle = Column(Enum(BillingUnit), nullable=False, default=BillingUnit.monthly)

class Package(Base):
    __tablename__ = "subscription_packages"
    id = Column(Integer, primary_key=True)
    vendor_type_id = Column(Integer, ForeignKey("vendor_types.id"), nullable=False)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    price_2weeks = Column(Numeric(10, 2), nullable=True)
    max_products = Column(Integer, nullable=False, default=1)
    duration_months = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    is_popular = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    vendor_type = relationship("VendorType")

    @property
    def is_biweekly(self) -> bool:
        return self.vendor_type is not None and self.vendor_type.billing_cycle == BillingUnit.biweekly

class Subscription(Base):
    __tablename__ = "vendor_subscriptions"
    # una sola suscripcion activa por vendor
    __table_args__ = (
        Index(
            "uq_vendor_subscriptions_active_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    package_id = Column(Integer, ForeignKey("subscription_packages.id"), nullable=False)
    vendor_type_id = Column(Integer, ForeignKey("vendor_types.id"), nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    status = Column(Enum(SubStatus), nullable=False, default=SubStatus.pending)
    payment_status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.pending)
    billing_unit = Column(Enum(BillingUnit), nullable=False, default=BillingUnit.monthly)
    max_products = Column(Integer, nullable=False, default=1)
    amount_paid = Column(Numeric(10, 2), nullable=False, default=0)
    is_first_month_free = Column(Boolean, nullable=False, default=True)
    auto_renew = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="subscriptions")
    package = relationship("Package")
    payments = relationship("SubscriptionPayment", back_populates="subscription", order_by="SubscriptionPayment.id")

class SubscriptionPayment(Base):
    __tablename__ = "subscription_payments"
    id = Column(Integer, primary_key=True)
    subscription_id = Column(Integer, ForeignKey("vendor_subscriptions.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    payment_method = Column(String, nullable=False, default="admin")
    status = Column(Enum(TxStatus), nullable=False, default=TxStatus.pending)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    subscription = relationship("Subscription", back_populates="payments")

class UserVendorType(Base):
    __tablename__ = "user_vendor_types"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    vendor_type_id = Column(Integer, ForeignKey("vendor_types.id"), nullable=False)
    is_verified = Column(Boolean, nullable=False, default=False)

class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True)
    vendor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
