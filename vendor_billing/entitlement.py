import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta
from loguru import logger
from sqlalchemy.orm import Session

from .errors import DENIALS, Forbidden, NotFound
from .models import PaymentStatus, Product, Subscription, User
from .pricing import as_utc, days_left
from .roles import bypasses_product_limits, is_vendor
from .services import (
    count_products, current_time, find_active_subscription, find_lapsed_subscription, lock_vendor,
)

NO_SUBSCRIPTION = "no_subscription"
EXPIRED = "expired"
PAYMENT_REQUIRED = "payment_required"
LIMIT_REACHED = "limit_reached"

MESSAGES = {
    NO_SUBSCRIPTION: "No active subscription found. Please subscribe to a package to add products.",
    EXPIRED: "Subscription has expired.",
    PAYMENT_REQUIRED: "Subscription payment required.",
    LIMIT_REACHED: "Product limit reached. Upgrade your package to add more products.",
}


@dataclass(frozen=True)
class EntitlementDecision:
    allowed: bool
    reason: Optional[str] = None
    remaining: Optional[int] = None
    limit: Optional[int] = None
    subscription_id: Optional[int] = None

    def as_dict(self) -> dict:
        if self.allowed:
            return {"allowed": True, "remaining": self.remaining}
        return {"allowed": False, "reason": self.reason}


def in_first_month_grace(sub: Subscription, now: datetime) -> bool:
    if not sub.is_first_month_free:
        return False
    return as_utc(now) <= as_utc(sub.start_date) + relativedelta(months=1)


def can_add_product(db: Session, vendor_id: int, now: Optional[datetime] = None) -> EntitlementDecision:
    now = current_time(now)
    sub = find_active_subscription(db, vendor_id, now)
    if sub is None:
        reason = EXPIRED if find_lapsed_subscription(db, vendor_id, now) else NO_SUBSCRIPTION
        return EntitlementDecision(allowed=False, reason=reason)

    if sub.payment_status != PaymentStatus.paid and not in_first_month_grace(sub, now):
        return EntitlementDecision(allowed=False, reason=PAYMENT_REQUIRED, subscription_id=sub.id)

    used = count_products(db, vendor_id)
    if used >= sub.max_products:
        return EntitlementDecision(
            allowed=False, reason=LIMIT_REACHED, remaining=0, limit=sub.max_products, subscription_id=sub.id,
        )
    return EntitlementDecision(
        allowed=True, remaining=sub.max_products - used, limit=sub.max_products, subscription_id=sub.id,
    )


def deny(vendor_id: int, decision: EntitlementDecision):
    logger.info(f"Product creation denied for vendor {vendor_id}: {decision.reason}")
    details = {"limit": decision.limit} if decision.limit is not None else None
    return DENIALS[decision.reason](MESSAGES[decision.reason], details=details)


def create_product(
    db: Session,
    actor: User,
    name: str,
    price=0,
    vendor_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Product:
    # el cupo se vuelve a contar con el lock del vendor tomado
    if bypasses_product_limits(actor.role):
        owner_id = vendor_id if vendor_id is not None else actor.id
        if not db.get(User, owner_id):
            raise NotFound("User not found")
    else:
        if not is_vendor(actor.role):
            raise Forbidden("Only vendors can add products")
        if vendor_id is not None and vendor_id != actor.id:
            raise Forbidden("Vendors can only add their own products")
        owner_id = actor.id
        lock_vendor(db, owner_id)
        decision = can_add_product(db, owner_id, now)
        if not decision.allowed:
            raise deny(owner_id, decision)

    product = Product(vendor_id=owner_id, name=name, price=price)
    db.add(product)
    db.flush()
    logger.info(f"Product {product.id} created for vendor {owner_id} by user {actor.id}")
    return product


def delete_product(db: Session, actor: User, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if not product or product.deleted:
        raise NotFound("Product not found")
    if product.vendor_id != actor.id and not bypasses_product_limits(actor.role):
        raise Forbidden("Access denied")
    product.deleted = True
    db.flush()
    return product


def warning_level(remaining: int, limit: int) -> str:
    if remaining <= 0:
        return "limit_reached"
    if remaining <= math.ceil(limit * 0.2):
        return "critical"
    if remaining <= math.ceil(limit * 0.5):
        return "warning"
    return "none"


def vendor_status(db: Session, actor: User, now: Optional[datetime] = None) -> dict:
    if not is_vendor(actor.role):
        raise Forbidden("Only vendors can check subscription status")
    now = current_time(now)

    sub = find_active_subscription(db, actor.id, now)
    if sub is None:
        lapsed = find_lapsed_subscription(db, actor.id, now)
        if lapsed is None:
            return {
                "has_subscription": False,
                "status": NO_SUBSCRIPTION,
                "message": "No active subscription found",
                "product_limit": 0,
                "current_products": 0,
                "remaining_products": 0,
                "warning_level": None,
                "package_name": None,
                "end_date": None,
                "days_left": 0,
            }
        return {
            "has_subscription": True,
            "status": EXPIRED,
            "message": "Subscription has expired",
            "product_limit": lapsed.max_products,
            "current_products": 0,
            "remaining_products": 0,
            "warning_level": None,
            "package_name": lapsed.package.name,
            "end_date": as_utc(lapsed.end_date),
            "days_left": 0,
        }

    current = count_products(db, actor.id)
    remaining = max(0, sub.max_products - current)
    return {
        "has_subscription": True,
        "status": "active",
        "message": "Subscription is active",
        "product_limit": sub.max_products,
        "current_products": current,
        "remaining_products": remaining,
        "warning_level": warning_level(remaining, sub.max_products),
        "package_name": sub.package.name,
        "end_date": as_utc(sub.end_date),
        "days_left": days_left(sub.end_date, now),
        "payment_status": sub.payment_status.name,
    }
