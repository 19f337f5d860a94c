from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from loguru import logger
from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import AlreadyActive, Forbidden, InvalidRequest, InvalidRole, NotFound, PackageMismatch
from .models import (
    BillingUnit, Package, PaymentStatus, Product, SubStatus, Subscription,
    SubscriptionPayment, TxStatus, User, UserVendorType, VendorType,
)
from .pricing import (
    BIWEEKLY_PERIOD_DAYS, PackagePricing, UpgradeQuote, as_utc, check_duration,
    compute_new_subscription, compute_upgrade, days_left, duration_charge, extend,
    round_money, utcnow,
)
from .roles import can_manage_payments, is_admin, is_vendor

PAYMENT_METHOD = "admin"
NULLABLE_PACKAGE_FIELDS = {"description", "price_2weeks"}


@dataclass
class SubscriptionResult:
    subscription: Subscription
    action: str
    charge: Decimal
    payment: Optional[SubscriptionPayment] = None
    quote: Optional[UpgradeQuote] = None


def current_time(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else utcnow()


def vendor_lock(user_id: int):
    return select(User).where(User.id == user_id).with_for_update()


def lock_vendor(db: Session, user_id: int) -> User:
    # toda escritura de suscripcion o producto toma este lock primero
    user = db.execute(vendor_lock(user_id)).scalar_one_or_none()
    if not user:
        raise NotFound("User not found")
    return user


def require_vendor(user: User) -> None:
    if not is_vendor(user.role):
        raise InvalidRole("User must be a vendor (factory owner, real estate agent or support agent)")


def require_admin(actor: User) -> None:
    if not is_admin(actor.role):
        raise Forbidden("Access denied - Admin privileges required")


def target_user_id(actor: User, user_id: Optional[int]) -> int:
    # solo el admin puede mirar a otros usuarios
    if user_id is not None and is_admin(actor.role):
        return user_id
    return actor.id


def count_products(db: Session, vendor_id: int) -> int:
    return db.execute(
        select(func.count(Product.id)).where(Product.vendor_id == vendor_id, Product.deleted == False)
    ).scalar_one()


# -------- Packages --------

def get_package(db: Session, package_id: int) -> Package:
    package = db.get(Package, package_id)
    if not package:
        raise NotFound("Package not found")
    return package


def list_packages(db: Session, vendor_type_id: Optional[int] = None, popular_only: bool = False):
    stmt = select(Package).where(Package.is_active == True)
    if vendor_type_id is not None:
        stmt = stmt.where(Package.vendor_type_id == vendor_type_id)
    if popular_only:
        stmt = stmt.where(Package.is_popular == True)
    return db.execute(stmt.order_by(Package.vendor_type_id, Package.price)).scalars().all()


def create_package(db: Session, actor: User, **fields) -> Package:
    require_admin(actor)
    if not db.get(VendorType, fields.get("vendor_type_id")):
        raise NotFound("Vendor type not found")
    package = Package(**fields)
    db.add(package)
    db.flush()
    logger.info(f"Package {package.id} '{package.name}' created by user {actor.id}")
    return package


def update_package(db: Session, actor: User, package_id: int, **fields) -> Package:
    require_admin(actor)
    package = get_package(db, package_id)
    cleared = sorted(k for k, v in fields.items() if v is None and k not in NULLABLE_PACKAGE_FIELDS)
    if cleared:
        raise InvalidRequest(f"Fields cannot be null: {', '.join(cleared)}")
    vendor_type_id = fields.get("vendor_type_id")
    if vendor_type_id is not None and not db.get(VendorType, vendor_type_id):
        raise NotFound("Vendor type not found")
    for key, value in fields.items():
        setattr(package, key, value)
    db.flush()
    logger.info(f"Package {package.id} updated by user {actor.id}: {sorted(fields)}")
    return package


def delete_package(db: Session, actor: User, package_id: int) -> dict:
    require_admin(actor)
    package = get_package(db, package_id)
    in_use = db.execute(
        select(func.count(Subscription.id)).where(Subscription.package_id == package.id)
    ).scalar_one()
    # con suscripciones se desactiva, sin ellas se borra
    if in_use:
        package.is_active = False
        db.flush()
        logger.info(f"Package {package.id} deactivated by user {actor.id}, {in_use} subscriptions reference it")
        return {"id": package.id, "deleted": False, "is_active": False}
    db.delete(package)
    db.flush()
    logger.info(f"Package {package_id} deleted by user {actor.id}")
    return {"id": package_id, "deleted": True, "is_active": False}


def list_vendor_types(db: Session):
    return db.execute(select(VendorType).order_by(VendorType.name)).scalars().all()


# -------- Subscriptions: reads --------

def find_active_subscription(db: Session, user_id: int, now: Optional[datetime] = None) -> Optional[Subscription]:
    # el vencimiento se decide comparando end_date, no por el status
    now = current_time(now)
    return db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == SubStatus.active,
            Subscription.end_date > now,
        )
        .order_by(Subscription.end_date.asc())
        .limit(1)
    ).scalar_one_or_none()


def find_lapsed_subscription(db: Session, user_id: int, now: Optional[datetime] = None) -> Optional[Subscription]:
    now = current_time(now)
    return db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == SubStatus.active,
            Subscription.end_date <= now,
        )
        .order_by(Subscription.end_date.desc())
        .limit(1)
    ).scalar_one_or_none()


def subscription_view(sub: Subscription, now: datetime, products_used: Optional[int] = None) -> dict:
    return {
        "id": sub.id,
        "user_id": sub.user_id,
        "package_id": sub.package_id,
        "package_name": sub.package.name if sub.package else None,
        "vendor_type_id": sub.vendor_type_id,
        "start_date": as_utc(sub.start_date),
        "end_date": as_utc(sub.end_date),
        "status": sub.status,
        "payment_status": sub.payment_status,
        "billing_unit": sub.billing_unit,
        "max_products": sub.max_products,
        "amount_paid": sub.amount_paid,
        "auto_renew": sub.auto_renew,
        "is_first_month_free": sub.is_first_month_free,
        "days_left": days_left(sub.end_date, now),
        "products_used": products_used,
    }


def list_vendor_subscriptions(db: Session, actor: User, user_id: Optional[int] = None, now: Optional[datetime] = None):
    now = current_time(now)
    uid = target_user_id(actor, user_id)
    subs = db.execute(
        select(Subscription).where(Subscription.user_id == uid).order_by(Subscription.id.desc())
    ).scalars().all()
    used = count_products(db, uid)
    return [subscription_view(s, now, used) for s in subs]


def get_active_subscription(db: Session, actor: User, user_id: Optional[int] = None, now: Optional[datetime] = None) -> dict:
    now = current_time(now)
    uid = target_user_id(actor, user_id)
    sub = find_active_subscription(db, uid, now)
    if not sub:
        raise NotFound("No active subscription found")
    return subscription_view(sub, now, count_products(db, uid))


def list_subscriptions(db: Session, actor: User, now: Optional[datetime] = None):
    require_admin(actor)
    now = current_time(now)
    subs = db.execute(select(Subscription).order_by(Subscription.id.desc())).scalars().all()
    return [subscription_view(s, now) for s in subs]


def _is_expired(now: datetime):
    return or_(
        Subscription.status == SubStatus.expired,
        and_(Subscription.status == SubStatus.active, Subscription.end_date <= now),
    )


def list_expired_subscriptions(db: Session, actor: User, now: Optional[datetime] = None):
    require_admin(actor)
    now = current_time(now)
    subs = db.execute(
        select(Subscription).where(_is_expired(now)).order_by(Subscription.end_date.asc())
    ).scalars().all()
    return [subscription_view(s, now) for s in subs]


def subscription_stats(db: Session, actor: User, now: Optional[datetime] = None) -> dict:
    require_admin(actor)
    now = current_time(now)
    active = and_(Subscription.status == SubStatus.active, Subscription.end_date > now)
    row = db.execute(
        select(
            func.count(Subscription.id),
            func.count(case((active, 1))),
            func.count(case((_is_expired(now), 1))),
            func.count(case((Subscription.status == SubStatus.cancelled, 1))),
            func.coalesce(func.sum(Subscription.amount_paid), 0),
            func.count(case((Subscription.is_first_month_free == True, 1))),
        )
    ).one()
    return {
        "total_subscriptions": row[0],
        "active_subscriptions": row[1],
        "expired_subscriptions": row[2],
        "cancelled_subscriptions": row[3],
        "total_revenue": round_money(row[4]),
        "free_trials_given": row[5],
    }


# -------- Subscriptions: writes --------

def _flush_checking_active(db: Session) -> None:
    try:
        db.flush()
    except IntegrityError as e:
        raise AlreadyActive("Vendor already has an active subscription") from e


def _record_payment(db: Session, sub: Subscription, amount: Decimal, status: TxStatus) -> SubscriptionPayment:
    payment = SubscriptionPayment(
        subscription_id=sub.id,
        user_id=sub.user_id,
        amount=amount,
        payment_method=PAYMENT_METHOD,
        status=status,
    )
    db.add(payment)
    return payment


def _ensure_vendor_type(db: Session, user_id: int, vendor_type_id: int) -> None:
    existing = db.execute(
        select(UserVendorType).where(UserVendorType.user_id == user_id)
    ).scalar_one_or_none()
    if not existing:
        db.add(UserVendorType(user_id=user_id, vendor_type_id=vendor_type_id, is_verified=True))


def _current_for_update(db: Session, user_id: int, now: datetime) -> Optional[Subscription]:
    # si ya vencio se marca expired para poder reemplazarla
    sub = db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.status == SubStatus.active)
        .order_by(Subscription.end_date.desc())
        .limit(1)
    ).scalar_one_or_none()
    if sub and as_utc(sub.end_date) <= now:
        sub.status = SubStatus.expired
        db.flush()
        logger.info(f"Subscription {sub.id} of vendor {user_id} lapsed on {sub.end_date}, marked expired")
        return None
    return sub


def create_subscription(
    db: Session,
    vendor: User,
    package: Package,
    months: int = 0,
    days: int = 0,
    slots: int = 0,
    auto_renew: bool = True,
    admin: bool = False,
    mark_paid: bool = True,
    now: Optional[datetime] = None,
) -> SubscriptionResult:
    quote = compute_new_subscription(
        pricing=PackagePricing.from_package(package),
        slots=slots or package.max_products or 1,
        days=days,
        months=months,
        now=current_time(now),
    )
    if admin:
        status = SubStatus.active
        payment_status = PaymentStatus.paid if mark_paid else PaymentStatus.pending
        tx_status = TxStatus.completed if mark_paid else TxStatus.pending
    else:
        status = SubStatus.pending
        payment_status = PaymentStatus.pending
        tx_status = TxStatus.pending

    sub = Subscription(
        user_id=vendor.id,
        package_id=package.id,
        vendor_type_id=package.vendor_type_id,
        start_date=quote.start_date,
        end_date=quote.end_date,
        status=status,
        payment_status=payment_status,
        billing_unit=quote.billing_unit,
        max_products=quote.slots,
        amount_paid=quote.charge,
        auto_renew=auto_renew,
    )
    db.add(sub)
    _flush_checking_active(db)

    payment = _record_payment(db, sub, quote.charge, tx_status)
    _ensure_vendor_type(db, vendor.id, package.vendor_type_id)
    db.flush()
    logger.info(
        f"Subscription {sub.id} created for vendor {vendor.id}: package={package.id} "
        f"slots={sub.max_products} until={sub.end_date} charge={quote.charge} status={status.name}"
    )
    return SubscriptionResult(subscription=sub, action="created", charge=quote.charge, payment=payment)


def upgrade_subscription(
    db: Session,
    sub: Subscription,
    package: Package,
    months: int = 0,
    days: int = 0,
    slots: int = 0,
    payment_status: TxStatus = TxStatus.pending,
    now: Optional[datetime] = None,
) -> SubscriptionResult:
    # la suscripcion y su pago se confirman o se revierten juntos
    quote = compute_upgrade(
        slot_count=sub.max_products,
        end_date=sub.end_date,
        billing_unit=sub.billing_unit or BillingUnit.monthly,
        pricing=PackagePricing.from_package(package),
        delta_slots=slots,
        delta_days=days,
        delta_months=months,
        now=current_time(now),
    )
    sub.max_products = quote.new_slot_count
    sub.end_date = quote.new_end_date
    sub.amount_paid = round_money(Decimal(sub.amount_paid or 0) + quote.charge)

    payment = None
    if quote.charge > 0:
        payment = _record_payment(db, sub, quote.charge, payment_status)
    db.flush()
    logger.info(
        f"Subscription {sub.id} upgraded: slots={sub.max_products} until={sub.end_date} "
        f"charge={quote.charge} (slots {quote.slot_charge} + duration {quote.duration_charge})"
    )
    return SubscriptionResult(subscription=sub, action="upgraded", charge=quote.charge, payment=payment, quote=quote)


def replace_subscription(db: Session, old: Subscription, vendor: User, package: Package, now: Optional[datetime] = None, **kwargs) -> SubscriptionResult:
    now = current_time(now)
    old.status = SubStatus.cancelled
    old.end_date = now
    old.auto_renew = False
    db.flush()
    logger.info(f"Subscription {old.id} of vendor {vendor.id} cancelled, replaced by package {package.id}")
    result = create_subscription(db, vendor, package, now=now, **kwargs)
    result.action = "replaced"
    return result


def _apply_request(
    db: Session,
    vendor: User,
    package: Package,
    months: int,
    days: int,
    num_products: int,
    auto_renew: bool,
    admin: bool,
    force: bool,
    mark_paid: bool,
    now: datetime,
) -> SubscriptionResult:
    check_duration(days, months)
    if num_products < 0:
        raise InvalidRequest("Number of products cannot be negative")
    if not (months or days or num_products):
        raise InvalidRequest("At least a duration or a number of products is required")
    if not package.is_active:
        raise NotFound("Package not found or inactive")

    current = _current_for_update(db, vendor.id, now)
    if current is None:
        return create_subscription(
            db, vendor, package, months=months, days=days, slots=num_products,
            auto_renew=auto_renew, admin=admin, mark_paid=mark_paid, now=now,
        )

    if current.package_id == package.id:
        return upgrade_subscription(
            db, current, package, months=months, days=days, slots=num_products,
            payment_status=TxStatus.completed if admin else TxStatus.pending, now=now,
        )

    if not admin and not force:
        raise PackageMismatch(
            "You cannot change your package until your current subscription expires, "
            "or you will be charged the full amount.",
            details={"current_package_id": current.package_id, "requested_package_id": package.id},
        )
    return replace_subscription(
        db, current, vendor, package, now=now, months=months, days=days, slots=num_products,
        auto_renew=auto_renew, admin=admin, mark_paid=mark_paid,
    )


def subscribe(
    db: Session,
    actor: User,
    package_id: int,
    duration_months: int = 0,
    duration_days: int = 0,
    num_products: int = 0,
    auto_renew: bool = True,
    force: bool = False,
    now: Optional[datetime] = None,
) -> SubscriptionResult:
    now = current_time(now)
    vendor = lock_vendor(db, actor.id)
    require_vendor(vendor)
    package = get_package(db, package_id)
    return _apply_request(
        db, vendor, package, duration_months, duration_days, num_products,
        auto_renew=auto_renew, admin=False, force=force, mark_paid=False, now=now,
    )


def assign_subscription(
    db: Session,
    actor: User,
    user_id: int,
    package_id: int,
    duration_months: int = 0,
    duration_days: int = 0,
    num_products: int = 0,
    auto_renew: bool = True,
    mark_paid: bool = True,
    now: Optional[datetime] = None,
) -> SubscriptionResult:
    # el admin siempre reemplaza si el paquete es otro
    require_admin(actor)
    now = current_time(now)
    vendor = lock_vendor(db, user_id)
    require_vendor(vendor)
    package = get_package(db, package_id)
    return _apply_request(
        db, vendor, package, duration_months, duration_days, num_products,
        auto_renew=auto_renew, admin=True, force=True, mark_paid=mark_paid, now=now,
    )


def _owned_subscription(db: Session, actor: User, subscription_id: int) -> Subscription:
    sub = db.get(Subscription, subscription_id)
    if not sub:
        raise NotFound("Subscription not found")
    if not is_admin(actor.role) and sub.user_id != actor.id:
        raise Forbidden("Access denied")
    return sub


def cancel_subscription(db: Session, actor: User, subscription_id: int) -> Subscription:
    sub = _owned_subscription(db, actor, subscription_id)
    lock_vendor(db, sub.user_id)
    sub.status = SubStatus.cancelled
    sub.auto_renew = False
    db.flush()
    logger.info(f"Subscription {sub.id} cancelled by user {actor.id}")
    return sub


def renew_subscription(db: Session, actor: User, subscription_id: int, now: Optional[datetime] = None) -> SubscriptionResult:
    now = current_time(now)
    sub = _owned_subscription(db, actor, subscription_id)
    lock_vendor(db, sub.user_id)
    if sub.status == SubStatus.cancelled:
        raise InvalidRequest("A cancelled subscription cannot be renewed")
    if sub.status == SubStatus.pending:
        raise InvalidRequest("Subscription is still awaiting its first payment")

    package = sub.package
    if sub.billing_unit == BillingUnit.biweekly:
        days, months = BIWEEKLY_PERIOD_DAYS, 0
    else:
        days, months = 0, package.duration_months or 1
    pricing = PackagePricing.from_package(package)
    charge = round_money(duration_charge(pricing.duration_price(by_days=bool(days)), sub.max_products, days, months))

    # un vencido se renueva desde hoy, no desde la fecha vieja
    base = max(as_utc(sub.end_date), now)
    sub.end_date = extend(base, days=days, months=months)
    sub.status = SubStatus.active
    sub.amount_paid = round_money(Decimal(sub.amount_paid or 0) + charge)
    _flush_checking_active(db)

    payment = _record_payment(db, sub, charge, TxStatus.pending)
    db.flush()
    logger.info(f"Subscription {sub.id} renewed until {sub.end_date}, charge={charge}")
    return SubscriptionResult(subscription=sub, action="renewed", charge=charge, payment=payment)


def confirm_payment(db: Session, actor: User, payment_id: int) -> SubscriptionPayment:
    if not can_manage_payments(actor.role):
        raise Forbidden("Access denied - Admin or Order Manager required")
    payment = db.get(SubscriptionPayment, payment_id)
    if not payment:
        raise NotFound("Subscription payment not found")
    sub = payment.subscription
    lock_vendor(db, sub.user_id)

    payment.status = TxStatus.completed
    if sub.status != SubStatus.cancelled:
        sub.status = SubStatus.active
        sub.payment_status = PaymentStatus.paid
    _flush_checking_active(db)
    logger.info(f"Payment {payment.id} confirmed by user {actor.id}; subscription {sub.id} is {sub.status.name}")
    return payment


def expire_overdue_subscriptions(db: Session, now: Optional[datetime] = None) -> dict:
    now = current_time(now)
    overdue = db.execute(
        select(Subscription).where(Subscription.status == SubStatus.active, Subscription.end_date <= now)
    ).scalars().all()
    for sub in overdue:
        sub.status = SubStatus.expired
    db.flush()
    logger.info(f"Subscription expiry sweep: expired={len(overdue)}")
    return {"expired": len(overdue)}
