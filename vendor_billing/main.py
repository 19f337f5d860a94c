import sys
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Depends, Header, HTTPException, Response
from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session
from .config import settings
from .db import Base, SessionLocal, engine, get_db
from .errors import BillingError, Forbidden
from .models import BillingUnit, Package, User, VendorType
from .schemas import (
    AssignIn, EntitlementOut, PackageDeleteOut, PackageIn, PackageOut, PackageUpdate, PaymentOut, ProductIn, ProductOut,
    StatsOut, SubscribeIn, SubscribeOut, SubscriptionOut, VendorStatusOut, VendorTypeOut,
)
from .roles import is_admin
from . import entitlement, services


def setup_logging(level: str):
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def seed(db: Session):
    # vendor types y paquetes de ejemplo si no existen
    if db.execute(select(VendorType)).first():
        return
    standard = VendorType(id=1, name="Standard", billing_cycle=BillingUnit.monthly)
    real_estate = VendorType(id=2, name="Real Estate", billing_cycle=BillingUnit.biweekly)
    db.add_all([standard, real_estate])
    db.flush()
    db.add_all([
        Package(vendor_type_id=1, name="Basic", price=100, max_products=5, duration_months=1),
        Package(vendor_type_id=1, name="Pro", price=250, max_products=15, duration_months=1, is_popular=True),
        Package(vendor_type_id=2, name="Real Estate Listing", price=120, price_2weeks=70, max_products=3),
    ])


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level)
    Base.metadata.create_all(bind=engine)
    if settings.seed_data:
        db = SessionLocal()
        try:
            seed(db)
            db.commit()
        finally:
            db.close()
    logger.info(f"{settings.app_name} started")
    yield


app = FastAPI(title=settings.app_name, lifespan=lifespan)


def current_user(x_user_id: int = Header(...), db: Session = Depends(get_db)) -> User:
    user = db.get(User, x_user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


def admin_user(user: User = Depends(current_user)) -> User:
    if not is_admin(user.role):
        raise HTTPException(status_code=403, detail=Forbidden("Access denied - Admin privileges required").to_dict())
    return user


def run(db: Session, operation, *args, **kwargs):
    """Call a service and commit; any error rolls the whole request back."""
    try:
        result = operation(db, *args, **kwargs)
        db.commit()
    except BillingError as e:
        db.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    except Exception:
        db.rollback()
        logger.exception(f"Unhandled error in {operation.__name__}")
        raise HTTPException(status_code=500, detail="Internal error")
    return result


def subscribe_out(result: services.SubscriptionResult) -> dict:
    now = services.current_time(None)
    return {
        "action": result.action,
        "charge": result.charge,
        "slot_charge": result.quote.slot_charge if result.quote else None,
        "duration_charge": result.quote.duration_charge if result.quote else None,
        "subscription": services.subscription_view(result.subscription, now),
        "payment": PaymentOut.model_validate(result.payment) if result.payment else None,
    }


@app.get("/health")
def health():
    return {"ok": True}

# -------- packages --------

@app.get("/packages", response_model=list[PackageOut])
def get_packages(db: Session = Depends(get_db)):
    return services.list_packages(db)

@app.get("/packages/popular", response_model=list[PackageOut])
def get_popular_packages(db: Session = Depends(get_db)):
    return services.list_packages(db, popular_only=True)

@app.get("/packages/vendor-type/{vendor_type_id}", response_model=list[PackageOut])
def get_packages_by_vendor_type(vendor_type_id: int, db: Session = Depends(get_db)):
    return services.list_packages(db, vendor_type_id=vendor_type_id)

@app.get("/packages/{package_id}", response_model=PackageOut)
def get_package(package_id: int, db: Session = Depends(get_db)):
    return run(db, services.get_package, package_id)

@app.post("/packages", response_model=PackageOut, status_code=201)
def post_package(payload: PackageIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    return run(db, services.create_package, user, **payload.model_dump())

@app.put("/packages/{package_id}", response_model=PackageOut)
def put_package(package_id: int, payload: PackageUpdate, user: User = Depends(current_user), db: Session = Depends(get_db)):
    # solo los campos enviados
    return run(db, services.update_package, user, package_id, **payload.model_dump(exclude_unset=True))

@app.delete("/packages/{package_id}", response_model=PackageDeleteOut)
def delete_package(package_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    return run(db, services.delete_package, user, package_id)

@app.get("/vendor-types", response_model=list[VendorTypeOut])
def get_vendor_types(db: Session = Depends(get_db)):
    return services.list_vendor_types(db)

# -------- vendor subscriptions --------

@app.get("/my-subscriptions", response_model=list[SubscriptionOut])
def my_subscriptions(user_id: Optional[int] = None, user: User = Depends(current_user), db: Session = Depends(get_db)):
    return run(db, services.list_vendor_subscriptions, user, user_id)

@app.get("/my-subscriptions/active", response_model=SubscriptionOut)
def my_active_subscription(user_id: Optional[int] = None, user: User = Depends(current_user), db: Session = Depends(get_db)):
    return run(db, services.get_active_subscription, user, user_id)

@app.get("/my-subscriptions/status", response_model=EntitlementOut)
def my_subscription_status(user_id: Optional[int] = None, user: User = Depends(current_user), db: Session = Depends(get_db)):
    decision = run(db, entitlement.can_add_product, services.target_user_id(user, user_id))
    return decision.as_dict()

@app.post("/subscribe", response_model=SubscribeOut)
def post_subscribe(payload: SubscribeIn, response: Response, user: User = Depends(current_user), db: Session = Depends(get_db)):
    result = run(
        db,
        services.subscribe,
        user,
        package_id=payload.package_id,
        duration_months=payload.duration_months,
        duration_days=payload.duration_days,
        num_products=payload.num_products,
        auto_renew=payload.auto_renew,
        force=payload.force,
    )
    if result.action != "upgraded":
        response.status_code = 201
    return subscribe_out(result)

@app.put("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionOut)
def put_cancel(subscription_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    sub = run(db, services.cancel_subscription, user, subscription_id)
    return services.subscription_view(sub, services.current_time(None))

@app.put("/subscriptions/{subscription_id}/renew", response_model=SubscribeOut)
def put_renew(subscription_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    return subscribe_out(run(db, services.renew_subscription, user, subscription_id))

@app.get("/vendor-status", response_model=VendorStatusOut)
def get_vendor_status(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return run(db, entitlement.vendor_status, user)

# -------- admin --------

@app.get("/subscriptions", response_model=list[SubscriptionOut])
def get_all_subscriptions(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return run(db, services.list_subscriptions, user)

@app.get("/subscriptions/expired", response_model=list[SubscriptionOut])
def get_expired_subscriptions(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return run(db, services.list_expired_subscriptions, user)

@app.get("/subscriptions/stats", response_model=StatsOut)
def get_subscription_stats(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return run(db, services.subscription_stats, user)

@app.post("/assign-subscription", response_model=SubscribeOut)
def post_assign(payload: AssignIn, response: Response, user: User = Depends(current_user), db: Session = Depends(get_db)):
    result = run(
        db,
        services.assign_subscription,
        user,
        user_id=payload.user_id,
        package_id=payload.package_id,
        duration_months=payload.duration_months,
        duration_days=payload.duration_days,
        num_products=payload.num_products,
        auto_renew=payload.auto_renew,
        mark_paid=payload.mark_paid,
    )
    if result.action != "upgraded":
        response.status_code = 201
    return subscribe_out(result)

@app.get("/vendor/{vendor_id}/current", response_model=SubscriptionOut)
def get_vendor_current(vendor_id: int, user: User = Depends(admin_user), db: Session = Depends(get_db)):
    return run(db, services.get_active_subscription, user, vendor_id)

@app.put("/payments/{payment_id}/confirm", response_model=PaymentOut)
def put_confirm_payment(payment_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    return run(db, services.confirm_payment, user, payment_id)

@app.post("/internal/expire-subscriptions")
def trigger_expiry(user: User = Depends(admin_user), db: Session = Depends(get_db)):
    return run(db, services.expire_overdue_subscriptions)

# -------- products --------

@app.post("/products", response_model=ProductOut, status_code=201)
def post_product(payload: ProductIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    return run(db, entitlement.create_product, user, name=payload.name, price=payload.price, vendor_id=payload.vendor_id)

@app.delete("/products/{product_id}", response_model=ProductOut)
def delete_product(product_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    return run(db, entitlement.delete_product, user, product_id)
