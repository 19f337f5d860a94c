import math
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from dateutil.relativedelta import relativedelta

from .errors import InvalidRequest
from .models import BillingUnit

CENT = Decimal("0.01")
SECONDS_PER_DAY = 86400
# dias que se usan para prorratear slots
PRORATION_DAYS = {BillingUnit.monthly: 30, BillingUnit.biweekly: 14}
BIWEEKLY_PERIOD_DAYS = 14


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite devuelve datetimes naive; todo se guarda en UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def round_money(amount) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def remaining_days(end_date: datetime, now: datetime) -> int:
    seconds = (as_utc(end_date) - as_utc(now)).total_seconds()
    return max(1, math.ceil(seconds / SECONDS_PER_DAY))


def days_left(end_date: datetime, now: datetime) -> int:
    seconds = (as_utc(end_date) - as_utc(now)).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))


def extend(end_date: datetime, days: int = 0, months: int = 0) -> datetime:
    return as_utc(end_date) + relativedelta(months=months, days=days)


def check_duration(days: int, months: int) -> None:
    if days < 0 or months < 0:
        raise InvalidRequest("Duration cannot be negative")
    if days and months:
        raise InvalidRequest("Give the duration in days or in months, not both")


@dataclass(frozen=True)
class PackagePricing:
    monthly_price: Decimal
    biweekly_price: Optional[Decimal] = None
    biweekly_vendor: bool = False

    @classmethod
    def from_package(cls, package) -> "PackagePricing":
        return cls(
            monthly_price=Decimal(package.price),
            biweekly_price=Decimal(package.price_2weeks) if package.price_2weeks is not None else None,
            biweekly_vendor=package.is_biweekly,
        )

    def _biweekly(self) -> Decimal:
        if self.biweekly_price is None:
            raise InvalidRequest("Package has no two-week price")
        return self.biweekly_price

    def duration_price(self, by_days: bool) -> Decimal:
        if self.biweekly_vendor and by_days:
            return self._biweekly()
        return self.monthly_price

    def proration_price(self, unit: BillingUnit) -> Decimal:
        if unit == BillingUnit.biweekly:
            return self._biweekly()
        return self.monthly_price


def duration_charge(price: Decimal, slots: int, days: int = 0, months: int = 0) -> Decimal:
    if days:
        return price * slots * Decimal(days) / BIWEEKLY_PERIOD_DAYS
    return price * slots * months


def proration_charge(price: Decimal, unit: BillingUnit, slots: int, end_date: datetime, now: datetime) -> Decimal:
    return price * remaining_days(end_date, now) * slots / PRORATION_DAYS[unit]


@dataclass(frozen=True)
class UpgradeQuote:
    new_slot_count: int
    new_end_date: datetime
    slot_charge: Decimal
    duration_charge: Decimal
    charge: Decimal


def compute_upgrade(
    *,
    slot_count: int,
    end_date: datetime,
    billing_unit: BillingUnit,
    pricing: PackagePricing,
    delta_slots: int = 0,
    delta_days: int = 0,
    delta_months: int = 0,
    now: Optional[datetime] = None,
) -> UpgradeQuote:
    if delta_slots < 0:
        raise InvalidRequest("Number of added products cannot be negative")
    check_duration(delta_days, delta_months)
    extending = bool(delta_days or delta_months)
    if not delta_slots and not extending:
        raise InvalidRequest("Nothing to upgrade: add products or duration")

    now = now or utcnow()
    new_slots = slot_count + delta_slots
    new_end = as_utc(end_date)
    slot_part = Decimal(0)
    duration_part = Decimal(0)

    if delta_slots:
        price = pricing.proration_price(billing_unit)
        slot_part = proration_charge(price, billing_unit, delta_slots, end_date, now)
    if extending:
        price = pricing.duration_price(by_days=bool(delta_days))
        # el periodo extra se cobra sobre todos los slots, incluidos los nuevos
        duration_part = duration_charge(price, new_slots, delta_days, delta_months)
        new_end = extend(end_date, days=delta_days, months=delta_months)

    slot_part = round_money(slot_part)
    duration_part = round_money(duration_part)
    # el total es la suma de las partes ya redondeadas
    return UpgradeQuote(
        new_slot_count=new_slots,
        new_end_date=new_end,
        slot_charge=slot_part,
        duration_charge=duration_part,
        charge=slot_part + duration_part,
    )


@dataclass(frozen=True)
class NewSubscriptionQuote:
    billing_unit: BillingUnit
    start_date: datetime
    end_date: datetime
    slots: int
    charge: Decimal


def compute_new_subscription(
    *,
    pricing: PackagePricing,
    slots: int,
    days: int = 0,
    months: int = 0,
    now: Optional[datetime] = None,
) -> NewSubscriptionQuote:
    check_duration(days, months)
    if not days and not months:
        raise InvalidRequest("A new subscription needs a duration")
    if slots < 1:
        raise InvalidRequest("A subscription needs at least one product slot")
    if days and not pricing.biweekly_vendor:
        raise InvalidRequest("Day based durations are only sold to two-week billed vendor types")

    now = as_utc(now or utcnow())
    unit = BillingUnit.biweekly if days else BillingUnit.monthly
    price = pricing.duration_price(by_days=bool(days))
    return NewSubscriptionQuote(
        billing_unit=unit,
        start_date=now,
        end_date=extend(now, days=days, months=months),
        slots=slots,
        charge=round_money(duration_charge(price, slots, days, months)),
    )
