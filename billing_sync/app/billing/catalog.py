"""Static catalog definitions for design packages and subscription plans."""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Mapping, Optional, Tuple

from .exceptions import InvalidInput
from .models import BillingCycle, PackageType, PlanType

CURRENCY = "NZD"


@dataclass(frozen=True)
class PackageDefinition:
    """A one-time design package sold per job."""

    key: PackageType
    display_name: str
    price: Decimal
    description: str

    def price_env_key(self) -> str:
        return self.key.value


@dataclass(frozen=True)
class PlanDefinition:
    """A recurring partner plan and its usage limits."""

    key: PlanType
    display_name: str
    monthly_price: Decimal
    yearly_price: Decimal
    projects_per_period: int
    description: str

    def price_for(self, cycle: BillingCycle) -> Decimal:
        if cycle == BillingCycle.YEARLY:
            return self.yearly_price
        return self.monthly_price

    def price_env_key(self, cycle: BillingCycle) -> str:
        return f"{self.key.value}_{cycle.value}"


PACKAGE_CATALOG: Dict[PackageType, PackageDefinition] = {
    PackageType.BASIC: PackageDefinition(
        key=PackageType.BASIC,
        display_name="Basic",
        price=Decimal("99"),
        description="2 high-quality 3D renders, 1 revision round, 2D floor plan",
    ),
    PackageType.PROFESSIONAL: PackageDefinition(
        key=PackageType.PROFESSIONAL,
        display_name="Professional",
        price=Decimal("199"),
        description="5 high-quality 3D renders, 3 revision rounds, cut list and assembly guide",
    ),
    PackageType.PREMIUM: PackageDefinition(
        key=PackageType.PREMIUM,
        display_name="Premium",
        price=Decimal("349"),
        description="Unlimited renders and revisions with priority 2-day delivery",
    ),
}

PLAN_CATALOG: Dict[PlanType, PlanDefinition] = {
    PlanType.STARTER: PlanDefinition(
        key=PlanType.STARTER,
        display_name="Starter",
        monthly_price=Decimal("99"),
        yearly_price=Decimal("990"),
        projects_per_period=3,
        description="3 projects per billing period",
    ),
    PlanType.PRO: PlanDefinition(
        key=PlanType.PRO,
        display_name="Pro",
        monthly_price=Decimal("199"),
        yearly_price=Decimal("1990"),
        projects_per_period=5,
        description="5 projects per billing period",
    ),
    PlanType.ENTERPRISE: PlanDefinition(
        key=PlanType.ENTERPRISE,
        display_name="Enterprise",
        monthly_price=Decimal("499"),
        yearly_price=Decimal("4990"),
        projects_per_period=20,
        description="20 projects per billing period with dedicated support",
    ),
}


def parse_package_type(value: object) -> PackageType:
    if isinstance(value, PackageType):
        return value
    try:
        return PackageType(str(value).strip().upper())
    except ValueError as exc:
        raise InvalidInput(f"Unknown package type: {value!r}") from exc


def parse_plan_type(value: object) -> PlanType:
    if isinstance(value, PlanType):
        return value
    try:
        return PlanType(str(value).strip().upper())
    except ValueError as exc:
        raise InvalidInput(f"Unknown plan type: {value!r}") from exc


def parse_billing_cycle(value: object) -> BillingCycle:
    if isinstance(value, BillingCycle):
        return value
    try:
        return BillingCycle(str(value).strip().upper())
    except ValueError as exc:
        raise InvalidInput(f"Unknown billing cycle: {value!r}") from exc


def get_package_definition(package_type: object) -> PackageDefinition:
    return PACKAGE_CATALOG[parse_package_type(package_type)]


def get_plan_definition(plan: object) -> PlanDefinition:
    return PLAN_CATALOG[parse_plan_type(plan)]


def price_for(plan: object, cycle: object) -> Decimal:
    return get_plan_definition(plan).price_for(parse_billing_cycle(cycle))


def plan_for_price_id(
    price_id: Optional[str], price_ids: Mapping[str, str]
) -> Optional[Tuple[PlanType, BillingCycle]]:
    """Reverse lookup of the plan and cycle configured for an external price id."""

    if not price_id:
        return None
    for plan in PLAN_CATALOG.values():
        for cycle in BillingCycle:
            if price_ids.get(plan.price_env_key(cycle)) == price_id:
                return plan.key, cycle
    return None


def add_billing_cycle(start: datetime, cycle: BillingCycle) -> datetime:
    """Advance ``start`` by one calendar month or year, clamping the day."""

    months = 12 if cycle == BillingCycle.YEARLY else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def cycle_tag(moment: datetime) -> str:
    """``YYYY-MM`` tag identifying the billing cycle a payment belongs to."""

    return f"{moment.year:04d}-{moment.month:02d}"


__all__ = [
    "CURRENCY",
    "PACKAGE_CATALOG",
    "PLAN_CATALOG",
    "PackageDefinition",
    "PlanDefinition",
    "add_billing_cycle",
    "cycle_tag",
    "get_package_definition",
    "get_plan_definition",
    "parse_billing_cycle",
    "parse_package_type",
    "parse_plan_type",
    "plan_for_price_id",
    "price_for",
]
