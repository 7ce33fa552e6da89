"""Shipping charge calculation.

Pure functions over ``Decimal``; every intermediate amount is rounded
half-up to cents where it is computed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from app.services.common import ZERO, HUNDRED, percent_of, round_money

BASE_RATES = {
    "SAME_DAY": Decimal("50.00"),
    "NEXT_DAY": Decimal("25.00"),
    "STANDARD": Decimal("15.00"),
}
DEFAULT_BASE_RATE = Decimal("20.00")

DIMENSION_CHARGE = Decimal("5.00")
DISTANCE_CHARGE = Decimal("10.00")

INSURANCE_RATE_PERCENT = Decimal("1")
SERVICE_FEES = {
    "SAME_DAY": ("Rush fee", Decimal("15.00")),
    "SIGNATURE_REQUIRED": ("Signature fee", Decimal("5.00")),
}

# (minimum trailing monthly shipments, discount percent), highest first.
VOLUME_DISCOUNT_BRACKETS = (
    (100, Decimal("15")),
    (50, Decimal("10")),
    (20, Decimal("5")),
)
VOLUME_DISCOUNT_TYPE = "VOLUME_DISCOUNT"


@dataclass(frozen=True)
class PricingTier:
    name: str
    discount_percentage: Decimal
    description: str = ""
    min_monthly_shipments: int = 0
    custom_pricing: bool = False


PRICING_TIERS = {
    "BASIC": PricingTier("BASIC", Decimal("0"), "Basic customer pricing", 0),
    "STANDARD": PricingTier("STANDARD", Decimal("5.0"), "Standard customer pricing", 20),
    "PREMIUM": PricingTier("PREMIUM", Decimal("10.0"), "Premium customer pricing", 50),
    "ENTERPRISE": PricingTier(
        "ENTERPRISE", Decimal("15.0"), "Enterprise customer pricing", 100, True
    ),
}
DEFAULT_PRICING_TIER = "STANDARD"


@dataclass(frozen=True)
class ServiceFee:
    description: str
    amount: Decimal


@dataclass(frozen=True)
class ShippingCharge:
    weight_charge: Decimal
    dimension_charge: Decimal
    distance_charge: Decimal
    base_amount: Decimal
    fees: tuple[ServiceFee, ...] = field(default_factory=tuple)
    service_type: str = ""
    tier: PricingTier | None = None

    @property
    def service_fees(self) -> Decimal:
        return round_money(sum((fee.amount for fee in self.fees), ZERO))

    @property
    def total_amount(self) -> Decimal:
        return round_money(self.base_amount + self.service_fees)

    def breakdown(self) -> dict[str, Decimal]:
        return {
            "weightCharge": self.weight_charge,
            "dimensionCharge": self.dimension_charge,
            "distanceCharge": self.distance_charge,
            "serviceFees": self.service_fees,
        }


def tier_by_name(name: str | None) -> PricingTier:
    key = (name or DEFAULT_PRICING_TIER).strip().upper()
    return PRICING_TIERS.get(key, PRICING_TIERS[DEFAULT_PRICING_TIER])


def base_rate_for(service_type: str | None) -> Decimal:
    return BASE_RATES.get((service_type or "").upper(), DEFAULT_BASE_RATE)


def tier_multiplier(tier: PricingTier | None) -> Decimal:
    if tier is None or tier.discount_percentage is None:
        return Decimal("1")
    return Decimal("1") - Decimal(str(tier.discount_percentage)) / HUNDRED


def service_fees_for(
    service_type: str | None, declared_value: Decimal | None
) -> tuple[ServiceFee, ...]:
    fees: list[ServiceFee] = []
    if declared_value is not None and Decimal(str(declared_value)) > ZERO:
        fees.append(
            ServiceFee("Insurance", percent_of(declared_value, INSURANCE_RATE_PERCENT))
        )
    extra = SERVICE_FEES.get((service_type or "").upper())
    if extra:
        fees.append(ServiceFee(*extra))
    return tuple(fees)


def calculate_shipping_charge(
    service_type: str,
    weight: Decimal,
    tier: PricingTier | None,
    declared_value: Decimal | None = None,
    dimensions: str | None = None,
    origin: str | None = None,
    destination: str | None = None,
) -> ShippingCharge:
    """Price one shipment.

    Dimension and distance surcharges are flat; the tier discount applies to
    weight, dimension and distance charges but not to service fees.
    """
    weight_charge = round_money(base_rate_for(service_type) * Decimal(str(weight)))
    dimension_charge = DIMENSION_CHARGE
    distance_charge = DISTANCE_CHARGE
    base_amount = round_money(
        (weight_charge + dimension_charge + distance_charge) * tier_multiplier(tier)
    )
    return ShippingCharge(
        weight_charge=weight_charge,
        dimension_charge=dimension_charge,
        distance_charge=distance_charge,
        base_amount=base_amount,
        fees=service_fees_for(service_type, declared_value),
        service_type=service_type,
        tier=tier,
    )


def volume_discount_percentage(monthly_shipments: int) -> Decimal:
    for threshold, percentage in VOLUME_DISCOUNT_BRACKETS:
        if monthly_shipments >= threshold:
            return percentage
    return Decimal("0")


def volume_discount(amount: Decimal, monthly_shipments: int) -> Decimal:
    return percent_of(amount, volume_discount_percentage(monthly_shipments))


@dataclass(frozen=True)
class VolumeDiscount:
    discount_percentage: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    discount_type: str = VOLUME_DISCOUNT_TYPE


def apply_volume_discount(amount: Decimal, monthly_shipments: int) -> VolumeDiscount:
    base = round_money(amount)
    discount = volume_discount(base, monthly_shipments)
    return VolumeDiscount(
        discount_percentage=volume_discount_percentage(monthly_shipments),
        discount_amount=discount,
        final_amount=round_money(base - discount),
    )
