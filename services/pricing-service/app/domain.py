from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Callable, Literal

DiscountKind = Literal["PERCENTAGE", "PREMIUM"]

logger = logging.getLogger(__name__)


class ContractViolation(ValueError):
    """Input outside the documented ranges (caller bug)."""


class PriceMismatch(Exception):
    def __init__(self, expected: int, actual: int):
        super().__init__(f"Client final price {expected} does not match computed {actual}")
        self.expected = expected
        self.actual = actual


@dataclass(frozen=True)
class SelectedAddOn:
    add_on_id: int
    name: str
    price: int  # cents
    # Tier selection is resolved before pricing; kept for the audit listing only.
    tier_id: int | None = None


@dataclass(frozen=True)
class SpecialOffer:
    """
    Promotional adjustment.

    - PERCENTAGE reduces the running total, optionally capped by max_discount (cents)
    - PREMIUM is a surcharge and increases the running total (rush/urgent service)
    - min_properties gates eligibility on the caller-supplied property count
    """

    id: int
    name: str
    discount_type: DiscountKind
    discount_value: float  # percent
    max_discount: int | None = None
    min_properties: int | None = None


@dataclass(frozen=True)
class PriceRequest:
    base_price: int  # cents; 0 means "no price yet"
    selected_add_ons: list[SelectedAddOn] = field(default_factory=list)
    package_discount_percent: float = 0
    special_offer: SpecialOffer | None = None
    referral_discount_percent: float = 0
    property_count: int = 0
    # Points x exchange rate is resolved upstream (see loyalty.py).
    loyalty_discount_cents: int = 0


@dataclass(frozen=True)
class PriceBreakdown:
    base_price: int
    add_ons_total: int
    subtotal: int
    package_discount: int
    subtotal_after_package: int
    special_offer_adjustment: int
    referral_discount: int
    loyalty_discount: int
    final_price: int


@dataclass(frozen=True)
class BreakdownLine:
    code: str
    description: str
    amount: int


def _round_half_up(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_HALF_UP))


def _percent_of(amount: int, percent: float) -> int:
    """Percentage of a cents amount, rounded half-up to the cent."""
    try:
        p = Decimal(str(percent))
    except InvalidOperation:
        raise ContractViolation(f"Invalid percentage: {percent!r}")
    if not p.is_finite():
        raise ContractViolation(f"Invalid percentage: {percent!r}")
    return _round_half_up(Decimal(int(amount)) * p / Decimal(100))


def _check_non_negative(value: int | float, name: str, clamp: bool) -> int | float:
    if math.isfinite(value) and value >= 0:
        return value
    if not clamp:
        raise ContractViolation(f"{name} must be a finite number >= 0 (got {value})")
    # Non-finite values have no meaningful bound, so they clamp to 0 as well.
    logger.warning("Clamping %s=%s to 0", name, value)
    return 0


def _check_percent(value: float, name: str, clamp: bool) -> float:
    if math.isfinite(value) and 0 <= value <= 100:
        return value
    if not clamp:
        raise ContractViolation(f"{name} must be between 0 and 100 (got {value})")
    if math.isnan(value):
        clamped = 0
    else:
        clamped = min(100, max(0, value))
    logger.warning("Clamping %s=%s to %s", name, value, clamped)
    return clamped


def _normalize_offer(offer: SpecialOffer, clamp: bool) -> SpecialOffer:
    kind = (offer.discount_type or "").strip().upper()
    if kind not in _OFFER_STEPS:
        raise ContractViolation(f"Unknown special offer discount type: {offer.discount_type!r}")

    if kind == "PERCENTAGE":
        value = _check_percent(offer.discount_value, "special_offer.discount_value", clamp)
    else:
        # A premium may exceed 100% of the running total.
        value = _check_non_negative(offer.discount_value, "special_offer.discount_value", clamp)

    max_discount = offer.max_discount
    if max_discount is not None:
        max_discount = int(_check_non_negative(max_discount, "special_offer.max_discount", clamp))
    min_properties = offer.min_properties
    if min_properties is not None:
        min_properties = int(_check_non_negative(min_properties, "special_offer.min_properties", clamp))

    return SpecialOffer(
        id=offer.id,
        name=offer.name,
        discount_type=kind,  # type: ignore[arg-type]
        discount_value=value,
        max_discount=max_discount,
        min_properties=min_properties,
    )


def normalize_request(req: PriceRequest, *, clamp: bool = False) -> PriceRequest:
    """
    Validate a request against the input contract.

    - clamp=False (server / charge context): raise ContractViolation
    - clamp=True (live preview): clamp to range and log a warning

    Unknown discount types are rejected in both modes.
    """
    add_ons = [
        SelectedAddOn(
            add_on_id=a.add_on_id,
            name=a.name,
            price=int(_check_non_negative(a.price, f"add_on[{a.add_on_id}].price", clamp)),
            tier_id=a.tier_id,
        )
        for a in req.selected_add_ons
    ]
    return PriceRequest(
        base_price=int(_check_non_negative(req.base_price, "base_price", clamp)),
        selected_add_ons=add_ons,
        package_discount_percent=_check_percent(req.package_discount_percent, "package_discount_percent", clamp),
        special_offer=_normalize_offer(req.special_offer, clamp) if req.special_offer else None,
        referral_discount_percent=_check_percent(req.referral_discount_percent, "referral_discount_percent", clamp),
        property_count=int(_check_non_negative(req.property_count, "property_count", clamp)),
        loyalty_discount_cents=int(_check_non_negative(req.loyalty_discount_cents, "loyalty_discount_cents", clamp)),
    )


# Each step takes the running total and returns (delta, new running total).
# Deltas are reported unsigned, the step decides the direction.


def apply_package_discount(running: int, percent: float) -> tuple[int, int]:
    discount = _percent_of(running, percent)
    return discount, running - discount


def _percentage_offer(running: int, offer: SpecialOffer) -> tuple[int, int]:
    adjustment = _percent_of(running, offer.discount_value)
    # max_discount of 0 means "no cap", same as unset.
    if offer.max_discount and adjustment > offer.max_discount:
        adjustment = offer.max_discount
    return adjustment, running - adjustment


def _premium_offer(running: int, offer: SpecialOffer) -> tuple[int, int]:
    adjustment = _percent_of(running, offer.discount_value)
    return adjustment, running + adjustment


_OFFER_STEPS: dict[str, Callable[[int, SpecialOffer], tuple[int, int]]] = {
    "PERCENTAGE": _percentage_offer,
    "PREMIUM": _premium_offer,
}


def offer_is_eligible(offer: SpecialOffer, property_count: int) -> bool:
    if not offer.min_properties:
        return True
    return property_count >= offer.min_properties


def apply_special_offer(running: int, offer: SpecialOffer | None, property_count: int) -> tuple[int, int]:
    if offer is None or not offer_is_eligible(offer, property_count):
        return 0, running
    step = _OFFER_STEPS.get(offer.discount_type)
    if step is None:
        raise ContractViolation(f"Unknown special offer discount type: {offer.discount_type!r}")
    return step(running, offer)


def apply_referral_discount(running: int, percent: float) -> tuple[int, int]:
    discount = _percent_of(running, percent)
    return discount, running - discount


def apply_loyalty_discount(running: int, loyalty_cents: int) -> tuple[int, int]:
    # Flat, never percentage-scaled and not capped against the running total:
    # only the final price is floored.
    return loyalty_cents, running - loyalty_cents


def calculate(req: PriceRequest, *, clamp: bool = False) -> PriceBreakdown:
    """
    Compute the price breakdown for a set of booking selections.

    Stacking order is fixed: package -> special offer -> referral -> loyalty.
    Every delta is rounded to the cent on its own so each displayed line is exact.
    """
    req = normalize_request(req, clamp=clamp)

    add_ons_total = sum(a.price for a in req.selected_add_ons)
    subtotal = req.base_price + add_ons_total

    package_discount, running = apply_package_discount(subtotal, req.package_discount_percent)
    subtotal_after_package = running

    special_offer_adjustment, running = apply_special_offer(running, req.special_offer, req.property_count)
    referral_discount, running = apply_referral_discount(running, req.referral_discount_percent)
    loyalty_discount, running = apply_loyalty_discount(running, req.loyalty_discount_cents)

    return PriceBreakdown(
        base_price=req.base_price,
        add_ons_total=add_ons_total,
        subtotal=subtotal,
        package_discount=package_discount,
        subtotal_after_package=subtotal_after_package,
        special_offer_adjustment=special_offer_adjustment,
        referral_discount=referral_discount,
        loyalty_discount=loyalty_discount,
        final_price=max(0, running),
    )


def to_major_units(b: PriceBreakdown) -> PriceBreakdown:
    """Whole-currency values (cents / 100, rounded half-up) as shown by the booking UI."""

    def _major(cents: int) -> int:
        return _round_half_up(Decimal(int(cents)) / Decimal(100))

    return PriceBreakdown(
        base_price=_major(b.base_price),
        add_ons_total=_major(b.add_ons_total),
        subtotal=_major(b.subtotal),
        package_discount=_major(b.package_discount),
        subtotal_after_package=_major(b.subtotal_after_package),
        special_offer_adjustment=_major(b.special_offer_adjustment),
        referral_discount=_major(b.referral_discount),
        loyalty_discount=_major(b.loyalty_discount),
        final_price=_major(b.final_price),
    )


def breakdown_lines(req: PriceRequest, b: PriceBreakdown) -> list[BreakdownLine]:
    """
    Ordered line items for invoices and quote snapshots.

    Amounts are signed (discounts negative). Nothing is recomputed here: every
    amount comes from the breakdown or from the add-on prices it was built from.
    Add-on prices are read from the normalized request so the lines match a
    breakdown computed with clamp=True. In-range input passes through unchanged.
    """
    req = normalize_request(req, clamp=True)
    lines: list[BreakdownLine] = [BreakdownLine(code="base", description="Base price", amount=b.base_price)]

    for a in req.selected_add_ons:
        lines.append(BreakdownLine(code=f"addon.{a.add_on_id}", description=f"Add-on: {a.name}", amount=int(a.price)))

    if b.package_discount:
        lines.append(
            BreakdownLine(
                code="package_discount",
                description=f"Package discount ({req.package_discount_percent:g}%)",
                amount=-b.package_discount,
            )
        )

    offer = req.special_offer
    if offer is not None and b.special_offer_adjustment:
        kind = (offer.discount_type or "").strip().upper()
        if kind == "PREMIUM":
            lines.append(
                BreakdownLine(
                    code="special_offer.premium",
                    description=f"{offer.name} (+{offer.discount_value:g}%)",
                    amount=b.special_offer_adjustment,
                )
            )
        else:
            lines.append(
                BreakdownLine(
                    code="special_offer.discount",
                    description=f"{offer.name} ({offer.discount_value:g}%)",
                    amount=-b.special_offer_adjustment,
                )
            )

    if b.referral_discount:
        lines.append(
            BreakdownLine(
                code="referral_discount",
                description=f"Referral discount ({req.referral_discount_percent:g}%)",
                amount=-b.referral_discount,
            )
        )

    if b.loyalty_discount:
        lines.append(BreakdownLine(code="loyalty_discount", description="Loyalty points", amount=-b.loyalty_discount))

    return lines


def verify_final_price(req: PriceRequest, expected_final_price: int) -> PriceBreakdown:
    """
    Re-run the calculation in strict mode before charging.

    Raises PriceMismatch if the client-supplied final price differs from ours.
    """
    b = calculate(req, clamp=False)
    if int(expected_final_price) != b.final_price:
        logger.warning(
            "Final price mismatch (client=%s, computed=%s, base_price=%s)",
            expected_final_price,
            b.final_price,
            req.base_price,
        )
        raise PriceMismatch(expected=int(expected_final_price), actual=b.final_price)
    return b
