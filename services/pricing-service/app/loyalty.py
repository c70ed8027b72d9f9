from __future__ import annotations

import os
from dataclasses import dataclass

# 1 point = 10 cents (100 points = 10.00 in major units).
POINTS_TO_CENTS_RATE = int(os.getenv("LOYALTY_POINTS_TO_CENTS_RATE", "10"))


@dataclass(frozen=True)
class LoyaltyRedemption:
    points: int
    discount_cents: int


def points_to_cents(points: int, rate: int = POINTS_TO_CENTS_RATE) -> int:
    if points < 0:
        raise ValueError("points must be >= 0")
    return int(points) * int(rate)


def max_redeemable_points(balance: int, base_price: int, rate: int = POINTS_TO_CENTS_RATE) -> int:
    """
    Upper bound on points a customer may spend on one booking.

    A redemption never covers more than the base price, so the cap is
    floor(base_price / rate), further limited by the points balance.
    """
    if balance < 0 or base_price < 0:
        raise ValueError("balance and base_price must be >= 0")
    if rate <= 0:
        raise ValueError("rate must be > 0")
    return min(int(balance), int(base_price) // int(rate))


def redeem(points_requested: int, base_price: int, rate: int = POINTS_TO_CENTS_RATE) -> LoyaltyRedemption:
    """Resolve requested points into the flat cents amount the price engine applies last."""
    points = max_redeemable_points(points_requested, base_price, rate=rate)
    return LoyaltyRedemption(points=points, discount_cents=points_to_cents(points, rate=rate))
