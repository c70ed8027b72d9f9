from __future__ import annotations

import dataclasses
import logging
import os
import secrets
import threading
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from . import domain, loyalty, persistence
from .security import get_principal_optional, issue_token, require_charge_authority

app = FastAPI(
    title="Pricing Service",
    version="0.1.0",
    description="Price breakdowns for home-service bookings: add-ons, discounts, offers, referrals and loyalty.",
)

logger = logging.getLogger(__name__)

# Forces contract checking on the preview endpoint as well.
PRICING_STRICT = os.getenv("PRICING_STRICT", "").strip().lower() in {"1", "true", "yes", "on"}

_QUOTES_BY_CODE: dict[str, dict] = persistence.load_quotes()
# Sync endpoints run in a threadpool; guards quote mutation and the JSON save.
_QUOTES_LOCK = threading.Lock()


class AddOnIn(BaseModel):
    add_on_id: int
    name: str
    price: int = Field(description="Amount in cents")
    tier_id: int | None = None


class SpecialOfferIn(BaseModel):
    id: int
    name: str
    discount_type: str = Field(description="PERCENTAGE|PREMIUM")
    discount_value: float = Field(description="Percent")
    max_discount: int | None = Field(default=None, description="Cap in cents (PERCENTAGE only)")
    min_properties: int | None = Field(default=None, description="Minimum property count for eligibility")


class PriceRequestIn(BaseModel):
    base_price: int = Field(description="Amount in cents; 0 means no price yet")
    selected_add_ons: list[AddOnIn] = Field(default_factory=list)
    package_discount_percent: float = 0
    special_offer: SpecialOfferIn | None = None
    referral_discount_percent: float = 0
    property_count: int = 0
    loyalty_discount_cents: int = 0
    loyalty_points: int | None = Field(
        default=None,
        description="Optional: points to redeem. If provided, replaces loyalty_discount_cents (capped by base price).",
    )


class BreakdownOut(BaseModel):
    base_price: int
    add_ons_total: int
    subtotal: int
    package_discount: int
    subtotal_after_package: int
    special_offer_adjustment: int
    referral_discount: int
    loyalty_discount: int
    final_price: int


class BreakdownLineOut(BaseModel):
    code: str
    description: str
    amount: int


class PriceBreakdownOut(BaseModel):
    breakdown: BreakdownOut
    display: BreakdownOut
    lines: list[BreakdownLineOut]
    loyalty_points_redeemed: int | None = None


class VerifyIn(BaseModel):
    request: PriceRequestIn
    final_price: int = Field(description="Client-computed final price in cents")


class QuoteIn(BaseModel):
    request: PriceRequestIn
    service_id: int | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None


class QuoteOut(PriceBreakdownOut):
    code: str
    service_id: int | None
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    converted: bool
    created_at: datetime


def _to_domain(payload: PriceRequestIn) -> tuple[domain.PriceRequest, int | None]:
    loyalty_cents = payload.loyalty_discount_cents
    points_redeemed = None
    if payload.loyalty_points is not None:
        r = loyalty.redeem(payload.loyalty_points, max(0, payload.base_price))
        loyalty_cents = r.discount_cents
        points_redeemed = r.points

    offer = None
    if payload.special_offer is not None:
        o = payload.special_offer
        offer = domain.SpecialOffer(
            id=o.id,
            name=o.name,
            discount_type=o.discount_type,  # type: ignore[arg-type]
            discount_value=o.discount_value,
            max_discount=o.max_discount,
            min_properties=o.min_properties,
        )

    req = domain.PriceRequest(
        base_price=payload.base_price,
        selected_add_ons=[
            domain.SelectedAddOn(add_on_id=a.add_on_id, name=a.name, price=a.price, tier_id=a.tier_id)
            for a in payload.selected_add_ons
        ],
        package_discount_percent=payload.package_discount_percent,
        special_offer=offer,
        referral_discount_percent=payload.referral_discount_percent,
        property_count=payload.property_count,
        loyalty_discount_cents=loyalty_cents,
    )
    return req, points_redeemed


def _breakdown_out(b: domain.PriceBreakdown) -> BreakdownOut:
    return BreakdownOut(**dataclasses.asdict(b))


def _priced(req: domain.PriceRequest, *, clamp: bool) -> tuple[domain.PriceRequest, domain.PriceBreakdown, list[domain.BreakdownLine]]:
    # Lines are built from the same normalized request the breakdown used.
    req = domain.normalize_request(req, clamp=clamp)
    b = domain.calculate(req)
    return req, b, domain.breakdown_lines(req, b)


def _quote_out(code: str, q: dict) -> QuoteOut:
    return QuoteOut(
        code=code,
        service_id=q.get("service_id"),
        customer_name=q.get("customer_name"),
        customer_email=q.get("customer_email"),
        customer_phone=q.get("customer_phone"),
        converted=bool(q.get("converted")),
        created_at=q["created_at"],
        breakdown=_breakdown_out(q["breakdown"]),
        display=_breakdown_out(domain.to_major_units(q["breakdown"])),
        lines=[BreakdownLineOut(code=l.code, description=l.description, amount=l.amount) for l in q["lines"]],
        loyalty_points_redeemed=q.get("loyalty_points_redeemed"),
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/price-breakdown", response_model=PriceBreakdownOut)
def price_breakdown(
    payload: PriceRequestIn,
    clamp: bool = True,
    _principal=Depends(get_principal_optional),
):
    """Live preview. Clamps out-of-range input unless PRICING_STRICT is set or clamp=false."""
    try:
        req, points = _to_domain(payload)
        req, b, lines = _priced(req, clamp=clamp and not PRICING_STRICT)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return PriceBreakdownOut(
        breakdown=_breakdown_out(b),
        display=_breakdown_out(domain.to_major_units(b)),
        lines=[BreakdownLineOut(code=l.code, description=l.description, amount=l.amount) for l in lines],
        loyalty_points_redeemed=points,
    )


@app.post("/price-breakdown/verify", response_model=PriceBreakdownOut)
def verify_price(
    payload: VerifyIn,
    _principal=Depends(require_charge_authority),
):
    """Authoritative re-computation before charging; 409 when the client price disagrees."""
    try:
        req, points = _to_domain(payload.request)
        req = domain.normalize_request(req)
        b = domain.verify_final_price(req, payload.final_price)
    except domain.PriceMismatch as e:
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "expected": e.expected, "computed": e.actual},
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return PriceBreakdownOut(
        breakdown=_breakdown_out(b),
        display=_breakdown_out(domain.to_major_units(b)),
        lines=[BreakdownLineOut(code=l.code, description=l.description, amount=l.amount) for l in domain.breakdown_lines(req, b)],
        loyalty_points_redeemed=points,
    )


@app.post("/quotes", response_model=QuoteOut)
def create_quote(
    payload: QuoteIn,
    principal=Depends(get_principal_optional),
):
    try:
        req, points = _to_domain(payload.request)
        req, b, lines = _priced(req, clamp=False)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    with _QUOTES_LOCK:
        code = secrets.token_hex(4).upper()
        while code in _QUOTES_BY_CODE:
            code = secrets.token_hex(4).upper()

        _QUOTES_BY_CODE[code] = {
            "request": req,
            "breakdown": b,
            "lines": lines,
            "loyalty_points_redeemed": points,
            "service_id": payload.service_id,
            "customer_name": payload.customer_name,
            "customer_email": payload.customer_email,
            "customer_phone": payload.customer_phone,
            "user": (principal or {}).get("sub"),
            "converted": False,
            "created_at": datetime.now(tz=timezone.utc),
        }
        persistence.save_quotes(_QUOTES_BY_CODE)
    logger.info("Saved quote %s (final_price=%s)", code, b.final_price)
    return _quote_out(code, _QUOTES_BY_CODE[code])


@app.get("/quotes/{code}", response_model=QuoteOut)
def get_quote(code: str):
    q = _QUOTES_BY_CODE.get(code.strip().upper())
    if q is None:
        raise HTTPException(status_code=404, detail="Quote not found")
    return _quote_out(code.strip().upper(), q)


@app.post("/quotes/{code}/converted", response_model=QuoteOut)
def mark_quote_converted(code: str):
    key = code.strip().upper()
    with _QUOTES_LOCK:
        q = _QUOTES_BY_CODE.get(key)
        if q is None:
            raise HTTPException(status_code=404, detail="Quote not found")
        q["converted"] = True
        persistence.save_quotes(_QUOTES_BY_CODE)
    return _quote_out(key, q)


class TokenRequest(BaseModel):
    sub: str = "dev-user"
    role: str = Field(default="guest", description="guest|customer|service|admin")


@app.post("/dev/token")
def dev_token(payload: TokenRequest):
    return {"access_token": issue_token(sub=payload.sub, role=payload.role), "token_type": "bearer"}
