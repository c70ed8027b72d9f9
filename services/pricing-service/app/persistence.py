import dataclasses
import json
import logging
import os
from datetime import date, datetime

from . import domain

# Empty disables persistence (quotes live in memory only).
DATA_FILE = os.getenv("DATA_FILE_PATH", "")

logger = logging.getLogger(__name__)


def _json_default(obj):
    if isinstance(obj, (date, datetime)):
        return obj.isoformat()
    if dataclasses.is_dataclass(obj):
        return dataclasses.asdict(obj)
    raise TypeError(f"Type {type(obj)} not serializable")


def save_quotes(quotes_by_code: dict, path: str | None = None) -> None:
    path = DATA_FILE if path is None else path
    if not path:
        return
    with open(path, "w") as f:
        json.dump({"quotes": quotes_by_code}, f, default=_json_default, indent=2)


def _request_from_dict(raw: dict) -> domain.PriceRequest:
    offer = raw.get("special_offer")
    return domain.PriceRequest(
        base_price=raw["base_price"],
        selected_add_ons=[domain.SelectedAddOn(**a) for a in raw.get("selected_add_ons") or []],
        package_discount_percent=raw.get("package_discount_percent", 0),
        special_offer=domain.SpecialOffer(**offer) if offer else None,
        referral_discount_percent=raw.get("referral_discount_percent", 0),
        property_count=raw.get("property_count", 0),
        loyalty_discount_cents=raw.get("loyalty_discount_cents", 0),
    )


def load_quotes(path: str | None = None) -> dict:
    """
    Load quote snapshots keyed by code.

    Each snapshot keeps the request, the breakdown and the lines exactly as
    they were computed; nothing is recalculated on load.
    """
    path = DATA_FILE if path is None else path
    if not path or not os.path.exists(path):
        return {}

    with open(path, "r") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable quote file %s", path)
            return {}

    quotes = {}
    for code, raw in (data.get("quotes") or {}).items():
        quotes[code] = {
            **raw,
            "request": _request_from_dict(raw["request"]),
            "breakdown": domain.PriceBreakdown(**raw["breakdown"]),
            "lines": [domain.BreakdownLine(**l) for l in raw.get("lines") or []],
            "created_at": datetime.fromisoformat(raw["created_at"]),
        }
    return quotes
