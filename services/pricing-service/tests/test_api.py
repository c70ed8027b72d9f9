import pathlib
import sys
from concurrent.futures import ThreadPoolExecutor

import jwt
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from app import main  # noqa: E402
from app.main import app  # noqa: E402


def _auth_headers(role: str = "service") -> dict[str, str]:
    token = jwt.encode({"sub": "checkout", "role": role}, "dev-secret-change-me", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


_STACKED = {
    "base_price": 100_000,
    "selected_add_ons": [{"add_on_id": 1, "name": "Extra", "price": 20_000, "tier_id": 1}],
    "package_discount_percent": 10,
    "special_offer": {
        "id": 3,
        "name": "Spring offer",
        "discount_type": "PERCENTAGE",
        "discount_value": 10,
        "max_discount": None,
        "min_properties": None,
    },
    "referral_discount_percent": 5,
    "loyalty_discount_cents": 1_000,
}


def test_health():
    client = TestClient(app)
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_price_breakdown_preview():
    client = TestClient(app)
    r = client.post("/price-breakdown", json=_STACKED)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["breakdown"]["final_price"] == 91_340
    assert body["display"]["final_price"] == 913
    assert body["display"]["referral_discount"] == 49
    assert [l["code"] for l in body["lines"]] == [
        "base",
        "addon.1",
        "package_discount",
        "special_offer.discount",
        "referral_discount",
        "loyalty_discount",
    ]


def test_preview_clamps_but_strict_rejects():
    client = TestClient(app)
    payload = {"base_price": 10_000, "package_discount_percent": 120}

    r = client.post("/price-breakdown", json=payload)
    assert r.status_code == 200, r.text
    assert r.json()["breakdown"]["final_price"] == 0

    r = client.post("/price-breakdown", params={"clamp": "false"}, json=payload)
    assert r.status_code == 400


def test_preview_resolves_loyalty_points():
    client = TestClient(app)
    r = client.post("/price-breakdown", json={"base_price": 5_000, "loyalty_points": 2_000})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["loyalty_points_redeemed"] == 500
    assert body["breakdown"]["loyalty_discount"] == 5_000
    assert body["breakdown"]["final_price"] == 0


def test_verify_requires_token():
    client = TestClient(app)
    r = client.post("/price-breakdown/verify", json={"request": _STACKED, "final_price": 91_340})
    assert r.status_code == 401

    r = client.post(
        "/price-breakdown/verify",
        json={"request": _STACKED, "final_price": 91_340},
        headers=_auth_headers(role="customer"),
    )
    assert r.status_code == 403


def test_verify_accepts_matching_price():
    client = TestClient(app)
    r = client.post(
        "/price-breakdown/verify",
        json={"request": _STACKED, "final_price": 91_340},
        headers=_auth_headers(),
    )
    assert r.status_code == 200, r.text
    assert r.json()["breakdown"]["final_price"] == 91_340


def test_verify_rejects_tampered_price():
    client = TestClient(app)
    r = client.post(
        "/price-breakdown/verify",
        json={"request": _STACKED, "final_price": 1_00},
        headers=_auth_headers(),
    )
    assert r.status_code == 409
    detail = r.json()["detail"]
    assert detail["expected"] == 1_00
    assert detail["computed"] == 91_340


def test_quote_snapshot_roundtrip(monkeypatch, tmp_path):
    data_file = tmp_path / "quotes.json"
    monkeypatch.setattr(main.persistence, "DATA_FILE", str(data_file))
    monkeypatch.setattr(main, "_QUOTES_BY_CODE", {})

    client = TestClient(app)
    r = client.post("/quotes", json={"request": _STACKED, "service_id": 12, "customer_name": "Test"})
    assert r.status_code == 200, r.text
    saved = r.json()
    code = saved["code"]
    assert saved["breakdown"]["final_price"] == 91_340
    assert saved["converted"] is False

    r = client.get(f"/quotes/{code.lower()}")
    assert r.status_code == 200
    assert r.json()["lines"] == saved["lines"]

    r = client.post(f"/quotes/{code}/converted")
    assert r.status_code == 200
    assert r.json()["converted"] is True

    reloaded = main.persistence.load_quotes(str(data_file))
    assert reloaded[code]["breakdown"].final_price == 91_340
    assert reloaded[code]["converted"] is True
    assert reloaded[code]["request"].special_offer.name == "Spring offer"


def test_unknown_quote_is_404():
    client = TestClient(app)
    r = client.get("/quotes/NOPE0000")
    assert r.status_code == 404


def test_dev_token_is_accepted_for_verify():
    client = TestClient(app)
    r = client.post("/dev/token", json={"sub": "payments", "role": "service"})
    token = r.json()["access_token"]
    r = client.post(
        "/price-breakdown/verify",
        json={"request": {"base_price": 1_000}, "final_price": 1_000},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert r.status_code == 200, r.text


def test_preview_handles_infinite_offer_value():
    client = TestClient(app)
    body = (
        '{"base_price": 1000, "special_offer": {"id": 9, "name": "Rush", '
        '"discount_type": "PREMIUM", "discount_value": Infinity}}'
    )
    headers = {"content-type": "application/json"}

    r = client.post("/price-breakdown", content=body, headers=headers)
    assert r.status_code == 200, r.text
    assert r.json()["breakdown"]["final_price"] == 1000

    r = client.post("/price-breakdown", params={"clamp": "false"}, content=body, headers=headers)
    assert r.status_code == 400


def test_quote_returns_customer_details(monkeypatch):
    monkeypatch.setattr(main.persistence, "DATA_FILE", "")
    monkeypatch.setattr(main, "_QUOTES_BY_CODE", {})

    client = TestClient(app)
    r = client.post(
        "/quotes",
        json={
            "request": {"base_price": 5_000},
            "customer_name": "Mona",
            "customer_email": "mona@example.com",
            "customer_phone": "+201000000000",
        },
    )
    assert r.status_code == 200, r.text
    code = r.json()["code"]

    r = client.get(f"/quotes/{code}")
    body = r.json()
    assert body["customer_name"] == "Mona"
    assert body["customer_email"] == "mona@example.com"
    assert body["customer_phone"] == "+201000000000"


def test_concurrent_quote_saves_are_all_persisted(monkeypatch, tmp_path):
    data_file = tmp_path / "quotes.json"
    monkeypatch.setattr(main.persistence, "DATA_FILE", str(data_file))
    monkeypatch.setattr(main, "_QUOTES_BY_CODE", {})

    def _save(i):
        return main.create_quote(main.QuoteIn(request=main.PriceRequestIn(base_price=1_000 + i)), principal=None).code

    with ThreadPoolExecutor(max_workers=8) as pool:
        codes = list(pool.map(_save, range(40)))

    assert len(set(codes)) == 40
    reloaded = main.persistence.load_quotes(str(data_file))
    assert set(reloaded) == set(codes)
