from unittest.mock import patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.routes import places as places_router
from settings import settings


def _client():
    app = FastAPI()
    app.include_router(places_router.router, prefix="/places")
    return TestClient(app)


def _place(pid, name, lat=None, lng=None, category="restaurant", **extra):
    loc = {"district": extra.pop("district", None)}
    if lat is not None:
        loc["coordinates"] = {"lat": lat, "lng": lng}
    return {"id": pid, "name": name, "category": category, "location": loc, **extra}


def test_validate_endpoint_reports_coast_fix():
    resp = _client().post("/places/validate", json={"lat": 19.33, "lng": -81.50, "category": "restaurant"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["valid"] is False
    assert body["reason"] == "west_of_coastline"
    assert body["suggested_fix"]["lng"] > -81.40


def test_validate_endpoint_allows_dive_site():
    resp = _client().post("/places/validate", json={"lat": 19.33, "lng": -81.50, "category": "dive-site"})
    assert resp.json()["valid"] is True


@patch("services.geocoding._session.get")
def test_resolve_endpoint_is_offline_and_uses_verified_table(mock_get, monkeypatch):
    monkeypatch.setattr(places_router, "_chain", None)
    resp = _client().post(
        "/places/resolve",
        json={"records": [_place("s1", "Stingray City", 19.30, -81.20, category="tour")]},
    )
    assert resp.status_code == 200
    (item,) = resp.json()
    assert item["source"] == "verified"
    assert item["would_write"] is True
    assert item["record"]["location"]["coordinates"] == {"lat": 19.3757, "lng": -81.3048}
    mock_get.assert_not_called()


def test_duplicates_endpoint():
    records = [
        _place("a", "Smith's Cove", 19.2766, -81.3900, category="beach"),
        _place("b", "Smiths Cove", 19.2766, -81.38924, category="beach"),
    ]
    body = _client().post("/places/duplicates", json={"records": records}).json()
    assert body["count"] == 1
    assert body["duplicates"][0]["reason"] == "name_proximity"


def test_audit_endpoint():
    records = [_place("a", "No Coords"), _place("b", "Grand Old House", 19.292012, -81.377845)]
    body = _client().post("/places/audit", json={"records": records}).json()
    assert body["totalRecords"] == 2
    assert body["reprocess"] == ["a"]
    assert body["unresolvedFraction"] == 0.5


def test_records_need_id_and_name():
    resp = _client().post("/places/audit", json={"records": [{"name": "x"}]})
    assert resp.status_code == 422


def test_numeric_zero_id_is_accepted():
    body = _client().post("/places/audit", json={"records": [_place(0, "Grand Old House", 19.292012, -81.377845)]})
    assert body.status_code == 200
    assert body.json()["totalRecords"] == 1


def test_resolve_chain_goes_online_only_when_enabled(monkeypatch):
    monkeypatch.setattr(settings, "GEOCODE_OFFLINE", False)
    monkeypatch.setattr(places_router, "_chain", None)
    assert places_router.get_chain().fast_adapters == []

    monkeypatch.setattr(settings, "API_RESOLVE_ONLINE", True)
    monkeypatch.setattr(places_router, "_chain", None)
    assert places_router.get_chain().fast_adapters != []
