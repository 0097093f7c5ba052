"""
test_quote_routes.py — HTTP surface tests via FastAPI's TestClient.

The app's ``get_db`` dependency is pointed at a per-test SQLite file; auth
uses real bearer tokens signed with the configured JWT secret.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from extrudeiq.db import get_db
from extrudeiq.main import app

from conftest import enable_sqlite_savepoints, make_token


def _auth(role: str) -> dict:
    return {"Authorization": f"Bearer {make_token(f'user-{role}', role)}"}


@pytest.fixture
def client(sqlite_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{sqlite_path}", poolclass=NullPool)
    enable_sqlite_savepoints(engine.sync_engine)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _override_get_db():
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


# ===========================================================================
# Class 1: Quotes
# ===========================================================================

class TestQuoteRoutes:

    def test_create_and_recompute(self, client, quote_payload):
        resp = client.post("/api/quotes", json=quote_payload, headers=_auth("estimator"))
        assert resp.status_code == 201
        quote_id = resp.json()["quote_id"]
        assert resp.json()["quote_number"].startswith("Q-")

        resp = client.post(f"/api/quotes/{quote_id}/revisions", headers=_auth("estimator"))
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["revision_number"] == 2

        revisions = client.get(f"/api/quotes/{quote_id}/revisions", headers=_auth("viewer")).json()
        assert [r["revision_number"] for r in revisions] == [2, 1]
        assert [r["is_current"] for r in revisions] == [True, False]

    def test_missing_token_is_401(self, client, quote_payload):
        assert client.post("/api/quotes", json=quote_payload).status_code == 401

    def test_viewer_cannot_create(self, client, quote_payload):
        resp = client.post("/api/quotes", json=quote_payload, headers=_auth("viewer"))
        assert resp.status_code == 403
        assert resp.json()["error"] == "FORBIDDEN"

    def test_contradictory_geometry_is_422(self, client, quote_payload):
        payload = {**quote_payload, "weight_lb_per_ft": 1.5}
        resp = client.post("/api/quotes", json=payload, headers=_auth("estimator"))
        assert resp.status_code == 422
        assert resp.json() == {"error": "INVALID_INPUT", "detail": "Provide only one: area OR weight/ft"}

    def test_unknown_quote_is_404(self, client):
        resp = client.get("/api/quotes/missing", headers=_auth("viewer"))
        assert resp.status_code == 404
        assert resp.json()["error"] == "NOT_FOUND"

    def test_delete_and_reconcile_admin_only(self, client, quote_payload):
        quote_id = client.post(
            "/api/quotes", json=quote_payload, headers=_auth("estimator")
        ).json()["quote_id"]

        assert client.post("/api/quotes/reconcile", headers=_auth("estimator")).status_code == 403
        resp = client.post("/api/quotes/reconcile", headers=_auth("admin"))
        assert resp.json() == {"ok": True, "repaired": []}

        assert client.delete(f"/api/quotes/{quote_id}", headers=_auth("estimator")).status_code == 403
        assert client.delete(f"/api/quotes/{quote_id}", headers=_auth("admin")).status_code == 200
        assert client.get(f"/api/quotes/{quote_id}", headers=_auth("admin")).status_code == 404

    def test_list_and_search(self, client, quote_payload):
        created = client.post("/api/quotes", json=quote_payload, headers=_auth("estimator")).json()

        listed = client.get("/api/quotes", headers=_auth("viewer")).json()
        assert [row["id"] for row in listed] == [created["quote_id"]]
        assert listed[0]["customer_name"] == "Acme Fenestration"

        by_customer = client.get("/api/quotes", params={"q": "acme"}, headers=_auth("viewer")).json()
        assert len(by_customer) == 1
        by_number = client.get(
            "/api/quotes", params={"q": created["quote_number"]}, headers=_auth("viewer")
        ).json()
        assert len(by_number) == 1
        assert client.get("/api/quotes", params={"q": "zzz"}, headers=_auth("viewer")).json() == []

    def test_list_limit_bounds(self, client):
        assert client.get("/api/quotes", params={"limit": 0}, headers=_auth("viewer")).status_code == 422

    def test_unknown_customer_is_404(self, client, quote_payload):
        payload = {**quote_payload, "customer_id": "ghost"}
        resp = client.post("/api/quotes", json=payload, headers=_auth("estimator"))
        assert resp.status_code == 404
        assert resp.json() == {"error": "NOT_FOUND", "detail": "Customer ghost not found"}


# ===========================================================================
# Class 2: Die estimator
# ===========================================================================

class TestDieRoutes:

    def test_defaults_then_admin_update(self, client):
        settings = client.get("/api/die-estimator/settings", headers=_auth("viewer")).json()
        assert settings["base_hollow"] == 9500

        resp = client.put(
            "/api/die-estimator/settings", json={"base_hollow": 10000.7}, headers=_auth("admin")
        )
        assert resp.status_code == 200
        assert resp.json()["base_hollow"] == 10000

        estimate = client.post(
            "/api/die-estimator/estimate",
            json={"die_type": "hollow", "area_in2": 0.2, "cavities": 1},
            headers=_auth("estimator"),
        ).json()
        assert estimate["expected"] == 10000
        assert estimate["drivers"]["size_factor"] == 1.0

    def test_non_admin_cannot_update(self, client):
        resp = client.put("/api/die-estimator/settings", json={"k": 0.5}, headers=_auth("estimator"))
        assert resp.status_code == 403

    def test_inverted_bands_rejected(self, client):
        resp = client.put(
            "/api/die-estimator/settings",
            json={"low_band": 1.2, "high_band": 1.1},
            headers=_auth("admin"),
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "INVALID_INPUT"

    @pytest.mark.parametrize("literal", ["NaN", "Infinity", "-Infinity"])
    def test_non_finite_setting_rejected(self, client, literal):
        # raw body: JSON encoders refuse non-finite floats
        resp = client.put(
            "/api/die-estimator/settings",
            content=f'{{"a0": {literal}}}',
            headers={**_auth("admin"), "Content-Type": "application/json"},
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "INVALID_INPUT"
        assert client.get("/api/die-estimator/settings", headers=_auth("viewer")).json()["a0"] == 0.2


def test_health_is_public():
    resp = TestClient(app).get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "active"


def test_no_rate_limit_on_quote_writes(client, quote_payload):
    statuses = {
        client.post("/api/quotes", json=quote_payload, headers=_auth("estimator")).status_code
        for _ in range(35)
    }
    assert statuses == {201}
