"""
API tests: the full sourcing workflow over HTTP, the response envelope,
error mapping and role checks.
"""
import inspect
from datetime import timedelta

import pytest
from fastapi import HTTPException
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from procura.core.clock import utcnow
from procura.core.rbac import RBACChecker, Role, get_current_user_context
from procura.db.models import RFQ
from procura.main import create_app
from procura.services.reasoning import build_advisor

WEIGHTS = {"price": 0.4, "delivery": 0.25, "quality": 0.2, "capability": 0.1, "risk": 0.05}


@pytest.fixture
def client(session_factory, org, customer, suppliers):
    app = create_app(session_factory=session_factory, advisor=build_advisor("mock"))
    with TestClient(app) as client:
        yield client


@pytest.fixture
def admin(auth_headers):
    return auth_headers("admin")


def _approved_request(client, headers, customer_id):
    created = client.post("/requests", headers=headers, json={
        "customer_id": customer_id,
        "category": "Road freight",
        "title": "Pallets Rotterdam to Milan",
        "description": "12 pallets, tail-lift required",
        "origin": "Rotterdam",
        "destination": "Milan",
        "requested_lead_time_days": 5,
    })
    assert created.status_code == 200, created.text
    request_id = created.json()["data"]["id"]
    client.post(f"/requests/{request_id}/submit", headers=headers)
    client.post(f"/requests/{request_id}/review", headers=headers, json={"action": "start"})
    approved = client.post(f"/requests/{request_id}/review", headers=headers, json={"action": "approve"})
    assert approved.status_code == 200, approved.text
    return approved.json()["data"]


def _published_rfq(client, headers, request_id):
    response = client.post("/rfqs", headers=headers, json={
        "request_id": request_id,
        "deadline": (utcnow() + timedelta(days=7)).isoformat(),
        "criteria_weights": WEIGHTS,
    })
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _quote(client, headers, rfq_id, supplier_id, price, lead):
    return client.post(f"/rfqs/{rfq_id}/quotes", headers=headers, json={
        "supplier_id": supplier_id,
        "base_price": price,
        "lead_time_days": lead,
        "valid_until": (utcnow() + timedelta(days=30)).isoformat(),
    })


class TestWorkflow:
    """Request to rated order, end to end."""

    def test_full_sourcing_workflow(self, client, admin, customer, suppliers):
        request = _approved_request(client, admin, customer.id)
        assert request["status"] == "approved"

        rfq = _published_rfq(client, admin, request["id"])
        assert rfq["status"] == "published"

        a, b, c = suppliers
        quote_ids = {}
        for key, supplier, price, lead in (("A", a, 1000, 5), ("B", b, 1200, 3), ("C", c, 900, 7)):
            response = _quote(client, admin, rfq["id"], supplier.id, price, lead)
            assert response.status_code == 200, response.text
            quote_ids[key] = response.json()["data"]["id"]

        evaluation = client.post(f"/rfqs/{rfq['id']}/evaluation", headers=admin, json={"close_bidding": True})
        assert evaluation.status_code == 200
        ranking = evaluation.json()["data"]["ranking"]
        assert [q["id"] for q in ranking] == [quote_ids["A"], quote_ids["C"], quote_ids["B"]]
        assert [q["score"] for q in ranking] == [80.33, 80.0, 70.0]
        assert evaluation.json()["data"]["rfq"]["status"] == "under_evaluation"

        analysis = client.post(f"/quotes/{quote_ids['A']}/analysis", headers=admin)
        assert analysis.json()["data"]["enriched"] is True
        assert analysis.json()["data"]["quote"]["score"] == 80.33

        award = client.put(f"/rfqs/{rfq['id']}/award", headers=admin, json={"quoteId": quote_ids["A"]})
        assert award.status_code == 200, award.text
        body = award.json()["data"]
        assert body["rfq"]["status"] == "awarded"
        assert body["quote"]["status"] == "selected"
        order = body["order"]
        assert order["status"] == "pending"
        assert order["agreed_price"] == 1000.0

        event = client.post(f"/orders/{order['id']}/tracking", headers=admin, json={
            "event_type": "DELIVERED", "location": "Milan", "event_key": "pod-1",
        })
        assert event.status_code == 200, event.text
        assert event.json()["data"]["order"]["status"] == "completed"

        replay = client.post(f"/orders/{order['id']}/tracking", headers=admin, json={
            "event_type": "DELIVERED", "location": "Milan", "event_key": "pod-1",
        })
        assert replay.json()["data"]["duplicate"] is True

        history = client.get(f"/orders/{order['id']}/tracking", headers=admin)
        assert len(history.json()["data"]["events"]) == 1

        rated = client.post(f"/orders/{order['id']}/rating", headers=admin, json={"satisfaction": 5})
        assert rated.json()["data"]["satisfaction_rating"] == 5

    def test_rfq_read_includes_ranked_quotes(self, client, admin, customer, suppliers):
        request = _approved_request(client, admin, customer.id)
        rfq = _published_rfq(client, admin, request["id"])
        _quote(client, admin, rfq["id"], suppliers[0].id, 1000, 5)

        response = client.get(f"/rfqs/{rfq['id']}", headers=admin)
        assert response.json()["success"] is True
        assert len(response.json()["data"]["quotes"]) == 1


class TestErrorMapping:
    """Domain errors map onto status codes inside the error envelope."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "ok"

    def test_missing_token_is_401(self, client):
        response = client.get("/requests/1")
        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_invalid_token_is_401(self, client):
        response = client.get("/requests/1", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401

    def test_body_validation_is_400(self, client, admin):
        response = client.post("/requests", headers=admin, json={"category": "Road freight"})
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "VALIDATION_ERROR"
        assert "customer_id" in body["error"]

    def test_domain_validation_is_400(self, client, admin, customer):
        response = client.post("/requests", headers=admin, json={"customer_id": customer.id})
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_unknown_request_is_404(self, client, admin):
        response = client.get("/requests/9999", headers=admin)
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_other_tenant_sees_404(self, client, auth_headers, customer):
        request = _approved_request(client, auth_headers("admin"), customer.id)
        response = client.get(f"/requests/{request['id']}", headers=auth_headers("admin", org_id=9999))
        assert response.status_code == 404

    def test_operator_cannot_approve(self, client, auth_headers, customer):
        operator = auth_headers("operator")
        created = client.post("/requests", headers=operator, json={
            "customer_id": customer.id, "category": "Road freight",
            "description": "Pallets", "origin": "Rotterdam", "destination": "Milan",
        })
        request_id = created.json()["data"]["id"]
        client.post(f"/requests/{request_id}/submit", headers=operator)

        response = client.post(f"/requests/{request_id}/review", headers=operator, json={"action": "approve"})
        assert response.status_code == 403

    def test_viewer_cannot_create(self, client, auth_headers, customer):
        response = client.post("/requests", headers=auth_headers("viewer"), json={"customer_id": customer.id})
        assert response.status_code == 403

    def test_second_award_is_409(self, client, admin, customer, suppliers):
        request = _approved_request(client, admin, customer.id)
        rfq = _published_rfq(client, admin, request["id"])
        first = _quote(client, admin, rfq["id"], suppliers[0].id, 1000, 5).json()["data"]
        second = _quote(client, admin, rfq["id"], suppliers[1].id, 900, 5).json()["data"]

        client.put(f"/rfqs/{rfq['id']}/award", headers=admin, json={"quoteId": first["id"]})
        response = client.put(f"/rfqs/{rfq['id']}/award", headers=admin, json={"quoteId": second["id"]})
        assert response.status_code == 409
        assert response.json()["code"] == "ALREADY_AWARDED"

    def test_duplicate_quote_is_409(self, client, admin, customer, suppliers):
        request = _approved_request(client, admin, customer.id)
        rfq = _published_rfq(client, admin, request["id"])
        _quote(client, admin, rfq["id"], suppliers[0].id, 1000, 5)
        response = _quote(client, admin, rfq["id"], suppliers[0].id, 990, 5)
        assert response.status_code == 409


class TestAuthContext:
    """Token payloads become tenant-scoped user contexts."""

    @pytest.mark.asyncio
    async def test_user_context_from_payload(self):
        context = await get_current_user_context({"sub": "7", "org_id": 3, "role": "operator"})
        assert context["user_id"] == 7
        assert context["org_id"] == 3
        assert context["role"] == Role.OPERATOR

    @pytest.mark.asyncio
    async def test_missing_tenant_rejected(self):
        with pytest.raises(HTTPException) as exc:
            await get_current_user_context({"sub": "7"})
        assert exc.value.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_role_falls_back_to_viewer(self):
        with pytest.raises(HTTPException) as exc:
            await RBACChecker(Role.OPERATOR)(payload={"sub": "7", "org_id": 3, "role": "superuser"})
        assert exc.value.status_code == 403


class TestListing:
    """Tenant-scoped list endpoints with status filters and paging."""

    def test_rfqs_filter_on_effective_status(self, client, admin, db, customer):
        live = _published_rfq(client, admin, _approved_request(client, admin, customer.id)["id"])
        elapsed = _published_rfq(client, admin, _approved_request(client, admin, customer.id)["id"])
        db.get(RFQ, elapsed["id"]).deadline = utcnow() - timedelta(hours=1)
        db.commit()

        published = client.get("/rfqs", headers=admin, params={"status": "published"}).json()["data"]
        assert [r["id"] for r in published["items"]] == [live["id"]]

        expired = client.get("/rfqs", headers=admin, params={"status": "expired"}).json()["data"]
        assert [r["id"] for r in expired["items"]] == [elapsed["id"]]
        assert expired["items"][0]["status"] == "expired"

        everything = client.get("/rfqs", headers=admin).json()["data"]
        assert everything["total"] == 2
        assert [r["id"] for r in everything["items"]] == [elapsed["id"], live["id"]]

    def test_quotes_filter_by_rfq_supplier_and_status(self, client, admin, customer, suppliers):
        rfq = _published_rfq(client, admin, _approved_request(client, admin, customer.id)["id"])
        a, b, c = suppliers
        ids = [_quote(client, admin, rfq["id"], s.id, 1000, 5).json()["data"]["id"] for s in (a, b, c)]
        client.post(f"/quotes/{ids[1]}/withdraw", headers=admin)

        by_rfq = client.get("/quotes", headers=admin, params={"rfq_id": rfq["id"]}).json()["data"]
        assert by_rfq["total"] == 3
        assert [q["id"] for q in by_rfq["items"]] == ids

        withdrawn = client.get("/quotes", headers=admin, params={"status": "withdrawn"}).json()["data"]
        assert [q["id"] for q in withdrawn["items"]] == [ids[1]]

        by_supplier = client.get("/quotes", headers=admin, params={"supplier_id": c.id}).json()["data"]
        assert [q["supplier_id"] for q in by_supplier["items"]] == [c.id]

    def test_requests_paginate_newest_first(self, client, admin, customer):
        older = _approved_request(client, admin, customer.id)
        newer = _approved_request(client, admin, customer.id)
        client.post("/requests", headers=admin, json={
            "customer_id": customer.id, "category": "Road freight", "description": "Draft only",
            "origin": "Rotterdam", "destination": "Milan",
        })

        first = client.get("/requests", headers=admin, params={"status": "approved", "limit": 1}).json()["data"]
        assert first["total"] == 2
        assert first["limit"] == 1
        assert [r["id"] for r in first["items"]] == [newer["id"]]

        second = client.get(
            "/requests", headers=admin, params={"status": "approved", "limit": 1, "offset": 1}
        ).json()["data"]
        assert [r["id"] for r in second["items"]] == [older["id"]]

        assert client.get("/requests", headers=admin).json()["data"]["total"] == 3

    @pytest.mark.parametrize("path", ["/requests", "/rfqs", "/quotes"])
    def test_unknown_status_is_400(self, client, admin, path):
        response = client.get(path, headers=admin, params={"status": "bogus"})
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_limit_is_capped(self, client, admin):
        response = client.get("/rfqs", headers=admin, params={"limit": 500})
        assert response.status_code == 400

    def test_lists_are_tenant_scoped(self, client, auth_headers, customer, suppliers):
        admin = auth_headers("admin")
        rfq = _published_rfq(client, admin, _approved_request(client, admin, customer.id)["id"])
        _quote(client, admin, rfq["id"], suppliers[0].id, 1000, 5)

        stranger = auth_headers("admin", org_id=9999)
        for path in ("/requests", "/rfqs", "/quotes"):
            body = client.get(path, headers=stranger).json()["data"]
            assert body["total"] == 0
            assert body["items"] == []

    def test_viewer_can_list(self, client, auth_headers):
        response = client.get("/rfqs", headers=auth_headers("viewer"))
        assert response.status_code == 200
        assert response.json()["data"]["offset"] == 0


class TestRouting:
    """Route handlers are plain functions so blocking work runs in the threadpool."""

    def test_handlers_are_synchronous(self, client):
        handlers = [r.endpoint for r in client.app.routes if isinstance(r, APIRoute) and r.path != "/health"]
        assert handlers
        assert not [h.__name__ for h in handlers if inspect.iscoroutinefunction(h)]
