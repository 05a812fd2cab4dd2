"""End-to-end order flows through the DRF endpoints (stub collaborators)."""

from decimal import Decimal

import pytest

from apps.escrow.domain import GatewayResult
from apps.escrow.providers import STUBS

ORDERS = "/api/orders/"


def _as(actor):
    return {"HTTP_X_ACTOR_ID": actor}


def _post(client, url, actor, data=None, **extra):
    return client.post(url, data=data or {}, content_type="application/json", **_as(actor), **extra)


def _create(client, actor="b1", **payload):
    body = {"product_id": "p1", "mode": "direct"}
    body.update(payload)
    return _post(client, ORDERS, actor, body)


def test_ping(client):
    r = client.get(ORDERS + "ping/")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


@pytest.mark.django_db
def test_missing_actor_is_unauthenticated(client, stubs):
    r = client.post(ORDERS, data={"product_id": "p1"}, content_type="application/json")
    assert r.status_code == 401
    assert r.json()["detail"] == "UNAUTHENTICATED"


@pytest.mark.django_db
def test_direct_order_full_flow(client, stubs):
    r = _create(client)
    assert r.status_code == 201
    order = r.json()
    assert order["mode"] == "DIRECT"
    assert order["status"] == "CREATED"
    assert Decimal(order["payable_amount"]) == Decimal("10000")
    oid = order["id"]

    r = _post(client, f"{ORDERS}{oid}/payment/", "b1")
    assert r.status_code == 200
    assert r.json()["status"] == "ESCROW_FUNDED"
    assert r.json()["escrow_state"] == "OPEN"
    assert stubs.catalog.get_listing("p1").available is False

    r = _post(client, f"{ORDERS}{oid}/seller-confirmation/", "s1")
    assert r.status_code == 200
    assert r.json()["status"] == "SELLER_CONFIRMED"

    r = _post(client, f"{ORDERS}{oid}/delivery/", "b1")
    assert r.status_code == 200
    done = r.json()
    assert done["status"] == "COMPLETED"
    assert done["escrow_state"] == "RELEASED"
    assert done["release_reference"]

    r = _post(client, f"{ORDERS}{oid}/delivery/", "b1")
    assert r.status_code == 409
    assert r.json()["detail"] == "ALREADY_COMPLETED"
    assert r.json()["order"]["status"] == "COMPLETED"
    assert stubs.escrow.release_calls == 1

    r = client.get("/api/rewards/b1/total/", **_as("b1"))
    assert r.status_code == 200
    assert Decimal(r.json()["total"]) == Decimal("5000")


@pytest.mark.django_db
def test_negotiation_flow(client, stubs):
    r = _create(client, mode="NEGOTIATION", proposed_price="8000")
    assert r.status_code == 201
    oid = r.json()["id"]
    assert r.json()["negotiation_state"] == "PROPOSAL_PENDING"

    r = _post(client, f"{ORDERS}{oid}/payment/", "b1")
    assert r.status_code == 409
    assert r.json()["detail"] == "NO_ACTIVE_PROPOSAL"

    r = _post(client, f"{ORDERS}{oid}/accept/", "b1")
    assert r.status_code == 403
    assert r.json()["detail"] == "NOT_SELLER"

    r = _post(client, f"{ORDERS}{oid}/reject/", "s1")
    assert r.status_code == 400

    r = _post(client, f"{ORDERS}{oid}/reject/", "s1", {"confirm": True})
    assert r.status_code == 200
    assert r.json()["negotiation_state"] == "REJECTED"

    r = _post(client, f"{ORDERS}{oid}/proposals/", "b1", {"proposed_price": "9000"})
    assert r.status_code == 422
    assert r.json()["detail"] == "INVALID_PROPOSAL"

    r = _post(client, f"{ORDERS}{oid}/proposals/", "b1", {"proposed_price": "7000"})
    assert r.status_code == 200
    assert r.json()["negotiation_state"] == "PROPOSAL_PENDING"

    r = _post(client, f"{ORDERS}{oid}/accept/", "s1")
    assert r.status_code == 200
    assert Decimal(r.json()["final_price"]) == Decimal("7000")

    r = _post(client, f"{ORDERS}{oid}/payment/", "b1")
    assert r.status_code == 200
    assert Decimal(r.json()["payable_amount"]) == Decimal("7000")

    r = client.get(f"{ORDERS}{oid}/messages/", **_as("s1"))
    assert r.status_code == 200
    assert len(r.json()["results"]) == 5


@pytest.mark.django_db
def test_create_errors(client, stubs):
    assert _create(client, product_id="missing").json()["detail"] == "PRODUCT_NOT_FOUND"
    assert _create(client, actor="s1").status_code == 403
    assert _create(client, mode="NEGOTIATION", proposed_price="10000").status_code == 422
    assert _create(client, mode="barter").status_code == 400


@pytest.mark.django_db
def test_reads_are_private(client, stubs):
    oid = _create(client).json()["id"]
    assert client.get(f"{ORDERS}{oid}/", **_as("s1")).status_code == 200
    r = client.get(f"{ORDERS}{oid}/", **_as("mallory"))
    assert r.status_code == 403
    assert r.json()["order"] is None
    assert client.get(f"{ORDERS}{oid}/messages/", **_as("mallory")).status_code == 403
    assert client.get("/api/rewards/b1/total/", **_as("mallory")).status_code == 403


@pytest.mark.django_db
def test_unknown_order(client, stubs):
    r = client.get(f"{ORDERS}00000000-0000-0000-0000-000000000000/", **_as("b1"))
    assert r.status_code == 404
    assert r.json()["detail"] == "ORDER_NOT_FOUND"


@pytest.mark.django_db
def test_list_orders(client, stubs):
    _create(client)
    _create(client)
    r = client.get(ORDERS + "?role=buyer&page_size=1", **_as("b1"))
    assert r.status_code == 200
    assert r.json()["count"] == 2
    assert len(r.json()["results"]) == 1

    assert client.get(ORDERS + "?role=seller", **_as("b1")).json()["count"] == 0
    assert client.get(ORDERS, **_as("s1")).json()["count"] == 2
    assert client.get(ORDERS + "?role=admin", **_as("b1")).status_code == 400


@pytest.mark.django_db
def test_declined_direct_payment_deletes_order(client, stubs, monkeypatch):
    monkeypatch.setattr(STUBS.escrow, "submit", lambda *a: GatewayResult.rejected("CARD_DECLINED"))
    oid = _create(client).json()["id"]

    r = _post(client, f"{ORDERS}{oid}/payment/", "b1")
    assert r.status_code == 402
    assert r.json()["order_deleted"] is True
    assert client.get(f"{ORDERS}{oid}/", **_as("b1")).status_code == 404
    assert stubs.catalog.get_listing("p1").available is True


@pytest.mark.django_db
def test_missing_payout_address(client, stubs):
    stubs.directory.clear()
    oid = _create(client).json()["id"]
    r = _post(client, f"{ORDERS}{oid}/payment/", "b1")
    assert r.status_code == 422
    assert r.json()["detail"] == "SELLER_ADDRESS_MISSING"
    assert stubs.escrow.lock_calls == 0


@pytest.mark.django_db
@pytest.mark.parametrize("price", ["9999.9999999", "0.0000001"])
def test_proposal_finer_than_stored_precision_is_refused(client, stubs, price):
    r = _create(client, mode="NEGOTIATION", proposed_price=price)
    assert r.status_code == 422
    assert r.json()["detail"] == "INVALID_PROPOSAL"
    assert client.get(ORDERS, **_as("b1")).json()["count"] == 0


@pytest.mark.django_db
def test_stored_proposal_matches_checked_price(client, stubs):
    oid = _create(client, mode="NEGOTIATION", proposed_price="9999.999999").json()["id"]
    r = _post(client, f"{ORDERS}{oid}/accept/", "s1")
    assert r.status_code == 200
    final = Decimal(r.json()["final_price"])
    assert final == Decimal("9999.999999")
    assert final < Decimal(r.json()["listing_price"])
