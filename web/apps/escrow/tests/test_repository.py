"""ORM-backed ports: CAS writes, ledger uniqueness, message history."""

import uuid
from decimal import Decimal

import pytest

from apps.escrow.domain import EscrowState, Order, OrderMode, OrderStatus, RewardReason
from apps.escrow.errors import ConcurrentUpdateError, OrderNotFoundError
from apps.escrow.repository import DjangoNotifier, DjangoOrderStore, DjangoRewardLedger


def _new_order(buyer="b1", seller="s1"):
    return Order(
        id=str(uuid.uuid4()),
        buyer_id=buyer,
        seller_id=seller,
        product_id="p1",
        mode=OrderMode.NEGOTIATION,
        listing_price=Decimal("10000"),
        proposed_price=Decimal("8000"),
    )


@pytest.mark.django_db
def test_create_and_get_roundtrip():
    store = DjangoOrderStore()
    created = store.create(_new_order())
    got = store.get(created.id)
    assert got.mode is OrderMode.NEGOTIATION
    assert got.status is OrderStatus.CREATED
    assert got.proposed_price == Decimal("8000")
    assert got.version == 1
    assert got.created_at is not None


@pytest.mark.django_db
def test_missing_and_malformed_ids_are_not_found():
    store = DjangoOrderStore()
    with pytest.raises(OrderNotFoundError):
        store.get(str(uuid.uuid4()))
    with pytest.raises(OrderNotFoundError):
        store.get("not-a-uuid")


@pytest.mark.django_db
def test_update_bumps_version_and_converts_enums():
    store = DjangoOrderStore()
    order = store.create(_new_order())
    updated = store.update(order.id, 1, {"escrow_state": EscrowState.CANCELLED})
    assert updated.version == 2
    assert updated.escrow_state is EscrowState.CANCELLED


@pytest.mark.django_db
def test_stale_update_raises_with_current_state():
    store = DjangoOrderStore()
    order = store.create(_new_order())
    store.update(order.id, 1, {"final_price": Decimal("8000")})

    with pytest.raises(ConcurrentUpdateError) as e:
        store.update(order.id, 1, {"escrow_state": EscrowState.CANCELLED})
    assert e.value.order.version == 2
    assert store.get(order.id).escrow_state is EscrowState.NONE


@pytest.mark.django_db
def test_delete_is_compare_and_swap():
    store = DjangoOrderStore()
    order = store.create(_new_order())
    store.update(order.id, 1, {"final_price": Decimal("8000")})
    with pytest.raises(ConcurrentUpdateError):
        store.delete(order.id, 1)
    store.delete(order.id, 2)
    with pytest.raises(OrderNotFoundError):
        store.get(order.id)


@pytest.mark.django_db
def test_list_for_user_by_role():
    store = DjangoOrderStore()
    a = store.create(_new_order(buyer="u1", seller="s1"))
    b = store.create(_new_order(buyer="b2", seller="u1"))
    assert [o.id for o in store.list_for_user("u1", "buyer")] == [a.id]
    assert [o.id for o in store.list_for_user("u1", "seller")] == [b.id]
    assert {o.id for o in store.list_for_user("u1")} == {a.id, b.id}


@pytest.mark.django_db
def test_ledger_ignores_duplicate_credits():
    ledger = DjangoRewardLedger()
    assert ledger.credit("b1", "o1", Decimal("40.00"), RewardReason.EARN_BUY) is True
    assert ledger.credit("b1", "o1", Decimal("40.00"), RewardReason.EARN_BUY) is False
    assert ledger.credit("s1", "o1", Decimal("40.00"), RewardReason.EARN_SELL) is True
    assert ledger.total_for_user("b1") == Decimal("40.00")
    assert ledger.total_for_user("nobody") == Decimal("0")
    assert len(ledger.entries_for_order("o1")) == 2


@pytest.mark.django_db
def test_notifier_history_in_order():
    notifier = DjangoNotifier()
    notifier.post("o1", "b1", "first")
    notifier.post("o1", "s1", "second")
    notifier.post("o2", "b1", "other")
    assert [m.text for m in notifier.history("o1")] == ["first", "second"]
