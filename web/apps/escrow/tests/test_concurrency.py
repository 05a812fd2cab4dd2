"""Compare-and-swap guards on racing transitions."""

import logging
import threading

import pytest

from apps.escrow.adapters import InMemoryOrderStore
from apps.escrow.domain import EscrowState, NegotiationState, OrderStatus
from apps.escrow.errors import (
    AlreadyCompletedError,
    ConcurrentUpdateError,
    LifecycleError,
    PartialCommitError,
    WrongStatusForTransitionError,
)

from .factories import build_world


class RacingStore(InMemoryOrderStore):
    """Holds every reader at a barrier so both racers see the same version."""

    def __init__(self, parties=2):
        super().__init__()
        self.barrier = None
        self.parties = parties

    def arm(self):
        self.barrier = threading.Barrier(self.parties, timeout=5)

    def get(self, order_id):
        order = super().get(order_id)
        if self.barrier is not None:
            self.barrier.wait()
        return order


def _race(*calls):
    results = [None] * len(calls)

    def run(i, fn):
        try:
            results[i] = fn()
        except LifecycleError as e:
            results[i] = e

    threads = [threading.Thread(target=run, args=(i, fn)) for i, fn in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return results


def test_two_accepts_one_wins():
    store = RacingStore()
    w = build_world(store=store)
    order = w.svc.create_order("b1", "p1", "NEGOTIATION", proposed_price="8000")

    store.arm()
    results = _race(
        lambda: w.svc.accept_proposal("s1", order.id),
        lambda: w.svc.accept_proposal("s1", order.id),
    )
    store.barrier = None

    conflicts = [r for r in results if isinstance(r, ConcurrentUpdateError)]
    winners = [r for r in results if not isinstance(r, LifecycleError)]
    assert len(conflicts) == 1 and len(winners) == 1
    assert conflicts[0].http_status == 409
    assert conflicts[0].order.version == 2
    assert store.get(order.id).version == 2


def test_accept_racing_reject_never_overwrites():
    store = RacingStore()
    w = build_world(store=store)
    order = w.svc.create_order("b1", "p1", "NEGOTIATION", proposed_price="8000")

    store.arm()
    results = _race(
        lambda: w.svc.accept_proposal("s1", order.id),
        lambda: w.svc.reject_proposal("s1", order.id),
    )
    store.barrier = None

    assert sum(isinstance(r, ConcurrentUpdateError) for r in results) == 1
    final = store.get(order.id)
    winner = next(r for r in results if not isinstance(r, LifecycleError))
    assert final.negotiation_state is winner.negotiation_state
    assert final.negotiation_state in (NegotiationState.ACCEPTED, NegotiationState.REJECTED)


def test_two_deliveries_release_once_and_loser_sees_completed(caplog):
    store = RacingStore()
    w = build_world(store=store)
    order = w.svc.create_order("b1", "p1", "DIRECT")
    w.svc.submit_payment("b1", order.id)
    w.svc.confirm_seller_acceptance("s1", order.id)

    store.arm()
    with caplog.at_level(logging.INFO, logger="apps.escrow.effects"):
        results = _race(
            lambda: w.svc.confirm_delivery("b1", order.id),
            lambda: w.svc.confirm_delivery("b1", order.id),
        )
    store.barrier = None

    losers = [r for r in results if isinstance(r, LifecycleError)]
    winners = [r for r in results if not isinstance(r, LifecycleError)]
    assert len(winners) == 1 and len(losers) == 1
    assert not isinstance(losers[0], PartialCommitError)
    assert isinstance(losers[0], AlreadyCompletedError)
    assert losers[0].http_status == 409
    assert losers[0].order.release_reference == winners[0].release_reference
    assert not any(r.levelno == logging.CRITICAL for r in caplog.records)

    final = store.get(order.id)
    assert final.status is OrderStatus.COMPLETED
    assert final.escrow_state is EscrowState.RELEASED
    assert len(w.ledger.entries_for_order(order.id)) == 2


def test_two_payments_lock_once_and_loser_sees_funded_order():
    store = RacingStore()
    w = build_world(store=store)
    order = w.svc.create_order("b1", "p1", "DIRECT")

    store.arm()
    results = _race(
        lambda: w.svc.submit_payment("b1", order.id),
        lambda: w.svc.submit_payment("b1", order.id),
    )
    store.barrier = None

    losers = [r for r in results if isinstance(r, LifecycleError)]
    winners = [r for r in results if not isinstance(r, LifecycleError)]
    assert len(winners) == 1 and len(losers) == 1
    assert isinstance(losers[0], WrongStatusForTransitionError)
    assert losers[0].order.status is OrderStatus.ESCROW_FUNDED
    assert losers[0].order.escrow_reference == winners[0].escrow_reference
    assert store.get(order.id).version == 2


def test_stale_version_is_rejected_by_store():
    store = InMemoryOrderStore()
    w = build_world(store=store)
    order = w.svc.create_order("b1", "p1", "NEGOTIATION", proposed_price="8000")
    store.update(order.id, order.version, {"final_price": order.proposed_price})

    with pytest.raises(ConcurrentUpdateError) as e:
        store.update(order.id, order.version, {"escrow_state": "CANCELLED"})
    assert e.value.expected_version == 1
    assert e.value.order.version == 2


def test_store_refuses_managed_fields():
    store = InMemoryOrderStore()
    w = build_world(store=store)
    order = w.svc.create_order("b1", "p1", "DIRECT")
    with pytest.raises(ValueError):
        store.update(order.id, order.version, {"version": 10})
