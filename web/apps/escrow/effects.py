"""Two-phase orchestration of fund movements.

Payment and release are modelled as two explicit phases:

1. *attempt*: call the external gateway and normalize its outcome into a
   ``GatewayResult`` (``attempt_lock`` / ``attempt_release``);
2. *commit*: write the resulting state with a compare-and-swap on the
   version read before the attempt (``commit_after_effect``).

A failed commit after a successful attempt is never retried here: it is
raised as ``PartialCommitError`` and logged at CRITICAL so the gateway
reference can be reconciled by hand. The exception is a lost race against a
writer that already committed the same gateway reference: funds moved once
and the caller gets the usual state error. Effects that run after a commit
(product status, ledger, notifier) go through ``after_commit`` and cannot
undo the committed transition.
"""

import logging
import time
from typing import Callable

from .domain import GatewayResult, Order, OrderStatus, OrderStorePort, PaymentGatewayPort, ReleaseGatewayPort
from .errors import (
    AlreadyCompletedError,
    ConcurrentUpdateError,
    PartialCommitError,
    WrongStatusForTransitionError,
)

logger = logging.getLogger(__name__)


def _normalize(step: str, order: Order, result: GatewayResult, started: float) -> GatewayResult:
    elapsed_ms = int((time.monotonic() - started) * 1000)
    if result.ok and not result.reference:
        # funds may have moved; a retry is safe because gateway calls are keyed by order id
        logger.error(
            "gateway reported success without reference",
            extra={"step": step, "order_id": order.id, "elapsed_ms": elapsed_ms},
        )
        return GatewayResult.unavailable("MISSING_REFERENCE")
    logger.info(
        "gateway attempt finished",
        extra={
            "step": step,
            "order_id": order.id,
            "ok": result.ok,
            "reason": result.reason,
            "retriable": result.retriable,
            "simulated": result.simulated,
            "elapsed_ms": elapsed_ms,
        },
    )
    return result


def attempt_lock(gateway: PaymentGatewayPort, order: Order, destination_address: str) -> GatewayResult:
    """Ask the payment gateway to move ``order.payable_amount`` into escrow.

    Unexpected exceptions from the adapter are reported as a retriable
    failure: the order stays untouched and the buyer may try again.
    """
    started = time.monotonic()
    try:
        result = gateway.submit(order.id, order.payable_amount, destination_address)
    except Exception as exc:
        logger.exception("payment gateway call raised", extra={"order_id": order.id})
        return GatewayResult.unavailable(type(exc).__name__)
    return _normalize("escrow_lock", order, result, started)


def attempt_release(gateway: ReleaseGatewayPort, order: Order, destination_address: str) -> GatewayResult:
    """Ask the release gateway to pay the escrowed amount out to the seller."""
    started = time.monotonic()
    try:
        result = gateway.release(
            order.id, order.escrow_reference, destination_address, order.payable_amount
        )
    except Exception as exc:
        logger.exception("release gateway call raised", extra={"order_id": order.id})
        return GatewayResult.unavailable(type(exc).__name__)
    return _normalize("escrow_release", order, result, started)


def _lost_race(order: Order, current: Order):
    if current.status is OrderStatus.COMPLETED:
        return AlreadyCompletedError(current)
    return WrongStatusForTransitionError(current, order.status.value)


def commit_after_effect(
    store: OrderStorePort,
    order: Order,
    step: str,
    reference: str,
    patch: dict,
    reference_field: str,
) -> Order:
    """Commit ``patch`` on the version of ``order`` that was read before the effect.

    ``reference_field`` names the order field the patch writes ``reference``
    into. If the write loses a compare-and-swap to a transition that already
    stored the same reference there, the effect was applied exactly once and
    the caller gets a state error carrying the current order.

    Raises:
        AlreadyCompletedError, WrongStatusForTransitionError: If a concurrent
            writer already committed this gateway reference.
        PartialCommitError: If the write fails for any other reason.
    """
    try:
        return store.update(order.id, order.version, patch)
    except ConcurrentUpdateError as exc:
        current = exc.order
        if current is not None and getattr(current, reference_field) == reference:
            logger.info(
                "commit lost to a concurrent writer with the same gateway reference",
                extra={"step": step, "order_id": order.id, "gateway_reference": reference},
            )
            raise _lost_race(order, current) from exc
        _log_partial(order, step, reference, exc)
        raise PartialCommitError(order, step, reference, exc) from exc
    except Exception as exc:
        _log_partial(order, step, reference, exc)
        raise PartialCommitError(order, step, reference, exc) from exc


def _log_partial(order: Order, step: str, reference: str, exc: Exception) -> None:
    logger.critical(
        "partial commit: gateway succeeded but order write failed",
        extra={
            "step": step,
            "order_id": order.id,
            "expected_version": order.version,
            "gateway_reference": reference,
            "error": repr(exc),
        },
    )


def after_commit(effect: str, order_id: str, fn: Callable, *args) -> bool:
    """Run a follow-up effect of an already committed transition.

    Returns:
        bool: True if the effect ran, False if it raised (the error is logged
        with its traceback for reconciliation).
    """
    try:
        fn(*args)
        return True
    except Exception:
        logger.exception("after-commit effect failed", extra={"effect": effect, "order_id": order_id})
        return False
