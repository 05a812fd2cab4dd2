"""Typed errors raised by the order lifecycle.

Every error carries a short upper-case ``code`` (the value returned to
clients in ``detail``), an HTTP status used by the views, and, whenever an
order exists, the authoritative order snapshot at the time of the failure
so the caller can re-render the real state.

Kinds:
  authorization  NOT_BUYER, NOT_SELLER, NOT_PARTICIPANT, SELF_TRADE_NOT_ALLOWED
  state          NO_ACTIVE_PROPOSAL, ALREADY_COMPLETED,
                 WRONG_STATUS_FOR_TRANSITION, CONCURRENT_UPDATE
  validation     INVALID_PROPOSAL
  precondition   SELLER_ADDRESS_MISSING, PRODUCT_NOT_FOUND,
                 PRODUCT_UNAVAILABLE, ORDER_NOT_FOUND
  gateway        PAYMENT_FAILED, RELEASE_FAILED, UPSTREAM_UNAVAILABLE
  partial commit PARTIAL_COMMIT
"""

from typing import Optional

from .domain import Order


class LifecycleError(Exception):
    """Base error for lifecycle operations."""

    kind = "lifecycle"

    def __init__(
        self,
        code: str,
        message: str,
        http_status: int = 400,
        order: Optional[Order] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.http_status = http_status
        self.order = order
        super().__init__(code)

    def to_dict(self) -> dict:
        return {
            "detail": self.code,
            "message": self.message,
            "order": self.order.snapshot() if self.order is not None else None,
        }


# --- authorization ---

class AuthorizationError(LifecycleError):
    kind = "authorization"


class NotBuyerError(AuthorizationError):
    def __init__(self, order: Order) -> None:
        super().__init__("NOT_BUYER", "Only the buyer may perform this action", 403, order)


class NotSellerError(AuthorizationError):
    def __init__(self, order: Order) -> None:
        super().__init__("NOT_SELLER", "Only the seller may perform this action", 403, order)


class NotParticipantError(AuthorizationError):
    def __init__(self, order_id: str) -> None:
        # no snapshot: outsiders must not learn anything about the order
        super().__init__("NOT_PARTICIPANT", f"Actor is not a party to order {order_id}", 403)


class SelfTradeNotAllowedError(AuthorizationError):
    def __init__(self, product_id: str) -> None:
        super().__init__(
            "SELF_TRADE_NOT_ALLOWED", f"Cannot buy your own product {product_id}", 403
        )


# --- state ---

class StateError(LifecycleError):
    kind = "state"


class NoActiveProposalError(StateError):
    def __init__(self, order: Order) -> None:
        super().__init__("NO_ACTIVE_PROPOSAL", "No negotiation round in the required state", 409, order)


class AlreadyCompletedError(StateError):
    def __init__(self, order: Order) -> None:
        super().__init__("ALREADY_COMPLETED", f"Order {order.id} is already completed", 409, order)


class WrongStatusForTransitionError(StateError):
    def __init__(self, order: Order, expected: str) -> None:
        super().__init__(
            "WRONG_STATUS_FOR_TRANSITION",
            f"Order {order.id} is {order.status.value}, expected {expected}",
            409,
            order,
        )


class ConcurrentUpdateError(StateError):
    """The stored order changed between read and write (CAS mismatch)."""

    def __init__(self, order_id: str, expected_version: int, current: Optional[Order] = None) -> None:
        self.expected_version = expected_version
        super().__init__(
            "CONCURRENT_UPDATE",
            f"Order {order_id} was modified concurrently (expected version {expected_version})",
            409,
            current,
        )


# --- validation ---

class InvalidProposalError(LifecycleError):
    kind = "validation"

    def __init__(self, detail: str, order: Optional[Order] = None) -> None:
        super().__init__("INVALID_PROPOSAL", detail, 422, order)


# --- precondition / lookup ---

class PreconditionError(LifecycleError):
    kind = "precondition"


class SellerAddressMissingError(PreconditionError):
    def __init__(self, order: Order) -> None:
        super().__init__(
            "SELLER_ADDRESS_MISSING",
            f"Seller {order.seller_id} has no registered payout address",
            422,
            order,
        )


class ProductNotFoundError(PreconditionError):
    def __init__(self, product_id: str) -> None:
        super().__init__("PRODUCT_NOT_FOUND", f"Product not found: {product_id}", 404)


class ProductUnavailableError(PreconditionError):
    def __init__(self, product_id: str) -> None:
        super().__init__("PRODUCT_UNAVAILABLE", f"Product is not available: {product_id}", 409)


class OrderNotFoundError(PreconditionError):
    def __init__(self, order_id: str) -> None:
        super().__init__("ORDER_NOT_FOUND", f"Order not found: {order_id}", 404)


# --- external gateways ---

class GatewayError(LifecycleError):
    kind = "gateway"

    def __init__(
        self,
        code: str,
        message: str,
        retriable: bool,
        http_status: int,
        order: Optional[Order] = None,
    ) -> None:
        self.retriable = retriable
        super().__init__(code, message, 503 if retriable else http_status, order)

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["retriable"] = self.retriable
        return body


class PaymentFailedError(GatewayError):
    def __init__(
        self,
        reason: str,
        retriable: bool,
        order: Optional[Order] = None,
        order_deleted: bool = False,
    ) -> None:
        self.reason = reason
        self.order_deleted = order_deleted
        super().__init__("PAYMENT_FAILED", f"Payment failed: {reason}", retriable, 402, order)

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["order_deleted"] = self.order_deleted
        return body


class ReleaseFailedError(GatewayError):
    def __init__(self, reason: str, retriable: bool, order: Optional[Order] = None) -> None:
        self.reason = reason
        super().__init__("RELEASE_FAILED", f"Release failed: {reason}", retriable, 502, order)


class UpstreamUnavailableError(GatewayError):
    """A collaborator (catalog, directory) could not be reached after retries."""

    def __init__(self, service: str) -> None:
        self.service = service
        super().__init__("UPSTREAM_UNAVAILABLE", f"{service} is unavailable", True, 503)


# --- partial commit ---

class PartialCommitError(LifecycleError):
    """Funds moved but the order could not be committed.

    Requires manual reconciliation. Callers must never resubmit the gateway
    call that produced ``gateway_reference``.
    """

    kind = "partial_commit"

    def __init__(self, order: Order, step: str, gateway_reference: str, cause: Exception) -> None:
        self.step = step
        self.gateway_reference = gateway_reference
        self.cause = cause
        super().__init__(
            "PARTIAL_COMMIT",
            f"{step} succeeded with reference {gateway_reference} but order {order.id} "
            f"could not be committed: {cause}",
            500,
            order,
        )

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["step"] = self.step
        body["gateway_reference"] = self.gateway_reference
        return body
