"""Domain models and ports for escrow-backed marketplace orders.

This module contains the dataclasses used as DTOs for orders, listings and
gateway outcomes, the enumerations that describe the order lifecycle, and
the protocol definitions (ports) for every external collaborator of the
lifecycle service: the order store, the payment and release gateways, the
reward ledger, the notifier, the product catalog and the seller directory.

Nothing here performs I/O. Concrete implementations live in
``adapters`` (in-process), ``repository`` (Django ORM) and
``http_adapters`` (httpx).
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Protocol


# ---- Enums ----
class OrderMode(str, Enum):
    """How the price of an order is agreed. Fixed at creation."""

    DIRECT = "DIRECT"
    NEGOTIATION = "NEGOTIATION"


class OrderStatus(str, Enum):
    """Main lifecycle status. Only ever moves forward."""

    CREATED = "CREATED"
    ESCROW_FUNDED = "ESCROW_FUNDED"
    SELLER_CONFIRMED = "SELLER_CONFIRMED"
    COMPLETED = "COMPLETED"


class EscrowState(str, Enum):
    """Custody of the funds, tracked independently of ``OrderStatus``."""

    NONE = "NONE"
    OPEN = "OPEN"
    RELEASED = "RELEASED"
    CANCELLED = "CANCELLED"


class NegotiationState(str, Enum):
    """Derived sub-state of a negotiation-mode order."""

    PROPOSAL_PENDING = "PROPOSAL_PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    CLOSED = "CLOSED"


class RewardReason(str, Enum):
    EARN_BUY = "EARN_BUY"
    EARN_SELL = "EARN_SELL"


# ---- Entities / DTOs ----
@dataclass
class Order:
    """The transaction of record.

    Attributes:
        id: Opaque identifier (UUID string).
        buyer_id: Actor that created the order.
        seller_id: Owner of the listed product.
        product_id: Catalog reference.
        mode: ``OrderMode``; never changes after creation.
        listing_price: Catalog price captured when the order was created.
        status: Current ``OrderStatus``.
        escrow_state: Current ``EscrowState``.
        proposed_price: Outstanding (or last rejected) buyer proposal.
        final_price: Accepted proposal; authoritative payable amount.
        escrow_reference: Token returned by the payment gateway.
        release_reference: Token returned by the release gateway.
        version: Optimistic-concurrency counter; every write must present
            the version it read.
    """

    id: str
    buyer_id: str
    seller_id: str
    product_id: str
    mode: OrderMode
    listing_price: Decimal
    status: OrderStatus = OrderStatus.CREATED
    escrow_state: EscrowState = EscrowState.NONE
    proposed_price: Optional[Decimal] = None
    final_price: Optional[Decimal] = None
    escrow_reference: Optional[str] = None
    release_reference: Optional[str] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def payable_amount(self) -> Decimal:
        """Amount charged by the payment gateway.

        ``final_price`` once a proposal was accepted, the listing price for
        Direct orders, and the pending proposal (informational only) for a
        negotiation that has not been accepted yet.
        """
        if self.final_price is not None:
            return self.final_price
        if self.mode is OrderMode.DIRECT or self.proposed_price is None:
            return self.listing_price
        return self.proposed_price

    @property
    def negotiation_state(self) -> Optional[NegotiationState]:
        if self.mode is not OrderMode.NEGOTIATION:
            return None
        if self.escrow_state in (EscrowState.OPEN, EscrowState.RELEASED):
            return NegotiationState.CLOSED
        if self.escrow_state is EscrowState.CANCELLED:
            return NegotiationState.REJECTED
        if self.final_price is not None:
            return NegotiationState.ACCEPTED
        if self.proposed_price is not None:
            return NegotiationState.PROPOSAL_PENDING
        return None

    def is_participant(self, actor_id: str) -> bool:
        return actor_id in (self.buyer_id, self.seller_id)

    def snapshot(self) -> dict:
        """JSON-friendly view used in error payloads and notifications."""
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "product_id": self.product_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "escrow_state": self.escrow_state.value,
            "listing_price": str(self.listing_price),
            "proposed_price": _opt_str(self.proposed_price),
            "final_price": _opt_str(self.final_price),
            "payable_amount": str(self.payable_amount),
            "escrow_reference": self.escrow_reference,
            "release_reference": self.release_reference,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def _opt_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


@dataclass(frozen=True)
class Listing:
    """Catalog view of a product as needed to open an order."""

    product_id: str
    seller_id: str
    price: Decimal
    available: bool = True


@dataclass(frozen=True)
class GatewayResult:
    """Outcome of a payment or release attempt.

    Attributes:
        ok: True when funds moved.
        reference: Opaque gateway token; required when ``ok`` is True.
        reason: Short failure code when ``ok`` is False.
        retriable: True for transport/timeout style failures, False when
            the gateway explicitly rejected the request.
        simulated: True when the gateway only simulated the settlement.
    """

    ok: bool
    reference: Optional[str] = None
    reason: Optional[str] = None
    retriable: bool = False
    simulated: bool = False

    @classmethod
    def success(cls, reference: str, simulated: bool = False) -> "GatewayResult":
        return cls(ok=True, reference=reference, simulated=simulated)

    @classmethod
    def rejected(cls, reason: str) -> "GatewayResult":
        return cls(ok=False, reason=reason, retriable=False)

    @classmethod
    def unavailable(cls, reason: str = "UPSTREAM_UNAVAILABLE") -> "GatewayResult":
        return cls(ok=False, reason=reason, retriable=True)


@dataclass(frozen=True)
class RewardEntry:
    user_id: str
    order_id: str
    amount: Decimal
    reason: RewardReason
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class OrderMessage:
    order_id: str
    author_id: str
    text: str
    created_at: Optional[datetime] = field(default=None, compare=False)


# ---- Ports (DIP) ----
class OrderStorePort(Protocol):
    """Keyed storage for orders with compare-and-swap writes.

    ``update`` and ``delete`` must reject the write with
    ``ConcurrentUpdateError`` when the stored version differs from
    ``expected_version``.
    """

    def get(self, order_id: str) -> Order:
        raise NotImplementedError()

    def create(self, order: Order) -> Order:
        raise NotImplementedError()

    def update(self, order_id: str, expected_version: int, patch: dict) -> Order:
        raise NotImplementedError()

    def delete(self, order_id: str, expected_version: int) -> None:
        raise NotImplementedError()

    def list_for_user(self, user_id: str, role: Optional[str] = None) -> List[Order]:
        raise NotImplementedError()


class PaymentGatewayPort(Protocol):
    """Moves funds into escrow."""

    def submit(self, order_id: str, amount: Decimal, destination_address: str) -> GatewayResult:
        raise NotImplementedError()


class ReleaseGatewayPort(Protocol):
    """Releases escrowed funds to the seller."""

    def release(
        self,
        order_id: str,
        escrow_reference: str,
        destination_address: str,
        amount: Decimal,
    ) -> GatewayResult:
        raise NotImplementedError()


class RewardLedgerPort(Protocol):
    """Append-only ledger of reward credits.

    ``credit`` is a no-op when an entry for ``(order_id, user_id, reason)``
    already exists; it returns True only when a new entry was written.
    """

    def credit(self, user_id: str, order_id: str, amount: Decimal, reason: RewardReason) -> bool:
        raise NotImplementedError()

    def entries_for_order(self, order_id: str) -> List[RewardEntry]:
        raise NotImplementedError()

    def total_for_user(self, user_id: str) -> Decimal:
        raise NotImplementedError()


class NotifierPort(Protocol):
    """Appends system messages to an order's conversation."""

    def post(self, order_id: str, author_id: str, text: str) -> None:
        raise NotImplementedError()

    def history(self, order_id: str) -> List[OrderMessage]:
        raise NotImplementedError()


class ProductCatalogPort(Protocol):
    def get_listing(self, product_id: str) -> Optional[Listing]:
        raise NotImplementedError()

    def set_unavailable(self, product_id: str) -> None:
        raise NotImplementedError()


class SellerDirectoryPort(Protocol):
    def get_payout_address(self, seller_id: str) -> Optional[str]:
        raise NotImplementedError()
