"""In-process stub adapters for the escrow domain ports.

These stubs implement every port without any network or database access.
They are intended for unit tests and local development where deterministic
behavior is useful and the external services are not required.
"""

import threading
import uuid
from dataclasses import fields, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from .domain import (
    GatewayResult,
    Listing,
    NotifierPort,
    Order,
    OrderMessage,
    OrderStorePort,
    PaymentGatewayPort,
    ProductCatalogPort,
    ReleaseGatewayPort,
    RewardEntry,
    RewardLedgerPort,
    RewardReason,
    SellerDirectoryPort,
)
from .errors import ConcurrentUpdateError, OrderNotFoundError

ORDER_FIELDS = {f.name for f in fields(Order)}
READONLY_FIELDS = {"id", "version", "created_at", "updated_at"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def check_patch(patch: dict) -> None:
    """Reject patches that touch unknown or store-managed fields."""
    bad = set(patch) - (ORDER_FIELDS - READONLY_FIELDS)
    if bad:
        raise ValueError(f"Cannot patch order fields: {sorted(bad)}")


class InMemoryOrderStore(OrderStorePort):
    """Dict-backed order store with compare-and-swap writes.

    Returned orders are copies; mutating them never changes the store.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._orders: Dict[str, Order] = {}

    def get(self, order_id: str) -> Order:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            return replace(order)

    def create(self, order: Order) -> Order:
        now = _now()
        stored = replace(order, version=1, created_at=now, updated_at=now)
        with self._lock:
            if stored.id in self._orders:
                raise ValueError(f"Order {stored.id} already exists")
            self._orders[stored.id] = stored
        return replace(stored)

    def update(self, order_id: str, expected_version: int, patch: dict) -> Order:
        check_patch(patch)
        with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                raise OrderNotFoundError(order_id)
            if current.version != expected_version:
                raise ConcurrentUpdateError(order_id, expected_version, replace(current))
            updated = replace(current, **patch, version=current.version + 1, updated_at=_now())
            self._orders[order_id] = updated
            return replace(updated)

    def delete(self, order_id: str, expected_version: int) -> None:
        with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                raise OrderNotFoundError(order_id)
            if current.version != expected_version:
                raise ConcurrentUpdateError(order_id, expected_version, replace(current))
            del self._orders[order_id]

    def list_for_user(self, user_id: str, role: Optional[str] = None) -> List[Order]:
        with self._lock:
            orders = [
                replace(o)
                for o in self._orders.values()
                if (role in (None, "buyer") and o.buyer_id == user_id)
                or (role in (None, "seller") and o.seller_id == user_id)
            ]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    def __contains__(self, order_id: str) -> bool:
        return order_id in self._orders


class EscrowGatewayStub(PaymentGatewayPort, ReleaseGatewayPort):
    """Stub custodian implementing both the payment and release gateways.

    Approves locks with a positive amount and returns a generated reference.
    Locks and releases are keyed by order id, so resubmitting for the same
    order returns the original reference instead of moving funds twice.

    Args:
        simulated: Value reported in ``GatewayResult.simulated``.
    """

    def __init__(self, simulated: bool = False):
        self.simulated = simulated
        self._lock = threading.Lock()
        self.lock_calls = 0
        self.release_calls = 0
        self._holds: Dict[str, Tuple[str, Decimal, str]] = {}  # reference -> (order_id, amount, address)
        self._by_order: Dict[str, str] = {}
        self._released: Dict[str, str] = {}  # escrow reference -> release reference

    def submit(self, order_id: str, amount: Decimal, destination_address: str) -> GatewayResult:
        with self._lock:
            self.lock_calls += 1
        if amount <= 0:
            return GatewayResult.rejected("INVALID_AMOUNT")
        with self._lock:
            reference = self._by_order.get(order_id)
            if reference is None:
                reference = f"escrow_{uuid.uuid4().hex}"
                self._holds[reference] = (order_id, amount, destination_address)
                self._by_order[order_id] = reference
        return GatewayResult.success(reference, simulated=self.simulated)

    def release(
        self,
        order_id: str,
        escrow_reference: str,
        destination_address: str,
        amount: Decimal,
    ) -> GatewayResult:
        with self._lock:
            self.release_calls += 1
        hold = self._holds.get(escrow_reference)
        if hold is None or hold[0] != order_id:
            return GatewayResult.rejected("ESCROW_NOT_FOUND")
        if hold[1] != amount:
            return GatewayResult.rejected("AMOUNT_MISMATCH")
        with self._lock:
            reference = self._released.setdefault(escrow_reference, f"release_{uuid.uuid4().hex}")
        return GatewayResult.success(reference, simulated=self.simulated)


class InMemoryRewardLedger(RewardLedgerPort):
    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str, RewardReason], RewardEntry] = {}

    def credit(self, user_id: str, order_id: str, amount: Decimal, reason: RewardReason) -> bool:
        key = (order_id, user_id, RewardReason(reason))
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = RewardEntry(user_id, order_id, amount, key[2], _now())
            return True

    def entries_for_order(self, order_id: str) -> List[RewardEntry]:
        with self._lock:
            return [e for e in self._entries.values() if e.order_id == order_id]

    def total_for_user(self, user_id: str) -> Decimal:
        with self._lock:
            return sum((e.amount for e in self._entries.values() if e.user_id == user_id), Decimal("0"))

    def all(self) -> List[RewardEntry]:
        with self._lock:
            return list(self._entries.values())


class InMemoryNotifier(NotifierPort):
    def __init__(self):
        self.messages: List[OrderMessage] = []

    def post(self, order_id: str, author_id: str, text: str) -> None:
        self.messages.append(OrderMessage(order_id, author_id, text, _now()))

    def history(self, order_id: str) -> List[OrderMessage]:
        return [m for m in self.messages if m.order_id == order_id]


class ProductCatalogStub(ProductCatalogPort):
    """Registry of listings seeded by tests or local fixtures."""

    def __init__(self):
        self._listings: Dict[str, Listing] = {}

    def register(self, product_id: str, seller_id: str, price, available: bool = True) -> Listing:
        listing = Listing(product_id, seller_id, Decimal(str(price)), available)
        self._listings[product_id] = listing
        return listing

    def get_listing(self, product_id: str) -> Optional[Listing]:
        return self._listings.get(product_id)

    def set_unavailable(self, product_id: str) -> None:
        listing = self._listings.get(product_id)
        if listing is not None:
            self._listings[product_id] = replace(listing, available=False)

    def clear(self) -> None:
        self._listings.clear()


class SellerDirectoryStub(SellerDirectoryPort):
    def __init__(self):
        self._addresses: Dict[str, str] = {}

    def register(self, seller_id: str, address: str) -> None:
        self._addresses[seller_id] = address

    def get_payout_address(self, seller_id: str) -> Optional[str]:
        return self._addresses.get(seller_id)

    def clear(self) -> None:
        self._addresses.clear()
