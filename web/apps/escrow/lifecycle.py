"""Order lifecycle service: negotiation, escrow, delivery and rewards.

``OrderLifecycleService`` is the only component with business rules. Each
public method takes the authenticated actor id, validates the actor's
rights and the order's current state, performs any external fund movement,
commits the new state with a compare-and-swap on the version it read, and
then runs the follow-up effects (product status, reward ledger, notifier).

Canonical flow::

    create_order ─┬─ DIRECT ──────────────────────────────┐
                  └─ NEGOTIATION: proposal pending        │
                        accept_proposal -> accepted ──────┤
                        reject_proposal -> rejected       │
                        propose_again  -> proposal pending│
                                                          v
    submit_payment (CREATED -> ESCROW_FUNDED, escrow OPEN)
    confirm_seller_acceptance (-> SELLER_CONFIRMED)
    confirm_delivery (-> COMPLETED, escrow RELEASED)

The service does no persistence or network I/O of its own; everything
goes through the ports in ``domain``.
"""

import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from .domain import (
    EscrowState,
    GatewayResult,
    NegotiationState,
    NotifierPort,
    Order,
    OrderMessage,
    OrderMode,
    OrderStatus,
    OrderStorePort,
    PaymentGatewayPort,
    ProductCatalogPort,
    ReleaseGatewayPort,
    RewardLedgerPort,
    SellerDirectoryPort,
)
from .effects import after_commit, attempt_lock, attempt_release, commit_after_effect
from .errors import (
    AlreadyCompletedError,
    ConcurrentUpdateError,
    InvalidProposalError,
    NoActiveProposalError,
    NotBuyerError,
    NotParticipantError,
    NotSellerError,
    PaymentFailedError,
    ProductNotFoundError,
    ProductUnavailableError,
    ReleaseFailedError,
    SelfTradeNotAllowedError,
    SellerAddressMissingError,
    WrongStatusForTransitionError,
)
from .rewards import RewardPolicy, credit_order

logger = logging.getLogger(__name__)

ROLES = ("buyer", "seller")

# money columns are DecimalField(decimal_places=6)
AMOUNT_QUANTUM = Decimal("0.000001")


def _to_amount(value) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidProposalError(f"Not a valid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidProposalError(f"Not a valid amount: {value!r}")
    return amount


def validate_proposal(proposed_price, reference_price: Decimal, order: Optional[Order] = None) -> Decimal:
    """Return the proposal as a Decimal if ``0 < proposed < reference``.

    The comparison is strict: a proposal equal to the reference price is
    rejected. Amounts finer than ``AMOUNT_QUANTUM`` are refused rather than
    rounded, so the stored price is exactly the price that was checked.

    Raises:
        InvalidProposalError: If the proposal is missing, has more than six
            decimal places, is not positive, or is not lower than
            ``reference_price``.
    """
    if proposed_price is None:
        raise InvalidProposalError("A proposed price is required", order)
    amount = _to_amount(proposed_price)
    try:
        exact = amount == amount.quantize(AMOUNT_QUANTUM)
    except InvalidOperation:
        exact = False
    if not exact:
        raise InvalidProposalError(f"Proposed price {amount} has more than six decimal places", order)
    if amount <= 0:
        raise InvalidProposalError("Proposed price must be positive", order)
    if amount >= reference_price:
        raise InvalidProposalError(
            f"Proposed price {amount} must be lower than {reference_price}", order
        )
    return amount


class OrderLifecycleService:
    """Domain service that owns every order state transition.

    Args:
        store: Order store with compare-and-swap writes.
        payments: Gateway that moves funds into escrow.
        releases: Gateway that releases escrowed funds.
        ledger: Append-only reward ledger.
        notifier: Conversation message sink (best-effort).
        catalog: Product catalog (listing lookup, availability).
        directory: Seller payout address lookup.
        reward_rate: Reward units credited per currency unit paid.
    """

    def __init__(
        self,
        store: OrderStorePort,
        payments: PaymentGatewayPort,
        releases: ReleaseGatewayPort,
        ledger: RewardLedgerPort,
        notifier: NotifierPort,
        catalog: ProductCatalogPort,
        directory: SellerDirectoryPort,
        reward_rate: Decimal,
    ):
        self.store = store
        self.payments = payments
        self.releases = releases
        self.ledger = ledger
        self.notifier = notifier
        self.catalog = catalog
        self.directory = directory
        self.rewards = RewardPolicy(Decimal(str(reward_rate)))

    # ---- guards / helpers ----

    @staticmethod
    def _require_buyer(order: Order, actor_id: str) -> None:
        if order.buyer_id != actor_id:
            raise NotBuyerError(order)

    @staticmethod
    def _require_seller(order: Order, actor_id: str) -> None:
        if order.seller_id != actor_id:
            raise NotSellerError(order)

    @staticmethod
    def _require_negotiation_state(order: Order, expected: NegotiationState) -> None:
        if order.negotiation_state is not expected:
            raise NoActiveProposalError(order)

    def _payout_address(self, order: Order) -> str:
        address = self.directory.get_payout_address(order.seller_id)
        if not address:
            raise SellerAddressMissingError(order)
        return address

    def _commit(self, order: Order, patch: dict, actor_id: str, action: str) -> Order:
        updated = self.store.update(order.id, order.version, patch)
        logger.info(
            "order transition",
            extra={
                "order_id": order.id,
                "action": action,
                "actor_id": actor_id,
                "status": updated.status.value,
                "escrow_state": updated.escrow_state.value,
                "version": updated.version,
            },
        )
        return updated

    def _notify(self, order: Order, author_id: str, text: str) -> None:
        after_commit("notify", order.id, self.notifier.post, order.id, author_id, text)

    # ---- creation ----

    def create_order(
        self,
        actor_id: str,
        product_id: str,
        mode,
        proposed_price=None,
    ) -> Order:
        """Open a Direct purchase or a Negotiation proposal on a product.

        No funds move at creation. Negotiation orders announce the proposal
        in the order conversation.

        Raises:
            ProductNotFoundError, SelfTradeNotAllowedError,
            ProductUnavailableError, InvalidProposalError
        """
        mode = OrderMode(mode)
        listing = self.catalog.get_listing(product_id)
        if listing is None:
            raise ProductNotFoundError(product_id)
        if listing.seller_id == actor_id:
            raise SelfTradeNotAllowedError(product_id)
        if not listing.available:
            raise ProductUnavailableError(product_id)

        if mode is OrderMode.DIRECT:
            if proposed_price is not None:
                raise InvalidProposalError("Direct orders are bought at the listing price")
        else:
            proposed_price = validate_proposal(proposed_price, listing.price)

        order = self.store.create(
            Order(
                id=str(uuid.uuid4()),
                buyer_id=actor_id,
                seller_id=listing.seller_id,
                product_id=product_id,
                mode=mode,
                listing_price=listing.price,
                proposed_price=proposed_price,
            )
        )
        logger.info(
            "order created",
            extra={"order_id": order.id, "mode": mode.value, "actor_id": actor_id, "product_id": product_id},
        )
        if mode is OrderMode.NEGOTIATION:
            self._notify(
                order,
                actor_id,
                f"The buyer proposed {proposed_price} instead of the listed {listing.price}.",
            )
        return order

    # ---- negotiation ----

    def accept_proposal(self, actor_id: str, order_id: str) -> Order:
        order = self.store.get(order_id)
        self._require_seller(order, actor_id)
        self._require_negotiation_state(order, NegotiationState.PROPOSAL_PENDING)
        accepted = self._commit(order, {"final_price": order.proposed_price}, actor_id, "accept_proposal")
        self._notify(
            accepted,
            actor_id,
            f"The seller accepted the proposed price of {accepted.final_price}. The buyer can now pay.",
        )
        return accepted

    def reject_proposal(self, actor_id: str, order_id: str) -> Order:
        """Reject the pending proposal.

        The rejected price stays on the order as the reference the next
        proposal has to undercut.
        """
        order = self.store.get(order_id)
        self._require_seller(order, actor_id)
        self._require_negotiation_state(order, NegotiationState.PROPOSAL_PENDING)
        rejected = self._commit(order, {"escrow_state": EscrowState.CANCELLED}, actor_id, "reject_proposal")
        self._notify(
            rejected,
            actor_id,
            f"The seller rejected the proposed price of {rejected.proposed_price}.",
        )
        return rejected

    def propose_again(self, actor_id: str, order_id: str, proposed_price) -> Order:
        order = self.store.get(order_id)
        self._require_buyer(order, actor_id)
        self._require_negotiation_state(order, NegotiationState.REJECTED)
        amount = validate_proposal(proposed_price, order.proposed_price, order)
        proposed = self._commit(
            order,
            {"proposed_price": amount, "escrow_state": EscrowState.NONE},
            actor_id,
            "propose_again",
        )
        self._notify(proposed, actor_id, f"The buyer proposed a new price of {amount}.")
        return proposed

    # ---- escrow ----

    def submit_payment(self, actor_id: str, order_id: str) -> Order:
        """Move the payable amount into escrow and fund the order.

        On a terminal gateway rejection a Direct order is deleted (it never
        reached an externally visible state). Every other failure leaves the
        order exactly as it was so the buyer can retry.

        Raises:
            NotBuyerError, WrongStatusForTransitionError,
            NoActiveProposalError, SellerAddressMissingError,
            PaymentFailedError, PartialCommitError
        """
        order = self.store.get(order_id)
        self._require_buyer(order, actor_id)
        if order.status is not OrderStatus.CREATED:
            raise WrongStatusForTransitionError(order, OrderStatus.CREATED.value)
        if order.mode is OrderMode.NEGOTIATION:
            self._require_negotiation_state(order, NegotiationState.ACCEPTED)
        address = self._payout_address(order)

        result = attempt_lock(self.payments, order, address)
        if not result.ok:
            self._payment_failed(order, result)

        funded = commit_after_effect(
            self.store,
            order,
            "escrow_lock",
            result.reference,
            {
                "status": OrderStatus.ESCROW_FUNDED,
                "escrow_state": EscrowState.OPEN,
                "escrow_reference": result.reference,
            },
            reference_field="escrow_reference",
        )
        logger.info(
            "escrow funded",
            extra={"order_id": funded.id, "amount": str(funded.payable_amount), "simulated": result.simulated},
        )
        after_commit("product_unavailable", funded.id, self.catalog.set_unavailable, funded.product_id)
        if not result.simulated:
            after_commit("reward_credit", funded.id, credit_order, self.ledger, self.rewards, funded)
        self._notify(funded, actor_id, f"{funded.payable_amount} is now held in escrow.")
        return funded

    def _payment_failed(self, order: Order, result: GatewayResult) -> None:
        logger.warning(
            "payment failed",
            extra={
                "order_id": order.id,
                "mode": order.mode.value,
                "reason": result.reason,
                "retriable": result.retriable,
            },
        )
        if order.mode is OrderMode.DIRECT and not result.retriable:
            try:
                self.store.delete(order.id, order.version)
            except ConcurrentUpdateError as exc:
                raise PaymentFailedError(result.reason, False, order=exc.order) from exc
            logger.info("direct order aborted", extra={"order_id": order.id})
            raise PaymentFailedError(result.reason, False, order_deleted=True)
        raise PaymentFailedError(result.reason, result.retriable, order=order)

    def confirm_seller_acceptance(self, actor_id: str, order_id: str) -> Order:
        order = self.store.get(order_id)
        self._require_seller(order, actor_id)
        if order.status is not OrderStatus.ESCROW_FUNDED:
            raise WrongStatusForTransitionError(order, OrderStatus.ESCROW_FUNDED.value)
        confirmed = self._commit(
            order, {"status": OrderStatus.SELLER_CONFIRMED}, actor_id, "confirm_seller_acceptance"
        )
        self._notify(confirmed, actor_id, "The seller confirmed the order.")
        return confirmed

    def confirm_delivery(self, actor_id: str, order_id: str) -> Order:
        """Release the escrowed funds to the seller and complete the order.

        Runs at most once per order: a completed order answers with
        ``AlreadyCompletedError`` and no side effects, and the commit is a
        compare-and-swap so two concurrent confirmations cannot both win.

        Raises:
            NotBuyerError, AlreadyCompletedError,
            WrongStatusForTransitionError, SellerAddressMissingError,
            ReleaseFailedError, PartialCommitError
        """
        order = self.store.get(order_id)
        self._require_buyer(order, actor_id)
        if order.status is OrderStatus.COMPLETED:
            raise AlreadyCompletedError(order)
        if order.status is not OrderStatus.SELLER_CONFIRMED:
            raise WrongStatusForTransitionError(order, OrderStatus.SELLER_CONFIRMED.value)
        if order.escrow_state is not EscrowState.OPEN or not order.escrow_reference:
            raise WrongStatusForTransitionError(order, "an open escrow")
        address = self._payout_address(order)

        result = attempt_release(self.releases, order, address)
        if not result.ok:
            logger.warning(
                "release failed",
                extra={"order_id": order.id, "reason": result.reason, "retriable": result.retriable},
            )
            raise ReleaseFailedError(result.reason, result.retriable, order=order)

        completed = commit_after_effect(
            self.store,
            order,
            "escrow_release",
            result.reference,
            {
                "status": OrderStatus.COMPLETED,
                "escrow_state": EscrowState.RELEASED,
                "release_reference": result.reference,
            },
            reference_field="release_reference",
        )
        after_commit("product_unavailable", completed.id, self.catalog.set_unavailable, completed.product_id)
        # no-op when the payment step already credited this order
        after_commit("reward_credit", completed.id, credit_order, self.ledger, self.rewards, completed)
        self._notify(
            completed,
            actor_id,
            f"Delivery confirmed. {completed.payable_amount} was released to the seller.",
        )
        return completed

    # ---- reads ----

    def get_order(self, actor_id: str, order_id: str) -> Order:
        order = self.store.get(order_id)
        if not order.is_participant(actor_id):
            raise NotParticipantError(order_id)
        return order

    def list_orders(self, actor_id: str, role: Optional[str] = None) -> List[Order]:
        if role is not None and role not in ROLES:
            raise ValueError("INVALID_ROLE")
        return self.store.list_for_user(actor_id, role)

    def messages(self, actor_id: str, order_id: str) -> List[OrderMessage]:
        self.get_order(actor_id, order_id)
        return self.notifier.history(order_id)

    def reward_total(self, user_id: str) -> Decimal:
        return self.ledger.total_for_user(user_id)
