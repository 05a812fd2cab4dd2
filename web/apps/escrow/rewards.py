"""Reward (WZP) crediting for settled orders.

Each settled order earns the buyer an ``EARN_BUY`` entry and the seller an
``EARN_SELL`` entry, both worth ``payable_amount * rate``. The ledger
ignores duplicates per ``(order_id, user_id, reason)``, so an order is
rewarded once no matter how many lifecycle steps try to credit it.

The rate comes from the ``REWARD_RATE`` setting.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from .domain import Order, RewardLedgerPort, RewardReason

logger = logging.getLogger(__name__)

REWARD_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class RewardPolicy:
    """Computes reward amounts from a configured rate.

    Attributes:
        rate: Reward units per currency unit of the payable amount.
    """

    rate: Decimal

    def __post_init__(self):
        if self.rate < 0:
            raise ValueError("REWARD_RATE must not be negative")

    def amount_for(self, payable: Decimal) -> Decimal:
        return (payable * self.rate).quantize(REWARD_QUANTUM, rounding=ROUND_HALF_UP)


def credit_order(ledger: RewardLedgerPort, policy: RewardPolicy, order: Order) -> int:
    """Credit the buyer/seller pair for ``order``.

    Returns:
        int: Number of entries actually written (0 when both already existed).
    """
    amount = policy.amount_for(order.payable_amount)
    written = 0
    for user_id, reason in (
        (order.buyer_id, RewardReason.EARN_BUY),
        (order.seller_id, RewardReason.EARN_SELL),
    ):
        if ledger.credit(user_id, order.id, amount, reason):
            written += 1
    logger.info(
        "reward credit",
        extra={"order_id": order.id, "amount": str(amount), "entries_written": written},
    )
    return written
