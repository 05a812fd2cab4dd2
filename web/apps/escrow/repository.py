"""Repository layer persisting orders, reward credits and order messages.

The repositories implement the domain ports on top of the Django ORM and
only ever hand domain objects back to callers, so the lifecycle service is
not coupled to ORM types.

Order writes are compare-and-swap: ``update`` and ``delete`` are issued as
a single conditional statement filtered on ``(id, version)``. Zero rows
affected means the order changed (or disappeared) since it was read.
"""

from decimal import Decimal
from enum import Enum
from typing import List, Optional

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.db.models import F, Q, Sum
from django.utils import timezone

from .adapters import check_patch
from .domain import (
    EscrowState,
    NotifierPort,
    Order,
    OrderMessage,
    OrderMode,
    OrderStatus,
    OrderStorePort,
    RewardEntry,
    RewardLedgerPort,
    RewardReason,
)
from .errors import ConcurrentUpdateError, OrderNotFoundError
from .models import OrderMessageModel, OrderModel, RewardEntryModel


def _to_domain(obj: OrderModel) -> Order:
    return Order(
        id=str(obj.id),
        buyer_id=obj.buyer_id,
        seller_id=obj.seller_id,
        product_id=obj.product_id,
        mode=OrderMode(obj.mode),
        listing_price=obj.listing_price,
        status=OrderStatus(obj.status),
        escrow_state=EscrowState(obj.escrow_state),
        proposed_price=obj.proposed_price,
        final_price=obj.final_price,
        escrow_reference=obj.escrow_reference,
        release_reference=obj.release_reference,
        version=obj.version,
        created_at=obj.created_at,
        updated_at=obj.updated_at,
    )


def _column(value):
    return value.value if isinstance(value, Enum) else value


class DjangoOrderStore(OrderStorePort):
    """Order store backed by ``OrderModel``."""

    def get(self, order_id: str) -> Order:
        try:
            return _to_domain(OrderModel.objects.get(id=order_id))
        except (OrderModel.DoesNotExist, ValidationError):
            # ValidationError: not a UUID, so it cannot exist
            raise OrderNotFoundError(order_id)

    def create(self, order: Order) -> Order:
        obj = OrderModel.objects.create(
            id=order.id,
            buyer_id=order.buyer_id,
            seller_id=order.seller_id,
            product_id=order.product_id,
            mode=order.mode.value,
            status=order.status.value,
            escrow_state=order.escrow_state.value,
            listing_price=order.listing_price,
            proposed_price=order.proposed_price,
            final_price=order.final_price,
            escrow_reference=order.escrow_reference,
            release_reference=order.release_reference,
            version=1,
        )
        return _to_domain(obj)

    def _conflict(self, order_id: str, expected_version: int) -> ConcurrentUpdateError:
        try:
            current = self.get(order_id)
        except OrderNotFoundError:
            current = None
        return ConcurrentUpdateError(order_id, expected_version, current)

    def update(self, order_id: str, expected_version: int, patch: dict) -> Order:
        """Apply ``patch`` only if the stored version equals ``expected_version``.

        Raises:
            ConcurrentUpdateError: If the order was modified or deleted since
                ``expected_version`` was read.
        """
        check_patch(patch)
        values = {name: _column(value) for name, value in patch.items()}
        with transaction.atomic():
            rows = OrderModel.objects.filter(id=order_id, version=expected_version).update(
                **values,
                version=F("version") + 1,
                updated_at=timezone.now(),
            )
        if rows == 0:
            raise self._conflict(order_id, expected_version)
        return self.get(order_id)

    def delete(self, order_id: str, expected_version: int) -> None:
        with transaction.atomic():
            deleted, _ = OrderModel.objects.filter(id=order_id, version=expected_version).delete()
        if deleted == 0:
            raise self._conflict(order_id, expected_version)

    def list_for_user(self, user_id: str, role: Optional[str] = None) -> List[Order]:
        if role == "buyer":
            cond = Q(buyer_id=user_id)
        elif role == "seller":
            cond = Q(seller_id=user_id)
        else:
            cond = Q(buyer_id=user_id) | Q(seller_id=user_id)
        return [_to_domain(o) for o in OrderModel.objects.filter(cond).order_by("-created_at")]


class DjangoRewardLedger(RewardLedgerPort):
    """Append-only ledger; the unique constraint turns duplicates into no-ops."""

    def credit(self, user_id: str, order_id: str, amount: Decimal, reason: RewardReason) -> bool:
        try:
            with transaction.atomic():
                RewardEntryModel.objects.create(
                    user_id=user_id,
                    order_id=order_id,
                    amount=amount,
                    reason=_column(reason),
                )
        except IntegrityError:
            return False
        return True

    def entries_for_order(self, order_id: str) -> List[RewardEntry]:
        return [
            RewardEntry(e.user_id, e.order_id, e.amount, RewardReason(e.reason), e.created_at)
            for e in RewardEntryModel.objects.filter(order_id=order_id).order_by("id")
        ]

    def total_for_user(self, user_id: str) -> Decimal:
        total = RewardEntryModel.objects.filter(user_id=user_id).aggregate(total=Sum("amount"))["total"]
        return total if total is not None else Decimal("0")


class DjangoNotifier(NotifierPort):
    def post(self, order_id: str, author_id: str, text: str) -> None:
        OrderMessageModel.objects.create(order_id=order_id, author_id=author_id, text=text)

    def history(self, order_id: str) -> List[OrderMessage]:
        return [
            OrderMessage(m.order_id, m.author_id, m.text, m.created_at)
            for m in OrderMessageModel.objects.filter(order_id=order_id)
        ]
