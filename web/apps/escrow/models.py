import uuid
from django.db import models


class OrderModel(models.Model):
    # UUID PK exposed in the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    buyer_id = models.CharField(max_length=64, db_index=True)
    seller_id = models.CharField(max_length=64, db_index=True)
    product_id = models.CharField(max_length=64, db_index=True)

    class Mode(models.TextChoices):
        DIRECT = "DIRECT"
        NEGOTIATION = "NEGOTIATION"

    class Status(models.TextChoices):
        CREATED = "CREATED"
        ESCROW_FUNDED = "ESCROW_FUNDED"
        SELLER_CONFIRMED = "SELLER_CONFIRMED"
        COMPLETED = "COMPLETED"

    class Escrow(models.TextChoices):
        NONE = "NONE"
        OPEN = "OPEN"
        RELEASED = "RELEASED"
        CANCELLED = "CANCELLED"

    mode = models.CharField(max_length=16, choices=Mode.choices)
    status = models.CharField(max_length=32, choices=Status.choices, default=Status.CREATED)
    escrow_state = models.CharField(max_length=16, choices=Escrow.choices, default=Escrow.NONE)

    listing_price = models.DecimalField(max_digits=20, decimal_places=6)
    proposed_price = models.DecimalField(max_digits=20, decimal_places=6, null=True, blank=True)
    final_price = models.DecimalField(max_digits=20, decimal_places=6, null=True, blank=True)

    escrow_reference = models.CharField(max_length=128, null=True, blank=True, unique=True)
    release_reference = models.CharField(max_length=128, null=True, blank=True, unique=True)

    # Optimistic concurrency: every write filters on the version it read
    version = models.PositiveIntegerField(default=1)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "escrow_orders"
        ordering = ["-created_at"]


class RewardEntryModel(models.Model):
    """Append-only reward credit; one row per (order, user, reason)."""

    class Reason(models.TextChoices):
        EARN_BUY = "EARN_BUY"
        EARN_SELL = "EARN_SELL"

    user_id = models.CharField(max_length=64, db_index=True)
    order_id = models.CharField(max_length=64, db_index=True)
    amount = models.DecimalField(max_digits=20, decimal_places=2)
    reason = models.CharField(max_length=16, choices=Reason.choices)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "reward_ledger"
        constraints = [
            models.UniqueConstraint(fields=["order_id", "user_id", "reason"], name="ux_reward_order_user_reason"),
        ]


class OrderMessageModel(models.Model):
    order_id = models.CharField(max_length=64, db_index=True)
    author_id = models.CharField(max_length=64)
    text = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "order_messages"
        ordering = ["created_at", "id"]


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order_id = models.CharField(max_length=64, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
