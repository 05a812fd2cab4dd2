import uuid

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="OrderModel",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("buyer_id", models.CharField(db_index=True, max_length=64)),
                ("seller_id", models.CharField(db_index=True, max_length=64)),
                ("product_id", models.CharField(db_index=True, max_length=64)),
                (
                    "mode",
                    models.CharField(
                        choices=[("DIRECT", "Direct"), ("NEGOTIATION", "Negotiation")], max_length=16
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("CREATED", "Created"),
                            ("ESCROW_FUNDED", "Escrow Funded"),
                            ("SELLER_CONFIRMED", "Seller Confirmed"),
                            ("COMPLETED", "Completed"),
                        ],
                        default="CREATED",
                        max_length=32,
                    ),
                ),
                (
                    "escrow_state",
                    models.CharField(
                        choices=[
                            ("NONE", "None"),
                            ("OPEN", "Open"),
                            ("RELEASED", "Released"),
                            ("CANCELLED", "Cancelled"),
                        ],
                        default="NONE",
                        max_length=16,
                    ),
                ),
                ("listing_price", models.DecimalField(decimal_places=6, max_digits=20)),
                ("proposed_price", models.DecimalField(blank=True, decimal_places=6, max_digits=20, null=True)),
                ("final_price", models.DecimalField(blank=True, decimal_places=6, max_digits=20, null=True)),
                ("escrow_reference", models.CharField(blank=True, max_length=128, null=True, unique=True)),
                ("release_reference", models.CharField(blank=True, max_length=128, null=True, unique=True)),
                ("version", models.PositiveIntegerField(default=1)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={"db_table": "escrow_orders", "ordering": ["-created_at"]},
        ),
        migrations.CreateModel(
            name="RewardEntryModel",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("user_id", models.CharField(db_index=True, max_length=64)),
                ("order_id", models.CharField(db_index=True, max_length=64)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=20)),
                (
                    "reason",
                    models.CharField(
                        choices=[("EARN_BUY", "Earn Buy"), ("EARN_SELL", "Earn Sell")], max_length=16
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={"db_table": "reward_ledger"},
        ),
        migrations.AddConstraint(
            model_name="rewardentrymodel",
            constraint=models.UniqueConstraint(
                fields=("order_id", "user_id", "reason"), name="ux_reward_order_user_reason"
            ),
        ),
        migrations.CreateModel(
            name="OrderMessageModel",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("order_id", models.CharField(db_index=True, max_length=64)),
                ("author_id", models.CharField(max_length=64)),
                ("text", models.TextField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={"db_table": "order_messages", "ordering": ["created_at", "id"]},
        ),
        migrations.CreateModel(
            name="IdempotencyKey",
            fields=[
                ("key", models.CharField(max_length=200, primary_key=True, serialize=False)),
                ("request_hash", models.CharField(max_length=64)),
                ("response_status", models.PositiveIntegerField(default=0)),
                ("response_body", models.JSONField(default=dict)),
                ("order_id", models.CharField(blank=True, max_length=64, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={"db_table": "idempotency_keys"},
        ),
    ]
