import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("core", "0001_initial"),
        ("inventory", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="PurchaseOrder",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending_admin_acceptance", "Pending admin acceptance"),
                            ("accepted_by_admin", "Accepted by admin"),
                            ("pending_registration", "Pending registration"),
                            ("partially_registered", "Partially registered"),
                            ("completely_registered", "Completely registered"),
                            ("pending_finance_processing", "Pending finance processing"),
                            ("processed_by_finance", "Processed by finance"),
                            ("fully_approved", "Fully approved"),
                            ("rejected", "Rejected"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="pending_admin_acceptance",
                        max_length=32,
                    ),
                ),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "branch",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="purchase_orders", to="core.branch"
                    ),
                ),
                (
                    "created_by",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="purchase_orders",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "supplier",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="purchase_orders",
                        to="inventory.supplier",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["branch", "status", "created_at"], name="purchasing_po_branch_idx"),
                    models.Index(fields=["created_by", "created_at"], name="purchasing_po_creator_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PurchaseOrderItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("quantity_requested", models.PositiveIntegerField()),
                ("quantity_accepted", models.PositiveIntegerField(blank=True, null=True)),
                ("quantity_registered", models.PositiveIntegerField(blank=True, null=True)),
                ("finance_verified", models.BooleanField(blank=True, null=True)),
                ("unit_price", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("accepted_at", models.DateTimeField(blank=True, null=True)),
                ("registered_at", models.DateTimeField(blank=True, null=True)),
                ("registration_edit_count", models.PositiveIntegerField(default=0)),
                ("last_registration_edit_at", models.DateTimeField(blank=True, null=True)),
                ("finance_verified_at", models.DateTimeField(blank=True, null=True)),
                ("price_set_at", models.DateTimeField(blank=True, null=True)),
                ("price_edit_count", models.PositiveIntegerField(default=0)),
                ("approved_at", models.DateTimeField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "accepted_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "approved_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "finance_verified_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "price_set_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="purchase_order_items",
                        to="inventory.product",
                    ),
                ),
                (
                    "purchase_order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE, related_name="items", to="purchasing.purchaseorder"
                    ),
                ),
                (
                    "registered_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["created_at", "id"],
                "indexes": [
                    models.Index(fields=["purchase_order"], name="purchasing_item_po_idx"),
                    models.Index(fields=["product"], name="purchasing_item_product_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("quantity_requested__gt", 0)), name="po_item_requested_positive"),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("quantity_accepted__isnull", True),
                            ("quantity_accepted__lte", models.F("quantity_requested")),
                            _connector="OR",
                        ),
                        name="po_item_accepted_lte_requested",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("quantity_registered__isnull", True),
                            models.Q(
                                ("quantity_accepted__isnull", False),
                                ("quantity_registered__lte", models.F("quantity_accepted")),
                            ),
                            _connector="OR",
                        ),
                        name="po_item_registered_lte_accepted",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("unit_price__isnull", True), ("unit_price__gt", 0), _connector="OR"),
                        name="po_item_unit_price_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PurchaseHistory",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("action", models.CharField(max_length=64)),
                ("details", models.TextField(blank=True, default="")),
                ("request_id", models.CharField(blank=True, max_length=64, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "performed_by",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="purchase_history",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "purchase_order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="history", to="purchasing.purchaseorder"
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "purchase history",
                "ordering": ["created_at"],
                "indexes": [models.Index(fields=["purchase_order", "created_at"], name="purchasing_hist_po_idx")],
            },
        ),
    ]
