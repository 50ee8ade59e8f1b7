import uuid

from django.conf import settings
from django.db import models

from core.models import Branch
from inventory.models import ImmutableRecordError, Product, Supplier


class PurchaseOrderStatus(models.TextChoices):
    PENDING_ADMIN_ACCEPTANCE = "pending_admin_acceptance", "Pending admin acceptance"
    ACCEPTED_BY_ADMIN = "accepted_by_admin", "Accepted by admin"
    PENDING_REGISTRATION = "pending_registration", "Pending registration"
    PARTIALLY_REGISTERED = "partially_registered", "Partially registered"
    COMPLETELY_REGISTERED = "completely_registered", "Completely registered"
    PENDING_FINANCE_PROCESSING = "pending_finance_processing", "Pending finance processing"
    PROCESSED_BY_FINANCE = "processed_by_finance", "Processed by finance"
    FULLY_APPROVED = "fully_approved", "Fully approved"
    REJECTED = "rejected", "Rejected"
    CANCELLED = "cancelled", "Cancelled"


class PurchaseOrder(models.Model):
    Status = PurchaseOrderStatus

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="purchase_orders")
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="purchase_orders")
    supplier = models.ForeignKey(Supplier, on_delete=models.PROTECT, null=True, blank=True, related_name="purchase_orders")
    status = models.CharField(max_length=32, choices=PurchaseOrderStatus.choices, default=PurchaseOrderStatus.PENDING_ADMIN_ACCEPTANCE)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["branch", "status", "created_at"], name="purchasing_po_branch_idx"),
            models.Index(fields=["created_by", "created_at"], name="purchasing_po_creator_idx"),
        ]

    def __str__(self):
        return f"PO {self.id} ({self.status})"


class PurchaseOrderItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    purchase_order = models.ForeignKey(PurchaseOrder, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="purchase_order_items")
    quantity_requested = models.PositiveIntegerField()
    quantity_accepted = models.PositiveIntegerField(null=True, blank=True)
    quantity_registered = models.PositiveIntegerField(null=True, blank=True)
    finance_verified = models.BooleanField(null=True, blank=True)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)

    accepted_at = models.DateTimeField(null=True, blank=True)
    accepted_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, null=True, blank=True, related_name="+"
    )
    registered_at = models.DateTimeField(null=True, blank=True)
    registered_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, null=True, blank=True, related_name="+"
    )
    registration_edit_count = models.PositiveIntegerField(default=0)
    last_registration_edit_at = models.DateTimeField(null=True, blank=True)
    finance_verified_at = models.DateTimeField(null=True, blank=True)
    finance_verified_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, null=True, blank=True, related_name="+"
    )
    price_set_at = models.DateTimeField(null=True, blank=True)
    price_set_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, null=True, blank=True, related_name="+"
    )
    price_edit_count = models.PositiveIntegerField(default=0)
    approved_at = models.DateTimeField(null=True, blank=True)
    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, null=True, blank=True, related_name="+"
    )

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["purchase_order"], name="purchasing_item_po_idx"),
            models.Index(fields=["product"], name="purchasing_item_product_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity_requested__gt=0), name="po_item_requested_positive"),
            models.CheckConstraint(
                condition=models.Q(quantity_accepted__isnull=True) | models.Q(quantity_accepted__lte=models.F("quantity_requested")),
                name="po_item_accepted_lte_requested",
            ),
            models.CheckConstraint(
                condition=models.Q(quantity_registered__isnull=True)
                | (models.Q(quantity_accepted__isnull=False) & models.Q(quantity_registered__lte=models.F("quantity_accepted"))),
                name="po_item_registered_lte_accepted",
            ),
            models.CheckConstraint(
                condition=models.Q(unit_price__isnull=True) | models.Q(unit_price__gt=0),
                name="po_item_unit_price_positive",
            ),
        ]

    @property
    def total_price(self):
        if self.unit_price is None or self.quantity_registered is None:
            return None
        return self.unit_price * self.quantity_registered


class PurchaseHistory(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    purchase_order = models.ForeignKey(PurchaseOrder, on_delete=models.PROTECT, related_name="history")
    action = models.CharField(max_length=64)
    performed_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="purchase_history")
    details = models.TextField(blank=True, default="")
    request_id = models.CharField(max_length=64, null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at"]
        verbose_name_plural = "purchase history"
        indexes = [
            models.Index(fields=["purchase_order", "created_at"], name="purchasing_hist_po_idx"),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecordError("Purchase history entries are append-only.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError("Purchase history entries are append-only.")
