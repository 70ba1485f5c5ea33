import uuid
from decimal import ROUND_HALF_UP, Decimal

from django.conf import settings
from django.db import models
from django.db.models import F, Q

from core.models import Department


class TransactionType(models.TextChoices):
    RECEIPT = "receipt", "Receipt"
    ISSUE = "issue", "Issue"
    TRANSFER_IN = "transfer_in", "Transfer in"
    TRANSFER_OUT = "transfer_out", "Transfer out"
    ADJUSTMENT = "adjustment", "Adjustment"
    SCRAP = "scrap", "Scrap"


INBOUND_TRANSACTION_TYPES = frozenset({TransactionType.RECEIPT, TransactionType.TRANSFER_IN})
OUTBOUND_TRANSACTION_TYPES = frozenset({TransactionType.ISSUE, TransactionType.TRANSFER_OUT, TransactionType.SCRAP})

MONEY_QUANT = Decimal("0.01")

# Largest value a quantity column holds on every supported database.
MAX_QUANTITY = 2147483647


def to_money(value):
    return Decimal(value or 0).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


class Part(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        INACTIVE = "inactive", "Inactive"
        DISCONTINUED = "discontinued", "Discontinued"

    class StockStatus(models.TextChoices):
        IN_STOCK = "in_stock", "In stock"
        LOW_STOCK = "low_stock", "Low stock"
        OUT_OF_STOCK = "out_of_stock", "Out of stock"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    department = models.ForeignKey(Department, on_delete=models.PROTECT, related_name="parts")
    part_number = models.CharField(max_length=64, unique=True)
    sku = models.CharField(max_length=64, unique=True)
    material_code = models.CharField(max_length=64)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    category = models.CharField(max_length=128, blank=True, default="")
    location = models.CharField(max_length=255, blank=True, default="")
    supplier = models.CharField(max_length=255, blank=True, default="")

    quantity = models.IntegerField(default=0)
    min_stock_level = models.PositiveIntegerField(default=0)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_value = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    stock_status = models.CharField(max_length=16, choices=StockStatus.choices, default=StockStatus.OUT_OF_STOCK)

    total_consumed = models.PositiveIntegerField(default=0)
    average_monthly_usage = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    last_used_date = models.DateTimeField(null=True, blank=True)
    last_purchase_date = models.DateTimeField(null=True, blank=True)
    last_purchase_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)

    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ACTIVE)
    is_critical = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["department", "status"], name="part_department_status_idx"),
            models.Index(fields=["department", "stock_status"], name="part_department_stock_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(quantity__gte=0), name="part_quantity_non_negative"),
            models.CheckConstraint(condition=Q(unit_price__gte=0), name="part_unit_price_non_negative"),
        ]

    def __str__(self):
        return f"{self.part_number} ({self.name})"

    def save(self, *args, **kwargs):
        self.refresh_derived_fields()
        update_fields = kwargs.get("update_fields")
        if update_fields is not None:
            kwargs["update_fields"] = set(update_fields) | {"stock_status", "total_value"}
        super().save(*args, **kwargs)

    def refresh_derived_fields(self):
        if self.quantity == 0:
            self.stock_status = self.StockStatus.OUT_OF_STOCK
        elif self.quantity <= self.min_stock_level:
            self.stock_status = self.StockStatus.LOW_STOCK
        else:
            self.stock_status = self.StockStatus.IN_STOCK
        self.total_value = to_money(Decimal(self.quantity) * Decimal(self.unit_price or 0))


class StockTransaction(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        PENDING = "pending", "Pending"
        APPROVED = "approved", "Approved"
        COMPLETED = "completed", "Completed"
        CANCELLED = "cancelled", "Cancelled"

    class Priority(models.TextChoices):
        LOW = "low", "Low"
        NORMAL = "normal", "Normal"
        HIGH = "high", "High"
        URGENT = "urgent", "Urgent"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    department = models.ForeignKey(Department, on_delete=models.PROTECT, related_name="stock_transactions")
    transaction_number = models.CharField(max_length=32, unique=True)
    transaction_type = models.CharField(max_length=16, choices=TransactionType.choices)
    transaction_date = models.DateTimeField()
    reference_number = models.CharField(max_length=64, blank=True, default="")
    description = models.CharField(max_length=500)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.DRAFT)
    priority = models.CharField(max_length=16, choices=Priority.choices, default=Priority.NORMAL)

    source_location = models.CharField(max_length=255, blank=True, default="")
    destination_location = models.CharField(max_length=255, blank=True, default="")
    supplier = models.CharField(max_length=255, blank=True, default="")
    recipient = models.CharField(max_length=255, blank=True, default="")
    asset_id = models.CharField(max_length=64, blank=True, default="")
    asset_name = models.CharField(max_length=255, blank=True, default="")
    work_order_id = models.CharField(max_length=64, blank=True, default="")
    work_order_number = models.CharField(max_length=64, blank=True, default="")

    total_amount = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    total_items = models.PositiveIntegerField(default=0)
    total_quantity = models.IntegerField(default=0)
    currency = models.CharField(max_length=3, default="USD")

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="created_stock_transactions",
    )
    created_by_name = models.CharField(max_length=255)
    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="approved_stock_transactions",
        null=True,
        blank=True,
    )
    approved_by_name = models.CharField(max_length=255, blank=True, default="")
    approved_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    notes = models.TextField(blank=True, default="")
    internal_notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["department", "status", "created_at"], name="stocktxn_dept_status_idx"),
            models.Index(fields=["transaction_type", "status"], name="stocktxn_type_status_idx"),
        ]

    def __str__(self):
        return self.transaction_number

    @property
    def is_outbound(self):
        return self.transaction_type in OUTBOUND_TRANSACTION_TYPES


class StockTransactionItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    stock_transaction = models.ForeignKey(StockTransaction, on_delete=models.CASCADE, related_name="items")
    position = models.PositiveIntegerField(default=0)
    part = models.ForeignKey(Part, on_delete=models.PROTECT, related_name="transaction_items")
    part_number = models.CharField(max_length=64)
    part_name = models.CharField(max_length=255)
    # Signed for adjustment transactions, a positive magnitude for every other type.
    quantity = models.IntegerField()
    unit_cost = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_cost = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    from_location = models.CharField(max_length=255, blank=True, default="")
    to_location = models.CharField(max_length=255, blank=True, default="")
    notes = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["position"]
        indexes = [
            models.Index(fields=["stock_transaction", "position"], name="stocktxnitem_txn_pos_idx"),
            models.Index(fields=["part"], name="stocktxnitem_part_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=~Q(quantity=0), name="stocktxnitem_quantity_non_zero"),
        ]


class AppendOnlyViolation(Exception):
    pass


class InventoryHistory(models.Model):
    class ChangeType(models.TextChoices):
        TRANSACTION = "transaction", "Transaction"
        ADJUSTMENT = "adjustment", "Adjustment"
        CORRECTION = "correction", "Correction"
        INITIAL = "initial", "Initial"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    part = models.ForeignKey(Part, on_delete=models.PROTECT, related_name="history")
    part_number = models.CharField(max_length=64)
    part_name = models.CharField(max_length=255)
    department = models.ForeignKey(Department, on_delete=models.PROTECT, related_name="+")

    change_type = models.CharField(max_length=16, choices=ChangeType.choices)
    transaction_type = models.CharField(max_length=16, choices=TransactionType.choices, null=True, blank=True)
    stock_transaction = models.ForeignKey(
        StockTransaction,
        on_delete=models.PROTECT,
        related_name="ledger_entries",
        null=True,
        blank=True,
    )
    transaction_number = models.CharField(max_length=32, blank=True, default="")
    transaction_item = models.ForeignKey(
        StockTransactionItem,
        on_delete=models.PROTECT,
        related_name="ledger_entries",
        null=True,
        blank=True,
    )

    previous_quantity = models.IntegerField()
    quantity_change = models.IntegerField()
    new_quantity = models.IntegerField()

    reason = models.CharField(max_length=500)
    location = models.CharField(max_length=255, blank=True, default="")
    notes = models.TextField(blank=True, default="")
    cost = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)

    performed_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="+")
    performed_by_name = models.CharField(max_length=255)
    performed_at = models.DateTimeField()
    # Position in the part's ledger, starting at 1.
    sequence = models.PositiveIntegerField(editable=False)

    class Meta:
        verbose_name_plural = "inventory history"
        indexes = [
            models.Index(fields=["part", "performed_at"], name="invhistory_part_performed_idx"),
            models.Index(fields=["stock_transaction", "part"], name="invhistory_txn_part_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(new_quantity=F("previous_quantity") + F("quantity_change")),
                name="invhistory_quantity_chain",
            ),
            models.CheckConstraint(condition=Q(new_quantity__gte=0), name="invhistory_new_quantity_non_negative"),
            models.UniqueConstraint(fields=["part", "sequence"], name="invhistory_part_sequence_unique"),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise AppendOnlyViolation("Inventory history entries are immutable.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise AppendOnlyViolation("Inventory history entries cannot be deleted.")
