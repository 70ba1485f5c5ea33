import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

TRANSACTION_TYPE_CHOICES = [
    ("receipt", "Receipt"),
    ("issue", "Issue"),
    ("transfer_in", "Transfer in"),
    ("transfer_out", "Transfer out"),
    ("adjustment", "Adjustment"),
    ("scrap", "Scrap"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("core", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Part",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("part_number", models.CharField(max_length=64, unique=True)),
                ("sku", models.CharField(max_length=64, unique=True)),
                ("material_code", models.CharField(max_length=64)),
                ("name", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                ("category", models.CharField(blank=True, default="", max_length=128)),
                ("location", models.CharField(blank=True, default="", max_length=255)),
                ("supplier", models.CharField(blank=True, default="", max_length=255)),
                ("quantity", models.IntegerField(default=0)),
                ("min_stock_level", models.PositiveIntegerField(default=0)),
                ("unit_price", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("total_value", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                (
                    "stock_status",
                    models.CharField(
                        choices=[("in_stock", "In stock"), ("low_stock", "Low stock"), ("out_of_stock", "Out of stock")],
                        default="out_of_stock",
                        max_length=16,
                    ),
                ),
                ("total_consumed", models.PositiveIntegerField(default=0)),
                ("average_monthly_usage", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("last_used_date", models.DateTimeField(blank=True, null=True)),
                ("last_purchase_date", models.DateTimeField(blank=True, null=True)),
                ("last_purchase_price", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[("active", "Active"), ("inactive", "Inactive"), ("discontinued", "Discontinued")],
                        default="active",
                        max_length=16,
                    ),
                ),
                ("is_critical", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "department",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="parts",
                        to="core.department",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["department", "status"], name="part_department_status_idx"),
                    models.Index(fields=["department", "stock_status"], name="part_department_stock_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("quantity__gte", 0)), name="part_quantity_non_negative"),
                    models.CheckConstraint(condition=models.Q(("unit_price__gte", 0)), name="part_unit_price_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="StockTransaction",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("transaction_number", models.CharField(max_length=32, unique=True)),
                ("transaction_type", models.CharField(choices=TRANSACTION_TYPE_CHOICES, max_length=16)),
                ("transaction_date", models.DateTimeField()),
                ("reference_number", models.CharField(blank=True, default="", max_length=64)),
                ("description", models.CharField(max_length=500)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("draft", "Draft"),
                            ("pending", "Pending"),
                            ("approved", "Approved"),
                            ("completed", "Completed"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="draft",
                        max_length=16,
                    ),
                ),
                (
                    "priority",
                    models.CharField(
                        choices=[("low", "Low"), ("normal", "Normal"), ("high", "High"), ("urgent", "Urgent")],
                        default="normal",
                        max_length=16,
                    ),
                ),
                ("source_location", models.CharField(blank=True, default="", max_length=255)),
                ("destination_location", models.CharField(blank=True, default="", max_length=255)),
                ("supplier", models.CharField(blank=True, default="", max_length=255)),
                ("recipient", models.CharField(blank=True, default="", max_length=255)),
                ("asset_id", models.CharField(blank=True, default="", max_length=64)),
                ("asset_name", models.CharField(blank=True, default="", max_length=255)),
                ("work_order_id", models.CharField(blank=True, default="", max_length=64)),
                ("work_order_number", models.CharField(blank=True, default="", max_length=64)),
                ("total_amount", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("total_items", models.PositiveIntegerField(default=0)),
                ("total_quantity", models.IntegerField(default=0)),
                ("currency", models.CharField(default="USD", max_length=3)),
                ("created_by_name", models.CharField(max_length=255)),
                ("approved_by_name", models.CharField(blank=True, default="", max_length=255)),
                ("approved_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("notes", models.TextField(blank=True, default="")),
                ("internal_notes", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "department",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="stock_transactions",
                        to="core.department",
                    ),
                ),
                (
                    "created_by",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="created_stock_transactions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "approved_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="approved_stock_transactions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["department", "status", "created_at"], name="stocktxn_dept_status_idx"),
                    models.Index(fields=["transaction_type", "status"], name="stocktxn_type_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="StockTransactionItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("position", models.PositiveIntegerField(default=0)),
                ("part_number", models.CharField(max_length=64)),
                ("part_name", models.CharField(max_length=255)),
                ("quantity", models.IntegerField()),
                ("unit_cost", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("total_cost", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("from_location", models.CharField(blank=True, default="", max_length=255)),
                ("to_location", models.CharField(blank=True, default="", max_length=255)),
                ("notes", models.TextField(blank=True, default="")),
                (
                    "stock_transaction",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="inventory.stocktransaction",
                    ),
                ),
                (
                    "part",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transaction_items",
                        to="inventory.part",
                    ),
                ),
            ],
            options={
                "ordering": ["position"],
                "indexes": [
                    models.Index(fields=["stock_transaction", "position"], name="stocktxnitem_txn_pos_idx"),
                    models.Index(fields=["part"], name="stocktxnitem_part_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("quantity", 0), _negated=True), name="stocktxnitem_quantity_non_zero"),
                ],
            },
        ),
        migrations.CreateModel(
            name="InventoryHistory",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("part_number", models.CharField(max_length=64)),
                ("part_name", models.CharField(max_length=255)),
                (
                    "change_type",
                    models.CharField(
                        choices=[
                            ("transaction", "Transaction"),
                            ("adjustment", "Adjustment"),
                            ("correction", "Correction"),
                            ("initial", "Initial"),
                        ],
                        max_length=16,
                    ),
                ),
                ("transaction_type", models.CharField(blank=True, choices=TRANSACTION_TYPE_CHOICES, max_length=16, null=True)),
                ("transaction_number", models.CharField(blank=True, default="", max_length=32)),
                ("previous_quantity", models.IntegerField()),
                ("quantity_change", models.IntegerField()),
                ("new_quantity", models.IntegerField()),
                ("reason", models.CharField(max_length=500)),
                ("location", models.CharField(blank=True, default="", max_length=255)),
                ("notes", models.TextField(blank=True, default="")),
                ("cost", models.DecimalField(blank=True, decimal_places=2, max_digits=14, null=True)),
                ("performed_by_name", models.CharField(max_length=255)),
                ("performed_at", models.DateTimeField()),
                ("sequence", models.PositiveIntegerField(editable=False)),
                (
                    "part",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="history",
                        to="inventory.part",
                    ),
                ),
                (
                    "department",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to="core.department",
                    ),
                ),
                (
                    "stock_transaction",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="ledger_entries",
                        to="inventory.stocktransaction",
                    ),
                ),
                (
                    "transaction_item",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="ledger_entries",
                        to="inventory.stocktransactionitem",
                    ),
                ),
                (
                    "performed_by",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "inventory history",
                "indexes": [
                    models.Index(fields=["part", "performed_at"], name="invhistory_part_performed_idx"),
                    models.Index(fields=["stock_transaction", "part"], name="invhistory_txn_part_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("new_quantity", models.F("previous_quantity") + models.F("quantity_change"))),
                        name="invhistory_quantity_chain",
                    ),
                    models.CheckConstraint(condition=models.Q(("new_quantity__gte", 0)), name="invhistory_new_quantity_non_negative"),
                    models.UniqueConstraint(fields=("part", "sequence"), name="invhistory_part_sequence_unique"),
                ],
            },
        ),
    ]
