from django.db import transaction
from django.utils import timezone
from rest_framework import serializers
from rest_framework.exceptions import PermissionDenied

from common.permissions import can_access_department, has_elevated_scope
from core.models import Department
from inventory.exceptions import DepartmentScopeViolation, InvalidTransactionState, InvalidTransactionType
from inventory.models import (
    MAX_QUANTITY,
    InventoryHistory,
    Part,
    StockTransaction,
    StockTransactionItem,
    TransactionType,
    to_money,
)
from inventory.services import (
    APPLICABLE_STATUSES,
    EDITABLE_STATUSES,
    LOCKED_CORRECTION_FIELDS,
    create_part_with_initial_stock,
    next_transaction_number,
    replace_items,
)

# Context a caller must supply per transaction type. `one_of` needs at least
# one non-blank field; `signed` marks the type whose line quantities carry
# their own direction.
TRANSACTION_TYPE_RULES = {
    TransactionType.RECEIPT: {"required": ("supplier",), "one_of": (), "signed": False},
    TransactionType.ISSUE: {"required": (), "one_of": ("recipient", "asset_id", "work_order_number"), "signed": False},
    TransactionType.TRANSFER_IN: {"required": ("source_location",), "one_of": (), "signed": False},
    TransactionType.TRANSFER_OUT: {"required": ("destination_location",), "one_of": (), "signed": False},
    TransactionType.ADJUSTMENT: {"required": (), "one_of": (), "signed": True},
    TransactionType.SCRAP: {"required": (), "one_of": (), "signed": False},
}

CAMEL_CASE_ALIASES = {
    "quantityChange": "quantity_change",
    "transactionType": "transaction_type",
    "transactionId": "transaction_id",
    "transactionNumber": "transaction_number",
    "changeType": "change_type",
}


class PartSerializer(serializers.ModelSerializer):
    department = serializers.PrimaryKeyRelatedField(queryset=Department.objects.all(), required=False)
    department_code = serializers.CharField(source="department.code", read_only=True)
    quantity = serializers.IntegerField(
        min_value=0,
        required=False,
        help_text="Opening stock, accepted on create only. Later changes go through the inventory endpoint.",
    )

    class Meta:
        model = Part
        fields = [
            "id",
            "department",
            "department_code",
            "part_number",
            "sku",
            "material_code",
            "name",
            "description",
            "category",
            "location",
            "supplier",
            "quantity",
            "min_stock_level",
            "unit_price",
            "total_value",
            "stock_status",
            "total_consumed",
            "average_monthly_usage",
            "last_used_date",
            "last_purchase_date",
            "last_purchase_price",
            "status",
            "is_critical",
            "created_at",
            "updated_at",
        ]
        read_only_fields = [
            "id",
            "total_value",
            "stock_status",
            "total_consumed",
            "average_monthly_usage",
            "last_used_date",
            "last_purchase_date",
            "last_purchase_price",
            "created_at",
            "updated_at",
        ]

    def validate(self, attrs):
        if self.instance is not None and "quantity" in attrs and attrs["quantity"] != self.instance.quantity:
            raise serializers.ValidationError({"quantity": "Quantity can only be changed through inventory updates."})
        if self.instance is not None:
            attrs.pop("quantity", None)
        return attrs

    def create(self, validated_data):
        actor = self.context["request"].user
        initial_quantity = validated_data.pop("quantity", 0)
        return create_part_with_initial_stock(actor, initial_quantity=initial_quantity, **validated_data)

    @transaction.atomic
    def update(self, instance, validated_data):
        part = Part.objects.select_for_update().get(pk=instance.pk)
        for attr, value in validated_data.items():
            setattr(part, attr, value)
        part.save(update_fields=[*validated_data.keys(), "updated_at"])
        return part


class InventoryHistorySerializer(serializers.ModelSerializer):
    class Meta:
        model = InventoryHistory
        fields = [
            "id",
            "part",
            "part_number",
            "part_name",
            "department",
            "change_type",
            "transaction_type",
            "stock_transaction",
            "transaction_number",
            "transaction_item",
            "sequence",
            "previous_quantity",
            "quantity_change",
            "new_quantity",
            "reason",
            "location",
            "notes",
            "cost",
            "performed_by",
            "performed_by_name",
            "performed_at",
        ]
        read_only_fields = fields


class ManualInventoryChangeSerializer(serializers.Serializer):
    quantity_change = serializers.IntegerField(
        min_value=-MAX_QUANTITY,
        max_value=MAX_QUANTITY,
        error_messages={
            "required": "Quantity change is required.",
            "invalid": "Invalid quantity change - must be a number.",
        }
    )
    transaction_type = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    transaction_id = serializers.UUIDField(required=False, allow_null=True)
    transaction_number = serializers.CharField(required=False, allow_blank=True, max_length=32)
    reason = serializers.CharField(
        max_length=500,
        error_messages={
            "required": "Reason is required for inventory changes.",
            "blank": "Reason is required for inventory changes.",
        },
    )
    location = serializers.CharField(required=False, allow_blank=True, max_length=255)
    notes = serializers.CharField(required=False, allow_blank=True)
    cost = serializers.DecimalField(max_digits=14, decimal_places=2, required=False, allow_null=True)
    change_type = serializers.ChoiceField(
        choices=[InventoryHistory.ChangeType.ADJUSTMENT, InventoryHistory.ChangeType.CORRECTION],
        required=False,
    )

    def to_internal_value(self, data):
        if hasattr(data, "items"):
            data = {CAMEL_CASE_ALIASES.get(key, key): value for key, value in data.items()}
        return super().to_internal_value(data)

    def validate_transaction_type(self, value):
        if not value:
            return None
        if value not in TransactionType.values:
            raise InvalidTransactionType(value)
        return value

    def validate(self, attrs):
        transaction_id = attrs.pop("transaction_id", None)
        if transaction_id:
            stock_transaction = StockTransaction.objects.filter(pk=transaction_id).first()
            if stock_transaction is None:
                raise serializers.ValidationError({"transaction_id": "Stock transaction not found."})
            if not can_access_department(self.context["request"].user, stock_transaction.department_id):
                raise DepartmentScopeViolation("You can only link inventory changes to transactions in your department.")
            if stock_transaction.status not in APPLICABLE_STATUSES:
                raise serializers.ValidationError(
                    {"transaction_id": f"Cannot link inventory changes to a {stock_transaction.status} transaction."}
                )
            attrs["stock_transaction"] = stock_transaction
            attrs["change_type"] = InventoryHistory.ChangeType.TRANSACTION
        else:
            attrs.setdefault("change_type", InventoryHistory.ChangeType.ADJUSTMENT)
        return attrs


class StockTransactionItemSerializer(serializers.ModelSerializer):
    quantity = serializers.IntegerField(
        min_value=-MAX_QUANTITY,
        max_value=MAX_QUANTITY,
        help_text=(
            "Positive magnitude for receipt, issue, transfer and scrap lines; the type decides the direction. "
            "Adjustment lines are signed: negative removes stock, positive adds it."
        )
    )

    class Meta:
        model = StockTransactionItem
        fields = [
            "id",
            "position",
            "part",
            "part_number",
            "part_name",
            "quantity",
            "unit_cost",
            "total_cost",
            "from_location",
            "to_location",
            "notes",
        ]
        read_only_fields = ["id", "position", "part_number", "part_name", "total_cost"]


class StockTransactionSerializer(serializers.ModelSerializer):
    items = StockTransactionItemSerializer(many=True)
    status = serializers.ChoiceField(
        choices=[StockTransaction.Status.DRAFT, StockTransaction.Status.PENDING],
        required=False,
    )
    transaction_date = serializers.DateTimeField(required=False)

    class Meta:
        model = StockTransaction
        fields = [
            "id",
            "department",
            "transaction_number",
            "transaction_type",
            "transaction_date",
            "reference_number",
            "description",
            "status",
            "priority",
            "source_location",
            "destination_location",
            "supplier",
            "recipient",
            "asset_id",
            "asset_name",
            "work_order_id",
            "work_order_number",
            "total_amount",
            "total_items",
            "total_quantity",
            "currency",
            "created_by",
            "created_by_name",
            "approved_by",
            "approved_by_name",
            "approved_at",
            "completed_at",
            "cancelled_at",
            "notes",
            "internal_notes",
            "created_at",
            "updated_at",
            "items",
        ]
        read_only_fields = [
            "id",
            "department",
            "transaction_number",
            "total_amount",
            "total_items",
            "total_quantity",
            "created_by",
            "created_by_name",
            "approved_by",
            "approved_by_name",
            "approved_at",
            "completed_at",
            "cancelled_at",
            "created_at",
            "updated_at",
        ]

    def _department_id(self):
        if self.instance is not None:
            return self.instance.department_id
        return self.context.get("department_id") or getattr(self.context["request"].user, "department_id", None)

    def _validate_locked_update(self, attrs):
        user = self.context["request"].user
        if not has_elevated_scope(user):
            raise PermissionDenied(f"A {self.instance.status} transaction can only be corrected by a super administrator.")
        changed = {
            name for name, value in attrs.items() if name != "items" and getattr(self.instance, name, None) != value
        }
        if "items" in attrs and not self._items_unchanged(attrs["items"]):
            changed.add("items")
        if changed - LOCKED_CORRECTION_FIELDS:
            raise InvalidTransactionState(
                f"Only notes, internal notes and reference number can be changed on a {self.instance.status} transaction."
            )
        return attrs

    def _items_unchanged(self, items):
        current = [
            (item.part_id, item.quantity, item.unit_cost, item.from_location, item.to_location, item.notes)
            for item in self.instance.items.order_by("position")
        ]
        submitted = [
            (
                item["part"].id,
                item["quantity"],
                to_money(item.get("unit_cost") or 0),
                item.get("from_location", ""),
                item.get("to_location", ""),
                item.get("notes", ""),
            )
            for item in items
        ]
        return current == submitted

    def validate(self, attrs):
        if self.instance is not None and self.instance.status not in EDITABLE_STATUSES:
            return self._validate_locked_update(attrs)

        if self.instance is not None:
            if "transaction_type" in attrs and attrs["transaction_type"] != self.instance.transaction_type:
                raise serializers.ValidationError({"transaction_type": "Transaction type cannot be changed."})
            if "status" in attrs and attrs["status"] != self.instance.status:
                raise serializers.ValidationError({"status": "Use the status endpoint to change a transaction's status."})

        transaction_type = attrs.get("transaction_type") or getattr(self.instance, "transaction_type", None)
        rules = TRANSACTION_TYPE_RULES[transaction_type]

        def current(name):
            return attrs[name] if name in attrs else getattr(self.instance, name, "")

        errors = {}
        for name in rules["required"]:
            if not current(name):
                errors[name] = f"This field is required for {transaction_type} transactions."
        if rules["one_of"] and not any(current(name) for name in rules["one_of"]):
            errors["non_field_errors"] = [
                f"{transaction_type} transactions need one of: {', '.join(rules['one_of'])}."
            ]

        items = attrs.get("items")
        if items is not None:
            errors.update(self._validate_items(items, transaction_type, rules["signed"]))
        if errors:
            raise serializers.ValidationError(errors)
        return attrs

    def _validate_items(self, items, transaction_type, signed):
        if not items:
            return {"items": "At least one item is required."}

        department_id = self._department_id()
        item_errors = []
        for item in items:
            error = {}
            if signed and item["quantity"] == 0:
                error["quantity"] = "Adjustment quantity must be non-zero."
            elif not signed and item["quantity"] <= 0:
                error["quantity"] = f"Quantity must be positive for {transaction_type} transactions."
            if item.get("unit_cost") is not None and item["unit_cost"] < 0:
                error["unit_cost"] = "Unit cost cannot be negative."
            if department_id and str(item["part"].department_id) != str(department_id):
                error["part"] = f"Part {item['part'].part_number} belongs to another department."
            item_errors.append(error)
        if any(item_errors):
            return {"items": item_errors}
        return {}

    @transaction.atomic
    def create(self, validated_data):
        items = validated_data.pop("items")
        user = self.context["request"].user
        validated_data.setdefault("transaction_date", timezone.now())
        stock_transaction = StockTransaction.objects.create(
            transaction_number=next_transaction_number(),
            created_by=user,
            created_by_name=user.display_name,
            **validated_data,
        )
        return replace_items(stock_transaction, items)

    @transaction.atomic
    def update(self, instance, validated_data):
        items = validated_data.pop("items", None)
        for attr, value in validated_data.items():
            setattr(instance, attr, value)
        instance.save()
        # Items of a locked transaction are never replaced.
        if items is not None and instance.status in EDITABLE_STATUSES:
            replace_items(instance, items)
        return instance


class StatusTransitionSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=StockTransaction.Status.choices)
    notes = serializers.CharField(required=False, allow_blank=True, max_length=1000)


class ReversalSerializer(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True, max_length=1000)


class DepartmentTransferItemSerializer(serializers.Serializer):
    part = serializers.PrimaryKeyRelatedField(queryset=Part.objects.all())
    destination_part = serializers.PrimaryKeyRelatedField(queryset=Part.objects.all())
    quantity = serializers.IntegerField(min_value=1, max_value=MAX_QUANTITY)


class DepartmentTransferSerializer(serializers.Serializer):
    source_department = serializers.PrimaryKeyRelatedField(queryset=Department.objects.all(), required=False)
    destination_department = serializers.PrimaryKeyRelatedField(queryset=Department.objects.all())
    description = serializers.CharField(max_length=500)
    notes = serializers.CharField(required=False, allow_blank=True)
    items = DepartmentTransferItemSerializer(many=True, allow_empty=False)

    def validate(self, attrs):
        user = self.context["request"].user
        source = attrs.get("source_department") or getattr(user, "department", None)
        if source is None:
            raise serializers.ValidationError({"source_department": "This field is required."})
        destination = attrs["destination_department"]
        if source.pk == destination.pk:
            raise serializers.ValidationError(
                {"destination_department": "Transfer source and destination departments must be different."}
            )
        if not (can_access_department(user, source.pk) and can_access_department(user, destination.pk)):
            raise DepartmentScopeViolation("Department transfers need access to both departments.")

        item_errors = []
        for item in attrs["items"]:
            error = {}
            if item["part"].department_id != source.pk:
                error["part"] = f"Part {item['part'].part_number} is not stocked in {source.code}."
            if item["destination_part"].department_id != destination.pk:
                error["destination_part"] = f"Part {item['destination_part'].part_number} is not stocked in {destination.code}."
            item_errors.append(error)
        if any(item_errors):
            raise serializers.ValidationError({"items": item_errors})

        attrs["source_department"] = source
        return attrs
