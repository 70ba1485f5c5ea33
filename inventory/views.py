from django.core.exceptions import ValidationError as DjangoValidationError
from django.db.models import Q
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import PermissionDenied, ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.exceptions import error_response
from common.pagination import LedgerHistoryPagination
from common.permissions import (
    RoleCapabilityPermission,
    can_access_department,
    has_elevated_scope,
    log_denied,
    scoped_queryset_for_user,
    user_has_capability,
)
from core.models import Department
from inventory.exceptions import DepartmentScopeViolation, PartNotFound
from inventory.ledger import apply_quantity_change, replay_part_quantity
from inventory.models import Part, StockTransaction
from inventory.serializers import (
    DepartmentTransferSerializer,
    InventoryHistorySerializer,
    ManualInventoryChangeSerializer,
    PartSerializer,
    ReversalSerializer,
    StatusTransitionSerializer,
    StockTransactionSerializer,
)
from inventory.services import (
    ensure_transaction_deletable,
    reverse_and_cancel,
    transition_stock_transaction,
    transfer_between_departments,
    validate_availability,
)

APPROVAL_STATUSES = {StockTransaction.Status.APPROVED, StockTransaction.Status.COMPLETED}


class AuditedMutationMixin:
    audit_entity = None

    def _audit(self, *, action, instance, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity=self.audit_entity,
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
            department=getattr(instance, "department", None),
        )

    def _target_department(self, requested=None):
        user = self.request.user
        if requested is not None and has_elevated_scope(user):
            return requested
        if not getattr(user, "department_id", None):
            raise ValidationError("Authenticated user must belong to a department to create records.")
        return user.department

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._audit(
            action=f"{self.audit_entity}.update",
            instance=instance,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )


class PartViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Part.objects.select_related("department")
    serializer_class = PartSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "inventory.view",
        "retrieve": "inventory.view",
        "create": "parts.manage",
        "update": "parts.manage",
        "partial_update": "parts.manage",
        "destroy": "parts.manage",
        "inventory": "inventory.view",
        "apply_inventory_change": "inventory.update",
        "reconcile": "inventory.view",
    }
    audit_entity = "part"

    def get_queryset(self):
        qs = scoped_queryset_for_user(super().get_queryset(), self.request.user).order_by("part_number")
        params = self.request.query_params
        if params.get("status"):
            qs = qs.filter(status=params["status"])
        if params.get("stock_status"):
            qs = qs.filter(stock_status=params["stock_status"])
        if params.get("category"):
            qs = qs.filter(category=params["category"])
        if params.get("search"):
            term = params["search"]
            qs = qs.filter(Q(part_number__icontains=term) | Q(name__icontains=term) | Q(sku__icontains=term))
        return qs

    def perform_create(self, serializer):
        department = self._target_department(serializer.validated_data.pop("department", None))
        instance = serializer.save(department=department)
        self._audit(action="part.create", instance=instance, after_snapshot=self.get_serializer(instance).data)

    def perform_update(self, serializer):
        if not has_elevated_scope(self.request.user):
            serializer.validated_data.pop("department", None)
        super().perform_update(serializer)

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        instance.status = Part.Status.INACTIVE
        instance.save(update_fields=["status", "updated_at"])
        self._audit(
            action="part.deactivate",
            instance=instance,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )

    def _part_in_scope(self, pk):
        try:
            part = Part.objects.filter(pk=pk).first()
        except (DjangoValidationError, ValueError):
            part = None
        if part is None:
            raise PartNotFound()
        if not can_access_department(self.request.user, part.department_id):
            raise DepartmentScopeViolation("You can only view inventory history for parts in your department.")
        return part

    @action(detail=True, methods=["get"], url_path="inventory")
    def inventory(self, request, pk=None):
        part = self._part_in_scope(pk)
        paginator = LedgerHistoryPagination()
        page = paginator.paginate_queryset(part.history.order_by("-sequence"), request, view=self)
        return paginator.get_paginated_response(InventoryHistorySerializer(page, many=True).data)

    @inventory.mapping.post
    def apply_inventory_change(self, request, pk=None):
        serializer = ManualInventoryChangeSerializer(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        change = dict(serializer.validated_data)

        part, entry = apply_quantity_change(pk, change.pop("quantity_change"), request.user, **change)
        create_audit_log_from_request(
            request,
            action="inventory.update",
            entity="part",
            entity_id=part.id,
            after_snapshot=InventoryHistorySerializer(entry).data,
            department=part.department,
        )
        return Response(
            {
                "id": str(part.id),
                "part_number": part.part_number,
                "name": part.name,
                "quantity": part.quantity,
                "stock_status": part.stock_status,
                "total_value": str(part.total_value),
                "updated_at": part.updated_at,
                "history_id": str(entry.id),
                "message": f"Inventory updated successfully. New quantity: {part.quantity}",
            }
        )

    @action(detail=True, methods=["get"], url_path="reconcile")
    def reconcile(self, request, pk=None):
        return Response(replay_part_quantity(self.get_object()).as_dict())


class StockTransactionViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = StockTransaction.objects.select_related("department").prefetch_related("items")
    serializer_class = StockTransactionSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "inventory.view",
        "retrieve": "inventory.view",
        "availability": "inventory.view",
        "ledger": "inventory.view",
        "create": "stock.transaction.create",
        "update": "stock.transaction.create",
        "partial_update": "stock.transaction.create",
        "change_status": "stock.transaction.create",
        "department_transfer": "stock.transaction.approve",
        "reverse": "stock.transaction.reverse",
        "destroy": "stock.transaction.delete",
    }
    audit_entity = "stock_transaction"

    def get_queryset(self):
        qs = scoped_queryset_for_user(super().get_queryset(), self.request.user).order_by("-created_at")
        params = self.request.query_params
        if params.get("status"):
            qs = qs.filter(status=params["status"])
        if params.get("transaction_type"):
            qs = qs.filter(transaction_type=params["transaction_type"])
        return qs

    def _requested_department(self):
        department_id = self.request.data.get("department") if hasattr(self.request.data, "get") else None
        if not department_id or not has_elevated_scope(self.request.user):
            return None
        try:
            return Department.objects.filter(pk=department_id).first()
        except (DjangoValidationError, ValueError):
            return None

    def get_serializer_context(self):
        context = super().get_serializer_context()
        if getattr(self, "action", None) == "create":
            department = self._requested_department()
            context["department_id"] = department.id if department else None
        return context

    def perform_create(self, serializer):
        department = self._target_department(self._requested_department())
        instance = serializer.save(department=department)
        self._audit(action="stock_transaction.create", instance=instance, after_snapshot=self.get_serializer(instance).data)

    def perform_destroy(self, instance):
        ensure_transaction_deletable(instance)
        self._audit(action="stock_transaction.delete", instance=instance, before_snapshot=self.get_serializer(instance).data)
        instance.delete()

    def _batch_response(self, stock_transaction, batch):
        if batch is not None and not batch.success:
            return error_response(
                code="inventory_update_incomplete",
                message=batch.message,
                errors={"transaction": self.get_serializer(stock_transaction).data, "inventory": batch.as_dict()},
                status_code=status.HTTP_409_CONFLICT,
            )
        return Response(
            {
                "transaction": self.get_serializer(stock_transaction).data,
                "inventory": batch.as_dict() if batch is not None else None,
            }
        )

    @action(detail=True, methods=["post"], url_path="status", url_name="status")
    def change_status(self, request, pk=None):
        stock_transaction = self.get_object()
        serializer = StatusTransitionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        new_status = serializer.validated_data["status"]
        if new_status in APPROVAL_STATUSES and not user_has_capability(request.user, "stock.transaction.approve"):
            log_denied(request, self, "stock.transaction.approve", self.action)
            raise PermissionDenied("You do not have permission to approve or complete stock transactions.")

        before_snapshot = self.get_serializer(stock_transaction).data
        stock_transaction, batch = transition_stock_transaction(
            stock_transaction,
            new_status,
            request.user,
            notes=serializer.validated_data.get("notes", ""),
        )
        self._audit(
            action=f"stock_transaction.status.{new_status}",
            instance=stock_transaction,
            before_snapshot=before_snapshot,
            after_snapshot={
                "transaction": self.get_serializer(stock_transaction).data,
                "inventory": batch.as_dict() if batch is not None else None,
            },
        )
        return self._batch_response(stock_transaction, batch)

    @action(detail=False, methods=["post"], url_path="department-transfer", url_name="department-transfer")
    def department_transfer(self, request):
        serializer = DepartmentTransferSerializer(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        outbound, inbound, batch = transfer_between_departments(
            data["source_department"],
            data["destination_department"],
            data["items"],
            request.user,
            description=data["description"],
            notes=data.get("notes", ""),
        )
        payload = {
            "outbound": self.get_serializer(outbound).data,
            "inbound": self.get_serializer(inbound).data,
            "inventory": batch.as_dict(),
        }
        self._audit(action="stock_transaction.department_transfer", instance=outbound, after_snapshot=payload)
        if not batch.success:
            return error_response(
                code="inventory_update_incomplete",
                message=batch.message,
                errors=payload,
                status_code=status.HTTP_409_CONFLICT,
            )
        return Response(payload, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["get"], url_path="availability")
    def availability(self, request, pk=None):
        return Response(validate_availability(self.get_object(), request.user).as_dict())

    @action(detail=True, methods=["post"], url_path="reverse")
    def reverse(self, request, pk=None):
        stock_transaction = self.get_object()
        serializer = ReversalSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        before_snapshot = self.get_serializer(stock_transaction).data
        stock_transaction, batch = reverse_and_cancel(
            stock_transaction,
            request.user,
            notes=serializer.validated_data.get("notes", ""),
        )
        self._audit(
            action="stock_transaction.reverse",
            instance=stock_transaction,
            before_snapshot=before_snapshot,
            after_snapshot={"transaction": self.get_serializer(stock_transaction).data, "inventory": batch.as_dict()},
        )
        return self._batch_response(stock_transaction, batch)

    @action(detail=True, methods=["get"], url_path="ledger")
    def ledger(self, request, pk=None):
        stock_transaction = self.get_object()
        paginator = LedgerHistoryPagination()
        page = paginator.paginate_queryset(
            stock_transaction.ledger_entries.order_by("performed_at", "sequence"), request, view=self
        )
        return paginator.get_paginated_response(InventoryHistorySerializer(page, many=True).data)
