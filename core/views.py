import logging

from django.db import connections
from django.utils.dateparse import parse_datetime
from rest_framework import status, viewsets
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework_simplejwt.views import TokenObtainPairView

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission, has_elevated_scope
from core.models import AuditLog, Department
from core.serializers import AuditLogSerializer, DepartmentSerializer, EmailOrUsernameTokenObtainPairSerializer

logger = logging.getLogger(__name__)


class EmailOrUsernameTokenObtainPairView(TokenObtainPairView):
    serializer_class = EmailOrUsernameTokenObtainPairSerializer
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "auth"


class DepartmentViewSet(viewsets.ModelViewSet):
    queryset = Department.objects.all()
    serializer_class = DepartmentSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "department.view",
        "retrieve": "department.view",
        "create": "department.manage",
        "update": "department.manage",
        "partial_update": "department.manage",
        "destroy": "department.manage",
    }

    def get_queryset(self):
        queryset = super().get_queryset().order_by("code")
        user = self.request.user

        if has_elevated_scope(user):
            return queryset
        if getattr(user, "department_id", None):
            return queryset.filter(id=user.department_id)
        return queryset.none()

    def perform_create(self, serializer):
        instance = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="department.create",
            entity="department",
            entity_id=instance.id,
            after_snapshot=self.get_serializer(instance).data,
            department=instance,
        )

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="department.update",
            entity="department",
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
            department=instance,
        )

    def perform_destroy(self, instance):
        # Parts and stock transactions hold protected keys to their department.
        before_snapshot = self.get_serializer(instance).data
        instance.is_active = False
        instance.save(update_fields=["is_active", "updated_at"])
        create_audit_log_from_request(
            self.request,
            action="department.deactivate",
            entity="department",
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
            department=instance,
        )


class AuditLogViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = AuditLog.objects.select_related("actor", "department")
    serializer_class = AuditLogSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "audit.view", "retrieve": "audit.view"}

    def get_queryset(self):
        qs = self.queryset.order_by("-created_at")
        user = self.request.user

        if not has_elevated_scope(user) and getattr(user, "department_id", None):
            qs = qs.filter(department_id=user.department_id)
        elif not has_elevated_scope(user):
            qs = qs.none()

        start_date = self.request.query_params.get("start_date")
        end_date = self.request.query_params.get("end_date")
        actor_id = self.request.query_params.get("actor_id")
        action = self.request.query_params.get("action")
        entity = self.request.query_params.get("entity")
        entity_id = self.request.query_params.get("entity_id")

        if start_date:
            dt = parse_datetime(start_date)
            if dt:
                qs = qs.filter(created_at__gte=dt)
        if end_date:
            dt = parse_datetime(end_date)
            if dt:
                qs = qs.filter(created_at__lte=dt)
        if actor_id:
            qs = qs.filter(actor_id=actor_id)
        if action:
            qs = qs.filter(action=action)
        if entity:
            qs = qs.filter(entity=entity)
        if entity_id:
            qs = qs.filter(entity_id=entity_id)

        return qs


@api_view(["GET"])
@permission_classes([AllowAny])
def healthz(request):
    return Response({"status": "ok", "request_id": getattr(request, "request_id", None)})


@api_view(["GET"])
@permission_classes([AllowAny])
def readyz(request):
    try:
        with connections["default"].cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except Exception as exc:
        logger.exception("readiness_check_failed")
        return Response(
            {"status": "error", "request_id": getattr(request, "request_id", None), "detail": str(exc)},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return Response({"status": "ready", "request_id": getattr(request, "request_id", None)})
