import json

from django.core.serializers.json import DjangoJSONEncoder

from common.logging import current_request_id
from core.models import AuditLog


def to_snapshot(value):
    """Round-trip through JSON so UUIDs, decimals and datetimes fit a JSONField."""
    if value is None:
        return None
    return json.loads(json.dumps(value, cls=DjangoJSONEncoder))


def get_request_id(request):
    return (
        getattr(request, "request_id", None)
        or request.headers.get("X-Request-ID")
        or current_request_id()
    )


def create_audit_log(
    *,
    action,
    entity,
    actor=None,
    department=None,
    entity_id=None,
    before_snapshot=None,
    after_snapshot=None,
    request_id=None,
):
    if department is None and actor is not None:
        department = getattr(actor, "department", None)
    return AuditLog.objects.create(
        actor=actor,
        department=department,
        action=action,
        entity=entity,
        entity_id=entity_id,
        before_snapshot=to_snapshot(before_snapshot),
        after_snapshot=to_snapshot(after_snapshot),
        request_id=request_id or current_request_id(),
    )


def create_audit_log_from_request(request, *, action, entity, entity_id=None, department=None, **snapshots):
    user = getattr(request, "user", None)
    return create_audit_log(
        actor=user if user is not None and user.is_authenticated else None,
        department=department,
        action=action,
        entity=entity,
        entity_id=entity_id,
        request_id=get_request_id(request),
        **snapshots,
    )
