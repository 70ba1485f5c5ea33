from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from django.db import DatabaseError, IntegrityError
from django.db.models import ProtectedError
from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    AuthenticationFailed,
    MethodNotAllowed,
    NotAcceptable,
    NotAuthenticated,
    NotFound,
    ParseError,
    PermissionDenied,
    Throttled,
    UnsupportedMediaType,
    ValidationError,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)

GENERIC_SERVER_ERROR_MESSAGE = "An unexpected error occurred."

# Framework exceptions get a fixed code; domain exceptions report their own default_code.
FRAMEWORK_ERROR_CODES: tuple[tuple[type[Exception], str], ...] = (
    (ValidationError, "validation_error"),
    (NotAuthenticated, "not_authenticated"),
    (AuthenticationFailed, "authentication_failed"),
    (PermissionDenied, "permission_denied"),
    (NotFound, "not_found"),
    (MethodNotAllowed, "method_not_allowed"),
    (NotAcceptable, "not_acceptable"),
    (UnsupportedMediaType, "unsupported_media_type"),
    (ParseError, "parse_error"),
    (Throttled, "throttled"),
)

# Order matters: IntegrityError is a DatabaseError.
PERSISTENCE_ERRORS: tuple[tuple[type[Exception], str, str, int], ...] = (
    (
        ProtectedError,
        "protected_reference",
        "The record is still referenced by inventory history or transactions.",
        status.HTTP_409_CONFLICT,
    ),
    (
        IntegrityError,
        "integrity_error",
        "The change conflicts with existing data.",
        status.HTTP_409_CONFLICT,
    ),
    (
        DatabaseError,
        "persistence_error",
        GENERIC_SERVER_ERROR_MESSAGE,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    ),
)


def build_error_envelope(*, code: str, message: str, errors: Any, status_code: int) -> dict[str, Any]:
    return {"code": code, "message": message, "errors": errors, "status": status_code}


def error_response(
    *,
    code: str,
    message: str,
    errors: Any = None,
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> Response:
    envelope = build_error_envelope(code=code, message=message, errors=errors, status_code=status_code)
    return Response(envelope, status=status_code)


def custom_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    """Render every API failure as `{code, message, errors, status}`."""
    response = drf_exception_handler(exc, context)
    if response is None:
        return _unhandled_response(exc, context)

    response.data = build_error_envelope(
        code=_stable_code(exc),
        message=_message_for(exc, response.data),
        errors=_field_errors(response.data),
        status_code=response.status_code,
    )
    return response


def _unhandled_response(exc: Exception, context: dict[str, Any]) -> Response:
    view = context.get("view")
    view_name = view.__class__.__name__ if view else "unknown"

    for exception_type, code, message, status_code in PERSISTENCE_ERRORS:
        if isinstance(exc, exception_type):
            if status_code >= 500:
                logger.exception("Persistence failure in %s", view_name)
            else:
                logger.warning("%s in %s: %s", code, view_name, exc)
            return error_response(code=code, message=message, status_code=status_code)

    logger.exception("Unhandled API exception in %s", view_name)
    return error_response(
        code="internal_server_error",
        message=GENERIC_SERVER_ERROR_MESSAGE,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def _stable_code(exc: Exception) -> str:
    for exception_type, code in FRAMEWORK_ERROR_CODES:
        if isinstance(exc, exception_type):
            return code
    if isinstance(exc, APIException):
        return str(getattr(exc, "default_code", "api_error"))
    return "internal_server_error"


def _message_for(exc: Exception, data: Any) -> str:
    if isinstance(exc, ValidationError):
        return "Validation failed."
    if isinstance(exc, Throttled):
        return "Request was throttled."

    detail = data.get("detail") if isinstance(data, Mapping) else data
    if isinstance(detail, str) and detail:
        return detail
    if isinstance(exc, APIException):
        return str(exc.default_detail)
    return GENERIC_SERVER_ERROR_MESSAGE


def _field_errors(data: Any) -> Any:
    if isinstance(data, Mapping):
        return None if set(data) == {"detail"} else data
    if isinstance(data, Sequence) and not isinstance(data, str):
        return data
    return None
