import logging

from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class ValidationFailed(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "The request is invalid."
    default_code = "invalid_request"


class InvalidSignature(APIException):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Webhook signature is missing or invalid."
    default_code = "invalid_signature"


class ActionForbidden(APIException):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "You are not allowed to perform this action."
    default_code = "forbidden"


class ResourceNotFound(APIException):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found."
    default_code = "not_found"


class InvalidState(APIException):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "The action is not allowed in the current state."
    default_code = "invalid_state"


class PayoutFailed(APIException):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "The disbursement provider rejected the payout."
    default_code = "payout_failed"


def api_exception_handler(exc, context):
    response = exception_handler(exc, context)
    if response is None:
        view = context.get("view")
        logger.exception("Unhandled error in %s", view.__class__.__name__ if view else "unknown view", exc_info=exc)
        return response

    if isinstance(response.data, dict):
        detail = response.data.get("detail", "Request failed")
        fields = {k: v for k, v in response.data.items() if k != "detail"}
    else:
        detail = "Request failed"
        fields = {}

    code = getattr(detail, "code", None) or getattr(exc, "default_code", "error")
    response.data = {
        "code": code,
        "detail": detail,
        "fields": fields,
    }
    return response
