"""
Error taxonomy for the DentalDesk billing core.

Every financial operation either returns a new state or raises one of the
errors below. The API layer maps them to HTTP responses through
``api_exception_handler`` (registered in REST_FRAMEWORK settings).
"""

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler
import logging

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for errors raised by the billing core"""
    code = 'billing_error'
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, field: str = None):
        self.message = message
        self.field = field
        super().__init__(self.message)


class ValidationError(BillingError):
    """Malformed input: negative quantities, bad installment counts, etc."""
    code = 'validation_error'
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidStateError(BillingError):
    """Operation not permitted in the entity's current status"""
    code = 'invalid_state'
    status_code = status.HTTP_409_CONFLICT


class NotFoundError(BillingError):
    """Referenced entity does not exist or belongs to another parent"""
    code = 'not_found'
    status_code = status.HTTP_404_NOT_FOUND


def api_exception_handler(exc, context):
    """
    DRF exception handler that renders billing errors in the API envelope.

    Anything that is not a BillingError falls through to DRF's default handler.
    """
    if isinstance(exc, BillingError):
        view = context.get('view')
        logger.warning(
            f"{exc.__class__.__name__} in {view.__class__.__name__ if view else 'unknown view'}: {exc.message}"
        )
        payload = {
            'success': False,
            'error': exc.message,
            'code': exc.code,
        }
        if exc.field:
            payload['field'] = exc.field
        return Response(payload, status=exc.status_code)

    return exception_handler(exc, context)
