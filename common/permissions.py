from rest_framework.permissions import BasePermission
import logging

logger = logging.getLogger(__name__)


def get_request_entitlements(request):
    """
    Entitlements for the request's tenant, resolved once per request.

    Args:
        request: DRF request carrying tenant_id from the JWT middleware

    Returns:
        Entitlements: resolved plan features, limits and status
    """
    entitlements = getattr(request, '_plan_entitlements', None)
    if entitlements is None:
        from apps.subscriptions.services import get_entitlements
        entitlements = get_entitlements(getattr(request, 'tenant_id', None))
        request._plan_entitlements = entitlements
    return entitlements


class IsTenantRequest(BasePermission):
    """Allows requests the JWT middleware resolved to a tenant."""
    message = 'Tenant context required'

    def has_permission(self, request, view):
        return bool(getattr(request, 'tenant_id', None))


class PlanFeaturePermission(BasePermission):
    """
    Denies access unless the tenant's plan enables the view's feature.

    Views declare the feature with a ``required_feature`` attribute; views
    without one are not gated.
    """
    message = 'This feature is not available on your current plan'

    def has_permission(self, request, view):
        feature = getattr(view, 'required_feature', None)
        if not feature:
            return True

        entitlements = get_request_entitlements(request)
        if entitlements.has_feature(feature):
            return True

        if entitlements.status.is_expired:
            self.message = 'Subscription expired. Please renew your plan.'
        logger.info(f"Feature '{feature}' denied for tenant {getattr(request, 'tenant_id', None)}")
        return False


class PatientLimitPermission(BasePermission):
    """Blocks patient creation once the plan's patient limit is reached."""
    message = 'Patient limit reached. Please upgrade your plan.'

    def has_permission(self, request, view):
        if getattr(view, 'action', None) != 'create':
            return True

        entitlements = get_request_entitlements(request)
        if entitlements.can_add_patient:
            return True

        self.message = entitlements.patient_limit_message()
        logger.info(f"Patient limit reached for tenant {getattr(request, 'tenant_id', None)}: {self.message}")
        return False
