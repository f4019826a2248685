"""
Mixins for the DentalDesk multi-tenant system.

Provides common functionality for:
- Tenant ownership on models
- Tenant-based queryset filtering in ViewSets
"""

from django.db import models
import logging

logger = logging.getLogger(__name__)


class TenantMixin(models.Model):
    """
    Mixin to add tenant_id field to models.

    All models that need tenant isolation should inherit from this.
    """
    tenant_id = models.UUIDField(
        db_index=True,
        help_text="Tenant (clinic organization) identifier"
    )

    class Meta:
        abstract = True


class TenantViewSetMixin:
    """
    ViewSet mixin for automatic tenant filtering.

    Filters querysets by the tenant_id the JWT middleware put on the request.
    A request without a tenant sees nothing.
    """

    def get_queryset(self):
        queryset = super().get_queryset()
        tenant_id = getattr(self.request, 'tenant_id', None)

        if tenant_id is None:
            logger.warning(f"No tenant on request for {self.__class__.__name__}; returning empty queryset")
            return queryset.none()

        queryset = queryset.filter(tenant_id=tenant_id)
        logger.debug(f"Filtered queryset by tenant_id: {tenant_id}")
        return queryset

    def perform_create(self, serializer):
        """Automatically set tenant_id (and creator) when creating objects."""
        save_kwargs = {'tenant_id': self.request.tenant_id}
        model = serializer.Meta.model
        if hasattr(model, 'created_by_id') and getattr(self.request, 'user_id', None):
            save_kwargs['created_by_id'] = self.request.user_id
        serializer.save(**save_kwargs)
