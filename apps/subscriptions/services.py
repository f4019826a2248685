"""
Subscription context for tenants: organization lookup, entitlement
resolution, billing-provider refresh and usage counters.
"""

from datetime import timedelta

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import F, Value
from django.db.models.functions import Greatest
from django.utils import timezone
import logging

from common.exceptions import NotFoundError, ValidationError

from . import entitlements
from .models import Organization, SubscriptionPlan
from .provider import BillingProviderClient, BillingProviderError

logger = logging.getLogger(__name__)

SUBSCRIPTION_TERM_DAYS = 365


def get_organization(tenant_id):
    try:
        return Organization.objects.select_related('plan').get(tenant_id=tenant_id)
    except (Organization.DoesNotExist, DjangoValidationError, ValueError):
        return None


def get_entitlements(tenant_id, now=None):
    """
    Resolve the tenant's entitlements.

    An unknown tenant, or an organization without a plan, resolves closed.
    """
    now = now or timezone.now()
    organization = get_organization(tenant_id) if tenant_id else None

    if organization is None:
        logger.warning(f"No organization for tenant {tenant_id}; entitlements resolve closed")
        return entitlements.build_entitlements(None, entitlements.Usage(patient_count=0, user_count=0), now)

    if organization.plan is None:
        logger.warning(f"Organization {organization.pk} has no plan; entitlements resolve closed")
        return entitlements.build_entitlements(None, organization.to_usage(), now)

    return entitlements.build_entitlements(
        organization.to_snapshot(),
        organization.to_usage(),
        now,
        patient_limit=organization.plan.patient_limit,
        user_limit=organization.plan.user_limit,
    )


def get_active_plans():
    return SubscriptionPlan.objects.filter(is_active=True)


def ensure_default_plans():
    """Create any missing tier with its default limits."""
    created = []
    for plan_type in entitlements.PlanType:
        if not SubscriptionPlan.objects.filter(plan_type=plan_type.value).exists():
            plan = SubscriptionPlan.with_defaults(plan_type)
            plan.save()
            created.append(plan)
    if created:
        logger.info(f"Created default subscription plans: {', '.join(p.plan_type for p in created)}")
    return created


def create_organization(tenant_id, name, plan_type, now=None):
    """
    Register an organization on a plan.

    Plans with trial days start in trial; others start active for one term.
    """
    now = now or timezone.now()
    try:
        plan = SubscriptionPlan.objects.get(plan_type=plan_type, is_active=True)
    except SubscriptionPlan.DoesNotExist:
        raise ValidationError(f"Plan type '{plan_type}' not found", field='plan_type')

    if Organization.objects.filter(tenant_id=tenant_id).exists():
        raise ValidationError(f"Tenant {tenant_id} already has an organization", field='tenant_id')

    on_trial = plan.trial_days > 0
    organization = Organization.objects.create(
        tenant_id=tenant_id,
        name=name,
        plan=plan,
        subscription_status='trial' if on_trial else 'active',
        trial_ends_at=now + timedelta(days=plan.trial_days) if on_trial else None,
        subscription_end_date=None if on_trial else now + timedelta(days=SUBSCRIPTION_TERM_DAYS),
    )
    logger.info(f"Created organization {organization.pk} for tenant {tenant_id} on {plan.plan_type}")
    return organization


def refresh_subscription(organization, client=None):
    """
    Pull the provider's snapshot onto the organization.

    Organizations without a provider customer id are left as they are.
    """
    if not organization.provider_customer_id:
        return organization

    client = client or BillingProviderClient()
    snapshot = client.fetch_subscription(organization.provider_customer_id)

    with transaction.atomic():
        organization = Organization.objects.select_for_update().get(pk=organization.pk)
        if snapshot.plan_type is not None:
            organization.plan = SubscriptionPlan.objects.filter(plan_type=snapshot.plan_type.value).first()
        organization.subscription_status = snapshot.status.value
        organization.subscription_end_date = snapshot.period_end
        organization.trial_ends_at = snapshot.trial_end
        organization.last_synced_at = timezone.now()
        organization.save()

    logger.info(
        f"Refreshed subscription for organization {organization.pk} "
        f"(tenant {organization.tenant_id}): {snapshot.status.value}"
    )
    return organization


def sync_all_subscriptions(client=None):
    """Refresh every organization linked to the provider. Returns (synced, failed)."""
    client = client or BillingProviderClient()
    synced = failed = 0
    for organization in Organization.objects.exclude(provider_customer_id__isnull=True).exclude(provider_customer_id=''):
        try:
            refresh_subscription(organization, client)
            synced += 1
        except BillingProviderError as e:
            failed += 1
            logger.error(f"Subscription refresh failed for organization {organization.pk}: {e.message}")
    return synced, failed


# -------------------------------------------------------------------
# Usage counters
# -------------------------------------------------------------------

def _update_counter(tenant_id, **changes):
    updated = Organization.objects.filter(tenant_id=tenant_id).update(updated_at=timezone.now(), **changes)
    if not updated:
        raise NotFoundError(f"No organization for tenant {tenant_id}")


def increment_patient_count(tenant_id):
    _update_counter(tenant_id, current_patient_count=F('current_patient_count') + 1)


def reserve_patient_slot(tenant_id):
    """
    Count one more patient if the plan limit allows it.

    Locks the organization row, so concurrent registrations cannot both take
    the last slot. Call inside the transaction that saves the patient.
    Returns the limit message when the plan is full, otherwise None.
    """
    organization = Organization.objects.select_for_update().filter(tenant_id=tenant_id).first()
    if organization is None:
        raise NotFoundError(f"No organization for tenant {tenant_id}")

    limit = organization.plan.patient_limit if organization.plan else 0
    if not entitlements.is_within_limit(organization.current_patient_count, limit):
        return entitlements.limit_message('Patient', organization.current_patient_count, limit)

    increment_patient_count(tenant_id)
    return None


def decrement_patient_count(tenant_id):
    _update_counter(tenant_id, current_patient_count=Greatest(F('current_patient_count') - 1, Value(0)))


def increment_user_count(tenant_id):
    _update_counter(tenant_id, current_user_count=F('current_user_count') + 1)


def decrement_user_count(tenant_id):
    # The owner always counts
    _update_counter(tenant_id, current_user_count=Greatest(F('current_user_count') - 1, Value(1)))
