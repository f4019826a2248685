"""
Helpers shared by the test suites: signed tokens and tenant fixtures.
"""

import jwt
import uuid
from django.conf import settings
from django.utils import timezone
from datetime import timedelta


def create_test_jwt(tenant_id, user_id=None, **claims):
    """Bearer token the JWT middleware accepts for ``tenant_id``."""
    payload = {
        'user_id': str(user_id or uuid.uuid4()),
        'email': 'dentist@clinic.test',
        'tenant_id': str(tenant_id),
        'tenant_slug': 'test-clinic',
        'is_super_admin': False,
        'enabled_modules': ['dental'],
    }
    payload.update(claims)
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def auth_headers(tenant_id, user_id=None, **claims):
    return {'HTTP_AUTHORIZATION': f'Bearer {create_test_jwt(tenant_id, user_id, **claims)}'}


def create_tenant(plan_type='clinic', tenant_id=None, status='active', patient_count=0, **plan_overrides):
    """Organization on a saved plan, active for a year unless told otherwise."""
    from apps.subscriptions.models import Organization, SubscriptionPlan

    plan = SubscriptionPlan.objects.filter(plan_type=plan_type).first()
    if plan is None:
        plan = SubscriptionPlan.with_defaults(plan_type)
    for name, value in plan_overrides.items():
        setattr(plan, name, value)
    plan.save()

    now = timezone.now()
    return Organization.objects.create(
        tenant_id=tenant_id or uuid.uuid4(),
        name='Smile Dental',
        plan=plan,
        subscription_status=status,
        subscription_end_date=now + timedelta(days=365) if status != 'expired' else now - timedelta(days=1),
        current_patient_count=patient_count,
    )


def create_patient(tenant_id, first_name='Jane', last_name='Smith'):
    from apps.patients.models import PatientProfile
    return PatientProfile.objects.create(tenant_id=tenant_id, first_name=first_name, last_name=last_name)
