"""
Tests for plan entitlements, the billing provider client and the
subscription services built on them.
"""

import uuid
from datetime import datetime, timedelta, timezone as dt_timezone
from io import StringIO
from unittest.mock import patch, MagicMock

import requests
from django.core.management import call_command
from django.test import TestCase, SimpleTestCase
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from common.exceptions import NotFoundError, ValidationError
from common.testing import auth_headers, create_tenant

from . import entitlements, services
from .entitlements import (
    Feature, PlanType, SubscriptionSnapshot, SubscriptionStatus, Usage,
    build_entitlements, is_feature_enabled, is_within_limit, resolve_status
)
from .models import SubscriptionPlan
from .provider import BillingProviderClient, BillingProviderError

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=dt_timezone.utc)


def snapshot(plan='clinic', status_value='active', period_end=None, trial_end=None):
    return SubscriptionSnapshot(
        plan_type=PlanType(plan),
        status=SubscriptionStatus(status_value),
        period_end=period_end,
        trial_end=trial_end,
    )


class FeatureAndLimitTest(SimpleTestCase):

    def test_student_patient_limit(self):
        """50 of 50 patients is at the limit; 49 still fits."""
        limit, _ = entitlements.DEFAULT_LIMITS[PlanType.STUDENT]
        self.assertEqual(limit, 50)
        self.assertFalse(is_within_limit(50, limit))
        self.assertTrue(is_within_limit(49, limit))

    def test_unlimited(self):
        self.assertTrue(is_within_limit(10 ** 6, None))

    def test_tier_features(self):
        self.assertTrue(is_feature_enabled('student', 'patients'))
        self.assertFalse(is_feature_enabled('student', 'financials'))
        self.assertTrue(is_feature_enabled('doctor', Feature.FINANCIALS))
        self.assertFalse(is_feature_enabled('doctor', 'inventory'))
        self.assertTrue(all(is_feature_enabled(PlanType.CLINIC, f) for f in Feature))

    def test_unknown_names_fail_closed(self):
        self.assertFalse(is_feature_enabled('student', 'teleportation'))
        self.assertFalse(is_feature_enabled('enterprise', 'patients'))
        self.assertFalse(is_feature_enabled(None, 'patients'))

    def test_tiers_are_nested(self):
        student = entitlements.TIER_FEATURES[PlanType.STUDENT]
        doctor = entitlements.TIER_FEATURES[PlanType.DOCTOR]
        clinic = entitlements.TIER_FEATURES[PlanType.CLINIC]
        self.assertTrue(student < doctor < clinic)

    def test_limit_message(self):
        self.assertEqual(
            entitlements.limit_message('Patient', 50, 50),
            'Patient limit reached (50/50). Please upgrade your plan.'
        )


class ResolveStatusTest(SimpleTestCase):

    def _assert_one_state(self, resolved):
        self.assertEqual([resolved.is_active, resolved.is_trial, resolved.is_expired].count(True), 1)

    def test_active(self):
        resolved = resolve_status(snapshot(period_end=NOW + timedelta(days=10)), NOW)

        self.assertTrue(resolved.is_active)
        self.assertEqual(resolved.days_remaining, 10)
        self._assert_one_state(resolved)

    def test_partial_days_round_up(self):
        resolved = resolve_status(snapshot(period_end=NOW + timedelta(days=1, hours=6)), NOW)

        self.assertEqual(resolved.days_remaining, 2)

    def test_trial_takes_precedence_over_active(self):
        resolved = resolve_status(
            snapshot(period_end=NOW + timedelta(days=30), trial_end=NOW + timedelta(days=5)), NOW
        )

        self.assertTrue(resolved.is_trial)
        self.assertFalse(resolved.is_active)
        self.assertEqual(resolved.days_remaining, 5)
        self._assert_one_state(resolved)

    def test_trial_ending_now_is_still_trial(self):
        resolved = resolve_status(snapshot(status_value='trial', trial_end=NOW), NOW)

        self.assertTrue(resolved.is_trial)
        self.assertEqual(resolved.days_remaining, 0)

    def test_lapsed_trial_is_expired(self):
        resolved = resolve_status(snapshot(status_value='trial', trial_end=NOW - timedelta(days=1)), NOW)

        self.assertTrue(resolved.is_expired)
        self.assertEqual(resolved.days_remaining, 0)
        self._assert_one_state(resolved)

    def test_expired_overrides_trial(self):
        resolved = resolve_status(
            snapshot(period_end=NOW - timedelta(seconds=1), trial_end=NOW + timedelta(days=3)), NOW
        )

        self.assertTrue(resolved.is_expired)
        self.assertFalse(resolved.is_trial)
        self._assert_one_state(resolved)

    def test_provider_expired_status(self):
        resolved = resolve_status(snapshot(status_value='expired'), NOW)

        self.assertTrue(resolved.is_expired)
        self.assertIsNone(resolved.days_remaining)

    def test_open_ended_active(self):
        resolved = resolve_status(snapshot(), NOW)

        self.assertTrue(resolved.is_active)
        self.assertIsNone(resolved.days_remaining)


class BuildEntitlementsTest(SimpleTestCase):

    def test_student_at_limit(self):
        resolved = build_entitlements(snapshot('student'), Usage(patient_count=50, user_count=1), NOW)

        self.assertFalse(resolved.can_add_patient)
        self.assertFalse(resolved.can_add_user)
        self.assertEqual(resolved.patient_limit_message(), 'Patient limit reached (50/50). Please upgrade your plan.')
        self.assertTrue(resolved.has_feature('patients'))
        self.assertFalse(resolved.has_feature('financials'))

    def test_limit_overrides(self):
        resolved = build_entitlements(
            snapshot('student'), Usage(patient_count=50), NOW, patient_limit=None, user_limit=3
        )

        self.assertTrue(resolved.can_add_patient)
        self.assertTrue(resolved.can_add_user)
        self.assertIsNone(resolved.as_dict()['limits']['patients_remaining'])
        self.assertEqual(resolved.as_dict()['limits']['users_remaining'], 2)

    def test_expired_disables_everything(self):
        resolved = build_entitlements(snapshot('clinic', 'expired'), Usage(), NOW)

        self.assertFalse(any(resolved.features.values()))
        self.assertFalse(resolved.can_add_patient)
        self.assertEqual(resolved.patient_limit_message(), 'Subscription expired. Please renew your plan.')

    def test_missing_snapshot_fails_closed(self):
        resolved = build_entitlements(None, Usage(patient_count=0, user_count=0), NOW)

        self.assertIsNone(resolved.plan_type)
        self.assertTrue(resolved.status.is_expired)
        self.assertFalse(resolved.has_feature('dashboard'))
        self.assertFalse(resolved.can_add_patient)

    def test_unknown_feature_is_false(self):
        resolved = build_entitlements(snapshot('clinic'), Usage(), NOW)

        self.assertFalse(resolved.has_feature('time_travel'))

    def test_as_dict(self):
        data = build_entitlements(snapshot('doctor', period_end=NOW + timedelta(days=3)), Usage(12, 2), NOW).as_dict()

        self.assertEqual(data['plan_type'], 'doctor')
        self.assertEqual(data['status']['days_remaining'], 3)
        self.assertEqual(data['limits']['patient_limit'], 200)
        self.assertEqual(data['limits']['patients_remaining'], 188)
        self.assertFalse(data['can_add_user'])
        self.assertTrue(data['features']['financials'])


class BillingProviderClientTest(SimpleTestCase):

    def setUp(self):
        self.client = BillingProviderClient(base_url='https://billing.test/api/', api_key='secret', timeout=5)

    def _response(self, status_code, payload):
        response = MagicMock(status_code=status_code)
        response.json.return_value = payload
        return response

    @patch('apps.subscriptions.provider.requests.get')
    def test_fetch_subscription(self, mock_get):
        mock_get.return_value = self._response(200, {
            'plan_type': 'doctor',
            'status': 'active',
            'period_end': '2025-07-01T00:00:00Z',
            'trial_end': None,
        })

        result = self.client.fetch_subscription('cus_123')

        mock_get.assert_called_once_with(
            'https://billing.test/api/customers/cus_123/subscription',
            headers={'Accept': 'application/json', 'Authorization': 'Bearer secret'},
            timeout=5,
        )
        self.assertEqual(result.plan_type, PlanType.DOCTOR)
        self.assertEqual(result.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(result.period_end, datetime(2025, 7, 1, tzinfo=dt_timezone.utc))
        self.assertIsNone(result.trial_end)

    @patch('apps.subscriptions.provider.requests.get')
    def test_error_response(self, mock_get):
        mock_get.return_value = self._response(404, {'detail': 'No such customer'})

        with self.assertRaises(BillingProviderError) as ctx:
            self.client.fetch_subscription('cus_missing')

        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.message, 'No such customer')

    @patch('apps.subscriptions.provider.requests.get')
    def test_connection_error(self, mock_get):
        mock_get.side_effect = requests.ConnectionError('refused')

        with self.assertRaises(BillingProviderError):
            self.client.fetch_subscription('cus_123')

    def test_parse_snapshot_edge_cases(self):
        self.assertIsNone(BillingProviderClient.parse_snapshot({'plan_type': 'enterprise'}).plan_type)

        with self.assertRaises(BillingProviderError):
            BillingProviderClient.parse_snapshot({'plan_type': 'clinic', 'status': 'paused'})
        with self.assertRaises(BillingProviderError):
            BillingProviderClient.parse_snapshot({'plan_type': 'clinic', 'period_end': 'next tuesday'})


class FakeProvider:
    """Stands in for the provider client with canned snapshots per customer."""

    def __init__(self, snapshots):
        self.snapshots = snapshots

    def fetch_subscription(self, customer_id):
        result = self.snapshots[customer_id]
        if isinstance(result, Exception):
            raise result
        return result


class SubscriptionServiceTest(TestCase):

    def test_ensure_default_plans(self):
        created = services.ensure_default_plans()

        self.assertEqual(sorted(p.plan_type for p in created), ['clinic', 'doctor', 'student'])
        self.assertEqual(services.ensure_default_plans(), [])
        student = SubscriptionPlan.objects.get(plan_type='student')
        self.assertEqual((student.patient_limit, student.user_limit), (50, 1))
        self.assertIsNone(SubscriptionPlan.objects.get(plan_type='clinic').patient_limit)

    def test_create_organization(self):
        services.ensure_default_plans()
        now = timezone.now()

        clinic = services.create_organization(uuid.uuid4(), 'Bright Smiles', 'clinic', now=now)
        student = services.create_organization(uuid.uuid4(), 'Dental School Lab', 'student', now=now)

        self.assertEqual(clinic.subscription_status, 'trial')
        self.assertEqual(clinic.trial_ends_at, now + timedelta(days=15))
        self.assertEqual(student.subscription_status, 'active')
        self.assertEqual(student.subscription_end_date, now + timedelta(days=365))

        with self.assertRaises(ValidationError):
            services.create_organization(clinic.tenant_id, 'Duplicate', 'clinic')
        with self.assertRaises(ValidationError):
            services.create_organization(uuid.uuid4(), 'Unknown', 'enterprise')

    def test_entitlements_use_plan_row_limits(self):
        organization = create_tenant('student', patient_count=3, patient_limit=3)

        resolved = services.get_entitlements(organization.tenant_id)

        self.assertEqual(resolved.patient_limit, 3)
        self.assertFalse(resolved.can_add_patient)

    def test_organization_without_plan_fails_closed(self):
        organization = create_tenant('clinic')
        organization.plan = None
        organization.save()

        resolved = services.get_entitlements(organization.tenant_id)

        self.assertFalse(resolved.has_feature('patients'))
        self.assertTrue(resolved.status.is_expired)

    def test_usage_counters(self):
        organization = create_tenant('clinic')
        tenant_id = organization.tenant_id

        services.increment_patient_count(tenant_id)
        services.increment_patient_count(tenant_id)
        services.decrement_patient_count(tenant_id)
        services.increment_user_count(tenant_id)

        organization.refresh_from_db()
        self.assertEqual(organization.current_patient_count, 1)
        self.assertEqual(organization.current_user_count, 2)

        for _ in range(3):
            services.decrement_patient_count(tenant_id)
            services.decrement_user_count(tenant_id)

        organization.refresh_from_db()
        self.assertEqual(organization.current_patient_count, 0)
        self.assertEqual(organization.current_user_count, 1)

        with self.assertRaises(NotFoundError):
            services.increment_patient_count(uuid.uuid4())

    def test_reserve_patient_slot_stops_at_limit(self):
        """Two registrations racing for the last slot: only the first gets it."""
        organization = create_tenant('student', patient_count=49)

        self.assertIsNone(services.reserve_patient_slot(organization.tenant_id))
        refused = services.reserve_patient_slot(organization.tenant_id)

        self.assertEqual(refused, 'Patient limit reached (50/50). Please upgrade your plan.')
        organization.refresh_from_db()
        self.assertEqual(organization.current_patient_count, 50)

    def test_reserve_patient_slot_unlimited_and_planless(self):
        unlimited = create_tenant('clinic', patient_count=5000)
        self.assertIsNone(services.reserve_patient_slot(unlimited.tenant_id))

        planless = create_tenant('doctor')
        planless.plan = None
        planless.save()
        self.assertIsNotNone(services.reserve_patient_slot(planless.tenant_id))

        with self.assertRaises(NotFoundError):
            services.reserve_patient_slot(uuid.uuid4())

    def test_refresh_subscription(self):
        organization = create_tenant('student')
        organization.provider_customer_id = 'cus_1'
        organization.save()
        services.ensure_default_plans()
        period_end = timezone.now() + timedelta(days=30)
        provider = FakeProvider({'cus_1': SubscriptionSnapshot(
            plan_type=PlanType.DOCTOR, status=SubscriptionStatus.ACTIVE, period_end=period_end
        )})

        services.refresh_subscription(organization, client=provider)

        organization.refresh_from_db()
        self.assertEqual(organization.plan.plan_type, 'doctor')
        self.assertEqual(organization.subscription_end_date, period_end)
        self.assertIsNotNone(organization.last_synced_at)

    def test_refresh_skips_unlinked_organizations(self):
        organization = create_tenant('student')

        result = services.refresh_subscription(organization, client=FakeProvider({}))

        self.assertIsNone(result.last_synced_at)

    def test_sync_all_counts_failures(self):
        good = create_tenant('clinic')
        good.provider_customer_id = 'cus_good'
        good.save()
        bad = create_tenant('clinic')
        bad.provider_customer_id = 'cus_bad'
        bad.save()
        create_tenant('clinic')
        provider = FakeProvider({
            'cus_good': SubscriptionSnapshot(plan_type=PlanType.CLINIC, status=SubscriptionStatus.EXPIRED),
            'cus_bad': BillingProviderError('Provider error: 500', status_code=500),
        })

        self.assertEqual(services.sync_all_subscriptions(provider), (1, 1))
        good.refresh_from_db()
        self.assertEqual(good.subscription_status, 'expired')


class SubscriptionCommandTest(TestCase):

    def test_seed_plans(self):
        out = StringIO()
        call_command('seed_plans', stdout=out)

        self.assertEqual(SubscriptionPlan.objects.count(), 3)
        self.assertIn('Created plan', out.getvalue())

    @patch('apps.subscriptions.provider.requests.get')
    def test_sync_subscriptions(self, mock_get):
        organization = create_tenant('clinic')
        organization.provider_customer_id = 'cus_9'
        organization.save()
        response = MagicMock(status_code=200)
        response.json.return_value = {'plan_type': 'clinic', 'status': 'expired'}
        mock_get.return_value = response
        out = StringIO()

        call_command('sync_subscriptions', stdout=out)

        organization.refresh_from_db()
        self.assertEqual(organization.subscription_status, 'expired')
        self.assertIn('Refreshed 1', out.getvalue())


class SubscriptionAPITest(TestCase):

    def test_context(self):
        organization = create_tenant('doctor', patient_count=12)
        client = APIClient()
        client.credentials(**auth_headers(organization.tenant_id))

        response = client.get('/api/subscriptions/context/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        data = response.json()['data']
        self.assertEqual(data['plan_type'], 'doctor')
        self.assertTrue(data['features']['financials'])
        self.assertEqual(data['limits']['current_patient_count'], 12)
        self.assertTrue(data['can_add_patient'])
        self.assertEqual(data['organization']['name'], 'Smile Dental')

    def test_context_for_unknown_tenant_is_closed(self):
        client = APIClient()
        client.credentials(**auth_headers(uuid.uuid4()))

        data = client.get('/api/subscriptions/context/').json()['data']

        self.assertIsNone(data['plan_type'])
        self.assertIsNone(data['organization'])
        self.assertFalse(data['can_add_patient'])

    def test_plans(self):
        services.ensure_default_plans()
        client = APIClient()
        client.credentials(**auth_headers(uuid.uuid4()))

        response = client.get('/api/subscriptions/plans/')

        plans = {p['plan_type']: p for p in response.json()['data']}
        self.assertEqual(set(plans), {'student', 'doctor', 'clinic'})
        self.assertEqual(plans['student']['patient_limit'], 50)
        self.assertFalse(plans['student']['features']['financials'])
        self.assertEqual(plans['clinic']['trial_days'], 15)
