"""
Tests for DentalDesk JWT authentication, permissions and error handling.
"""

import jwt
import time
import uuid
from types import SimpleNamespace
from django.conf import settings
from django.http import JsonResponse
from django.test import TestCase, SimpleTestCase, RequestFactory
from django.utils import timezone
from rest_framework import status
from rest_framework.exceptions import NotFound

from apps.subscriptions import entitlements
from common.exceptions import (
    api_exception_handler, NotFoundError, ValidationError, InvalidStateError
)
from common.middleware import JWTAuthenticationMiddleware
from common.permissions import (
    IsTenantRequest, PlanFeaturePermission, PatientLimitPermission, get_request_entitlements
)
from common.testing import create_test_jwt, create_tenant


class JWTMiddlewareTest(SimpleTestCase):
    """Test JWT authentication middleware."""

    def setUp(self):
        self.factory = RequestFactory()
        self.middleware = JWTAuthenticationMiddleware(get_response=lambda request: None)
        self.tenant_id = uuid.uuid4()

    def _process(self, token=None, path='/api/billing/invoices/'):
        headers = {'HTTP_AUTHORIZATION': f'Bearer {token}'} if token else {}
        request = self.factory.get(path, **headers)
        return request, self.middleware.process_request(request)

    def test_valid_jwt_processing(self):
        """Valid token puts the tenant context on the request."""
        user_id = uuid.uuid4()
        request, response = self._process(create_test_jwt(self.tenant_id, user_id))

        self.assertIsNone(response)
        self.assertEqual(request.tenant_id, self.tenant_id)
        self.assertEqual(request.user_id, user_id)
        self.assertEqual(request.email, 'dentist@clinic.test')
        self.assertEqual(request.tenant_slug, 'test-clinic')
        self.assertFalse(request.is_super_admin)

    def test_missing_authorization_header(self):
        request, response = self._process()

        self.assertIsInstance(response, JsonResponse)
        self.assertEqual(response.status_code, 401)

    def test_invalid_jwt_format(self):
        request, response = self._process('invalid-token')

        self.assertEqual(response.status_code, 401)

    def test_wrong_signing_key(self):
        token = jwt.encode({'tenant_id': str(self.tenant_id)}, 'another-secret', algorithm='HS256')
        request, response = self._process(token)

        self.assertEqual(response.status_code, 401)

    def test_expired_token(self):
        token = create_test_jwt(self.tenant_id, exp=int(time.time()) - 60)
        request, response = self._process(token)

        self.assertEqual(response.status_code, 401)
        self.assertIn(b'Token expired', response.content)

    def test_missing_required_claim(self):
        token = jwt.encode(
            {'user_id': str(uuid.uuid4()), 'tenant_id': str(self.tenant_id), 'enabled_modules': ['dental']},
            settings.JWT_SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM
        )
        request, response = self._process(token)

        self.assertEqual(response.status_code, 401)
        self.assertIn(b'email', response.content)

    def test_tenant_id_must_be_uuid(self):
        request, response = self._process(create_test_jwt('test-clinic-123'))

        self.assertEqual(response.status_code, 401)

    def test_missing_dental_module(self):
        """Tenants without the dental module are refused."""
        request, response = self._process(create_test_jwt(self.tenant_id, enabled_modules=['crm']))

        self.assertEqual(response.status_code, 403)

    def test_non_uuid_user_id_is_dropped(self):
        request, response = self._process(create_test_jwt(self.tenant_id, user_id='admin'))

        self.assertIsNone(response)
        self.assertIsNone(request.user_id)

    def test_skip_paths(self):
        """Admin, docs and health paths skip JWT validation."""
        for path in ['/admin/', '/health/', '/api/docs/', '/api/schema/']:
            request, response = self._process(path=path)
            self.assertIsNone(response)


class ExceptionHandlerTest(SimpleTestCase):
    """Billing errors render in the API envelope."""

    def test_not_found(self):
        response = api_exception_handler(NotFoundError('Invoice not found'), {})

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data, {'success': False, 'error': 'Invoice not found', 'code': 'not_found'})

    def test_validation_error_carries_field(self):
        response = api_exception_handler(ValidationError('Quantity must be positive', field='quantity'), {})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['code'], 'validation_error')
        self.assertEqual(response.data['field'], 'quantity')

    def test_invalid_state_is_conflict(self):
        response = api_exception_handler(InvalidStateError('Invoice is canceled'), {})

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_other_exceptions_use_drf_handler(self):
        response = api_exception_handler(NotFound(), {})

        self.assertEqual(response.status_code, 404)
        self.assertIn('detail', response.data)

    def test_unhandled_exception_returns_none(self):
        self.assertIsNone(api_exception_handler(RuntimeError('boom'), {}))


class PermissionTest(SimpleTestCase):
    """Plan-gated permissions read pre-resolved entitlements."""

    def setUp(self):
        self.factory = RequestFactory()
        self.now = timezone.now()

    def _request(self, plan_type='student', status_value='active', patient_count=0):
        request = self.factory.get('/')
        request.tenant_id = uuid.uuid4()
        snapshot = entitlements.SubscriptionSnapshot(
            plan_type=entitlements.PlanType(plan_type),
            status=entitlements.SubscriptionStatus(status_value),
        )
        request._plan_entitlements = entitlements.build_entitlements(
            snapshot, entitlements.Usage(patient_count=patient_count), self.now
        )
        return request

    def test_tenant_required(self):
        request = self.factory.get('/')
        self.assertFalse(IsTenantRequest().has_permission(request, None))
        request.tenant_id = uuid.uuid4()
        self.assertTrue(IsTenantRequest().has_permission(request, None))

    def test_feature_enabled_on_plan(self):
        view = SimpleNamespace(required_feature='financials')
        self.assertTrue(PlanFeaturePermission().has_permission(self._request('doctor'), view))

    def test_feature_missing_from_plan(self):
        view = SimpleNamespace(required_feature='financials')
        self.assertFalse(PlanFeaturePermission().has_permission(self._request('student'), view))

    def test_expired_plan_denies_with_renewal_message(self):
        permission = PlanFeaturePermission()
        view = SimpleNamespace(required_feature='patients')

        self.assertFalse(permission.has_permission(self._request('clinic', 'expired'), view))
        self.assertEqual(permission.message, 'Subscription expired. Please renew your plan.')

    def test_views_without_feature_are_not_gated(self):
        self.assertTrue(PlanFeaturePermission().has_permission(self._request('student'), SimpleNamespace()))

    def test_patient_limit_only_gates_create(self):
        request = self._request('student', patient_count=50)
        permission = PatientLimitPermission()

        self.assertTrue(permission.has_permission(request, SimpleNamespace(action='list')))
        self.assertFalse(permission.has_permission(request, SimpleNamespace(action='create')))
        self.assertEqual(permission.message, 'Patient limit reached (50/50). Please upgrade your plan.')

    def test_patient_limit_allows_below_limit(self):
        request = self._request('student', patient_count=49)
        self.assertTrue(PatientLimitPermission().has_permission(request, SimpleNamespace(action='create')))


class RequestEntitlementsTest(TestCase):
    """Entitlements resolve from the organization once per request."""

    def test_resolves_and_caches(self):
        organization = create_tenant('doctor', patient_count=3)
        request = RequestFactory().get('/')
        request.tenant_id = organization.tenant_id

        resolved = get_request_entitlements(request)

        self.assertEqual(resolved.plan_type, entitlements.PlanType.DOCTOR)
        self.assertEqual(resolved.usage.patient_count, 3)
        self.assertIs(get_request_entitlements(request), resolved)

    def test_unknown_tenant_resolves_closed(self):
        request = RequestFactory().get('/')
        request.tenant_id = uuid.uuid4()

        resolved = get_request_entitlements(request)

        self.assertTrue(resolved.status.is_expired)
        self.assertFalse(resolved.has_feature('patients'))
        self.assertFalse(resolved.can_add_patient)


class HealthViewTest(TestCase):

    def test_health_check(self):
        response = self.client.get('/health/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'healthy')
