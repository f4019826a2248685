"""
Tests for the patient registry and its plan patient limit.
"""

from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase
from rest_framework import status
from rest_framework.test import APIClient

from apps.billing import services as billing_services
from apps.billing.domain import LineItem
from common.permissions import PatientLimitPermission
from common.testing import auth_headers, create_patient, create_tenant

from .models import PatientProfile


class PatientProfileModelTest(TestCase):

    def test_patient_ids_are_sequential_per_tenant(self):
        organization = create_tenant('clinic')
        first = create_patient(organization.tenant_id)
        second = create_patient(organization.tenant_id, first_name='John')
        other_tenant = create_patient(create_tenant('clinic').tenant_id)

        self.assertTrue(first.patient_id.startswith('PAT'))
        self.assertEqual(int(second.patient_id[-4:]), int(first.patient_id[-4:]) + 1)
        self.assertEqual(other_tenant.patient_id, first.patient_id)
        self.assertEqual(first.full_name, 'Jane Smith')


class PatientAPITest(TestCase):

    def setUp(self):
        self.organization = create_tenant('student')
        self.client = APIClient()
        self.client.credentials(**auth_headers(self.organization.tenant_id))

    def _create(self, **overrides):
        data = {'first_name': 'Maria', 'last_name': 'Lopez', 'mobile_primary': '+15551234567'}
        data.update(overrides)
        return self.client.post('/api/patients/', data, format='json')

    def test_create_counts_toward_limit(self):
        response = self._create()

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.json()['data']['full_name'], 'Maria Lopez')
        self.organization.refresh_from_db()
        self.assertEqual(self.organization.current_patient_count, 1)
        patient = PatientProfile.objects.get()
        self.assertEqual(patient.tenant_id, self.organization.tenant_id)

    def test_create_refused_at_limit(self):
        """A student clinic with 50 active patients cannot add a 51st."""
        self.organization.current_patient_count = 50
        self.organization.save()

        response = self._create()

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.json()['detail'], 'Patient limit reached (50/50). Please upgrade your plan.')
        self.assertFalse(PatientProfile.objects.exists())

    def test_create_rechecks_limit_under_lock(self):
        """The slot is re-checked on the locked organization row after the route guard."""
        self.organization.current_patient_count = 50
        self.organization.save()

        with patch.object(PatientLimitPermission, 'has_permission', return_value=True):
            response = self._create()

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.json()['detail'], 'Patient limit reached (50/50). Please upgrade your plan.')
        self.assertFalse(PatientProfile.objects.exists())
        self.organization.refresh_from_db()
        self.assertEqual(self.organization.current_patient_count, 50)

    def test_create_allowed_one_below_limit(self):
        self.organization.current_patient_count = 49
        self.organization.save()

        self.assertEqual(self._create().status_code, status.HTTP_201_CREATED)

    def test_listing_still_works_at_limit(self):
        self.organization.current_patient_count = 50
        self.organization.save()

        self.assertEqual(self.client.get('/api/patients/').status_code, status.HTTP_200_OK)

    def test_expired_subscription_blocks_patients(self):
        expired = create_tenant('clinic', status='expired')
        client = APIClient()
        client.credentials(**auth_headers(expired.tenant_id))

        response = client.get('/api/patients/')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.json()['detail'], 'Subscription expired. Please renew your plan.')

    def test_validation_error(self):
        response = self._create(first_name='  ')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_deactivate_releases_slot_and_activate_takes_it(self):
        patient_id = self._create().json()['data']['id']

        response = self.client.delete(f'/api/patients/{patient_id}/')
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.organization.refresh_from_db()
        self.assertEqual(self.organization.current_patient_count, 0)
        self.assertEqual(PatientProfile.objects.get(pk=patient_id).status, 'inactive')

        # deactivating twice does not release a second slot
        self.client.delete(f'/api/patients/{patient_id}/')
        self.organization.refresh_from_db()
        self.assertEqual(self.organization.current_patient_count, 0)

        response = self.client.post(f'/api/patients/{patient_id}/activate/')
        self.assertEqual(response.json()['data']['status'], 'active')
        self.organization.refresh_from_db()
        self.assertEqual(self.organization.current_patient_count, 1)

    def test_activate_respects_limit(self):
        patient = create_patient(self.organization.tenant_id)
        patient.status = 'inactive'
        patient.save()
        self.organization.current_patient_count = 50
        self.organization.save()

        response = self.client.post(f'/api/patients/{patient.pk}/activate/')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        patient.refresh_from_db()
        self.assertEqual(patient.status, 'inactive')

    def test_update(self):
        patient = create_patient(self.organization.tenant_id)

        response = self.client.patch(f'/api/patients/{patient.pk}/', {'email': 'jane@example.com'}, format='json')

        self.assertEqual(response.json()['data']['email'], 'jane@example.com')

    def test_tenant_isolation(self):
        create_patient(self.organization.tenant_id)
        stranger = create_patient(create_tenant('clinic').tenant_id, first_name='Other')

        response = self.client.get('/api/patients/')

        self.assertEqual(response.json()['count'], 1)
        self.assertEqual(self.client.get(f'/api/patients/{stranger.pk}/').status_code, status.HTTP_404_NOT_FOUND)

    def test_detail_shows_open_balance(self):
        patient = create_patient(self.organization.tenant_id)
        invoice = billing_services.create_invoice(
            self.organization.tenant_id, patient,
            [LineItem(description='Exam', quantity=1, unit_price=Decimal('120.00'))],
        )
        billing_services.send_invoice(self.organization.tenant_id, invoice.pk)
        billing_services.create_invoice(
            self.organization.tenant_id, patient,
            [LineItem(description='Draft', quantity=1, unit_price=Decimal('999.00'))],
        )

        response = self.client.get(f'/api/patients/{patient.pk}/')

        self.assertEqual(response.json()['data']['open_balance'], '120.00')
