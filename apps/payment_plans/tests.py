"""
Tests for payment plans: schedule generation, installment payments and
the invoice payments they record.
"""

from datetime import date
from decimal import Decimal

from django.test import TestCase, SimpleTestCase
from rest_framework import status
from rest_framework.test import APIClient

from apps.billing import services as billing_services
from apps.billing.domain import LineItem
from apps.billing.models import Payment
from common.exceptions import InvalidStateError, NotFoundError, ValidationError
from common.testing import auth_headers, create_patient, create_tenant

from . import schedule, services
from .models import PaymentPlanInstallment

START = date(2025, 1, 31)


class GenerateInstallmentsTest(SimpleTestCase):

    def test_thousand_over_three_months(self):
        installments = schedule.generate_installments(Decimal('1000.00'), 3, 'monthly', START)

        self.assertEqual([i.amount for i in installments], [Decimal('333.33'), Decimal('333.33'), Decimal('333.34')])
        self.assertEqual(sum(i.amount for i in installments), Decimal('1000.00'))
        self.assertEqual([i.number for i in installments], [1, 2, 3])
        self.assertEqual(
            [i.due_date for i in installments],
            [date(2025, 1, 31), date(2025, 2, 28), date(2025, 3, 31)]
        )

    def test_installments_sum_exactly(self):
        """Any count from 2 to 24 sums to the financed amount to the cent."""
        for financed in ['1000.00', '999.99', '0.05', '1234.57', '10.00']:
            for count in range(2, 25):
                installments = schedule.generate_installments(Decimal(financed), count, 'weekly', START)
                self.assertEqual(len(installments), count)
                self.assertEqual(sum(i.amount for i in installments), Decimal(financed), (financed, count))
                self.assertTrue(all(i.amount >= 0 for i in installments))

    def test_zero_installments_start_paid(self):
        """Fewer cents than installments leaves zero amounts with nothing to collect."""
        installments = schedule.generate_installments(Decimal('0.05'), 6, 'weekly', START)

        self.assertEqual([i.amount for i in installments], [Decimal('0.00')] * 5 + [Decimal('0.05')])
        self.assertEqual([i.is_paid for i in installments], [True] * 5 + [False])

    def test_remainder_goes_to_last(self):
        installments = schedule.generate_installments(Decimal('100.00'), 6, 'monthly', START)

        self.assertEqual({i.amount for i in installments[:-1]}, {Decimal('16.66')})
        self.assertEqual(installments[-1].amount, Decimal('16.70'))

    def test_weekly_and_biweekly_due_dates(self):
        start = date(2025, 3, 3)
        weekly = schedule.generate_installments(Decimal('90.00'), 3, 'weekly', start)
        biweekly = schedule.generate_installments(Decimal('90.00'), 3, 'biweekly', start)

        self.assertEqual([i.due_date for i in weekly], [date(2025, 3, 3), date(2025, 3, 10), date(2025, 3, 17)])
        self.assertEqual([i.due_date for i in biweekly], [date(2025, 3, 3), date(2025, 3, 17), date(2025, 3, 31)])

    def test_monthly_steps_from_start_date(self):
        installments = schedule.generate_installments(Decimal('400.00'), 4, 'monthly', START)

        self.assertEqual(installments[3].due_date, date(2025, 4, 30))

    def test_rejects_bad_input(self):
        with self.assertRaises(ValidationError):
            schedule.generate_installments(Decimal('100.00'), 1, 'monthly', START)
        with self.assertRaises(ValidationError):
            schedule.generate_installments(Decimal('100.00'), 3, 'daily', START)
        with self.assertRaises(ValidationError):
            schedule.generate_installments(Decimal('-1.00'), 3, 'monthly', START)


class CreatePlanTest(SimpleTestCase):

    def test_create_plan(self):
        plan = schedule.create_plan('1200.00', '200.00', 4, 'monthly', START)

        self.assertEqual(plan.status, schedule.PlanStatus.ACTIVE)
        self.assertEqual(plan.financed_amount, Decimal('1000.00'))
        self.assertEqual(sum(i.amount for i in plan.installments), plan.financed_amount)
        self.assertEqual(plan.remaining_amount, Decimal('1000.00'))

    def test_validation(self):
        cases = [
            ('0.00', '0.00', 3),
            ('-10.00', '0.00', 3),
            ('100.00', '100.01', 3),
            ('100.00', '-1.00', 3),
            ('100.00', '0.00', 1),
            ('100.00', '0.00', 0),
        ]
        for total, down, count in cases:
            with self.assertRaises(ValidationError):
                schedule.create_plan(total, down, count, 'monthly', START)

    def test_down_payment_covers_total(self):
        plan = schedule.create_plan('500.00', '500.00', 3, 'monthly', START)

        self.assertEqual(plan.status, schedule.PlanStatus.COMPLETED)
        self.assertTrue(all(i.is_paid and i.amount == 0 for i in plan.installments))


class InstallmentPaymentTest(SimpleTestCase):

    def setUp(self):
        self.plan = schedule.create_plan('300.00', '0.00', 3, 'monthly', START)

    def test_payments_accumulate(self):
        plan = schedule.record_installment_payment(self.plan, 1, '40.00', paid_date=START)
        first = plan.installment(1)
        self.assertFalse(first.is_paid)
        self.assertEqual(first.paid_amount, Decimal('40.00'))
        self.assertIsNone(first.paid_date)

        plan = schedule.record_installment_payment(plan, 1, '60.00', paid_date=START)
        self.assertTrue(plan.installment(1).is_paid)
        self.assertEqual(plan.installment(1).paid_date, START)
        self.assertEqual(plan.status, schedule.PlanStatus.ACTIVE)

    def test_plan_completes_when_all_paid(self):
        plan = self.plan
        for number in (1, 2, 3):
            plan = schedule.record_installment_payment(plan, number, '100.00')

        self.assertEqual(plan.status, schedule.PlanStatus.COMPLETED)
        self.assertEqual(plan.paid_amount, Decimal('300.00'))
        self.assertIsNone(schedule.next_due_installment(plan))

        with self.assertRaises(InvalidStateError):
            schedule.record_installment_payment(plan, 1, '1.00')

    def test_small_plan_completes_on_last_payment(self):
        plan = schedule.create_plan('0.05', '0.00', 6, 'weekly', START)
        self.assertEqual(plan.status, schedule.PlanStatus.ACTIVE)
        self.assertEqual(schedule.next_due_installment(plan).number, 6)

        plan = schedule.record_installment_payment(plan, 6, '0.05')

        self.assertEqual(plan.remaining_amount, Decimal('0.00'))
        self.assertEqual(plan.status, schedule.PlanStatus.COMPLETED)
        with self.assertRaises(InvalidStateError):
            schedule.record_installment_payment(plan, 1, '0.01')

    def test_reverse_reopens_completed_plan(self):
        plan = self.plan
        for number in (1, 2, 3):
            plan = schedule.record_installment_payment(plan, number, '100.00', paid_date=START)

        plan = schedule.reverse_installment_payment(plan, 2, '100.00')

        second = plan.installment(2)
        self.assertEqual(plan.status, schedule.PlanStatus.ACTIVE)
        self.assertFalse(second.is_paid)
        self.assertEqual(second.paid_amount, Decimal('0.00'))
        self.assertIsNone(second.paid_date)
        self.assertTrue(plan.installment(1).is_paid)
        self.assertEqual(schedule.next_due_installment(plan).number, 2)

    def test_reverse_keeps_other_statuses(self):
        plan = schedule.record_installment_payment(self.plan, 1, '100.00')
        canceled = schedule.cancel_plan(plan)

        reversed_plan = schedule.reverse_installment_payment(canceled, 1, '100.00')

        self.assertEqual(reversed_plan.status, schedule.PlanStatus.CANCELED)
        self.assertFalse(reversed_plan.installment(1).is_paid)
        with self.assertRaises(ValidationError):
            schedule.reverse_installment_payment(plan, 1, '0.00')
        with self.assertRaises(NotFoundError):
            schedule.reverse_installment_payment(plan, 9, '1.00')

    def test_errors(self):
        with self.assertRaises(NotFoundError):
            schedule.record_installment_payment(self.plan, 4, '100.00')
        with self.assertRaises(NotFoundError):
            schedule.record_installment_payment(self.plan, 0, '100.00')
        with self.assertRaises(ValidationError):
            schedule.record_installment_payment(self.plan, 1, '0.00')

        plan = schedule.record_installment_payment(self.plan, 1, '100.00')
        with self.assertRaises(InvalidStateError):
            schedule.record_installment_payment(plan, 1, '100.00')

    def test_default_and_cancel(self):
        defaulted = schedule.mark_defaulted(self.plan)
        self.assertEqual(defaulted.status, schedule.PlanStatus.DEFAULTED)
        self.assertIs(schedule.mark_defaulted(defaulted), defaulted)

        with self.assertRaises(InvalidStateError):
            schedule.record_installment_payment(defaulted, 1, '100.00')

        canceled = schedule.cancel_plan(defaulted)
        self.assertEqual(canceled.status, schedule.PlanStatus.CANCELED)
        with self.assertRaises(InvalidStateError):
            schedule.mark_defaulted(canceled)
        with self.assertRaises(InvalidStateError):
            schedule.cancel_plan(canceled)

        completed = schedule.create_plan('50.00', '50.00', 2, 'weekly', START)
        with self.assertRaises(InvalidStateError):
            schedule.mark_defaulted(completed)

    def test_next_due_and_overdue(self):
        plan = schedule.record_installment_payment(self.plan, 1, '100.00')

        self.assertEqual(schedule.next_due_installment(plan).number, 2)
        overdue = schedule.overdue_installments(plan, date(2025, 3, 5))
        self.assertEqual([i.number for i in overdue], [2])
        self.assertEqual(schedule.overdue_installments(schedule.cancel_plan(plan), date(2025, 3, 5)), ())


class PaymentPlanServiceTest(TestCase):

    def setUp(self):
        self.tenant_id = create_tenant('clinic').tenant_id
        patient = create_patient(self.tenant_id)
        invoice = billing_services.create_invoice(
            self.tenant_id, patient,
            [LineItem(description='Implant', quantity=1, unit_price=Decimal('600.00'))],
            issued_date=START,
        )
        self.invoice = billing_services.send_invoice(self.tenant_id, invoice.pk)

    def _small_invoice(self):
        invoice = billing_services.create_invoice(
            self.tenant_id, self.invoice.patient,
            [LineItem(description='Floss sample', quantity=1, unit_price=Decimal('0.05'))],
            issued_date=START,
        )
        return billing_services.send_invoice(self.tenant_id, invoice.pk)

    def test_plan_finances_outstanding_balance(self):
        billing_services.record_payment(self.tenant_id, self.invoice.pk, '150.00', 'cash')

        row = services.create_payment_plan(self.tenant_id, self.invoice.pk, 3, 'monthly', start_date=START)

        self.assertEqual(row.total_amount, Decimal('450.00'))
        self.assertEqual(row.patient_id, self.invoice.patient_id)
        self.assertEqual(
            list(row.installments.values_list('amount', flat=True)),
            [Decimal('150.00'), Decimal('150.00'), Decimal('150.00')]
        )

    def test_down_payment_recorded_on_invoice(self):
        row = services.create_payment_plan(
            self.tenant_id, self.invoice.pk, 3, 'monthly',
            start_date=START, down_payment=Decimal('150.00'), down_payment_method='card'
        )

        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, 'partial')
        self.assertEqual(self.invoice.balance_amount, Decimal('450.00'))
        self.assertEqual(row.total_amount, Decimal('600.00'))
        self.assertEqual(row.to_domain().financed_amount, Decimal('450.00'))

    def test_one_active_plan_per_invoice(self):
        first = services.create_payment_plan(self.tenant_id, self.invoice.pk, 3, 'monthly', start_date=START)

        with self.assertRaises(InvalidStateError):
            services.create_payment_plan(self.tenant_id, self.invoice.pk, 2, 'weekly', start_date=START)

        services.cancel_payment_plan(self.tenant_id, first.pk)
        second = services.create_payment_plan(self.tenant_id, self.invoice.pk, 2, 'weekly', start_date=START)
        self.assertEqual(second.status, 'active')

    def test_draft_invoice_cannot_be_financed(self):
        draft = billing_services.create_invoice(
            self.tenant_id, self.invoice.patient,
            [LineItem(description='Exam', quantity=1, unit_price=Decimal('80.00'))],
            issued_date=START,
        )

        with self.assertRaises(InvalidStateError):
            services.create_payment_plan(self.tenant_id, draft.pk, 2, 'monthly', start_date=START)

    def test_pay_installment_moves_plan_and_invoice(self):
        row = services.create_payment_plan(self.tenant_id, self.invoice.pk, 3, 'monthly', start_date=START)

        services.pay_installment(self.tenant_id, row.pk, 1, Decimal('200.00'), 'cash', payment_date=START)

        first = row.installments.get(installment_number=1)
        self.assertTrue(first.is_paid)
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, 'partial')
        self.assertEqual(self.invoice.paid_amount, Decimal('200.00'))
        self.assertEqual(Payment.objects.get(invoice=self.invoice).installment_id, first.id)

        for number in (2, 3):
            services.pay_installment(self.tenant_id, row.pk, number, Decimal('200.00'), 'card')

        row.refresh_from_db()
        self.invoice.refresh_from_db()
        self.assertEqual(row.status, 'completed')
        self.assertEqual(self.invoice.status, 'paid')

    def test_failed_invoice_payment_rolls_back_installment(self):
        row = services.create_payment_plan(self.tenant_id, self.invoice.pk, 3, 'monthly', start_date=START)
        billing_services.record_payment(self.tenant_id, self.invoice.pk, '600.00', 'card')

        with self.assertRaises(InvalidStateError):
            services.pay_installment(self.tenant_id, row.pk, 1, Decimal('200.00'), 'cash')

        installment = PaymentPlanInstallment.objects.get(payment_plan=row, installment_number=1)
        self.assertFalse(installment.is_paid)
        self.assertEqual(installment.paid_amount, Decimal('0.00'))

    def test_small_invoice_plan_completes(self):
        invoice = self._small_invoice()
        row = services.create_payment_plan(self.tenant_id, invoice.pk, 6, 'weekly', start_date=START)

        self.assertEqual(row.installments.filter(is_paid=True).count(), 5)
        services.pay_installment(self.tenant_id, row.pk, 6, Decimal('0.05'), 'cash')

        row.refresh_from_db()
        invoice.refresh_from_db()
        self.assertEqual(row.status, 'completed')
        self.assertEqual(invoice.status, 'paid')
        with self.assertRaises(InvalidStateError):
            services.pay_installment(self.tenant_id, row.pk, 1, Decimal('0.01'), 'cash')

    def test_refund_reopens_installment(self):
        invoice = self._small_invoice()
        row = services.create_payment_plan(self.tenant_id, invoice.pk, 2, 'weekly', start_date=START)
        services.pay_installment(self.tenant_id, row.pk, 1, Decimal('0.02'), 'cash')
        services.pay_installment(self.tenant_id, row.pk, 2, Decimal('0.03'), 'cash')
        second = row.installments.get(installment_number=2)
        payment = Payment.objects.get(installment=second)

        billing_services.refund_payment(self.tenant_id, invoice.pk, payment.pk, 'Card chargeback')

        row.refresh_from_db()
        invoice.refresh_from_db()
        second.refresh_from_db()
        self.assertEqual(invoice.status, 'partial')
        self.assertEqual(invoice.balance_amount, Decimal('0.03'))
        self.assertEqual(row.status, 'active')
        self.assertFalse(second.is_paid)
        self.assertEqual(second.paid_amount, Decimal('0.00'))
        self.assertIsNone(second.paid_date)

        services.pay_installment(self.tenant_id, row.pk, 2, Decimal('0.03'), 'card')
        row.refresh_from_db()
        invoice.refresh_from_db()
        self.assertEqual(row.status, 'completed')
        self.assertEqual(invoice.status, 'paid')

    def test_refund_of_plain_payment_leaves_plan_alone(self):
        row = services.create_payment_plan(self.tenant_id, self.invoice.pk, 3, 'monthly', start_date=START)
        services.pay_installment(self.tenant_id, row.pk, 1, Decimal('200.00'), 'cash')
        _, payment = billing_services.record_payment(self.tenant_id, self.invoice.pk, '50.00', 'cash')

        billing_services.refund_payment(self.tenant_id, self.invoice.pk, payment.pk, 'Entered twice')

        self.assertTrue(row.installments.get(installment_number=1).is_paid)

    def test_void_cancels_open_plan(self):
        row = services.create_payment_plan(self.tenant_id, self.invoice.pk, 3, 'monthly', start_date=START)

        billing_services.void_invoice(self.tenant_id, self.invoice.pk)

        row.refresh_from_db()
        self.assertEqual(row.status, 'canceled')
        with self.assertRaises(InvalidStateError):
            services.pay_installment(self.tenant_id, row.pk, 1, Decimal('200.00'), 'cash')

    def test_failed_void_keeps_plan(self):
        row = services.create_payment_plan(self.tenant_id, self.invoice.pk, 3, 'monthly', start_date=START)
        billing_services.record_payment(self.tenant_id, self.invoice.pk, '600.00', 'card')

        with self.assertRaises(InvalidStateError):
            billing_services.void_invoice(self.tenant_id, self.invoice.pk)

        row.refresh_from_db()
        self.assertEqual(row.status, 'active')

    def test_default_and_progress(self):
        row = services.create_payment_plan(self.tenant_id, self.invoice.pk, 3, 'monthly', start_date=START)
        services.pay_installment(self.tenant_id, row.pk, 1, Decimal('200.00'), 'cash')

        progress = services.plan_progress(row, today=date(2025, 3, 15))
        self.assertEqual(progress['paid_amount'], '200.00')
        self.assertEqual(progress['remaining_amount'], '400.00')
        self.assertEqual(progress['next_due_installment'], 2)
        self.assertEqual(progress['overdue_installments'], [2])

        row = services.mark_plan_defaulted(self.tenant_id, row.pk)
        self.assertEqual(row.status, 'defaulted')
        with self.assertRaises(InvalidStateError):
            services.pay_installment(self.tenant_id, row.pk, 2, Decimal('200.00'), 'cash')

    def test_other_tenant_plan_not_found(self):
        row = services.create_payment_plan(self.tenant_id, self.invoice.pk, 3, 'monthly', start_date=START)

        with self.assertRaises(NotFoundError):
            services.get_payment_plan(create_tenant('clinic').tenant_id, row.pk)


class PaymentPlanAPITest(TestCase):

    def setUp(self):
        self.tenant_id = create_tenant('doctor').tenant_id
        patient = create_patient(self.tenant_id)
        invoice = billing_services.create_invoice(
            self.tenant_id, patient,
            [LineItem(description='Braces', quantity=1, unit_price=Decimal('1000.00'))],
            issued_date=START,
        )
        self.invoice = billing_services.send_invoice(self.tenant_id, invoice.pk)
        self.client = APIClient()
        self.client.credentials(**auth_headers(self.tenant_id))

    def _create(self, **overrides):
        data = {
            'invoice': str(self.invoice.pk),
            'installment_count': 3,
            'frequency': 'monthly',
            'start_date': '2025-01-31',
        }
        data.update(overrides)
        return self.client.post('/api/payment-plans/', data, format='json')

    def test_create_and_pay(self):
        response = self._create()
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        plan = response.json()['data']
        self.assertEqual([i['amount'] for i in plan['installments']], ['333.33', '333.33', '333.34'])
        self.assertEqual(plan['progress']['next_due_installment'], 1)

        response = self.client.post(
            f"/api/payment-plans/{plan['id']}/pay/",
            {'installment_number': 1, 'amount': '333.33', 'payment_method': 'cash'},
            format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.json()['data']['installments'][0]['is_paid'])

        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.balance_amount, Decimal('666.67'))

    def test_create_validation(self):
        response = self._create(installment_count=1)
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self._create(down_payment='1000.01')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.json()['code'], 'validation_error')

    def test_unknown_installment_is_not_found(self):
        plan_id = self._create().json()['data']['id']

        response = self.client.post(
            f'/api/payment-plans/{plan_id}/pay/',
            {'installment_number': 7, 'amount': '10.00', 'payment_method': 'cash'},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_default_then_cancel(self):
        plan_id = self._create().json()['data']['id']

        response = self.client.post(f'/api/payment-plans/{plan_id}/default/')
        self.assertEqual(response.json()['data']['status'], 'defaulted')

        response = self.client.post(f'/api/payment-plans/{plan_id}/cancel/')
        self.assertEqual(response.json()['data']['status'], 'canceled')

        response = self.client.post(f'/api/payment-plans/{plan_id}/default/')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_list(self):
        self._create()

        response = self.client.get('/api/payment-plans/', {'status': 'active'})

        self.assertEqual(response.json()['count'], 1)

    def test_student_plan_denied(self):
        client = APIClient()
        client.credentials(**auth_headers(create_tenant('student').tenant_id))

        self.assertEqual(client.get('/api/payment-plans/').status_code, status.HTTP_403_FORBIDDEN)
