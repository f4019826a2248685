"""
Tests for the invoice ledger: money helpers, pure ledger functions,
persistence services, API endpoints and reports.
"""

import uuid
from datetime import date, timedelta
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.test import TestCase, SimpleTestCase
from rest_framework import status
from rest_framework.test import APIClient

from common.exceptions import InvalidStateError, NotFoundError, ValidationError
from common.testing import auth_headers, create_patient, create_tenant

from . import ledger, money, services
from .domain import (
    Adjustment, AdjustmentType, Discount, DiscountType, Invoice, InvoiceStatus,
    LineItem, Payment, PaymentMethod
)
from .models import AppendOnlyError, InvoiceAdjustment, Payment as PaymentRow

TODAY = date(2025, 3, 1)


def item(description='Cleaning', quantity=1, unit_price='100.00'):
    return LineItem(description=description, quantity=quantity, unit_price=Decimal(unit_price))


def payment(amount, method=PaymentMethod.CASH, on=TODAY):
    return Payment(amount=Decimal(amount), method=method, payment_date=on)


def adjustment(adjustment_type, amount, reason='Approved by practice owner'):
    return Adjustment(type=adjustment_type, amount=Decimal(amount), reason=reason, applied_date=TODAY)


def sent_invoice(*items, discount=None, due_date=None):
    draft = ledger.create_invoice('INV20250001', 1, items or (item(),), TODAY, discount=discount, due_date=due_date)
    return ledger.send_invoice(draft)


class MoneyTest(SimpleTestCase):
    """Fixed-point currency helpers"""

    def test_to_money_quantizes_to_cents(self):
        self.assertEqual(money.to_money('10'), Decimal('10.00'))
        self.assertEqual(money.to_money('10.005'), Decimal('10.01'))
        self.assertEqual(money.to_money(3), Decimal('3.00'))

    def test_floats_go_through_str(self):
        self.assertEqual(money.add(0.1, 0.2), Decimal('0.30'))

    def test_rejects_non_numeric(self):
        for value in ['abc', None, True, 'NaN', 'Infinity']:
            with self.assertRaises(ValidationError):
                money.to_money(value)

    def test_negative_zero_is_zero(self):
        self.assertEqual(money.format_money(money.to_money('-0.001')), '0.00')

    def test_percent_of_rounds_half_up(self):
        self.assertEqual(money.percent_of('500.00', 10), Decimal('50.00'))
        self.assertEqual(money.percent_of('0.05', 50), Decimal('0.03'))
        self.assertEqual(money.percent_of('33.33', '33.3'), Decimal('11.10'))

    def test_clamp_non_negative(self):
        self.assertEqual(money.clamp_non_negative('-5.00'), Decimal('0.00'))
        self.assertEqual(money.clamp_non_negative('5.00'), Decimal('5.00'))

    def test_floor_money_truncates(self):
        self.assertEqual(money.floor_money(Decimal('1000') / 3), Decimal('333.33'))
        self.assertEqual(money.floor_money(Decimal('2') / 3), Decimal('0.66'))

    def test_subtract_and_multiply(self):
        self.assertEqual(money.subtract('10.00', '12.50'), Decimal('-2.50'))
        self.assertEqual(money.multiply('19.99', 3), Decimal('59.97'))

    def test_money_sum_and_format(self):
        self.assertEqual(money.money_sum(['1.10', '2.20', Decimal('3.30')]), Decimal('6.60'))
        self.assertEqual(money.money_sum([]), Decimal('0.00'))
        self.assertEqual(money.format_money(Decimal('7')), '7.00')


class LedgerTotalsTest(SimpleTestCase):

    def test_subtotal_sums_items(self):
        items = [item('Exam', 2, '45.50'), item('X-ray', 1, '120.00'), item('Floss', 3, '0.99')]
        self.assertEqual(ledger.compute_subtotal(items), Decimal('213.97'))

    def test_subtotal_is_order_independent(self):
        items = [item('Exam', 2, '45.50'), item('X-ray', 1, '120.00'), item('Floss', 3, '0.99')]
        self.assertEqual(ledger.compute_subtotal(items), ledger.compute_subtotal(list(reversed(items))))

    def test_subtotal_rejects_bad_items(self):
        for bad in [item(quantity=0), item(quantity=-1), item(unit_price='-0.01'), item(description='  ')]:
            with self.assertRaises(ValidationError):
                ledger.compute_subtotal([item(), bad])

    def test_free_items_are_allowed(self):
        self.assertEqual(ledger.compute_subtotal([item(unit_price='0.00')]), Decimal('0.00'))

    def test_percentage_discount(self):
        discount = Discount(DiscountType.PERCENTAGE, Decimal('10'))
        self.assertEqual(ledger.compute_discount_amount(Decimal('500.00'), discount), Decimal('50.00'))

    def test_fixed_discount_capped_at_subtotal(self):
        discount = Discount(DiscountType.FIXED, Decimal('80.00'))
        self.assertEqual(ledger.compute_discount_amount(Decimal('50.00'), discount), Decimal('50.00'))
        self.assertEqual(ledger.compute_final_amount(Decimal('50.00'), Decimal('50.00')), Decimal('0.00'))

    def test_no_discount(self):
        self.assertEqual(ledger.compute_discount_amount(Decimal('50.00'), None), Decimal('0.00'))

    def test_invalid_discounts(self):
        with self.assertRaises(ValidationError):
            ledger.validate_discount(Discount(DiscountType.PERCENTAGE, Decimal('100.01')))
        with self.assertRaises(ValidationError):
            ledger.validate_discount(Discount(DiscountType.FIXED, Decimal('-1')))

    def test_final_amount_bounds(self):
        subtotal = Decimal('120.00')
        for discount in [
            Discount(DiscountType.FIXED, Decimal('500.00')),
            Discount(DiscountType.FIXED, Decimal('0.00')),
            Discount(DiscountType.PERCENTAGE, Decimal('100')),
            Discount(DiscountType.PERCENTAGE, Decimal('33.3')),
        ]:
            final = ledger.compute_final_amount(subtotal, ledger.compute_discount_amount(subtotal, discount))
            self.assertGreaterEqual(final, Decimal('0.00'))
            self.assertLessEqual(final, subtotal)


class LedgerLifecycleTest(SimpleTestCase):

    def test_discounted_invoice_paid_in_full(self):
        """$500 with 10% off is $450; paying $450 settles it."""
        invoice = sent_invoice(item('Crown', 1, '500.00'), discount=Discount(DiscountType.PERCENTAGE, Decimal('10')))

        self.assertEqual(invoice.discount_amount, Decimal('50.00'))
        self.assertEqual(invoice.final_amount, Decimal('450.00'))

        invoice = ledger.record_payment(invoice, payment('450.00'))

        self.assertEqual(invoice.status, InvoiceStatus.PAID)
        self.assertEqual(ledger.outstanding_balance(invoice), Decimal('0.00'))

    def test_write_off_settles_without_payment(self):
        """A full write-off drops the effective amount to zero and marks the invoice paid."""
        invoice = sent_invoice(item('Root canal', 1, '200.00'))

        invoice = ledger.apply_adjustment(invoice, adjustment(AdjustmentType.WRITE_OFF, '200.00'))

        self.assertEqual(invoice.effective_final_amount, Decimal('0.00'))
        self.assertEqual(invoice.status, InvoiceStatus.PAID)
        self.assertEqual(invoice.paid_amount, Decimal('0.00'))

    def test_void_twice_fails(self):
        invoice = ledger.void_invoice(sent_invoice())

        with self.assertRaises(InvalidStateError):
            ledger.void_invoice(invoice)
        self.assertEqual(invoice.status, InvoiceStatus.CANCELED)

    def test_refund_restores_balance(self):
        """Refunding a payment leaves the balance as if it was never recorded."""
        invoice = sent_invoice(item('Filling', 2, '75.00'))
        invoice = ledger.record_payment(invoice, payment('40.00'))
        before = ledger.outstanding_balance(invoice)

        second = payment('60.00')
        invoice = ledger.record_payment(invoice, second)
        self.assertEqual(ledger.outstanding_balance(invoice), Decimal('50.00'))

        invoice = ledger.refund_payment(invoice, second.id, 'Card charged twice')

        self.assertEqual(ledger.outstanding_balance(invoice), before)
        self.assertEqual(invoice.status, InvoiceStatus.PARTIAL)
        self.assertEqual(invoice.refunded_amount, Decimal('60.00'))
        self.assertEqual(len(invoice.payments), 2)

    def test_refunding_only_payment_returns_to_sent(self):
        invoice = sent_invoice()
        first = payment('100.00')
        invoice = ledger.record_payment(invoice, first)
        self.assertEqual(invoice.status, InvoiceStatus.PAID)

        invoice = ledger.refund_payment(invoice, first.id, 'Treatment not performed')

        self.assertEqual(invoice.status, InvoiceStatus.SENT)
        self.assertEqual(ledger.outstanding_balance(invoice), Decimal('100.00'))

    def test_refund_errors(self):
        invoice = ledger.record_payment(sent_invoice(), payment('30.00'))
        paid = invoice.payments[0]

        with self.assertRaises(NotFoundError):
            ledger.refund_payment(invoice, uuid.uuid4(), 'Unknown')
        with self.assertRaises(ValidationError):
            ledger.refund_payment(invoice, paid.id, ' ')

        invoice = ledger.refund_payment(invoice, paid.id, 'Duplicate')
        with self.assertRaises(InvalidStateError):
            ledger.refund_payment(invoice, paid.id, 'Duplicate')

    def test_partial_then_paid(self):
        invoice = sent_invoice(item('Implant', 1, '1200.00'))

        invoice = ledger.record_payment(invoice, payment('200.00'))
        self.assertEqual(invoice.status, InvoiceStatus.PARTIAL)

        invoice = ledger.record_payment(invoice, payment('1000.00', PaymentMethod.CARD))
        self.assertEqual(invoice.status, InvoiceStatus.PAID)

    def test_overpayment_clamps_balance(self):
        invoice = ledger.record_payment(sent_invoice(), payment('150.00'))

        self.assertEqual(invoice.status, InvoiceStatus.PAID)
        self.assertEqual(ledger.outstanding_balance(invoice), Decimal('0.00'))

    def test_payment_state_rules(self):
        draft = ledger.create_invoice('INV20250002', 1, [item()], TODAY)
        with self.assertRaises(InvalidStateError):
            ledger.record_payment(draft, payment('10.00'))

        with self.assertRaises(InvalidStateError):
            ledger.record_payment(ledger.void_invoice(sent_invoice()), payment('10.00'))

        paid = ledger.record_payment(sent_invoice(), payment('100.00'))
        with self.assertRaises(InvalidStateError):
            ledger.record_payment(paid, payment('10.00'))

    def test_payment_amount_must_be_positive(self):
        for amount in ['0.00', '-5.00']:
            with self.assertRaises(ValidationError):
                ledger.record_payment(sent_invoice(), payment(amount))

    def test_adjustment_signs(self):
        invoice = sent_invoice(item('Whitening', 1, '300.00'))

        invoice = ledger.apply_adjustment(invoice, adjustment(AdjustmentType.FEE, '25.00'))
        self.assertEqual(invoice.effective_final_amount, Decimal('325.00'))

        invoice = ledger.apply_adjustment(invoice, adjustment(AdjustmentType.DISCOUNT, '50.00'))
        self.assertEqual(invoice.effective_final_amount, Decimal('275.00'))

        invoice = ledger.apply_adjustment(invoice, adjustment(AdjustmentType.CORRECTION, '-10.00'))
        self.assertEqual(invoice.effective_final_amount, Decimal('265.00'))

        invoice = ledger.apply_adjustment(invoice, adjustment(AdjustmentType.CORRECTION, '5.00'))
        self.assertEqual(invoice.effective_final_amount, Decimal('270.00'))
        self.assertEqual(invoice.adjustment_total, Decimal('-30.00'))
        self.assertEqual(len(invoice.adjustments), 4)

    def test_adjustment_state_and_input_rules(self):
        draft = ledger.create_invoice('INV20250003', 1, [item()], TODAY)
        with self.assertRaises(InvalidStateError):
            ledger.apply_adjustment(draft, adjustment(AdjustmentType.FEE, '5.00'))
        with self.assertRaises(InvalidStateError):
            ledger.apply_adjustment(ledger.void_invoice(sent_invoice()), adjustment(AdjustmentType.FEE, '5.00'))

        invoice = sent_invoice()
        with self.assertRaises(ValidationError):
            ledger.apply_adjustment(invoice, adjustment(AdjustmentType.FEE, '5.00', reason=''))
        with self.assertRaises(ValidationError):
            ledger.apply_adjustment(invoice, adjustment(AdjustmentType.WRITE_OFF, '-5.00'))
        with self.assertRaises(ValidationError):
            ledger.apply_adjustment(invoice, adjustment(AdjustmentType.CORRECTION, '0.00'))

    def test_fee_after_partial_payment_keeps_partial(self):
        invoice = ledger.record_payment(sent_invoice(), payment('100.00'))
        self.assertEqual(invoice.status, InvoiceStatus.PAID)
        with self.assertRaises(InvalidStateError):
            ledger.apply_adjustment(invoice, adjustment(AdjustmentType.FEE, '20.00'))

        invoice = ledger.record_payment(sent_invoice(), payment('60.00'))
        invoice = ledger.apply_adjustment(invoice, adjustment(AdjustmentType.FEE, '20.00'))
        self.assertEqual(invoice.status, InvoiceStatus.PARTIAL)
        self.assertEqual(ledger.outstanding_balance(invoice), Decimal('60.00'))

    def test_draft_editing(self):
        draft = ledger.create_invoice('INV20250004', 1, [item('Exam', 1, '50.00')], TODAY)

        draft = ledger.add_line_item(draft, item('X-ray', 2, '30.00'))
        self.assertEqual(draft.subtotal, Decimal('110.00'))

        draft = ledger.remove_line_item(draft, 0)
        self.assertEqual([i.description for i in draft.line_items], ['X-ray'])

        with self.assertRaises(NotFoundError):
            ledger.remove_line_item(draft, 5)

        sent = ledger.send_invoice(draft)
        with self.assertRaises(InvalidStateError):
            ledger.add_line_item(sent, item())
        with self.assertRaises(InvalidStateError):
            ledger.remove_line_item(sent, 0)

    def test_send_requires_items(self):
        draft = ledger.create_invoice('INV20250005', 1, [], TODAY)
        with self.assertRaises(ValidationError):
            ledger.send_invoice(draft)

    def test_fully_discounted_invoice_is_paid_on_send(self):
        invoice = sent_invoice(discount=Discount(DiscountType.PERCENTAGE, Decimal('100')))

        self.assertEqual(invoice.status, InvoiceStatus.PAID)

    def test_due_date_before_issue_rejected(self):
        with self.assertRaises(ValidationError):
            ledger.create_invoice('INV20250006', 1, [item()], TODAY, due_date=TODAY - timedelta(days=1))

    def test_mark_overdue(self):
        invoice = sent_invoice(due_date=TODAY)

        self.assertIs(ledger.mark_overdue(invoice, TODAY), invoice)
        overdue = ledger.mark_overdue(invoice, TODAY + timedelta(days=1))
        self.assertEqual(overdue.status, InvoiceStatus.OVERDUE)

        overdue = ledger.record_payment(overdue, payment('30.00'))
        self.assertEqual(overdue.status, InvoiceStatus.PARTIAL)

        overdue = ledger.record_payment(overdue, payment('70.00'))
        self.assertEqual(overdue.status, InvoiceStatus.PAID)
        self.assertIs(ledger.mark_overdue(overdue, TODAY + timedelta(days=5)), overdue)

    def test_void_from_overdue(self):
        overdue = ledger.mark_overdue(sent_invoice(due_date=TODAY), TODAY + timedelta(days=3))
        self.assertEqual(ledger.void_invoice(overdue).status, InvoiceStatus.CANCELED)

    def test_ledger_summary_uses_strings(self):
        invoice = ledger.record_payment(sent_invoice(item('Exam', 1, '80.00')), payment('30.00'))
        summary = ledger.ledger_summary(invoice)

        self.assertEqual(summary['final_amount'], '80.00')
        self.assertEqual(summary['paid_amount'], '30.00')
        self.assertEqual(summary['balance'], '50.00')
        self.assertEqual(summary['status'], 'partial')

    def test_invoice_values_are_immutable(self):
        invoice = sent_invoice()
        updated = ledger.record_payment(invoice, payment('10.00'))

        self.assertEqual(invoice.payments, ())
        self.assertEqual(invoice.status, InvoiceStatus.SENT)
        self.assertIsNot(updated, invoice)
        self.assertIsInstance(updated, Invoice)


class InvoiceServiceTest(TestCase):
    """Ledger operations persisted through the services layer"""

    def setUp(self):
        self.organization = create_tenant('clinic')
        self.tenant_id = self.organization.tenant_id
        self.patient = create_patient(self.tenant_id)

    def _sent(self, *items, **kwargs):
        row = services.create_invoice(self.tenant_id, self.patient, items or [item()], issued_date=TODAY, **kwargs)
        return services.send_invoice(self.tenant_id, row.pk)

    def test_create_invoice_persists_items_and_totals(self):
        row = services.create_invoice(
            self.tenant_id, self.patient,
            [item('Crown', 1, '500.00')],
            issued_date=TODAY,
            discount=Discount(DiscountType.PERCENTAGE, Decimal('10')),
        )

        row.refresh_from_db()
        self.assertEqual(row.status, 'draft')
        self.assertTrue(row.invoice_number.startswith('INV'))
        self.assertEqual(row.items.count(), 1)
        self.assertEqual(row.subtotal, Decimal('500.00'))
        self.assertEqual(row.final_amount, Decimal('450.00'))

    def test_invoice_numbers_are_sequential_per_tenant(self):
        first = services.create_invoice(self.tenant_id, self.patient, [item()], issued_date=TODAY)
        second = services.create_invoice(self.tenant_id, self.patient, [item()], issued_date=TODAY)

        self.assertEqual(int(second.invoice_number[-4:]), int(first.invoice_number[-4:]) + 1)

    def test_payment_flow_updates_row(self):
        row = self._sent(item('Crown', 1, '500.00'), discount=Discount(DiscountType.PERCENTAGE, Decimal('10')))

        row, payment_row = services.record_payment(self.tenant_id, row.pk, '450.00', 'card')

        row.refresh_from_db()
        self.assertEqual(row.status, 'paid')
        self.assertEqual(row.paid_amount, Decimal('450.00'))
        self.assertEqual(row.balance_amount, Decimal('0.00'))
        self.assertEqual(payment_row.payment_method, 'card')

    def test_refund_flags_payment_row(self):
        row = self._sent(item('Filling', 1, '150.00'))
        row, payment_row = services.record_payment(self.tenant_id, row.pk, '150.00', 'cash')

        services.refund_payment(self.tenant_id, row.pk, payment_row.pk, 'Patient cancelled treatment')

        payment_row.refresh_from_db()
        row.refresh_from_db()
        self.assertTrue(payment_row.is_refunded)
        self.assertEqual(payment_row.refund_reason, 'Patient cancelled treatment')
        self.assertIsNotNone(payment_row.refunded_at)
        self.assertEqual(row.status, 'sent')
        self.assertEqual(row.balance_amount, Decimal('150.00'))

    def test_unknown_payment_method(self):
        row = self._sent()
        with self.assertRaises(ValidationError):
            services.record_payment(self.tenant_id, row.pk, '10.00', 'bitcoin')

    def test_adjustments_are_append_only(self):
        row = self._sent(item('Root canal', 1, '200.00'))
        row = services.apply_adjustment(self.tenant_id, row.pk, 'write_off', '200.00', 'Hardship write-off')

        row.refresh_from_db()
        self.assertEqual(row.status, 'paid')
        self.assertEqual(row.effective_final_amount, Decimal('0.00'))

        stored = InvoiceAdjustment.objects.get(invoice=row)
        stored.reason = 'Edited'
        with self.assertRaises(AppendOnlyError):
            stored.save()
        with self.assertRaises(AppendOnlyError):
            stored.delete()

    def test_payments_are_never_deleted(self):
        row = self._sent()
        _, payment_row = services.record_payment(self.tenant_id, row.pk, '10.00', 'cash')

        with self.assertRaises(AppendOnlyError):
            payment_row.delete()
        self.assertTrue(PaymentRow.objects.filter(pk=payment_row.pk).exists())

    def test_draft_line_item_editing(self):
        row = services.create_invoice(self.tenant_id, self.patient, [item('Exam', 1, '50.00')], issued_date=TODAY)

        row = services.add_line_item(self.tenant_id, row.pk, item('X-ray', 2, '30.00'))
        row.refresh_from_db()
        self.assertEqual(row.subtotal, Decimal('110.00'))
        self.assertEqual(list(row.items.values_list('description', flat=True)), ['Exam', 'X-ray'])

        row = services.remove_line_item(self.tenant_id, row.pk, 0)
        row.refresh_from_db()
        self.assertEqual(row.subtotal, Decimal('60.00'))

        services.send_invoice(self.tenant_id, row.pk)
        with self.assertRaises(InvalidStateError):
            services.add_line_item(self.tenant_id, row.pk, item())

    def test_void(self):
        row = self._sent()
        services.void_invoice(self.tenant_id, row.pk)

        with self.assertRaises(InvalidStateError):
            services.void_invoice(self.tenant_id, row.pk)
        with self.assertRaises(InvalidStateError):
            services.record_payment(self.tenant_id, row.pk, '10.00', 'cash')

    def test_other_tenants_invoice_is_not_found(self):
        row = self._sent()

        with self.assertRaises(NotFoundError):
            services.get_invoice(uuid.uuid4(), row.pk)
        with self.assertRaises(NotFoundError):
            services.get_invoice(self.tenant_id, 'not-a-uuid')

    def test_mark_overdue_invoices(self):
        overdue = self._sent(due_date=TODAY + timedelta(days=10))
        not_due = self._sent(due_date=TODAY + timedelta(days=60))
        paid = self._sent(due_date=TODAY + timedelta(days=10))
        services.record_payment(self.tenant_id, paid.pk, '100.00', 'cash')

        count = services.mark_overdue_invoices(today=TODAY + timedelta(days=30))

        self.assertEqual(count, 1)
        overdue.refresh_from_db()
        not_due.refresh_from_db()
        self.assertEqual(overdue.status, 'overdue')
        self.assertEqual(not_due.status, 'sent')
        self.assertEqual(services.mark_overdue_invoices(today=TODAY + timedelta(days=30)), 0)

    def test_mark_overdue_command(self):
        row = self._sent(due_date=TODAY)
        out = StringIO()

        call_command('mark_overdue_invoices', '--as-of', '2025-04-01', stdout=out)

        row.refresh_from_db()
        self.assertEqual(row.status, 'overdue')
        self.assertIn('1', out.getvalue())


class BillingReportsTest(TestCase):

    def setUp(self):
        self.tenant_id = create_tenant('clinic').tenant_id
        self.patient = create_patient(self.tenant_id)

    def _sent(self, amount, issued_date, due_date=None):
        row = services.create_invoice(
            self.tenant_id, self.patient, [item('Treatment', 1, amount)],
            issued_date=issued_date, due_date=due_date
        )
        return services.send_invoice(self.tenant_id, row.pk)

    def test_aging_buckets(self):
        self.assertEqual(services.aging_bucket(-5), 'current')
        self.assertEqual(services.aging_bucket(30), 'current')
        self.assertEqual(services.aging_bucket(31), 'days_31_60')
        self.assertEqual(services.aging_bucket(90), 'days_61_90')
        self.assertEqual(services.aging_bucket(91), 'over_90')

    def test_ar_aging_report(self):
        as_of = date(2025, 6, 30)
        self._sent('100.00', date(2025, 6, 1), due_date=date(2025, 6, 20))
        self._sent('200.00', date(2025, 4, 1), due_date=date(2025, 5, 1))
        partly_paid = self._sent('300.00', date(2025, 1, 1), due_date=date(2025, 2, 1))
        services.record_payment(self.tenant_id, partly_paid.pk, '50.00', 'cash', payment_date=date(2025, 2, 1))
        services.create_invoice(self.tenant_id, self.patient, [item('Draft', 1, '999.00')], issued_date=date(2025, 1, 1))

        report = services.ar_aging_report(self.tenant_id, as_of)

        self.assertEqual(report['current'], '100.00')
        self.assertEqual(report['days_31_60'], '200.00')
        self.assertEqual(report['days_61_90'], '0.00')
        self.assertEqual(report['over_90'], '250.00')
        self.assertEqual(report['total'], '550.00')

    def test_revenue_report(self):
        january = self._sent('400.00', date(2025, 1, 10))
        february = self._sent('250.00', date(2025, 2, 5))
        voided = self._sent('999.00', date(2025, 2, 6))
        services.void_invoice(self.tenant_id, voided.pk)

        services.record_payment(self.tenant_id, january.pk, '400.00', 'card', payment_date=date(2025, 1, 15))
        _, refunded = services.record_payment(
            self.tenant_id, february.pk, '100.00', 'cash', payment_date=date(2025, 2, 10)
        )
        services.refund_payment(self.tenant_id, february.pk, refunded.pk, 'Overcharged')
        services.apply_adjustment(
            self.tenant_id, february.pk, 'write_off', '50.00', 'Courtesy', applied_date=date(2025, 2, 11)
        )

        report = services.revenue_report(self.tenant_id, date(2025, 1, 1), date(2025, 2, 28))

        self.assertEqual(report['total_revenue'], '600.00')
        self.assertEqual(report['total_collections'], '400.00')
        self.assertEqual(report['total_refunds'], '100.00')
        self.assertEqual(report['total_adjustments'], '-50.00')
        self.assertEqual([m['month'] for m in report['by_month']], ['2025-01', '2025-02'])
        self.assertEqual(report['by_month'][0]['collections'], '400.00')
        self.assertEqual(report['by_month'][1]['revenue'], '200.00')

    def test_revenue_report_rejects_inverted_range(self):
        with self.assertRaises(ValidationError):
            services.revenue_report(self.tenant_id, date(2025, 2, 1), date(2025, 1, 1))


class InvoiceAPITest(TestCase):
    """Invoice endpoints behind the JWT middleware and plan gate"""

    def setUp(self):
        self.organization = create_tenant('doctor')
        self.tenant_id = self.organization.tenant_id
        self.patient = create_patient(self.tenant_id)
        self.client = APIClient()
        self.client.credentials(**auth_headers(self.tenant_id))

    def _create(self, **overrides):
        data = {
            'patient': self.patient.pk,
            'items': [{'description': 'Crown', 'quantity': 1, 'unit_price': '500.00'}],
            'discount_type': 'percentage',
            'discount_value': '10',
            'issued_date': '2025-03-01',
            'due_date': '2025-03-31',
        }
        data.update(overrides)
        return self.client.post('/api/billing/invoices/', data, format='json')

    def test_requires_token(self):
        response = APIClient().get('/api/billing/invoices/')

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_student_plan_has_no_financials(self):
        student = create_tenant('student')
        client = APIClient()
        client.credentials(**auth_headers(student.tenant_id))

        response = client.get('/api/billing/invoices/')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_create_send_and_pay(self):
        response = self._create()
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        invoice = response.json()['data']
        self.assertEqual(invoice['status'], 'draft')
        self.assertEqual(invoice['summary']['final_amount'], '450.00')

        response = self.client.post(f"/api/billing/invoices/{invoice['id']}/send/")
        self.assertEqual(response.json()['data']['status'], 'sent')

        response = self.client.post(
            f"/api/billing/invoices/{invoice['id']}/payments/",
            {'amount': '450.00', 'payment_method': 'card', 'reference_number': 'TXN-1'},
            format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        data = response.json()['data']
        self.assertEqual(data['status'], 'paid')
        self.assertEqual(data['summary']['balance'], '0.00')

        response = self.client.get(f"/api/billing/invoices/{invoice['id']}/payments/")
        self.assertEqual(len(response.json()['data']), 1)

    def test_payment_on_draft_is_conflict(self):
        invoice_id = self._create().json()['data']['id']

        response = self.client.post(
            f'/api/billing/invoices/{invoice_id}/payments/',
            {'amount': '10.00', 'payment_method': 'cash'},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.json()['code'], 'invalid_state')

    def test_invalid_line_item_rejected(self):
        response = self._create(items=[{'description': 'Exam', 'quantity': 0, 'unit_price': '10.00'}])

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(response.json()['success'])

    def test_discount_needs_type_and_value(self):
        response = self._create(discount_type=None)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_edit_items_by_position(self):
        invoice_id = self._create(discount_type=None, discount_value=None).json()['data']['id']

        response = self.client.post(
            f'/api/billing/invoices/{invoice_id}/items/',
            {'description': 'X-ray', 'quantity': 2, 'unit_price': '40.00'},
            format='json'
        )
        self.assertEqual(response.json()['data']['summary']['subtotal'], '580.00')

        response = self.client.delete(f'/api/billing/invoices/{invoice_id}/items/1/')
        data = response.json()['data']
        self.assertEqual([i['description'] for i in data['items']], ['X-ray'])

        response = self.client.delete(f'/api/billing/invoices/{invoice_id}/items/9/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_adjust_refund_and_void(self):
        invoice_id = self._create(discount_type=None, discount_value=None).json()['data']['id']
        self.client.post(f'/api/billing/invoices/{invoice_id}/send/')

        response = self.client.post(
            f'/api/billing/invoices/{invoice_id}/adjustments/',
            {'adjustment_type': 'fee', 'amount': '25.00', 'reason': 'Late fee'},
            format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.json()['data']['summary']['effective_final_amount'], '525.00')
        self.assertEqual(response.json()['data']['adjustments'][0]['effect'], '25.00')

        response = self.client.post(
            f'/api/billing/invoices/{invoice_id}/payments/',
            {'amount': '100.00', 'payment_method': 'cash'},
            format='json'
        )
        payment_id = response.json()['data']['payments'][0]['id']

        response = self.client.post(
            f'/api/billing/invoices/{invoice_id}/refund/',
            {'payment_id': payment_id, 'reason': 'Wrong patient'},
            format='json'
        )
        self.assertEqual(response.json()['data']['summary']['balance'], '525.00')

        response = self.client.post(f'/api/billing/invoices/{invoice_id}/void/')
        self.assertEqual(response.json()['data']['status'], 'canceled')

        response = self.client.post(f'/api/billing/invoices/{invoice_id}/void/')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_other_tenant_cannot_see_invoice(self):
        invoice_id = self._create().json()['data']['id']
        other = create_tenant('clinic')
        client = APIClient()
        client.credentials(**auth_headers(other.tenant_id))

        self.assertEqual(client.get(f'/api/billing/invoices/{invoice_id}/').status_code, 404)
        response = client.post(f'/api/billing/invoices/{invoice_id}/send/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_patient_from_other_tenant_rejected(self):
        stranger = create_patient(uuid.uuid4(), first_name='Other')

        response = self._create(patient=stranger.pk)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_list_filters_by_status(self):
        self._create()
        sent_id = self._create().json()['data']['id']
        self.client.post(f'/api/billing/invoices/{sent_id}/send/')

        response = self.client.get('/api/billing/invoices/', {'status': 'sent'})

        results = response.json()['results']
        self.assertEqual([r['id'] for r in results], [sent_id])

    def test_list_filters_by_issued_date(self):
        march_id = self._create().json()['data']['id']
        self._create(issued_date='2025-05-10', due_date='2025-06-10')

        response = self.client.get('/api/billing/invoices/', {'date_from': '2025-03-01', 'date_to': '2025-03-31'})

        self.assertEqual([r['id'] for r in response.json()['results']], [march_id])

    def test_list_rejects_malformed_dates(self):
        response = self.client.get('/api/billing/invoices/', {'date_from': 'not-a-date'})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        body = response.json()
        self.assertFalse(body['success'])
        self.assertIn('date_from', body['errors'])

        response = self.client.get('/api/billing/invoices/', {'date_to': '2025-13-45'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_reports(self):
        invoice_id = self._create().json()['data']['id']
        self.client.post(f'/api/billing/invoices/{invoice_id}/send/')

        response = self.client.get('/api/billing/invoices/aging/', {'as_of': '2025-04-15'})
        self.assertEqual(response.json()['data']['current'], '450.00')

        response = self.client.get(
            '/api/billing/invoices/revenue/', {'start_date': '2025-03-01', 'end_date': '2025-03-31'}
        )
        self.assertEqual(response.json()['data']['total_revenue'], '450.00')

        response = self.client.get('/api/billing/invoices/revenue/', {'start_date': '2025-03-01'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
