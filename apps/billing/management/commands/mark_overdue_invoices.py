"""
Management command for the daily overdue sweep.

Run from the scheduler once a day, after midnight in the clinic's timezone.
"""

import uuid

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone
from django.utils.dateparse import parse_date

from apps.billing.services import mark_overdue_invoices


class Command(BaseCommand):
    help = 'Mark sent and partially paid invoices past their due date as overdue'

    def add_arguments(self, parser):
        parser.add_argument(
            '--as-of',
            type=str,
            help='Sweep date (YYYY-MM-DD); defaults to today',
        )
        parser.add_argument(
            '--tenant-id',
            type=str,
            help='Only sweep this tenant',
        )

    def handle(self, *args, **options):
        today = timezone.localdate()
        if options['as_of']:
            today = parse_date(options['as_of'])
            if today is None:
                raise CommandError(f"Invalid --as-of date: {options['as_of']}")

        tenant_id = None
        if options['tenant_id']:
            try:
                tenant_id = uuid.UUID(options['tenant_id'])
            except ValueError:
                raise CommandError(f"Invalid --tenant-id: {options['tenant_id']}")

        updated = mark_overdue_invoices(today=today, tenant_id=tenant_id)
        self.stdout.write(self.style.SUCCESS(f'Marked {updated} invoice(s) overdue as of {today}'))
