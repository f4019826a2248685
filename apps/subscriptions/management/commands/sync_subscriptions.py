"""
Management command to refresh subscription snapshots from the billing provider.
"""

from django.core.management.base import BaseCommand, CommandError

from apps.subscriptions.models import Organization
from apps.subscriptions.provider import BillingProviderError
from apps.subscriptions.services import refresh_subscription, sync_all_subscriptions


class Command(BaseCommand):
    help = 'Refresh organization subscriptions from the billing provider'

    def add_arguments(self, parser):
        parser.add_argument(
            '--tenant-id',
            type=str,
            help='Only refresh the organization of this tenant',
        )

    def handle(self, *args, **options):
        if options['tenant_id']:
            organization = Organization.objects.filter(tenant_id=options['tenant_id']).first()
            if organization is None:
                raise CommandError(f"No organization for tenant {options['tenant_id']}")
            try:
                refresh_subscription(organization)
            except BillingProviderError as e:
                raise CommandError(f'Billing provider error: {e.message}')
            self.stdout.write(self.style.SUCCESS(f'Refreshed subscription for {organization.name}'))
            return

        synced, failed = sync_all_subscriptions()
        self.stdout.write(self.style.SUCCESS(f'Refreshed {synced} subscription(s)'))
        if failed:
            self.stdout.write(self.style.WARNING(f'{failed} refresh(es) failed; see the log for details'))
