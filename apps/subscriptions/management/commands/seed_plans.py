"""
Management command to create the default subscription plan tiers.
"""

from django.core.management.base import BaseCommand

from apps.subscriptions.services import ensure_default_plans


class Command(BaseCommand):
    help = 'Create the student, doctor and clinic plans with their default limits'

    def handle(self, *args, **options):
        created = ensure_default_plans()
        if created:
            for plan in created:
                self.stdout.write(self.style.SUCCESS(f'Created plan: {plan.name}'))
        else:
            self.stdout.write('All plans already exist')
