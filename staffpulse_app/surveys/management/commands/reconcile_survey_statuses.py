"""
Management command to advance survey workflow statuses from their dates.

Moves ``pending_consent`` surveys whose window has opened to ``active`` and
surveys whose window has ended to ``completed``. Safe to run at any cadence
and concurrently; a run with nothing to do changes nothing.

Usage:
    python manage.py reconcile_survey_statuses
    python manage.py reconcile_survey_statuses --dry-run
"""

from django.core.management.base import BaseCommand
from django.utils import timezone

from staffpulse_app.surveys.lifecycle import SurveyLifecycle
from staffpulse_app.surveys.models import Survey


class Command(BaseCommand):
    help = "Advance survey statuses based on publish and end dates"

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would change without updating anything",
        )

    def handle(self, *args, **options):
        now = timezone.now()
        if options.get("dry_run"):
            self.stdout.write(self.style.WARNING("DRY RUN MODE - No changes will be made"))
            to_activate = Survey.objects.filter(
                status=Survey.Status.PENDING_CONSENT,
                publish_date__lte=now,
                end_date__gte=now,
            ).count()
            to_complete = Survey.objects.filter(
                status__in=[Survey.Status.PENDING_CONSENT, Survey.Status.ACTIVE],
                end_date__lt=now,
            ).count()
            self.stdout.write(
                f"Would activate {to_activate} and complete {to_complete} surveys"
            )
            return

        result = SurveyLifecycle().reconcile_statuses(now=now)
        self.stdout.write(
            self.style.SUCCESS(
                f"Activated {result['activated']} and completed "
                f"{result['completed']} surveys"
            )
        )
