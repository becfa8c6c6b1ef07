"""
Management command to mark overdue survey access tokens as expired.

Tokens are also expired lazily when they are checked; this sweep keeps token
listings and reports accurate for tokens nobody has tried to use.

Usage:
    python manage.py expire_access_tokens
    python manage.py expire_access_tokens --dry-run
"""

from django.core.management.base import BaseCommand
from django.utils import timezone

from staffpulse_app.surveys.access_tokens import AccessTokenRegistry
from staffpulse_app.surveys.models import AccessToken


class Command(BaseCommand):
    help = "Expire active survey access tokens past their expiry date"

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Count overdue tokens without changing them",
        )

    def handle(self, *args, **options):
        now = timezone.now()
        if options.get("dry_run"):
            overdue = AccessToken.objects.filter(
                status=AccessToken.Status.ACTIVE, expires_at__lt=now
            ).count()
            self.stdout.write(self.style.WARNING(f"Would expire {overdue} tokens"))
            return
        expired = AccessTokenRegistry().expire_overdue(now=now)
        self.stdout.write(self.style.SUCCESS(f"Expired {expired} tokens"))
