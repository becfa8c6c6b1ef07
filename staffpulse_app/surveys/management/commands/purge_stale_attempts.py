"""
Management command to delete abandoned survey attempts.

An attempt that was started but never received an answer within
STAFFPULSE_ATTEMPT_TTL_HOURS is removed, which also releases any access
token it had reserved.

Usage:
    python manage.py purge_stale_attempts
    python manage.py purge_stale_attempts --hours 24
"""

from django.core.management.base import BaseCommand, CommandError

from staffpulse_app.surveys.attempts import AttemptTracker


class Command(BaseCommand):
    help = "Delete open survey attempts without answers older than the TTL"

    def add_arguments(self, parser):
        parser.add_argument(
            "--hours",
            type=int,
            help="Override STAFFPULSE_ATTEMPT_TTL_HOURS",
        )

    def handle(self, *args, **options):
        hours = options.get("hours")
        if hours is not None and hours < 1:
            raise CommandError("--hours must be at least 1")
        purged = AttemptTracker().purge_stale(ttl_hours=hours)
        self.stdout.write(self.style.SUCCESS(f"Purged {purged} stale attempts"))
