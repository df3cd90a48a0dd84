"""
Django management command to delete revoked tokens that have expired anyway.

Usage:
    python manage.py purge_revoked_tokens
    python manage.py purge_revoked_tokens --dry-run
"""
from django.core.management.base import BaseCommand
from django.utils import timezone

from backend.activity.models import RevokedToken


class Command(BaseCommand):
    help = 'Delete revoked access tokens whose expiry has passed'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Only report how many rows would be deleted',
        )

    def handle(self, *args, **options):
        queryset = RevokedToken.objects.expired(timezone.now())
        count = queryset.count()

        if options['dry_run']:
            self.stdout.write(f"{count} expired revoked token(s) would be deleted")
            return

        queryset.delete()
        self.stdout.write(self.style.SUCCESS(f"✓ Deleted {count} expired revoked token(s)"))
