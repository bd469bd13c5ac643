"""Management command to delete item snapshots past the retention window."""

from __future__ import annotations

from django.core.management.base import BaseCommand

from change_tracking.detector import ChangeDetector
from relay.config import get_relay_config


class Command(BaseCommand):
    help = "Delete item snapshots that have not been updated within the retention period"

    def add_arguments(self, parser):
        parser.add_argument(
            "--days",
            type=int,
            default=None,
            help="Retention in days (defaults to RELAY['snapshot_retention_days'])",
        )

    def handle(self, *args, **options):
        days = options["days"]
        if days is None:
            days = get_relay_config().snapshot_retention_days
        deleted = ChangeDetector().cleanup_stale(days=days)
        self.stdout.write(self.style.SUCCESS(f"Deleted {deleted} snapshot(s) older than {days} day(s)"))
