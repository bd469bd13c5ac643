"""Management command to forget stored item state so the next notification bootstraps."""

from __future__ import annotations

from django.core.management.base import BaseCommand

from change_tracking.detector import ChangeDetector


class Command(BaseCommand):
    help = "Delete stored snapshots for a list, or for a single item of that list"

    def add_arguments(self, parser):
        parser.add_argument("list_key", help="List identity the snapshots are stored under")
        parser.add_argument("--item-id", dest="item_id", default=None, help="Only reset this item")

    def handle(self, *args, **options):
        list_key = options["list_key"]
        item_id = options["item_id"]
        deleted = ChangeDetector().reset(list_key, item_id)
        target = f"{list_key}#{item_id}" if item_id else list_key
        self.stdout.write(self.style.SUCCESS(f"Deleted {deleted} snapshot(s) for {target}"))
