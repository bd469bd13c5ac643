"""Management command to store baseline snapshots for every item of a list."""

from __future__ import annotations

import logging

from django.core.management.base import BaseCommand, CommandError

from change_tracking.detector import ChangeDetector
from config.domain_exceptions import DomainError
from integrations_sharepoint.graph import SharePointGraphClient, parse_resource
from relay.config import get_relay_config

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = (
        "Snapshot every item of a SharePoint list so the first notification for an "
        "existing item reports a real delta instead of its full state"
    )

    def add_arguments(self, parser):
        parser.add_argument("resource", help="List locator, e.g. sites/{site-id}/lists/{list-id}")
        parser.add_argument(
            "--page-size",
            type=int,
            default=200,
            help="Items requested per Graph page",
        )

    def handle(self, *args, **options):
        try:
            resource = parse_resource(options["resource"])
        except DomainError as exc:
            raise CommandError(str(exc)) from exc
        if resource.item_id:
            raise CommandError("Resource must name a list, not a single item")

        config = get_relay_config()
        detector = ChangeDetector(
            ignored_fields=config.ignored_fields,
            write_attempts=config.snapshot_write_attempts,
        )
        client = SharePointGraphClient()

        initialized = 0
        existing = 0
        try:
            for item in client.iter_items(resource, page_size=options["page_size"]):
                if detector.seed(resource.list_key, item.item_id, item.fields):
                    initialized += 1
                else:
                    existing += 1
                    logger.debug("Snapshot already present for %s#%s", resource.list_key, item.item_id)
        except DomainError as exc:
            raise CommandError(f"Initialization stopped after {initialized} snapshot(s): {exc}") from exc

        self.stdout.write(
            self.style.SUCCESS(
                f"Initialized {initialized} snapshot(s) for {resource.list_key}; {existing} already present"
            )
        )
