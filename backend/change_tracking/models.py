from django.db import models
from django.utils import timezone


class ItemSnapshot(models.Model):
    """Last observed field state of one SharePoint list item."""

    list_key = models.CharField(max_length=255, help_text="List identity (site/list locator)")
    item_id = models.CharField(max_length=100)
    fields = models.JSONField(
        default=dict,
        help_text="Field name -> normalized serialized value, used for comparison",
    )
    raw_fields = models.JSONField(
        default=dict,
        help_text="Field values as last fetched, reported as the previous state",
    )
    last_seen_version = models.CharField(max_length=50, blank=True)
    version = models.PositiveIntegerField(
        default=1,
        help_text="Optimistic concurrency counter, bumped on every write",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    # Written explicitly by the store; queryset.update() bypasses auto_now.
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["list_key", "item_id"],
                name="change_tracking_snapshot_unique_item",
            ),
        ]
        indexes = [
            models.Index(fields=["updated_at"], name="snapshot_updated_at_idx"),
        ]
        verbose_name = "Item Snapshot"
        verbose_name_plural = "Item Snapshots"

    def __str__(self):
        return f"{self.list_key}#{self.item_id} (v{self.version})"
