# Generated manually for the ItemSnapshot model

import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="ItemSnapshot",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                (
                    "list_key",
                    models.CharField(
                        help_text="List identity (site/list locator)",
                        max_length=255,
                    ),
                ),
                ("item_id", models.CharField(max_length=100)),
                (
                    "fields",
                    models.JSONField(
                        default=dict,
                        help_text="Field name -> normalized serialized value, used for comparison",
                    ),
                ),
                (
                    "raw_fields",
                    models.JSONField(
                        default=dict,
                        help_text="Field values as last fetched, reported as the previous state",
                    ),
                ),
                ("last_seen_version", models.CharField(blank=True, max_length=50)),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Optimistic concurrency counter, bumped on every write",
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "verbose_name": "Item Snapshot",
                "verbose_name_plural": "Item Snapshots",
            },
        ),
        migrations.AddConstraint(
            model_name="itemsnapshot",
            constraint=models.UniqueConstraint(
                fields=("list_key", "item_id"),
                name="change_tracking_snapshot_unique_item",
            ),
        ),
        migrations.AddIndex(
            model_name="itemsnapshot",
            index=models.Index(fields=["updated_at"], name="snapshot_updated_at_idx"),
        ),
    ]
