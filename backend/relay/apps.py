from django.apps import AppConfig


class RelayAppConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "relay"
    verbose_name = "SharePoint Change Relay"
