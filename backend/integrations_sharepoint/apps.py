from django.apps import AppConfig


class IntegrationsSharePointConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "integrations_sharepoint"
    verbose_name = "SharePoint (Microsoft Graph) Integration"
