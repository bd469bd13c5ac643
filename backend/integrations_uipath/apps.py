from django.apps import AppConfig


class IntegrationsUiPathConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "integrations_uipath"
    verbose_name = "UiPath Orchestrator Integration"
