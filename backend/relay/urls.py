from __future__ import annotations

from django.urls import path

from relay import views


urlpatterns = [
    path("notifications/", views.NotificationWebhookView.as_view(), name="webhook-notifications"),
    path("status/", views.RelayStatusView.as_view(), name="webhook-status"),
    path("directives/", views.DirectiveCheckView.as_view(), name="webhook-directives"),
]
