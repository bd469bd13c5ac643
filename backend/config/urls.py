from __future__ import annotations

from django.urls import include, path

urlpatterns = [
    path("api/webhooks/", include("relay.urls")),
]
