from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/", include("staffpulse_app.api.urls")),
    path("", include("staffpulse_app.core.urls")),
]
