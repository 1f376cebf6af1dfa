from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/transcoding/", include("apps.transcoding.api_urls", namespace="transcoding_api")),
]
