from django.contrib import admin

from .models import CoreSettings


@admin.register(CoreSettings)
class CoreSettingsAdmin(admin.ModelAdmin):
    list_display = ("key", "name", "value")
    search_fields = ("key", "name")
    ordering = ("key",)
