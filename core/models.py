from django.conf import settings
from django.db import models

SYSTEM_SETTINGS_KEY = "system_settings"
TRANSCODING_SETTINGS_KEY = "transcoding_settings"

SETTINGS_GROUP_NAMES = {
    SYSTEM_SETTINGS_KEY: "System Settings",
    TRANSCODING_SETTINGS_KEY: "Transcoding Settings",
}


class CoreSettings(models.Model):
    """
    Runtime-editable settings, stored as one JSON object per group.

    The transcoding group holds overrides for ``apps.transcoding.config``
    keyed by lowercase setting name, e.g. ``{"max_concurrent_high": 10}``.
    Saving a row invalidates the matching in-process cache (see core.signals).
    """

    key = models.CharField(max_length=255, unique=True)
    name = models.CharField(max_length=255)
    value = models.JSONField(default=dict, blank=True)

    class Meta:
        verbose_name = "Core Settings"
        verbose_name_plural = "Core Settings"

    def __str__(self):
        return self.name or self.key

    @classmethod
    def read_group(cls, key, defaults=None):
        row = cls.objects.filter(key=key).values_list('value', flat=True).first()
        merged = dict(defaults or {})
        if isinstance(row, dict):
            merged.update(row)
        return merged

    @classmethod
    def write_group(cls, key, updates):
        """Merge ``updates`` into a group, creating the row on first write."""
        row, _ = cls.objects.get_or_create(
            key=key,
            defaults={"name": SETTINGS_GROUP_NAMES.get(key, key), "value": {}},
        )
        value = row.value if isinstance(row.value, dict) else {}
        value.update(updates)
        row.value = value
        row.save()
        return value

    @classmethod
    def get_transcoding_settings(cls):
        return cls.read_group(TRANSCODING_SETTINGS_KEY)

    @classmethod
    def update_transcoding_settings(cls, updates: dict):
        return cls.write_group(TRANSCODING_SETTINGS_KEY, {k.lower(): v for k, v in updates.items()})

    @classmethod
    def get_system_settings(cls):
        return cls.read_group(SYSTEM_SETTINGS_KEY, {
            "time_zone": getattr(settings, "TIME_ZONE", "UTC") or "UTC",
            "event_level": "FULL",
        })

    @classmethod
    def set_event_level(cls, level):
        return cls.write_group(SYSTEM_SETTINGS_KEY, {"event_level": str(level).upper()})
