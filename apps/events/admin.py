from django.contrib import admin

from apps.events.models import OutboxEvent


@admin.register(OutboxEvent)
class OutboxEventAdmin(admin.ModelAdmin):
    list_display = ("event_type", "aggregate_id", "status", "attempts", "created_at", "delivered_at")
    list_filter = ("status", "event_type")
    search_fields = ("aggregate_id", "dedup_key")
    readonly_fields = ("event_type", "aggregate_id", "payload", "dedup_key", "created_at", "delivered_at", "last_error")
