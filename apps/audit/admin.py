from django.contrib import admin

from apps.audit.models import AuditLog


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ("action", "entity_type", "entity_id", "source", "actor", "created_at")
    list_filter = ("source", "action")
    search_fields = ("entity_id", "action")
    readonly_fields = ("actor", "source", "action", "entity_type", "entity_id", "payload", "created_at")
