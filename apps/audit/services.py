from apps.audit.models import AuditLog, AuditSource


def record_audit(*, actor_id=None, action, entity_type, entity_id, payload=None, source=AuditSource.API):
    return AuditLog.objects.create(
        actor_id=actor_id,
        source=source,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        payload=payload or {},
    )
