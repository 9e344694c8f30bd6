import logging

from Models.auditLogModel import AuditLog
from Models.userModel import role_of

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("audit")


class AuditTrail:
    """Append-only record of state changes and sensitive reads.

    Recording never raises: a failed write is logged and the operation that
    triggered it carries on.
    """

    def record(self, action, actor=None, resource_type=None, resource_id=None,
               before_state=None, after_state=None, request_meta=None,
               tags=None, is_sensitive=False):
        meta = request_meta or {}
        try:
            entry = AuditLog(
                action=action,
                user_id=actor.id if actor is not None else None,
                user_role=role_of(actor),
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id is not None else None,
                before_state=before_state or {},
                after_state=after_state or {},
                ip_address=meta.get("ip_address"),
                user_agent=meta.get("user_agent"),
                endpoint=meta.get("endpoint"),
                method=meta.get("method"),
                tags=list(tags or []),
                is_sensitive=is_sensitive,
            )
            entry.save()
        except Exception as e:
            logger.error(f"❌ Failed to write audit entry {action} for {resource_type}:{resource_id}: {e}")
            return None

        audit_logger.info(
            f"{action} {resource_type}:{resource_id} by {role_of(actor) or 'anonymous'}"
            f" {before_state or {}} -> {after_state or {}}"
        )
        return entry

    def recent(self, limit=50, page=1, action=None, resource_type=None, user_id=None,
               start=None, end=None):
        """Newest entries first. Returns ``(total, entries)``."""
        query = {}
        if action:
            query["action"] = action
        if resource_type:
            query["resource_type"] = resource_type
        if user_id:
            query["user_id"] = user_id
        if start:
            query["created_at__gte"] = start
        if end:
            query["created_at__lte"] = end

        entries = AuditLog.objects(**query).order_by("-created_at")
        total = entries.count()
        page_entries = entries.skip((page - 1) * limit).limit(limit)
        return total, list(page_entries)
