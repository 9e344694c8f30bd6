from mongoengine import (
    Document, StringField, DateTimeField, DictField, ListField, BooleanField, ObjectIdField
)

from Utils.identifiers import utcnow


class AuditLog(Document):
    action = StringField(required=True)
    user_id = ObjectIdField()
    user_role = StringField()
    resource_type = StringField()
    resource_id = StringField()
    before_state = DictField()
    after_state = DictField()
    ip_address = StringField()
    user_agent = StringField()
    endpoint = StringField()
    method = StringField()
    tags = ListField(StringField())
    is_sensitive = BooleanField(default=False)
    created_at = DateTimeField(default=utcnow)

    meta = {
        'collection': 'audit_logs',
        'indexes': ['action', 'resource_type', 'user_id', '-created_at']
    }

    def to_json(self):
        return {
            'id': str(self.id),
            'action': self.action,
            'user_id': str(self.user_id) if self.user_id else None,
            'user_role': self.user_role,
            'resource_type': self.resource_type,
            'resource_id': self.resource_id,
            'before_state': self.before_state,
            'after_state': self.after_state,
            'ip_address': self.ip_address,
            'user_agent': self.user_agent,
            'endpoint': self.endpoint,
            'method': self.method,
            'tags': self.tags,
            'is_sensitive': self.is_sensitive,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
