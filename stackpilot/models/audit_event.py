# stackpilot/models/audit_event.py
from stackpilot import db
from stackpilot.utils.datetime_utils import utcnow, format_datetime_utc

SYSTEM_ACTOR = 'system'


class AuditEvent(db.Model):
    """
    Запись журнала аудита. Только добавление: ядро никогда не изменяет и не удаляет записи.
    """
    __tablename__ = 'audit_events'

    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, default=utcnow, nullable=False)
    actor = db.Column(db.String(64), nullable=False)  # имя пользователя или 'system'
    action = db.Column(db.String(32), nullable=False)  # start_app, stop_app, create_server, ...
    outcome = db.Column(db.String(16), nullable=False, default='success')  # pending, success, failed

    resource_type = db.Column(db.String(32), nullable=False)  # app, server, project
    resource_id = db.Column(db.Integer, nullable=True)
    resource_name = db.Column(db.String(128), nullable=True)
    detail = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)

    __table_args__ = (
        db.Index('idx_audit_resource', 'resource_type', 'resource_id'),
        db.Index('idx_audit_actor', 'actor'),
        db.Index('idx_audit_timestamp', 'timestamp'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'timestamp': format_datetime_utc(self.timestamp),
            'actor': self.actor,
            'action': self.action,
            'outcome': self.outcome,
            'resource_type': self.resource_type,
            'resource_id': self.resource_id,
            'resource_name': self.resource_name,
            'detail': self.detail,
            'ip_address': self.ip_address,
            'user_agent': self.user_agent
        }

    def __repr__(self):
        return f'<AuditEvent {self.action} {self.resource_type}:{self.resource_id} - {self.timestamp}>'
