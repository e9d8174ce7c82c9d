# stackpilot/models/application.py
from stackpilot import db
from stackpilot.core.lifecycle import AppState
from stackpilot.utils.datetime_utils import utcnow, format_datetime_utc


class Application(db.Model):
    """
    docker-compose приложение, развернутое на сервере.

    Состояние меняется только через Orchestrator. Инвариант:
    state == running <=> started_at задан <=> в планировщике есть дедлайн.
    """
    __tablename__ = 'applications'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False)
    server_id = db.Column(db.Integer, db.ForeignKey('servers.id'), nullable=False)

    name = db.Column(db.String(128), nullable=False)
    domain = db.Column(db.String(255), nullable=True)  # только для ссылки в UI
    working_directory = db.Column(db.String(512), nullable=False)  # где лежит docker-compose.yml
    auto_stop_minutes = db.Column(db.Integer, nullable=False, default=60)

    # Жизненный цикл
    state = db.Column(db.String(16), nullable=False, default=AppState.STOPPED.value)
    started_at = db.Column(db.DateTime, nullable=True)
    deadline_at = db.Column(db.DateTime, nullable=True)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    project = db.relationship('Project', back_populates='applications')
    server = db.relationship('Server', back_populates='applications')

    __table_args__ = (
        db.Index('idx_application_project', 'project_id'),
        db.Index('idx_application_server', 'server_id'),
        db.Index('idx_application_state', 'state'),
    )

    @property
    def lifecycle_state(self):
        return AppState(self.state)

    def to_dict(self, now=None):
        """Преобразование приложения в словарь для API"""
        remaining = None
        if self.deadline_at is not None:
            now = now or utcnow()
            remaining = max(0, int((self.deadline_at - now).total_seconds()))

        return {
            'id': self.id,
            'name': self.name,
            'project_id': self.project_id,
            'server_id': self.server_id,
            'domain': self.domain,
            'working_directory': self.working_directory,
            'auto_stop_minutes': self.auto_stop_minutes,
            'state': self.state,
            'started_at': format_datetime_utc(self.started_at),
            'deadline_at': format_datetime_utc(self.deadline_at),
            'remaining_seconds': remaining,
            'last_error': self.last_error,
            'created_at': format_datetime_utc(self.created_at),
            'updated_at': format_datetime_utc(self.updated_at)
        }

    def __repr__(self):
        return f'<Application {self.name} [{self.state}]>'
