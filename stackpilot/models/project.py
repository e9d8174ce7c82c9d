# stackpilot/models/project.py
from stackpilot import db
from stackpilot.utils.datetime_utils import utcnow, format_datetime_utc


class Project(db.Model):
    """Группа приложений. Чисто организационная сущность."""
    __tablename__ = 'projects'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    applications = db.relationship('Application', back_populates='project', lazy='dynamic')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'created_at': format_datetime_utc(self.created_at),
            'updated_at': format_datetime_utc(self.updated_at)
        }

    def __repr__(self):
        return f'<Project {self.name}>'
