# stackpilot/models/server.py
from stackpilot import db
from stackpilot.utils.datetime_utils import utcnow, format_datetime_utc

# Состояния доступности сервера
REACHABILITY_UNKNOWN = 'unknown'
REACHABILITY_ONLINE = 'online'
REACHABILITY_OFFLINE = 'offline'
REACHABILITY_STATES = (REACHABILITY_UNKNOWN, REACHABILITY_ONLINE, REACHABILITY_OFFLINE)


class Server(db.Model):
    __tablename__ = 'servers'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), unique=True, nullable=False)
    address = db.Column(db.String(255), nullable=False)

    # SSH-доступ. Ключ хранится только в зашифрованном виде и никогда не отдается наружу
    ssh_user = db.Column(db.String(64), nullable=False)
    ssh_port = db.Column(db.Integer, nullable=False, default=22)
    ssh_key_encrypted = db.Column(db.Text, nullable=False)

    # Результат последней проверки доступности
    reachability = db.Column(db.String(20), nullable=False, default=REACHABILITY_UNKNOWN)
    last_checked = db.Column(db.DateTime, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    running_containers = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Relationships (источник истины - внешний ключ в Application)
    applications = db.relationship('Application', back_populates='server', lazy='dynamic')

    @property
    def is_online(self):
        return self.reachability == REACHABILITY_ONLINE

    def to_dict(self):
        """Преобразование сервера в словарь для API (без ключа)"""
        return {
            'id': self.id,
            'name': self.name,
            'address': self.address,
            'ssh_user': self.ssh_user,
            'ssh_port': self.ssh_port,
            'reachability': self.reachability,
            'last_checked': format_datetime_utc(self.last_checked),
            'last_error': self.last_error,
            'running_containers': self.running_containers,
            'created_at': format_datetime_utc(self.created_at),
            'updated_at': format_datetime_utc(self.updated_at)
        }

    def __repr__(self):
        return f'<Server {self.name} ({self.address}:{self.ssh_port})>'
