# stackpilot/models/__init__.py

from stackpilot.models.server import Server
from stackpilot.models.project import Project
from stackpilot.models.application import Application
from stackpilot.models.audit_event import AuditEvent

__all__ = [
    'Server',
    'Project',
    'Application',
    'AuditEvent'
]
