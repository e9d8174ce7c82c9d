import logging
from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from stackpilot.core.errors import LifecycleError
from stackpilot.services.audit_service import RequestContext

bp = Blueprint('api', __name__)

logger = logging.getLogger(__name__)

# Заголовки, которые выставляет слой аутентификации перед сервисом
AUTH_USER_HEADER = 'X-Auth-User'
AUTH_ROLE_HEADER = 'X-Auth-Role'
ADMIN_ROLE = 'admin'


def get_service(name):
    """Сервис ядра из app.extensions (registry, scheduler, orchestrator, notifier)"""
    return current_app.extensions['stackpilot'][name]


def request_context() -> RequestContext:
    """Контекст текущего запроса для аудита"""
    forwarded = request.headers.get('X-Forwarded-For', '')
    ip_address = forwarded.split(',')[0].strip() if forwarded else request.remote_addr
    return RequestContext(
        actor=request.headers.get(AUTH_USER_HEADER, '').strip(),
        is_admin=request.headers.get(AUTH_ROLE_HEADER, '').strip().lower() == ADMIN_ROLE,
        ip_address=ip_address,
        user_agent=request.headers.get('User-Agent')
    )


def auth_required(f):
    """Требует имя пользователя от слоя аутентификации"""
    @wraps(f)
    def decorated(*args, **kwargs):
        if not request.headers.get(AUTH_USER_HEADER, '').strip():
            return jsonify({
                'success': False,
                'kind': 'Unauthorized',
                'error': f"Отсутствует заголовок {AUTH_USER_HEADER}"
            }), 401
        return f(*args, **kwargs)
    return decorated


def admin_required(f):
    """Изменение серверов, проектов и приложений доступно только администраторам"""
    @wraps(f)
    @auth_required
    def decorated(*args, **kwargs):
        if not request_context().is_admin:
            return jsonify({
                'success': False,
                'kind': 'Forbidden',
                'error': "Операция доступна только администраторам"
            }), 403
        return f(*args, **kwargs)
    return decorated


def json_body():
    """Тело запроса как dict (пустой dict, если тела нет)"""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def error_response(error: LifecycleError):
    return jsonify(error.to_dict()), error.http_status


def internal_error(message: str, error: Exception):
    from stackpilot import db
    db.session.rollback()
    logger.exception(f"{message}: {str(error)}")
    return jsonify({
        'success': False,
        'kind': 'InternalError',
        'error': str(error)
    }), 500


# Импортируем все модули с маршрутами
from stackpilot.api import apps_routes  # noqa: E402,F401
from stackpilot.api import servers_routes  # noqa: E402,F401
from stackpilot.api import projects_routes  # noqa: E402,F401
from stackpilot.api import audit_routes  # noqa: E402,F401
