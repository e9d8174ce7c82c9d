import logging

from flask import jsonify, request

from stackpilot.api import (
    bp, get_service, request_context, auth_required, admin_required,
    json_body, error_response, internal_error
)
from stackpilot.core.errors import LifecycleError, ValidationError
from stackpilot.services.audit_service import AuditService
from stackpilot.utils.datetime_utils import format_datetime_utc

logger = logging.getLogger(__name__)

# Поля, которые можно передать при обновлении приложения
UPDATABLE_FIELDS = ('name', 'domain', 'working_directory', 'auto_stop_minutes', 'project_id', 'server_id')


def _flag(name):
    return request.args.get(name, '').lower() in ('1', 'true', 'yes')


@bp.route('/apps', methods=['GET'])
@auth_required
def get_apps():
    """Список приложений с фильтрацией по проекту и серверу"""
    try:
        orchestrator = get_service('orchestrator')
        project_id = request.args.get('project_id', type=int)
        server_id = request.args.get('server_id', type=int)

        if project_id is not None and server_id is None:
            apps = orchestrator.list_by_project(project_id)
        elif server_id is not None and project_id is None:
            apps = orchestrator.list_by_server(server_id)
        else:
            apps = orchestrator.list_applications(project_id=project_id, server_id=server_id)

        now = orchestrator.clock()
        return jsonify({
            'success': True,
            'applications': [app.to_dict(now=now) for app in apps]
        })
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error("Ошибка при получении списка приложений", e)


@bp.route('/apps/<int:app_id>', methods=['GET'])
@auth_required
def get_app(app_id):
    """Информация о приложении"""
    try:
        return jsonify({
            'success': True,
            'application': get_service('orchestrator').get_state(app_id)
        })
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(f"Ошибка при получении приложения {app_id}", e)


@bp.route('/apps/<int:app_id>/state', methods=['GET'])
@auth_required
def get_app_state(app_id):
    """Текущее состояние и оставшееся время до автоостановки (опрашивается клиентом)"""
    try:
        state = get_service('orchestrator').get_state(app_id)
        return jsonify({
            'success': True,
            'state': state['state'],
            'started_at': state['started_at'],
            'deadline_at': state['deadline_at'],
            'remaining_seconds': state['remaining_seconds'],
            'auto_stop_minutes': state['auto_stop_minutes'],
            'last_error': state['last_error'],
            'operation_in_progress': state['operation_in_progress']
        })
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(f"Ошибка при получении состояния приложения {app_id}", e)


@bp.route('/apps/<int:app_id>/start', methods=['POST'])
@auth_required
def start_app(app_id):
    """Запуск приложения"""
    try:
        result = get_service('orchestrator').start(app_id, request_context())
        return jsonify({
            'success': True,
            'app_id': result['app_id'],
            'state': result['state'],
            'duration_granted_minutes': result['duration_granted_minutes'],
            'deadline_at': format_datetime_utc(result['deadline_at']),
            'output': result['output']
        })
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(f"Ошибка при запуске приложения {app_id}", e)


@bp.route('/apps/<int:app_id>/stop', methods=['POST'])
@auth_required
def stop_app(app_id):
    """Остановка приложения. ?strict=true - ошибка NotRunning для остановленного"""
    try:
        result = get_service('orchestrator').stop(app_id, request_context(), strict=_flag('strict'))
        return jsonify({
            'success': True,
            'app_id': result['app_id'],
            'state': result['state'],
            'noop': result['noop'],
            'output': result['output']
        })
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(f"Ошибка при остановке приложения {app_id}", e)


@bp.route('/apps/<int:app_id>/auto-stop', methods=['PUT'])
@auth_required
def update_auto_stop(app_id):
    """Изменение времени автоостановки"""
    try:
        data = json_body()
        if 'minutes' not in data:
            raise ValidationError("Поле minutes обязательно")

        application = get_service('orchestrator').update_auto_stop_minutes(
            app_id, data['minutes'], request_context()
        )
        return jsonify({
            'success': True,
            'application': application
        })
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(f"Ошибка при изменении автоостановки приложения {app_id}", e)


@bp.route('/apps/<int:app_id>/history', methods=['GET'])
@auth_required
def get_app_history(app_id):
    """История операций приложения из журнала аудита"""
    try:
        events = AuditService.history('app', app_id)
        return jsonify({
            'success': True,
            'events': [event.to_dict() for event in events]
        })
    except Exception as e:
        return internal_error(f"Ошибка при получении истории приложения {app_id}", e)


@bp.route('/apps', methods=['POST'])
@admin_required
def create_app_record():
    """Создание приложения (в состоянии stopped)"""
    try:
        data = json_body()
        for field in ('project_id', 'server_id', 'name', 'working_directory'):
            if field not in data:
                raise ValidationError(f"Поле {field} обязательно")

        application = get_service('orchestrator').create_application(
            request_context(),
            project_id=data['project_id'],
            server_id=data['server_id'],
            name=data['name'],
            working_directory=data['working_directory'],
            domain=data.get('domain'),
            auto_stop_minutes=data.get('auto_stop_minutes')
        )
        return jsonify({
            'success': True,
            'application': application.to_dict()
        }), 201
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error("Ошибка при создании приложения", e)


@bp.route('/apps/<int:app_id>', methods=['PUT'])
@admin_required
def update_app_record(app_id):
    """Обновление приложения (только переданные поля)"""
    try:
        data = json_body()
        fields = {name: data[name] for name in UPDATABLE_FIELDS if name in data and data[name] is not None}

        application = get_service('orchestrator').update_application(request_context(), app_id, **fields)
        return jsonify({
            'success': True,
            'application': application.to_dict()
        })
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(f"Ошибка при обновлении приложения {app_id}", e)


@bp.route('/apps/<int:app_id>', methods=['DELETE'])
@admin_required
def delete_app_record(app_id):
    """Удаление приложения. ?force=true - запущенное приложение сначала останавливается"""
    try:
        get_service('orchestrator').delete_application(request_context(), app_id, force=_flag('force'))
        return jsonify({
            'success': True,
            'message': f"Приложение {app_id} удалено"
        })
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(f"Ошибка при удалении приложения {app_id}", e)
