import logging

from flask import jsonify, request

from stackpilot.api import (
    bp, get_service, request_context, auth_required, admin_required,
    json_body, error_response, internal_error
)
from stackpilot.core.errors import LifecycleError, ValidationError

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ('name', 'address', 'ssh_user', 'ssh_port', 'private_key')


def _build_server_response(server, include_apps=False):
    """
    Вспомогательная функция для формирования server response.
    Ключ никогда не попадает в ответ.
    """
    response = server.to_dict()
    response['app_count'] = server.applications.count()
    if include_apps:
        response['applications'] = [
            {
                'id': app.id,
                'name': app.name,
                'state': app.state,
                'project_id': app.project_id
            } for app in server.applications
        ]
    return response


@bp.route('/servers', methods=['GET'])
@auth_required
def get_servers():
    """Получение списка всех серверов"""
    try:
        servers = get_service('registry').list_servers()
        return jsonify({
            'success': True,
            'servers': [_build_server_response(server) for server in servers]
        })
    except Exception as e:
        return internal_error("Ошибка при получении списка серверов", e)


@bp.route('/servers/<int:server_id>', methods=['GET'])
@auth_required
def get_server(server_id):
    """Получение информации о конкретном сервере"""
    try:
        server = get_service('registry').get(server_id)
        return jsonify({
            'success': True,
            'server': _build_server_response(server, include_apps=True)
        })
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(f"Ошибка при получении информации о сервере {server_id}", e)


@bp.route('/servers', methods=['POST'])
@admin_required
def add_server():
    """Регистрация нового сервера"""
    try:
        data = json_body()
        for field in ('name', 'address', 'ssh_user', 'private_key'):
            if field not in data:
                raise ValidationError(f"Поле {field} обязательно")

        server = get_service('registry').create(
            request_context(),
            name=data['name'],
            address=data['address'],
            ssh_user=data['ssh_user'],
            private_key=data['private_key'],
            ssh_port=data.get('ssh_port', 22)
        )
        return jsonify({
            'success': True,
            'server': _build_server_response(server)
        }), 201
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error("Ошибка при добавлении сервера", e)


@bp.route('/servers/<int:server_id>', methods=['PUT'])
@admin_required
def update_server(server_id):
    """Обновление сервера (только переданные поля)"""
    try:
        data = json_body()
        fields = {name: data[name] for name in UPDATABLE_FIELDS if name in data and data[name] is not None}

        server = get_service('registry').update(request_context(), server_id, **fields)
        return jsonify({
            'success': True,
            'server': _build_server_response(server)
        })
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(f"Ошибка при обновлении сервера {server_id}", e)


@bp.route('/servers/<int:server_id>', methods=['DELETE'])
@admin_required
def delete_server(server_id):
    """Удаление сервера. ?reassign_to=<id> - перенос приложений на другой сервер"""
    try:
        reassign_to = request.args.get('reassign_to', type=int)
        get_service('orchestrator').delete_server(request_context(), server_id, reassign_to=reassign_to)
        return jsonify({
            'success': True,
            'message': f"Сервер {server_id} удален"
        })
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(f"Ошибка при удалении сервера {server_id}", e)


@bp.route('/servers/refresh', methods=['POST'])
@auth_required
def refresh_servers():
    """Проверка доступности всех серверов"""
    try:
        servers = get_service('registry').refresh_all()
        return jsonify({
            'success': True,
            'servers': [server.to_dict() for server in servers]
        })
    except Exception as e:
        return internal_error("Ошибка при проверке серверов", e)


@bp.route('/servers/<int:server_id>/check', methods=['POST'])
@auth_required
def check_server(server_id):
    """Проверка доступности одного сервера"""
    try:
        registry = get_service('registry')
        reachability = registry.check_health(server_id, ctx=request_context())
        return jsonify({
            'success': True,
            'reachability': reachability,
            'server': registry.get(server_id).to_dict()
        })
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(f"Ошибка при проверке сервера {server_id}", e)
