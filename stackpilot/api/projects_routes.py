from flask import jsonify

from stackpilot.api import (
    bp, get_service, request_context, auth_required, admin_required,
    json_body, error_response, internal_error
)
from stackpilot.core.errors import LifecycleError, ValidationError
from stackpilot.services.project_service import ProjectService


@bp.route('/projects', methods=['GET'])
@auth_required
def get_projects():
    try:
        projects = ProjectService.list_projects()
        result = []
        for project in projects:
            data = project.to_dict()
            data['app_count'] = project.applications.count()
            result.append(data)
        return jsonify({
            'success': True,
            'projects': result
        })
    except Exception as e:
        return internal_error("Ошибка при получении списка проектов", e)


@bp.route('/projects/<int:project_id>', methods=['GET'])
@auth_required
def get_project(project_id):
    """Проект вместе с его приложениями"""
    try:
        project = ProjectService.get(project_id)
        orchestrator = get_service('orchestrator')
        now = orchestrator.clock()
        data = project.to_dict()
        data['applications'] = [app.to_dict(now=now) for app in orchestrator.list_by_project(project_id)]
        return jsonify({
            'success': True,
            'project': data
        })
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(f"Ошибка при получении проекта {project_id}", e)


@bp.route('/projects', methods=['POST'])
@admin_required
def create_project():
    try:
        data = json_body()
        if 'name' not in data:
            raise ValidationError("Поле name обязательно")

        project = ProjectService.create(request_context(), data['name'], data.get('description'))
        return jsonify({
            'success': True,
            'project': project.to_dict()
        }), 201
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error("Ошибка при создании проекта", e)


@bp.route('/projects/<int:project_id>', methods=['PUT'])
@admin_required
def update_project(project_id):
    try:
        data = json_body()
        project = ProjectService.update(
            request_context(), project_id,
            name=data.get('name'),
            description=data.get('description')
        )
        return jsonify({
            'success': True,
            'project': project.to_dict()
        })
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(f"Ошибка при обновлении проекта {project_id}", e)


@bp.route('/projects/<int:project_id>', methods=['DELETE'])
@admin_required
def delete_project(project_id):
    try:
        ProjectService.delete(request_context(), project_id)
        return jsonify({
            'success': True,
            'message': f"Проект {project_id} удален"
        })
    except LifecycleError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(f"Ошибка при удалении проекта {project_id}", e)
