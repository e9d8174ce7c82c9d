from flask import jsonify, request

from stackpilot.api import bp, auth_required, internal_error
from stackpilot.services.audit_service import AuditService


@bp.route('/audit-events', methods=['GET'])
@auth_required
def get_audit_events():
    """
    Журнал аудита с пагинацией.

    Query параметры: page, per_page, actor, action, resource_type, resource_id
    """
    try:
        page = request.args.get('page', 1, type=int)
        per_page = request.args.get('per_page', 50, type=int)

        items, total = AuditService.list_events(
            page=page,
            per_page=per_page,
            actor=request.args.get('actor'),
            action=request.args.get('action'),
            resource_type=request.args.get('resource_type'),
            resource_id=request.args.get('resource_id', type=int)
        )
        return jsonify({
            'success': True,
            'events': [event.to_dict() for event in items],
            'total': total,
            'page': max(page, 1),
            'per_page': min(max(per_page, 1), 500)
        })
    except Exception as e:
        return internal_error("Ошибка при получении журнала аудита", e)
