# stackpilot/services/audit_service.py
"""
Журнал аудита (append-only).

Каждый переход жизненного цикла и каждое административное изменение
записываются отдельной строкой AuditEvent. Ядро записи только добавляет.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Tuple, List

from stackpilot import db
from stackpilot.models.audit_event import AuditEvent, SYSTEM_ACTOR

logger = logging.getLogger(__name__)

# Теги действий
START_APP = 'start_app'
STOP_APP = 'stop_app'
CREATE_APP = 'create_app'
UPDATE_APP = 'update_app'
DELETE_APP = 'delete_app'
CREATE_SERVER = 'create_server'
UPDATE_SERVER = 'update_server'
DELETE_SERVER = 'delete_server'
CHECK_SERVER = 'check_server'
CREATE_PROJECT = 'create_project'
UPDATE_PROJECT = 'update_project'
DELETE_PROJECT = 'delete_project'

# Результаты
OUTCOME_PENDING = 'pending'
OUTCOME_SUCCESS = 'success'
OUTCOME_FAILED = 'failed'


@dataclass(frozen=True)
class RequestContext:
    """Кто и откуда выполняет операцию. Заполняется слоем аутентификации."""
    actor: str
    is_admin: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_system(self) -> bool:
        return self.actor == SYSTEM_ACTOR


SYSTEM_CONTEXT = RequestContext(actor=SYSTEM_ACTOR, is_admin=True, user_agent='stackpilot-scheduler')


class AuditService:

    @staticmethod
    def record(ctx: RequestContext, action: str, resource_type: str,
               resource_id: Optional[int] = None, resource_name: Optional[str] = None,
               detail: Optional[str] = None, outcome: str = OUTCOME_SUCCESS,
               commit: bool = True) -> AuditEvent:
        """
        Добавляет запись в журнал.

        Args:
            ctx: Контекст запроса (actor, ip, user agent)
            action: Тег действия (start_app, stop_app, ...)
            resource_type: Тип ресурса (app, server, project)
            resource_id: ID ресурса
            resource_name: Отображаемое имя ресурса
            detail: Произвольные подробности
            outcome: pending / success / failed
            commit: False - запись попадет в БД вместе с текущей транзакцией вызывающего

        Returns:
            AuditEvent: Созданная запись
        """
        event = AuditEvent(
            actor=ctx.actor,
            action=action,
            outcome=outcome,
            resource_type=resource_type,
            resource_id=resource_id,
            resource_name=resource_name,
            detail=detail,
            ip_address=ctx.ip_address,
            user_agent=(ctx.user_agent or '')[:255] or None
        )
        db.session.add(event)
        if commit:
            db.session.commit()

        logger.info(f"Аудит: {ctx.actor} {action} {resource_type}:{resource_id} ({outcome})")
        return event

    @staticmethod
    def list_events(page: int = 1, per_page: int = 50, actor: Optional[str] = None,
                    action: Optional[str] = None, resource_type: Optional[str] = None,
                    resource_id: Optional[int] = None) -> Tuple[List[AuditEvent], int]:
        """
        Получение записей журнала с пагинацией и фильтрацией (новые сверху).

        Returns:
            Tuple[List[AuditEvent], int]: (записи страницы, общее количество)
        """
        query = AuditEvent.query

        if actor:
            query = query.filter(AuditEvent.actor == actor)
        if action:
            query = query.filter(AuditEvent.action == action)
        if resource_type:
            query = query.filter(AuditEvent.resource_type == resource_type)
        if resource_id is not None:
            query = query.filter(AuditEvent.resource_id == resource_id)

        total = query.count()

        page = max(page, 1)
        per_page = min(max(per_page, 1), 500)
        items = query.order_by(AuditEvent.timestamp.desc(), AuditEvent.id.desc()) \
            .limit(per_page).offset((page - 1) * per_page).all()

        return items, total

    @staticmethod
    def history(resource_type: str, resource_id: int) -> List[AuditEvent]:
        """История одного ресурса в порядке записи"""
        return AuditEvent.query.filter_by(
            resource_type=resource_type,
            resource_id=resource_id
        ).order_by(AuditEvent.id.asc()).all()
