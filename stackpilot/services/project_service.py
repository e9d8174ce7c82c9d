# stackpilot/services/project_service.py
import logging
from typing import List, Optional

from stackpilot import db
from stackpilot.core.errors import NotFound, ValidationError, ResourceInUse
from stackpilot.models.project import Project
from stackpilot.services import audit_service
from stackpilot.services.audit_service import AuditService, RequestContext

logger = logging.getLogger(__name__)


class ProjectService:
    """CRUD проектов. Проект только группирует приложения."""

    @staticmethod
    def get(project_id: int) -> Project:
        project = db.session.get(Project, project_id)
        if not project:
            raise NotFound(f"Проект с id {project_id} не найден")
        return project

    @staticmethod
    def list_projects() -> List[Project]:
        return Project.query.order_by(Project.name).all()

    @staticmethod
    def _validate_name(name) -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Поле name обязательно")
        name = name.strip()
        if len(name) > 128:
            raise ValidationError("Поле name длиннее 128 символов")
        return name

    @staticmethod
    def create(ctx: RequestContext, name: str, description: Optional[str] = None) -> Project:
        name = ProjectService._validate_name(name)
        if Project.query.filter_by(name=name).first():
            raise ValidationError(f"Проект с именем {name} уже существует")

        project = Project(name=name, description=description)
        db.session.add(project)
        db.session.flush()

        AuditService.record(ctx, audit_service.CREATE_PROJECT, 'project', project.id, project.name,
                            commit=False)
        db.session.commit()
        logger.info(f"Проект {project.name} создан")
        return project

    @staticmethod
    def update(ctx: RequestContext, project_id: int, name: Optional[str] = None,
               description: Optional[str] = None) -> Project:
        project = ProjectService.get(project_id)
        changed = []

        if name is not None:
            name = ProjectService._validate_name(name)
            duplicate = Project.query.filter(Project.name == name, Project.id != project.id).first()
            if duplicate:
                raise ValidationError(f"Проект с именем {name} уже существует")
            project.name = name
            changed.append('name')
        if description is not None:
            project.description = description
            changed.append('description')

        if not changed:
            raise ValidationError("Нет полей для обновления")

        AuditService.record(ctx, audit_service.UPDATE_PROJECT, 'project', project.id, project.name,
                            detail=f"fields: {', '.join(changed)}", commit=False)
        db.session.commit()
        return project

    @staticmethod
    def delete(ctx: RequestContext, project_id: int):
        """Удаляет пустой проект. Проект с приложениями удалить нельзя."""
        project = ProjectService.get(project_id)
        apps_count = project.applications.count()
        if apps_count:
            raise ResourceInUse(f"В проекте {project.name} есть приложения ({apps_count})")

        AuditService.record(ctx, audit_service.DELETE_PROJECT, 'project', project.id, project.name,
                            commit=False)
        db.session.delete(project)
        db.session.commit()
        logger.info(f"Проект {project.name} удален")
