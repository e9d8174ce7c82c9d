# stackpilot/services/orchestrator.py
"""
Оркестратор жизненного цикла приложений.

Единственное место, где меняется Application.state. На каждое приложение
заводится отдельная блокировка: операции над одним приложением строго
последовательны, над разными - полностью параллельны. Удаленный вызов
выполняется под блокировкой приложения, глобальных блокировок нет.

Пользовательские запросы захватывают блокировку без ожидания: второй запрос
получает ConcurrencyRejected и не ставится в очередь. Автоостановка по
дедлайну (actor=system) ждет блокировку, чтобы дедлайн не потерялся.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, List, Optional

from stackpilot import db
from stackpilot.core.errors import (
    NotFound, ValidationError, AlreadyRunning, NotRunning, ConcurrencyRejected,
    ResourceInUse, ServerOffline, ExecutionFailed, Timeout, LifecycleError, truncate_output
)
from stackpilot.core.lifecycle import (
    AppState, Trigger, IN_FLIGHT_STATES, SETTLED_STATES, apply_transition, deadline_for
)
from stackpilot.models.application import Application
from stackpilot.models.project import Project
from stackpilot.models.server import REACHABILITY_OFFLINE, REACHABILITY_UNKNOWN
from stackpilot.services import audit_service
from stackpilot.services.audit_service import AuditService, RequestContext, SYSTEM_CONTEXT
from stackpilot.services.credential_store import CredentialError
from stackpilot.services.remote_executor import RemoteExecutionError, RemoteTimeout
from stackpilot.services.server_registry import ServerRegistry
from stackpilot.tasks.scheduler import DeadlineScheduler
from stackpilot.utils.async_utils import run_async
from stackpilot.utils.datetime_utils import utcnow, format_datetime_utc

logger = logging.getLogger(__name__)

MAX_AUTO_STOP_MINUTES = 7 * 24 * 60

# Поля размещения: меняются только у остановленного приложения
PLACEMENT_FIELDS = ('server_id', 'working_directory')


def validate_auto_stop_minutes(minutes) -> int:
    if isinstance(minutes, bool) or not isinstance(minutes, int):
        raise ValidationError("auto_stop_minutes должно быть целым числом")
    if not 1 <= minutes <= MAX_AUTO_STOP_MINUTES:
        raise ValidationError(f"auto_stop_minutes должно быть от 1 до {MAX_AUTO_STOP_MINUTES}")
    return minutes


def _validate_text(value, field_name, max_length, required=True):
    if value is None and not required:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Поле {field_name} обязательно")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"Поле {field_name} длиннее {max_length} символов")
    return value


class Orchestrator:
    """
    Операции start/stop, автоостановка и CRUD приложений.

    Поддерживает DI для registry, scheduler, notifier и clock (используется в тестах).
    """

    def __init__(self, registry: ServerRegistry, scheduler: DeadlineScheduler,
                 notifier=None, clock: Callable[[], datetime] = utcnow,
                 up_command: str = 'docker-compose up -d',
                 down_command: str = 'docker-compose down',
                 command_timeout: float = 300,
                 output_limit: int = 2000,
                 default_auto_stop_minutes: int = 60):
        self.registry = registry
        self.scheduler = scheduler
        self.notifier = notifier
        self.clock = clock
        self.up_command = up_command
        self.down_command = down_command
        self.command_timeout = command_timeout
        self.output_limit = output_limit
        self.default_auto_stop_minutes = default_auto_stop_minutes

        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._in_flight: Dict[int, Trigger] = {}
        self._shutting_down = False

    @classmethod
    def from_config(cls, config, registry, scheduler, notifier=None, clock=utcnow) -> 'Orchestrator':
        return cls(
            registry=registry,
            scheduler=scheduler,
            notifier=notifier,
            clock=clock,
            up_command=config.get('COMPOSE_UP_COMMAND', 'docker-compose up -d'),
            down_command=config.get('COMPOSE_DOWN_COMMAND', 'docker-compose down'),
            command_timeout=config.get('REMOTE_COMMAND_TIMEOUT', 300),
            output_limit=config.get('OUTPUT_TRUNCATE_CHARS', 2000),
            default_auto_stop_minutes=config.get('DEFAULT_AUTO_STOP_MINUTES', 60)
        )

    # ------------------------------------------------------------------
    # Блокировки
    # ------------------------------------------------------------------

    def _lock_for(self, app_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(app_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[app_id] = lock
            return lock

    @contextmanager
    def _exclusive(self, app_id: int, blocking: bool = False):
        if self._shutting_down:
            raise ConcurrencyRejected("Сервис останавливается, операции не принимаются")

        lock = self._lock_for(app_id)
        if not lock.acquire(blocking=blocking):
            raise ConcurrencyRejected(f"Для приложения {app_id} уже выполняется операция")
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def _tracking(self, app_id: int, trigger: Trigger):
        self._in_flight[app_id] = trigger
        try:
            yield
        finally:
            self._in_flight.pop(app_id, None)

    def in_flight(self) -> Dict[int, Trigger]:
        return dict(self._in_flight)

    # ------------------------------------------------------------------
    # Вспомогательные методы
    # ------------------------------------------------------------------

    @staticmethod
    def _get_app(app_id: int) -> Application:
        app = db.session.get(Application, app_id)
        if not app:
            raise NotFound(f"Приложение с id {app_id} не найдено")
        return app

    def _advance(self, app: Application, trigger: Trigger, ctx: RequestContext, action: str,
                 outcome: str, detail: Optional[str] = None, error_detail: Optional[str] = None,
                 now: Optional[datetime] = None) -> AppState:
        """Переход + запись аудита в одной транзакции, затем уведомление"""
        from_state = app.state
        new_state = apply_transition(app, trigger, now or self.clock(), detail=error_detail)
        AuditService.record(ctx, action, 'app', app.id, app.name,
                            detail=detail, outcome=outcome, commit=False)
        db.session.commit()

        logger.info(f"Приложение {app.name}: {from_state} -> {new_state.value} ({ctx.actor})")
        if self.notifier is not None:
            self.notifier.notify(app.id, app.name, from_state, new_state.value, ctx.actor, detail)
        return new_state

    def _audit_failure(self, ctx: RequestContext, action: str, app: Application, detail: str):
        AuditService.record(ctx, action, 'app', app.id, app.name,
                            detail=detail, outcome=audit_service.OUTCOME_FAILED)

    def _ensure_reachable(self, server):
        """
        Предварительная проверка сервера перед запуском.
        unknown - сначала проверяем, offline - отказ без удаленного вызова.
        """
        reachability = server.reachability
        if reachability == REACHABILITY_UNKNOWN:
            logger.info(f"Доступность сервера {server.name} неизвестна, выполняем проверку")
            reachability = self.registry.check_health(server.id)
        if reachability == REACHABILITY_OFFLINE:
            raise ServerOffline(
                f"Сервер {server.name} недоступен"
                + (f": {server.last_error}" if server.last_error else "")
            )

    def _execute(self, server, working_directory: str, command: str):
        """
        Выполняет команду и приводит результат к ошибке жизненного цикла.

        Returns:
            Tuple[Optional[LifecycleError], Optional[ExecResult]]
        """
        try:
            target = self.registry.exec_target(server)
            result = run_async(
                self.registry.executor.run(target, working_directory, command, self.command_timeout)
            )
        except CredentialError as e:
            return ExecutionFailed(f"Не удалось получить учетные данные сервера {server.name}: {e}"), None
        except RemoteTimeout as e:
            return Timeout(f"{e}. remote result unknown"), None
        except RemoteExecutionError as e:
            return ExecutionFailed(str(e)), None
        except Exception as e:
            logger.exception(f"Непредвиденная ошибка при выполнении '{command}' на {server.name}: {str(e)}")
            return ExecutionFailed(f"Непредвиденная ошибка выполнения: {str(e)}"), None

        output = truncate_output(result.output, self.output_limit)
        if not result.ok:
            return ExecutionFailed(
                f"Команда '{command}' на {server.name} завершилась с кодом {result.exit_code}",
                output=output
            ), result
        return None, result

    # ------------------------------------------------------------------
    # Жизненный цикл
    # ------------------------------------------------------------------

    def start(self, app_id: int, ctx: RequestContext) -> dict:
        """
        Запускает приложение (docker-compose up -d в рабочем каталоге).

        Args:
            app_id: ID приложения
            ctx: Контекст запроса

        Returns:
            dict: duration_granted_minutes, deadline_at, output
        """
        with self._exclusive(app_id):
            app = self._get_app(app_id)
            state = app.lifecycle_state
            if state == AppState.RUNNING:
                raise AlreadyRunning(f"Приложение {app.name} уже запущено")
            if state in IN_FLIGHT_STATES:
                raise ConcurrencyRejected(f"Приложение {app.name} в состоянии {state.value}")

            server = self.registry.get(app.server_id)
            try:
                self._ensure_reachable(server)
            except ServerOffline as e:
                self._audit_failure(ctx, audit_service.START_APP, app, e.message)
                raise

            server_name = server.name
            minutes = app.auto_stop_minutes
            working_directory = app.working_directory

            with self._tracking(app.id, Trigger.START):
                self._advance(app, Trigger.START, ctx, audit_service.START_APP, audit_service.OUTCOME_PENDING,
                              detail=f"App: {app.name} on server {server_name}")

                error, result = self._execute(server, working_directory, self.up_command)
                if error is not None:
                    self._advance(app, Trigger.FAILED, ctx, audit_service.START_APP, audit_service.OUTCOME_FAILED,
                                  detail=error.message, error_detail=error.message)
                    raise error

                now = self.clock()
                deadline = deadline_for(now, minutes)
                self._advance(app, Trigger.SUCCEEDED, ctx, audit_service.START_APP, audit_service.OUTCOME_SUCCESS,
                              detail=f"App: {app.name} on server {server_name}, Duration: {minutes}m, "
                                     f"deadline {format_datetime_utc(deadline)}",
                              now=now)
                self.scheduler.schedule(app.id, app.deadline_at)

            return {
                'app_id': app.id,
                'state': app.state,
                'duration_granted_minutes': minutes,
                'deadline_at': app.deadline_at,
                'output': truncate_output(result.output, self.output_limit)
            }

    def stop(self, app_id: int, ctx: RequestContext, strict: bool = False) -> dict:
        """
        Останавливает приложение (docker-compose down).

        Остановка уже остановленного приложения - успешный no-op без удаленного
        вызова. С strict=True вместо этого бросается NotRunning.
        """
        with self._exclusive(app_id):
            app = self._get_app(app_id)
            return self._stop_locked(app, ctx, strict=strict)

    def _stop_locked(self, app: Application, ctx: RequestContext, strict: bool = False) -> dict:
        state = app.lifecycle_state
        if state == AppState.STOPPED:
            if strict:
                raise NotRunning(f"Приложение {app.name} не запущено")
            self.scheduler.cancel(app.id)
            logger.info(f"Приложение {app.name} уже остановлено, пропускаем")
            return {'app_id': app.id, 'state': app.state, 'noop': True, 'output': ''}
        if state in IN_FLIGHT_STATES:
            raise ConcurrencyRejected(f"Приложение {app.name} в состоянии {state.value}")

        server = self.registry.get(app.server_id)
        server_name = server.name
        working_directory = app.working_directory
        started_at = app.started_at

        with self._tracking(app.id, Trigger.STOP):
            self._advance(app, Trigger.STOP, ctx, audit_service.STOP_APP, audit_service.OUTCOME_PENDING,
                          detail=f"App: {app.name} on server {server_name}")
            self.scheduler.cancel(app.id)

            error, result = self._execute(server, working_directory, self.down_command)
            if error is not None:
                self._advance(app, Trigger.FAILED, ctx, audit_service.STOP_APP, audit_service.OUTCOME_FAILED,
                              detail=error.message, error_detail=error.message)
                raise error

            now = self.clock()
            detail = f"App: {app.name} on server {server_name}"
            if started_at is not None:
                detail += f", Duration: {int((now - started_at).total_seconds() // 60)}m"
            self._advance(app, Trigger.SUCCEEDED, ctx, audit_service.STOP_APP, audit_service.OUTCOME_SUCCESS,
                          detail=detail, now=now)

        return {
            'app_id': app.id,
            'state': app.state,
            'noop': False,
            'output': truncate_output(result.output, self.output_limit)
        }

    def stop_on_deadline(self, app_id: int, deadline_at: Optional[datetime] = None) -> Optional[dict]:
        """
        Автоостановка по дедлайну (вызывается планировщиком, actor=system).

        Ждет блокировку приложения. No-op, если приложение уже не запущено
        или его дедлайн успели перенести на будущее.
        """
        with self._exclusive(app_id, blocking=True):
            app = db.session.get(Application, app_id)
            if app is None:
                logger.info(f"Автоостановка: приложение {app_id} уже удалено")
                return None
            if app.lifecycle_state != AppState.RUNNING:
                logger.info(f"Автоостановка: приложение {app.name} в состоянии {app.state}, пропускаем")
                return None

            now = self.clock()
            if app.deadline_at is not None and app.deadline_at > now:
                logger.info(f"Автоостановка: дедлайн {app.name} перенесен на "
                            f"{format_datetime_utc(app.deadline_at)}, пропускаем")
                if not self.scheduler.has(app.id):
                    self.scheduler.schedule(app.id, app.deadline_at)
                return None

            logger.info(f"Автоостановка приложения {app.name} (дедлайн {format_datetime_utc(app.deadline_at)})")
            return self._stop_locked(app, SYSTEM_CONTEXT)

    def _apply_auto_stop(self, app: Application, minutes: int):
        app.auto_stop_minutes = minutes
        if app.lifecycle_state == AppState.RUNNING and app.started_at is not None:
            # Отсчет всегда от исходного started_at, а не от текущего момента
            app.deadline_at = deadline_for(app.started_at, minutes)

    def _reschedule(self, app: Application):
        if app.lifecycle_state == AppState.RUNNING and app.deadline_at is not None:
            self.scheduler.schedule(app.id, app.deadline_at)

    def update_auto_stop_minutes(self, app_id: int, minutes: int, ctx: RequestContext) -> dict:
        """
        Меняет время автоостановки.

        У запущенного приложения дедлайн пересчитывается от started_at: сокращение
        может сработать сразу, продление не сбрасывает уже прошедшее время.
        """
        minutes = validate_auto_stop_minutes(minutes)
        with self._exclusive(app_id):
            app = self._get_app(app_id)
            if app.lifecycle_state in IN_FLIGHT_STATES:
                raise ConcurrencyRejected(f"Приложение {app.name} в состоянии {app.state}")

            old_minutes = app.auto_stop_minutes
            self._apply_auto_stop(app, minutes)
            AuditService.record(ctx, audit_service.UPDATE_APP, 'app', app.id, app.name,
                                detail=f"auto_stop_minutes: {old_minutes} -> {minutes}", commit=False)
            db.session.commit()
            self._reschedule(app)
            return app.to_dict(now=self.clock())

    # ------------------------------------------------------------------
    # Чтение
    # ------------------------------------------------------------------

    def get_state(self, app_id: int) -> dict:
        """Текущее состояние приложения (клиенты опрашивают его для обратного отсчета)"""
        app = self._get_app(app_id)
        now = self.clock()
        result = app.to_dict(now=now)
        result['deadline_scheduled'] = self.scheduler.has(app.id)
        result['operation_in_progress'] = app.id in self._in_flight
        return result

    @staticmethod
    def list_applications(project_id: Optional[int] = None,
                          server_id: Optional[int] = None) -> List[Application]:
        query = Application.query
        if project_id is not None:
            query = query.filter(Application.project_id == project_id)
        if server_id is not None:
            query = query.filter(Application.server_id == server_id)
        return query.order_by(Application.name).all()

    def list_by_project(self, project_id: int) -> List[Application]:
        if db.session.get(Project, project_id) is None:
            raise NotFound(f"Проект с id {project_id} не найден")
        return self.list_applications(project_id=project_id)

    def list_by_server(self, server_id: int) -> List[Application]:
        self.registry.get(server_id)
        return self.list_applications(server_id=server_id)

    # ------------------------------------------------------------------
    # CRUD приложений
    # ------------------------------------------------------------------

    def create_application(self, ctx: RequestContext, project_id: int, server_id: int, name: str,
                           working_directory: str, domain: Optional[str] = None,
                           auto_stop_minutes: Optional[int] = None) -> Application:
        """Создает приложение в состоянии stopped"""
        name = _validate_text(name, 'name', 128)
        working_directory = _validate_text(working_directory, 'working_directory', 512)
        domain = _validate_text(domain, 'domain', 255, required=False)
        if auto_stop_minutes is None:
            auto_stop_minutes = self.default_auto_stop_minutes
        auto_stop_minutes = validate_auto_stop_minutes(auto_stop_minutes)

        if db.session.get(Project, project_id) is None:
            raise NotFound(f"Проект с id {project_id} не найден")
        server = self.registry.get(server_id)

        app = Application(
            project_id=project_id,
            server_id=server.id,
            name=name,
            domain=domain,
            working_directory=working_directory,
            auto_stop_minutes=auto_stop_minutes,
            state=AppState.STOPPED.value
        )
        db.session.add(app)
        db.session.flush()

        AuditService.record(ctx, audit_service.CREATE_APP, 'app', app.id, app.name,
                            detail=f"server {server.name}, dir {working_directory}", commit=False)
        db.session.commit()
        logger.info(f"Приложение {app.name} создано на сервере {server.name}")
        return app

    def update_application(self, ctx: RequestContext, app_id: int, name: Optional[str] = None,
                           domain: Optional[str] = None, working_directory: Optional[str] = None,
                           auto_stop_minutes: Optional[int] = None, project_id: Optional[int] = None,
                           server_id: Optional[int] = None) -> Application:
        """
        Обновляет только явно переданные поля.
        server_id и working_directory меняются только у остановленного приложения.
        """
        with self._exclusive(app_id):
            app = self._get_app(app_id)
            state = app.lifecycle_state
            if state in IN_FLIGHT_STATES:
                raise ConcurrencyRejected(f"Приложение {app.name} в состоянии {state.value}")

            if working_directory is not None:
                working_directory = _validate_text(working_directory, 'working_directory', 512)
            placement_change = (
                (server_id is not None and server_id != app.server_id)
                or (working_directory is not None and working_directory != app.working_directory)
            )
            if placement_change and state not in SETTLED_STATES:
                raise ResourceInUse(
                    f"Приложение {app.name} запущено: {', '.join(PLACEMENT_FIELDS)} можно менять только после остановки"
                )

            # Все поля проверяются до изменения модели: ошибка не оставляет частичных правок в сессии
            updates = {}
            if name is not None:
                updates['name'] = _validate_text(name, 'name', 128)
            if domain is not None:
                if not isinstance(domain, str):
                    raise ValidationError("Поле domain должно быть строкой")
                # Пустая строка очищает домен
                updates['domain'] = domain.strip()[:255] or None
            if working_directory is not None:
                updates['working_directory'] = working_directory
            if project_id is not None:
                if db.session.get(Project, project_id) is None:
                    raise NotFound(f"Проект с id {project_id} не найден")
                updates['project_id'] = project_id
            if server_id is not None:
                updates['server_id'] = self.registry.get(server_id).id
            if auto_stop_minutes is not None:
                auto_stop_minutes = validate_auto_stop_minutes(auto_stop_minutes)

            if not updates and auto_stop_minutes is None:
                raise ValidationError("Нет полей для обновления")

            for field_name, value in updates.items():
                setattr(app, field_name, value)
            changed = list(updates)
            if auto_stop_minutes is not None:
                self._apply_auto_stop(app, auto_stop_minutes)
                changed.append('auto_stop_minutes')

            AuditService.record(ctx, audit_service.UPDATE_APP, 'app', app.id, app.name,
                                detail=f"fields: {', '.join(changed)}", commit=False)
            db.session.commit()
            if 'auto_stop_minutes' in changed:
                self._reschedule(app)
            return app

    def delete_application(self, ctx: RequestContext, app_id: int, force: bool = False):
        """
        Удаляет приложение.

        Запущенное приложение удаляется только с force=True: сначала выполняется
        best-effort остановка, ее неудача удаление не прерывает.
        """
        with self._exclusive(app_id):
            app = self._get_app(app_id)
            state = app.lifecycle_state
            if state in IN_FLIGHT_STATES:
                raise ConcurrencyRejected(f"Приложение {app.name} в состоянии {state.value}")
            if state == AppState.RUNNING:
                if not force:
                    raise ResourceInUse(f"Приложение {app.name} запущено, остановите его или используйте force")
                try:
                    self._stop_locked(app, ctx)
                except LifecycleError as e:
                    logger.warning(f"Остановка {app.name} перед удалением не удалась: {e.message}")

            self.scheduler.cancel(app.id)
            AuditService.record(ctx, audit_service.DELETE_APP, 'app', app.id, app.name,
                                detail=f"forced from {state.value}" if force and state == AppState.RUNNING else None,
                                commit=False)
            db.session.delete(app)
            db.session.commit()
            logger.info(f"Приложение {app.name} удалено")

        with self._locks_guard:
            self._locks.pop(app_id, None)

    def delete_server(self, ctx: RequestContext, server_id: int, reassign_to: Optional[int] = None):
        """
        Удаление сервера с блокировкой всех его приложений на время переноса,
        чтобы ни одно из них не было запущено в процессе.
        """
        app_ids = [app.id for app in Application.query.filter_by(server_id=server_id).all()]
        acquired = []
        try:
            for app_id in app_ids:
                lock = self._lock_for(app_id)
                if not lock.acquire(blocking=False):
                    raise ConcurrencyRejected(f"Для приложения {app_id} выполняется операция")
                acquired.append(lock)
            self.registry.delete(ctx, server_id, reassign_to=reassign_to)
        finally:
            for lock in acquired:
                lock.release()

    # ------------------------------------------------------------------
    # Старт и остановка процесса
    # ------------------------------------------------------------------

    def recover_interrupted(self) -> int:
        """
        Приложения, застрявшие в starting/stopping после перезапуска процесса,
        переводятся в error: результат удаленной команды неизвестен.
        """
        stuck = Application.query.filter(
            Application.state.in_([s.value for s in IN_FLIGHT_STATES])
        ).all()
        for app in stuck:
            action = audit_service.START_APP if app.state == AppState.STARTING.value else audit_service.STOP_APP
            detail = f"Операция прервана перезапуском сервиса в состоянии {app.state}, remote result unknown"
            logger.warning(f"Приложение {app.name}: {detail}")
            self._advance(app, Trigger.FAILED, SYSTEM_CONTEXT, action, audit_service.OUTCOME_FAILED,
                          detail=detail, error_detail=detail)
        return len(stuck)

    def rebuild_schedule(self) -> int:
        """
        Восстанавливает таблицу дедлайнов из запущенных приложений.
        Дедлайн заново выводится из started_at + auto_stop_minutes.
        """
        entries = []
        dirty = False
        for app in Application.query.filter_by(state=AppState.RUNNING.value).all():
            if app.started_at is None:
                detail = "Запущенное приложение без started_at"
                logger.error(f"Приложение {app.name}: {detail}")
                app.state = AppState.ERROR.value
                app.deadline_at = None
                app.last_error = detail
                AuditService.record(SYSTEM_CONTEXT, audit_service.STOP_APP, 'app', app.id, app.name,
                                    detail=detail, outcome=audit_service.OUTCOME_FAILED, commit=False)
                dirty = True
                continue
            deadline = deadline_for(app.started_at, app.auto_stop_minutes)
            if app.deadline_at != deadline:
                app.deadline_at = deadline
                dirty = True
            entries.append((app.id, deadline))

        if dirty:
            db.session.commit()
        self.scheduler.rebuild(entries)
        return len(entries)

    def reconcile_schedule(self) -> int:
        """
        Приводит таблицу дедлайнов в соответствие с БД: у каждого запущенного
        приложения ровно одна запись, у остальных записей нет.
        Приложения с выполняющейся операцией пропускаются.

        Returns:
            int: Количество исправленных записей
        """
        fixed = 0
        scheduled = self.scheduler.snapshot()
        running_ids = set()

        for app in Application.query.filter_by(state=AppState.RUNNING.value).all():
            running_ids.add(app.id)
            if app.deadline_at is None or scheduled.get(app.id) == app.deadline_at:
                continue
            try:
                with self._exclusive(app.id):
                    db.session.refresh(app)
                    if app.lifecycle_state == AppState.RUNNING and app.deadline_at is not None:
                        self.scheduler.schedule(app.id, app.deadline_at)
                        fixed += 1
            except ConcurrencyRejected:
                continue

        for app_id in set(scheduled) - running_ids:
            try:
                with self._exclusive(app_id):
                    app = db.session.get(Application, app_id)
                    if app is None or app.lifecycle_state != AppState.RUNNING:
                        self.scheduler.cancel(app_id)
                        fixed += 1
            except ConcurrencyRejected:
                continue

        return fixed

    def park_in_flight(self) -> int:
        """
        При остановке процесса: новые операции больше не принимаются,
        приложения с незавершенной операцией переводятся в error.
        """
        self._shutting_down = True
        parked = 0
        for app_id, trigger in list(self._in_flight.items()):
            app = db.session.get(Application, app_id)
            if app is None or app.lifecycle_state not in IN_FLIGHT_STATES:
                continue
            action = audit_service.START_APP if trigger == Trigger.START else audit_service.STOP_APP
            detail = "Операция прервана остановкой сервиса, remote result unknown"
            self._advance(app, Trigger.FAILED, SYSTEM_CONTEXT, action, audit_service.OUTCOME_FAILED,
                          detail=detail, error_detail=detail)
            parked += 1
        if parked:
            logger.warning(f"{parked} незавершенных операций переведено в error")
        return parked
