# stackpilot/services/server_registry.py
"""
Реестр серверов: учетные данные, доступность, CRUD.

Проверки доступности меняют только reachability/last_checked/last_error/
running_containers сервера и никогда не трогают состояние приложений.
"""
import asyncio
import logging
from typing import List, Optional, Tuple

from stackpilot import db
from stackpilot.core.errors import NotFound, ValidationError, ResourceInUse
from stackpilot.core.lifecycle import AppState, SETTLED_STATES
from stackpilot.models.server import (
    Server, REACHABILITY_ONLINE, REACHABILITY_OFFLINE, REACHABILITY_UNKNOWN
)
from stackpilot.models.application import Application
from stackpilot.services import audit_service
from stackpilot.services.audit_service import AuditService, RequestContext
from stackpilot.services.credential_store import CredentialStore, CredentialError
from stackpilot.services.remote_executor import (
    RemoteExecutor, RemoteExecutionError, ExecTarget
)
from stackpilot.utils.async_utils import run_async
from stackpilot.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

# Поля подключения: их изменение сбрасывает доступность в unknown
CONNECTION_FIELDS = ('address', 'ssh_user', 'ssh_port', 'private_key')


def _validate_text(value, field_name, max_length):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Поле {field_name} обязательно")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"Поле {field_name} длиннее {max_length} символов")
    return value


def _validate_port(value):
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 65535:
        raise ValidationError("Поле ssh_port должно быть целым числом от 1 до 65535")
    return value


class ServerRegistry:
    """
    Поиск серверов, проверка доступности и административные операции.

    Поддерживает DI для RemoteExecutor и CredentialStore (используется в тестах).
    """

    def __init__(self, executor: RemoteExecutor, credentials: CredentialStore,
                 probe_command: str = 'docker ps -q | wc -l', health_timeout: float = 15):
        self.executor = executor
        self.credentials = credentials
        self.probe_command = probe_command
        self.health_timeout = health_timeout

    @classmethod
    def from_config(cls, config, executor=None, credentials=None) -> 'ServerRegistry':
        return cls(
            executor=executor or RemoteExecutor.from_config(config),
            credentials=credentials or CredentialStore.from_config(config),
            probe_command=config.get('HEALTH_PROBE_COMMAND', 'docker ps -q | wc -l'),
            health_timeout=config.get('HEALTH_CHECK_TIMEOUT', 15)
        )

    # ------------------------------------------------------------------
    # Поиск
    # ------------------------------------------------------------------

    def get(self, server_id: int) -> Server:
        server = db.session.get(Server, server_id)
        if not server:
            raise NotFound(f"Сервер с id {server_id} не найден")
        return server

    def list_servers(self) -> List[Server]:
        return Server.query.order_by(Server.name).all()

    def exec_target(self, server: Server) -> ExecTarget:
        """Собирает параметры подключения с расшифрованным ключом"""
        return ExecTarget(
            host=server.address,
            port=server.ssh_port,
            user=server.ssh_user,
            private_key=self.credentials.open(server.ssh_key_encrypted),
            name=server.name
        )

    # ------------------------------------------------------------------
    # Проверка доступности
    # ------------------------------------------------------------------

    async def _probe(self, target: ExecTarget) -> Tuple[str, Optional[int], Optional[str]]:
        """
        Легкая проверка сервера.

        Returns:
            Tuple[str, Optional[int], Optional[str]]: (reachability, число контейнеров, ошибка)
        """
        try:
            result = await self.executor.run(target, None, self.probe_command, self.health_timeout)
        except RemoteExecutionError as e:
            return REACHABILITY_OFFLINE, None, str(e)

        # SSH отработал - сервер доступен, даже если docker ответил ошибкой
        containers = None
        if result.ok:
            try:
                containers = int(result.stdout.strip().splitlines()[-1])
            except (ValueError, IndexError):
                logger.warning(f"[{target.label}] Не удалось разобрать вывод проверки: {result.stdout!r}")
        return REACHABILITY_ONLINE, containers, None if result.ok else result.output

    def _apply_probe(self, server: Server, reachability: str,
                     containers: Optional[int], error: Optional[str]):
        server.reachability = reachability
        server.last_checked = utcnow()
        server.running_containers = containers if reachability == REACHABILITY_ONLINE else None
        server.last_error = error
        if reachability == REACHABILITY_OFFLINE:
            logger.warning(f"Сервер {server.name} недоступен: {error}")

    def _target_or_error(self, server: Server):
        try:
            return self.exec_target(server), None
        except CredentialError as e:
            return None, str(e)

    def check_health(self, server_id: int, ctx: Optional[RequestContext] = None) -> str:
        """
        Проверяет один сервер и сохраняет результат.

        Args:
            server_id: ID сервера
            ctx: Контекст запроса; если передан, проверка попадает в аудит

        Returns:
            str: online / offline
        """
        server = self.get(server_id)
        target, error = self._target_or_error(server)

        if target is None:
            reachability, containers = REACHABILITY_OFFLINE, None
        else:
            reachability, containers, error = run_async(self._probe(target))

        self._apply_probe(server, reachability, containers, error)

        if ctx is not None:
            AuditService.record(
                ctx, audit_service.CHECK_SERVER, 'server', server.id, server.name,
                detail=f"reachability={reachability}",
                commit=False
            )
        db.session.commit()
        return reachability

    def refresh_all(self) -> List[Server]:
        """
        Проверяет все серверы параллельно.
        Ошибка одного сервера не влияет на остальные.

        Returns:
            List[Server]: Серверы с обновленной доступностью
        """
        servers = self.list_servers()
        if not servers:
            logger.info("Нет серверов для проверки")
            return []

        logger.info(f"Начинаем проверку {len(servers)} серверов")

        targets = [self._target_or_error(server) for server in servers]

        async def probe_all():
            tasks = [
                self._probe(target) if target is not None else _credential_failure(error)
                for target, error in targets
            ]
            return await asyncio.gather(*tasks, return_exceptions=True)

        results = run_async(probe_all())

        online = 0
        for server, result in zip(servers, results):
            if isinstance(result, Exception):
                logger.error(f"Ошибка при проверке сервера {server.name}: {str(result)}")
                self._apply_probe(server, REACHABILITY_OFFLINE, None, str(result))
                continue
            self._apply_probe(server, *result)
            if server.reachability == REACHABILITY_ONLINE:
                online += 1

        db.session.commit()
        logger.info(f"Проверка серверов завершена: {online} online, {len(servers) - online} offline")
        return servers

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, ctx: RequestContext, name: str, address: str, ssh_user: str,
               private_key: str, ssh_port: int = 22) -> Server:
        """Регистрирует сервер. Ключ сразу шифруется."""
        name = _validate_text(name, 'name', 64)
        address = _validate_text(address, 'address', 255)
        ssh_user = _validate_text(ssh_user, 'ssh_user', 64)
        ssh_port = _validate_port(ssh_port)
        if not isinstance(private_key, str) or not private_key.strip():
            raise ValidationError("Поле private_key обязательно")

        if Server.query.filter_by(name=name).first():
            raise ValidationError(f"Сервер с именем {name} уже существует")

        server = Server(
            name=name,
            address=address,
            ssh_user=ssh_user,
            ssh_port=ssh_port,
            ssh_key_encrypted=self.credentials.seal(private_key),
            reachability=REACHABILITY_UNKNOWN
        )
        db.session.add(server)
        db.session.flush()

        AuditService.record(
            ctx, audit_service.CREATE_SERVER, 'server', server.id, server.name,
            detail=f"{ssh_user}@{address}:{ssh_port}",
            commit=False
        )
        db.session.commit()
        logger.info(f"Сервер {server.name} зарегистрирован")
        return server

    def update(self, ctx: RequestContext, server_id: int, name: Optional[str] = None,
               address: Optional[str] = None, ssh_user: Optional[str] = None,
               ssh_port: Optional[int] = None, private_key: Optional[str] = None) -> Server:
        """Обновляет только явно переданные поля."""
        server = self.get(server_id)
        changed = []

        if name is not None:
            name = _validate_text(name, 'name', 64)
            duplicate = Server.query.filter(Server.name == name, Server.id != server.id).first()
            if duplicate:
                raise ValidationError(f"Сервер с именем {name} уже существует")
            server.name = name
            changed.append('name')
        if address is not None:
            server.address = _validate_text(address, 'address', 255)
            changed.append('address')
        if ssh_user is not None:
            server.ssh_user = _validate_text(ssh_user, 'ssh_user', 64)
            changed.append('ssh_user')
        if ssh_port is not None:
            server.ssh_port = _validate_port(ssh_port)
            changed.append('ssh_port')
        if private_key is not None:
            if not isinstance(private_key, str) or not private_key.strip():
                raise ValidationError("Поле private_key не может быть пустым")
            server.ssh_key_encrypted = self.credentials.seal(private_key)
            changed.append('private_key')

        if not changed:
            raise ValidationError("Нет полей для обновления")

        if any(field in CONNECTION_FIELDS for field in changed):
            server.reachability = REACHABILITY_UNKNOWN
            server.last_error = None

        AuditService.record(
            ctx, audit_service.UPDATE_SERVER, 'server', server.id, server.name,
            detail=f"fields: {', '.join(changed)}",
            commit=False
        )
        db.session.commit()
        return server

    def delete(self, ctx: RequestContext, server_id: int, reassign_to: Optional[int] = None):
        """
        Удаляет сервер.

        Если на сервер ссылаются приложения, удаление возможно только с переносом
        их на другой сервер (reassign_to), и только если все они остановлены.
        """
        server = self.get(server_id)
        apps = Application.query.filter_by(server_id=server.id).all()

        if apps:
            if reassign_to is None:
                raise ResourceInUse(
                    f"На сервер {server.name} ссылаются приложения ({len(apps)}), укажите reassign_to"
                )
            if reassign_to == server.id:
                raise ValidationError("Нельзя перенести приложения на удаляемый сервер")
            target = self.get(reassign_to)
            busy = [app.name for app in apps if AppState(app.state) not in SETTLED_STATES]
            if busy:
                raise ResourceInUse(
                    f"Приложения не остановлены: {', '.join(busy)}"
                )
            for app in apps:
                app.server_id = target.id
            # Перенос должен попасть в БД до удаления, иначе связь обнулит server_id
            db.session.flush()
            logger.info(f"{len(apps)} приложений перенесено с {server.name} на {target.name}")

        detail = f"reassigned {len(apps)} apps to server {reassign_to}" if apps else None
        AuditService.record(
            ctx, audit_service.DELETE_SERVER, 'server', server.id, server.name,
            detail=detail,
            commit=False
        )
        db.session.delete(server)
        db.session.commit()
        logger.info(f"Сервер {server.name} удален")


async def _credential_failure(error):
    return REACHABILITY_OFFLINE, None, error
