"""
Выполнение команд на удаленных серверах через системный ssh-клиент.

Один вызов run() = одно SSH-соединение и ровно одна команда в рабочем каталоге.
Ненулевой код возврата - обычный результат, решение принимает вызывающий.
Исключения бросаются только когда результат команды получить не удалось.
"""
import asyncio
import logging
import os
import shlex
import tempfile
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

# ssh возвращает 255 при ошибках самого соединения
SSH_TRANSPORT_EXIT_CODE = 255


class RemoteExecutionError(Exception):
    """Базовая ошибка транспорта: результат удаленной команды неизвестен или не получен."""
    pass


class RemoteConnectionError(RemoteExecutionError):
    pass


class RemoteAuthError(RemoteExecutionError):
    pass


class RemoteTimeout(RemoteExecutionError):
    pass


@dataclass
class ExecTarget:
    """Куда и с какими учетными данными подключаться"""
    host: str
    user: str
    private_key: str = field(repr=False)
    port: int = 22
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.host


@dataclass
class ExecResult:
    """Результат удаленной команды"""
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Объединенный вывод для сообщений об ошибках"""
        return '\n'.join(part for part in (self.stdout, self.stderr) if part)


@dataclass
class SSHOptions:
    """Параметры ssh-клиента"""
    connection_timeout: int = 10
    strict_host_key_checking: str = 'no'
    known_hosts_file: str = '/dev/null'
    ssh_binary: str = 'ssh'


class RemoteExecutor:
    """
    Запуск команд через `ssh` (asyncio subprocess).

    Если на сервере есть `setsid -w`, удаленная команда запускается под ним,
    чтобы иметь собственную группу процессов. PGID сообщается маркерной строкой
    в stderr; при таймауте по отдельному соединению отправляется `kill -TERM -- -PGID`.
    Без setsid команда запускается через `sh -c`, а маркер приходит без PGID.
    """

    PGID_MARKER = '__STACKPILOT_PGID__='

    AUTH_ERROR_PATTERNS = (
        'Permission denied',
        'Host key verification failed',
        'Too many authentication failures',
        'invalid format',
    )

    def __init__(self, options: Optional[SSHOptions] = None):
        self.options = options or SSHOptions()

    @classmethod
    def from_config(cls, config) -> 'RemoteExecutor':
        """Создает экземпляр из конфигурации приложения"""
        return cls(SSHOptions(
            connection_timeout=config.get('SSH_CONNECTION_TIMEOUT', 10),
            strict_host_key_checking=config.get('SSH_STRICT_HOST_KEY_CHECKING', 'no'),
            known_hosts_file=config.get('SSH_KNOWN_HOSTS_FILE', '/dev/null')
        ))

    def build_remote_script(self, working_directory: Optional[str], command: str) -> str:
        """
        Формирует скрипт для удаленного shell.

        Args:
            working_directory: Каталог на сервере (None - домашний каталог)
            command: Команда, например 'docker-compose up -d'

        Returns:
            str: Строка, передаваемая ssh последним аргументом
        """
        inner = f"echo {self.PGID_MARKER}$$ >&2; {command}"
        # Без setsid -w группа не выделяется: маркер без PGID, kill при таймауте не отправляется
        plain = f"echo {self.PGID_MARKER} >&2; {command}"
        script = (
            f"if setsid -w true >/dev/null 2>&1; "
            f"then exec setsid -w sh -c {shlex.quote(inner)}; "
            f"else exec sh -c {shlex.quote(plain)}; fi"
        )
        if working_directory:
            script = f"cd {shlex.quote(working_directory)} && {script}"
        return script

    def _build_ssh_command(self, target: ExecTarget, key_file: str, remote_script: str) -> List[str]:
        """Формирует SSH команду для выполнения"""
        return [
            self.options.ssh_binary,
            '-i', key_file,
            '-o', 'BatchMode=yes',
            '-o', 'IdentitiesOnly=yes',
            '-o', f'StrictHostKeyChecking={self.options.strict_host_key_checking}',
            '-o', f'UserKnownHostsFile={self.options.known_hosts_file}',
            '-o', f'ConnectTimeout={self.options.connection_timeout}',
            '-p', str(target.port),
            f'{target.user}@{target.host}',
            remote_script
        ]

    @staticmethod
    def _write_key_file(private_key: str) -> str:
        """Пишет ключ во временный файл с правами 0600"""
        fd, path = tempfile.mkstemp(prefix='stackpilot-key-')
        try:
            os.chmod(path, 0o600)
            with os.fdopen(fd, 'w') as f:
                f.write(private_key if private_key.endswith('\n') else private_key + '\n')
        except OSError:
            os.unlink(path)
            raise
        return path

    def _classify_transport_error(self, target: ExecTarget, stderr: str) -> RemoteExecutionError:
        for pattern in self.AUTH_ERROR_PATTERNS:
            if pattern in stderr:
                return RemoteAuthError(f"Ошибка аутентификации SSH на {target.label}: {stderr}")
        return RemoteConnectionError(f"Ошибка SSH-соединения с {target.label}: {stderr or 'нет ответа'}")

    async def run(self, target: ExecTarget, working_directory: Optional[str],
                  command: str, timeout: float) -> ExecResult:
        """
        Выполняет одну команду на сервере.

        Args:
            target: Сервер и учетные данные
            working_directory: Каталог, в котором выполнить команду
            command: Команда
            timeout: Максимальное время выполнения в секундах

        Returns:
            ExecResult: Код возврата и вывод

        Raises:
            RemoteConnectionError, RemoteAuthError, RemoteTimeout
        """
        key_file = self._write_key_file(target.private_key)
        try:
            script = self.build_remote_script(working_directory, command)
            ssh_cmd = self._build_ssh_command(target, key_file, script)

            logger.info(f"[{target.label}] Выполнение команды '{command}' в {working_directory or '~'}")

            try:
                process = await asyncio.create_subprocess_exec(
                    *ssh_cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE
                )
            except OSError as e:
                raise RemoteConnectionError(f"Не удалось запустить ssh: {e}")

            stdout_chunks = []
            stderr_lines = []
            remote = {'pgid': None}

            async def read_stdout():
                while True:
                    chunk = await process.stdout.read(8192)
                    if not chunk:
                        break
                    stdout_chunks.append(chunk)

            async def read_stderr():
                while True:
                    line = await process.stderr.readline()
                    if not line:
                        break
                    line_str = line.decode('utf-8', errors='ignore').rstrip('\n')
                    if line_str.startswith(self.PGID_MARKER):
                        remote['pgid'] = line_str[len(self.PGID_MARKER):].strip()
                        continue
                    stderr_lines.append(line_str)

            try:
                await asyncio.wait_for(
                    asyncio.gather(read_stdout(), read_stderr(), process.wait()),
                    timeout=timeout
                )
            except asyncio.TimeoutError:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

                logger.error(f"[{target.label}] Таймаут {timeout}s при выполнении '{command}', результат неизвестен")
                if remote['pgid']:
                    await self._terminate_process_group(target, key_file, remote['pgid'])
                raise RemoteTimeout(
                    f"Команда '{command}' на {target.label} не завершилась за {timeout}s, результат неизвестен"
                )

            stdout = b''.join(stdout_chunks).decode('utf-8', errors='ignore').strip()
            stderr = '\n'.join(stderr_lines).strip()
            exit_code = process.returncode

            # Маркер не появился - до выполнения команды дело не дошло
            if exit_code == SSH_TRANSPORT_EXIT_CODE and remote['pgid'] is None:
                error = self._classify_transport_error(target, stderr)
                logger.error(str(error))
                raise error

            if exit_code == 0:
                logger.info(f"[{target.label}] Команда '{command}' выполнена успешно")
            else:
                logger.warning(f"[{target.label}] Команда '{command}' завершилась с кодом {exit_code}")

            return ExecResult(exit_code=exit_code, stdout=stdout, stderr=stderr)
        finally:
            try:
                os.unlink(key_file)
            except OSError:
                logger.warning(f"Не удалось удалить временный файл ключа {key_file}")

    async def _terminate_process_group(self, target: ExecTarget, key_file: str, pgid: str):
        """Best-effort остановка группы процессов удаленной команды после таймаута"""
        if not pgid.isdigit():
            return
        kill_cmd = self._build_ssh_command(target, key_file, f"kill -TERM -- -{pgid}")
        try:
            process = await asyncio.create_subprocess_exec(
                *kill_cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL
            )
            await asyncio.wait_for(process.wait(), timeout=self.options.connection_timeout + 5)
            logger.info(f"[{target.label}] Отправлен SIGTERM группе процессов {pgid}")
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"[{target.label}] Не удалось остановить группу процессов {pgid}: {e}")
