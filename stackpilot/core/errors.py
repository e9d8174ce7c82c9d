"""
Таксономия ошибок жизненного цикла.

Каждая ошибка несет стабильный kind (для клиента) и HTTP-статус (для API).
Ни одна из них не повторяется ядром автоматически.
"""


class LifecycleError(Exception):
    """Базовая ошибка операций над приложениями, серверами и проектами."""
    kind = 'LifecycleError'
    http_status = 500

    def __init__(self, message: str, output: str = None):
        self.message = message
        self.output = output
        super().__init__(self.message)

    def to_dict(self):
        result = {
            'success': False,
            'kind': self.kind,
            'error': self.message
        }
        if self.output:
            result['output'] = self.output
        return result


class NotFound(LifecycleError):
    kind = 'NotFound'
    http_status = 404


class ValidationError(LifecycleError):
    kind = 'ValidationError'
    http_status = 400


class ServerOffline(LifecycleError):
    """Предварительная проверка доступности сервера не пройдена, удаленный вызов не выполнялся."""
    kind = 'ServerOffline'
    http_status = 409


class AlreadyRunning(LifecycleError):
    kind = 'AlreadyRunning'
    http_status = 409


class NotRunning(LifecycleError):
    kind = 'NotRunning'
    http_status = 409


class ConcurrencyRejected(LifecycleError):
    """Для приложения уже выполняется операция. Запрос не ставится в очередь."""
    kind = 'ConcurrencyRejected'
    http_status = 409


class InvalidTransition(LifecycleError):
    kind = 'InvalidTransition'
    http_status = 409


class ResourceInUse(LifecycleError):
    kind = 'ResourceInUse'
    http_status = 409


class ExecutionFailed(LifecycleError):
    """Удаленная команда вернула ненулевой код или транспорт не смог выполнить ее."""
    kind = 'ExecutionFailed'
    http_status = 502


class Timeout(LifecycleError):
    """Удаленная команда не уложилась в таймаут, результат на сервере неизвестен."""
    kind = 'Timeout'
    http_status = 504


def truncate_output(output: str, limit: int) -> str:
    """Обрезает вывод удаленной команды, оставляя хвост (там обычно ошибка)."""
    if not output:
        return ''
    if limit <= 0 or len(output) <= limit:
        return output
    return '...' + output[-limit:]
