"""
Конечный автомат жизненного цикла приложения.

Все изменения state проходят через apply_transition(). Вызывающий код
(Orchestrator) обязан держать блокировку приложения.

    stopped  --start-->  starting --ok--> running --stop--> stopping --ok--> stopped
                           |                                  |
                           +--fail--> error <------fail-------+
    error --start--> starting,  error --stop--> stopping
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from stackpilot.core.errors import InvalidTransition


class AppState(str, Enum):
    """Состояния приложения"""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class Trigger(str, Enum):
    """События, переводящие приложение из состояния в состояние"""
    START = "start"
    STOP = "stop"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TRANSITIONS = {
    (AppState.STOPPED, Trigger.START): AppState.STARTING,
    (AppState.ERROR, Trigger.START): AppState.STARTING,
    (AppState.STARTING, Trigger.SUCCEEDED): AppState.RUNNING,
    (AppState.STARTING, Trigger.FAILED): AppState.ERROR,
    (AppState.RUNNING, Trigger.STOP): AppState.STOPPING,
    (AppState.ERROR, Trigger.STOP): AppState.STOPPING,
    (AppState.STOPPING, Trigger.SUCCEEDED): AppState.STOPPED,
    (AppState.STOPPING, Trigger.FAILED): AppState.ERROR,
}

# Состояния, в которых идет удаленная операция
IN_FLIGHT_STATES = frozenset({AppState.STARTING, AppState.STOPPING})

# Состояния, из которых приложение можно удалить или перенести на другой сервер
SETTLED_STATES = frozenset({AppState.STOPPED, AppState.ERROR})


def next_state(current: AppState, trigger: Trigger) -> AppState:
    """
    Возвращает следующее состояние или бросает InvalidTransition.

    Args:
        current: Текущее состояние
        trigger: Событие

    Returns:
        AppState: Новое состояние
    """
    try:
        return TRANSITIONS[(AppState(current), Trigger(trigger))]
    except KeyError:
        raise InvalidTransition(
            f"Переход '{AppState(current).value}' --{Trigger(trigger).value}--> недопустим"
        )


def can_transition(current: AppState, trigger: Trigger) -> bool:
    return (AppState(current), Trigger(trigger)) in TRANSITIONS


def deadline_for(started_at: datetime, auto_stop_minutes: int) -> datetime:
    """Дедлайн автоостановки всегда отсчитывается от исходного started_at."""
    return started_at + timedelta(minutes=auto_stop_minutes)


def apply_transition(app, trigger: Trigger, now: datetime,
                     detail: Optional[str] = None) -> AppState:
    """
    Применяет переход к модели Application и поддерживает связанные поля.

    - running: выставляются started_at и deadline_at, last_error очищается
    - stopped: started_at и deadline_at очищаются
    - error: started_at и deadline_at очищаются, в last_error пишется detail

    Args:
        app: Экземпляр Application (или объект с теми же атрибутами)
        trigger: Событие
        now: Текущее время (UTC)
        detail: Подробности для состояния error

    Returns:
        AppState: Новое состояние
    """
    new_state = next_state(AppState(app.state), trigger)

    if new_state == AppState.RUNNING:
        app.started_at = now
        app.deadline_at = deadline_for(now, app.auto_stop_minutes)
        app.last_error = None
    elif new_state in (AppState.STOPPED, AppState.ERROR):
        app.started_at = None
        app.deadline_at = None
        if new_state == AppState.ERROR:
            app.last_error = detail
        else:
            app.last_error = None

    app.state = new_state.value
    return new_state
