# stackpilot/tasks/scheduler.py
"""
Планировщик дедлайнов автоостановки.

Одна запись (app_id -> deadline) на каждое запущенное приложение.
Фоновый поток спит до ближайшего дедлайна (или до изменения таблицы),
снимает просроченные записи и передает каждую в пул воркеров, где вызывается
fire_callback. Медленная остановка одного приложения не задерживает остальные.
Запись удаляется до вызова, поэтому каждый дедлайн срабатывает не более одного раза.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from stackpilot.config import SchedulerDefaults
from stackpilot.core.errors import LifecycleError
from stackpilot.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

# Повторная попытка, если вызов остановки упал не по причине жизненного цикла (например, БД)
INTERNAL_FAILURE_RETRY = timedelta(seconds=60)


class DeadlineScheduler:

    def __init__(self, fire_callback: Optional[Callable[[int, datetime], object]] = None,
                 clock: Callable[[], datetime] = utcnow):
        self._deadlines: Dict[int, datetime] = {}
        self._cond = threading.Condition()
        self._fire = fire_callback
        self.clock = clock
        self.stop_event = threading.Event()
        self.thread = None
        self.pool: Optional[ThreadPoolExecutor] = None

    def set_fire_callback(self, fire_callback: Callable[[int, datetime], object]):
        self._fire = fire_callback

    # ------------------------------------------------------------------
    # Таблица дедлайнов
    # ------------------------------------------------------------------

    def schedule(self, app_id: int, at: datetime):
        """Регистрирует дедлайн, заменяя предыдущий для этого приложения"""
        with self._cond:
            previous = self._deadlines.get(app_id)
            self._deadlines[app_id] = at
            self._cond.notify_all()
        if previous is None:
            logger.info(f"Дедлайн приложения {app_id} установлен на {at.isoformat()}")
        else:
            logger.info(f"Дедлайн приложения {app_id} перенесен: {previous.isoformat()} -> {at.isoformat()}")

    def cancel(self, app_id: int) -> bool:
        """Снимает дедлайн. Возвращает True, если запись была"""
        with self._cond:
            removed = self._deadlines.pop(app_id, None)
            if removed is not None:
                self._cond.notify_all()
        if removed is not None:
            logger.info(f"Дедлайн приложения {app_id} снят")
        return removed is not None

    def get(self, app_id: int) -> Optional[datetime]:
        with self._cond:
            return self._deadlines.get(app_id)

    def has(self, app_id: int) -> bool:
        with self._cond:
            return app_id in self._deadlines

    def snapshot(self) -> Dict[int, datetime]:
        with self._cond:
            return dict(self._deadlines)

    def next_deadline(self) -> Optional[datetime]:
        with self._cond:
            return min(self._deadlines.values()) if self._deadlines else None

    def rebuild(self, entries: Iterable[Tuple[int, datetime]]):
        """Полная замена таблицы (при старте процесса из запущенных приложений)"""
        with self._cond:
            self._deadlines = dict(entries)
            self._cond.notify_all()
        logger.info(f"Таблица дедлайнов восстановлена: {len(self._deadlines)} записей")

    def pop_due(self, now: Optional[datetime] = None) -> List[Tuple[int, datetime]]:
        """Атомарно снимает все просроченные записи"""
        now = now or self.clock()
        with self._cond:
            due = [(app_id, at) for app_id, at in self._deadlines.items() if at <= now]
            for app_id, _ in due:
                del self._deadlines[app_id]
        return sorted(due, key=lambda item: item[1])

    # ------------------------------------------------------------------
    # Срабатывание
    # ------------------------------------------------------------------

    def fire_due(self, now: Optional[datetime] = None, wait_for_completion: bool = True) -> int:
        """
        Срабатывание всех просроченных дедлайнов.

        Каждая запись обрабатывается в отдельном воркере, поэтому приложения
        останавливаются параллельно. Ошибка одного вызова не мешает остальным.
        Ошибки жизненного цикла (удаленная остановка не удалась) окончательны:
        приложение уже в error. Внутренние ошибки (например, недоступна БД)
        приводят к повтору через минуту.

        Вне запущенного планировщика используется временный пул, и вызов
        всегда дожидается завершения всех остановок.

        Args:
            now: Момент времени для сравнения (по умолчанию текущее время)
            wait_for_completion: Ждать ли завершения остановок в общем пуле

        Returns:
            int: Количество сработавших дедлайнов
        """
        if self._fire is None:
            logger.error("Планировщик не инициализирован: fire_callback не задан")
            return 0

        due = self.pop_due(now)
        if not due:
            return 0

        pool = self.pool
        if pool is None:
            with ThreadPoolExecutor(max_workers=len(due), thread_name_prefix='auto-stop') as temporary:
                for app_id, at in due:
                    temporary.submit(self._fire_one, app_id, at)
            return len(due)

        futures = [pool.submit(self._fire_one, app_id, at) for app_id, at in due]
        if wait_for_completion:
            wait(futures)
        return len(due)

    def _fire_one(self, app_id: int, at: datetime):
        logger.info(f"Сработал дедлайн приложения {app_id} ({at.isoformat()})")
        try:
            self._fire(app_id, at)
        except LifecycleError as e:
            logger.error(f"Автоостановка приложения {app_id} не удалась: {e.message}")
        except Exception as e:
            logger.exception(f"Внутренняя ошибка при автоостановке приложения {app_id}: {str(e)}")
            with self._cond:
                self._deadlines.setdefault(app_id, self.clock() + INTERNAL_FAILURE_RETRY)
                self._cond.notify_all()

    def start(self):
        """Запуск потока планировщика и пула автоостановок"""
        if self.thread and self.thread.is_alive():
            logger.warning("Планировщик дедлайнов уже запущен")
            return

        self.stop_event.clear()
        self.pool = ThreadPoolExecutor(max_workers=SchedulerDefaults.AUTO_STOP_WORKERS,
                                       thread_name_prefix='auto-stop')
        self.thread = threading.Thread(target=self._run, name='deadline-scheduler', daemon=True)
        self.thread.start()
        logger.info(f"Планировщик дедлайнов запущен (воркеров: {SchedulerDefaults.AUTO_STOP_WORKERS})")

    def stop(self):
        """Остановка потока планировщика"""
        if not self.thread or not self.thread.is_alive():
            logger.warning("Планировщик дедлайнов не запущен")
            return

        logger.info("Останавливаем планировщик дедлайнов...")
        self.stop_event.set()
        with self._cond:
            self._cond.notify_all()
        self.thread.join(timeout=SchedulerDefaults.SHUTDOWN_TIMEOUT)

        # Невыполненные остановки отменяются: при следующем старте дедлайны восстановятся из БД
        pool, self.pool = self.pool, None
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=True)
        logger.info("Планировщик дедлайнов остановлен")

    def _seconds_until_next(self) -> float:
        # Вызывается под self._cond
        if not self._deadlines:
            return SchedulerDefaults.MAX_IDLE_WAIT
        delay = (min(self._deadlines.values()) - self.clock()).total_seconds()
        return max(0.0, min(delay, SchedulerDefaults.MAX_IDLE_WAIT))

    def _run(self):
        logger.info("Цикл планировщика дедлайнов запущен")
        try:
            while not self.stop_event.is_set():
                with self._cond:
                    delay = self._seconds_until_next()
                    if delay > 0:
                        # Просыпаемся по таймауту или при изменении таблицы
                        self._cond.wait(timeout=delay)
                if self.stop_event.is_set():
                    break
                self.fire_due(wait_for_completion=False)
        except Exception as e:
            logger.exception(f"Критическая ошибка в цикле планировщика: {str(e)}")
        finally:
            logger.info("Цикл планировщика дедлайнов завершен")
