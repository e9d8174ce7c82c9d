import logging
import threading
import time

logger = logging.getLogger(__name__)


class MonitoringTasks:
    """
    Класс для управления периодическими задачами: проверкой доступности серверов
    и сверкой таблицы дедлайнов с запущенными приложениями
    """

    def __init__(self, app, registry=None, orchestrator=None):
        self.app = app
        self.registry = registry
        self.orchestrator = orchestrator
        self.stop_event = threading.Event()
        self.thread = None

        # Время последнего выполнения каждой операции (для независимых интервалов)
        self.last_servers_poll = 0
        self.last_deadline_reconcile = 0

    def start(self):
        """Запуск потока с циклом задач мониторинга"""
        if self.thread and self.thread.is_alive():
            logger.warning("Задачи мониторинга уже запущены")
            return

        self.stop_event.clear()
        self.thread = threading.Thread(target=self._run_monitoring, name='monitoring', daemon=True)

        logger.info(
            f"Интервалы опроса: servers={self.app.config['HEALTH_POLLING_INTERVAL']}s, "
            f"deadlines={self.app.config['DEADLINE_RECONCILE_INTERVAL']}s"
        )

        self.thread.start()
        logger.info("Задачи мониторинга запущены")

    def stop(self):
        """Остановка потока с задачами мониторинга"""
        if not self.thread or not self.thread.is_alive():
            logger.warning("Задачи мониторинга не запущены")
            return

        logger.info("Останавливаем задачи мониторинга...")
        self.stop_event.set()
        self.thread.join(timeout=30)
        logger.info("Задачи мониторинга остановлены")

    def _run_task_if_due(self, task_name: str, last_run_attr: str, interval: int, task_method) -> None:
        """
        Выполняет задачу если прошёл интервал с последнего запуска.
        Обновляет last_run только при успешном выполнении.

        Args:
            task_name: Имя задачи для логирования ошибок
            last_run_attr: Имя атрибута для хранения времени последнего запуска
            interval: Интервал в секундах между запусками
            task_method: Метод для выполнения
        """
        now = time.time()
        if now - getattr(self, last_run_attr) < interval:
            return

        with self.app.app_context():
            try:
                task_method()
                # Обновляем время только при успехе - при ошибке retry через 1 сек
                setattr(self, last_run_attr, now)
            except Exception as e:
                logger.error(f"Ошибка при {task_name}: {str(e)}")

    def _run_monitoring(self):
        """
        Основной метод выполнения задач мониторинга.

        Каждая операция выполняется по своему интервалу:
        - Проверка серверов: HEALTH_POLLING_INTERVAL
        - Сверка дедлайнов: DEADLINE_RECONCILE_INTERVAL

        Config читается каждую итерацию.
        """
        try:
            logger.info("Цикл мониторинга запущен")

            while not self.stop_event.is_set():
                self._run_task_if_due(
                    task_name="проверке серверов",
                    last_run_attr="last_servers_poll",
                    interval=self.app.config['HEALTH_POLLING_INTERVAL'],
                    task_method=self._poll_servers
                )

                self._run_task_if_due(
                    task_name="сверке дедлайнов",
                    last_run_attr="last_deadline_reconcile",
                    interval=self.app.config['DEADLINE_RECONCILE_INTERVAL'],
                    task_method=self._reconcile_deadlines
                )

                # Проверка каждую секунду для быстрого реагирования на stop_event
                self.stop_event.wait(1)

        except Exception as e:
            logger.exception(f"Критическая ошибка в цикле мониторинга: {str(e)}")
        finally:
            logger.info("Цикл мониторинга завершен")

    def _poll_servers(self):
        """Проверка доступности всех серверов (приложения не затрагиваются)"""
        from stackpilot import db
        try:
            self.registry.refresh_all()
        except Exception:
            db.session.rollback()
            raise

    def _reconcile_deadlines(self):
        """Сверка таблицы дедлайнов с запущенными приложениями"""
        from stackpilot import db
        try:
            fixed = self.orchestrator.reconcile_schedule()
            if fixed:
                logger.warning(f"Сверка дедлайнов: исправлено {fixed} записей")
        except Exception:
            db.session.rollback()
            raise


# Глобальный экземпляр задач мониторинга
monitoring_tasks = None


def init_monitoring(app, registry, orchestrator):
    """Инициализация задач мониторинга при запуске приложения"""
    global monitoring_tasks

    if monitoring_tasks:
        # Останавливаем существующие задачи, если они были
        monitoring_tasks.stop()

    monitoring_tasks = MonitoringTasks(app, registry=registry, orchestrator=orchestrator)
    monitoring_tasks.start()
    return monitoring_tasks
