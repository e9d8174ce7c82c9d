# stackpilot/tasks/__init__.py
import atexit
import logging

logger = logging.getLogger(__name__)


def make_deadline_handler(app, orchestrator):
    """Колбэк планировщика: автоостановка в контексте приложения"""
    def fire(app_id, deadline_at):
        from stackpilot import db
        with app.app_context():
            try:
                return orchestrator.stop_on_deadline(app_id, deadline_at)
            except Exception:
                db.session.rollback()
                raise
    return fire


def init_tasks(app):
    """
    Инициализация фоновых задач при запуске приложения:
    незавершенные операции переводятся в error, таблица дедлайнов
    восстанавливается из БД, затем запускаются потоки.
    """
    from stackpilot.tasks.monitoring import init_monitoring

    services = app.extensions['stackpilot']
    orchestrator = services['orchestrator']

    with app.app_context():
        interrupted = orchestrator.recover_interrupted()
        if interrupted:
            logger.warning(f"При старте найдено {interrupted} прерванных операций")
        restored = orchestrator.rebuild_schedule()
        logger.info(f"Восстановлено {restored} дедлайнов автоостановки")

    services['notifier'].start()

    if app.config['SCHEDULER_ENABLED']:
        services['scheduler'].start()

    if app.config['MONITORING_ENABLED']:
        services['monitoring'] = init_monitoring(app, services['registry'], orchestrator)

    # Регистрируем обработчик для корректной остановки при завершении приложения
    atexit.register(shutdown_tasks, app)


def shutdown_tasks(app):
    """Остановка потоков; незавершенные операции переводятся в error"""
    services = app.extensions.get('stackpilot')
    if not services:
        return

    monitoring = services.get('monitoring')
    if monitoring:
        monitoring.stop()

    if services['scheduler'].thread:
        services['scheduler'].stop()

    with app.app_context():
        services['orchestrator'].park_in_flight()

    services['notifier'].stop()
