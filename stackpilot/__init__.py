# stackpilot/__init__.py
import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from stackpilot.config import config

# Создаем экземпляры расширений
db = SQLAlchemy()
migrate = Migrate()


def create_app(config_name=None, executor=None, clock=None, credentials=None):
    """
    Фабрика приложения.

    executor, clock и credentials можно подменить (используется в тестах).
    """
    if not config_name:
        config_name = os.environ.get('FLASK_CONFIG', 'default')

    app = Flask(__name__)
    app.config.from_object(config[config_name])
    config[config_name].init_app(app)

    # Инициализация расширений
    db.init_app(app)
    migrate.init_app(app, db)

    # Настройка логирования
    setup_logging(app)

    # Импортируем модели, чтобы SQLAlchemy их зарегистрировал
    with app.app_context():
        from stackpilot.models import Server, Project, Application, AuditEvent  # noqa: F401

    # Сервисы ядра
    init_services(app, executor=executor, clock=clock, credentials=credentials)

    # Регистрация маршрутов API
    from stackpilot.api import bp as api_bp
    app.register_blueprint(api_bp, url_prefix='/api')

    # Фоновые потоки (в тестах отключены и запускаются явно)
    if app.config['SCHEDULER_ENABLED'] or app.config['MONITORING_ENABLED']:
        from stackpilot.tasks import init_tasks
        init_tasks(app)

    return app


def init_services(app, executor=None, clock=None, credentials=None):
    """Создает сервисы и кладет их в app.extensions['stackpilot']"""
    from stackpilot.services.notifier import TransitionNotifier
    from stackpilot.services.orchestrator import Orchestrator
    from stackpilot.services.server_registry import ServerRegistry
    from stackpilot.tasks import make_deadline_handler
    from stackpilot.tasks.scheduler import DeadlineScheduler
    from stackpilot.utils.datetime_utils import utcnow

    clock = clock or utcnow
    registry = ServerRegistry.from_config(app.config, executor=executor, credentials=credentials)
    scheduler = DeadlineScheduler(clock=clock)
    notifier = TransitionNotifier.from_config(app.config)
    orchestrator = Orchestrator.from_config(app.config, registry, scheduler, notifier=notifier, clock=clock)
    scheduler.set_fire_callback(make_deadline_handler(app, orchestrator))

    app.extensions['stackpilot'] = {
        'registry': registry,
        'scheduler': scheduler,
        'notifier': notifier,
        'orchestrator': orchestrator
    }
    return app.extensions['stackpilot']


def setup_logging(app):
    if not os.path.exists(app.config['LOG_DIR']):
        os.makedirs(app.config['LOG_DIR'])

    log_path = os.path.abspath(os.path.join(app.config['LOG_DIR'], 'stackpilot.log'))
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)

    # Логгер приложения общий для всех экземпляров Flask с этим именем
    for handler in app.logger.handlers:
        if isinstance(handler, RotatingFileHandler) and handler.baseFilename == log_path:
            app.logger.setLevel(level)
            return

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=10 * 1024 * 1024,
        backupCount=10
    )

    formatter = logging.Formatter(
        '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    )
    file_handler.setFormatter(formatter)

    file_handler.setLevel(level)
    app.logger.addHandler(file_handler)

    app.logger.setLevel(level)
    app.logger.info('StackPilot запущен')
