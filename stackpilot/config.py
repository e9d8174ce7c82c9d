# stackpilot/config.py
import os


def get_database_url():
    """Получение URL базы данных из переменных окружения"""
    # Проверяем наличие полной строки подключения
    uri = os.environ.get('DATABASE_URL')
    if uri:
        # Заменяем postgres:// на postgresql:// если нужно
        if uri.startswith('postgres://'):
            uri = uri.replace('postgres://', 'postgresql://', 1)
        return uri

    # Получаем отдельные параметры подключения
    host = os.environ.get('POSTGRES_HOST', 'localhost')
    port = os.environ.get('POSTGRES_PORT', '5432')
    user = os.environ.get('POSTGRES_USER', 'stackpilot')
    password = os.environ.get('POSTGRES_PASSWORD', 'stackpilot')
    db_name = os.environ.get('POSTGRES_DB', 'stackpilot')

    # Формируем строку подключения
    if password:
        uri = f"postgresql://{user}:{password}@{host}:{port}/{db_name}"
    else:
        uri = f"postgresql://{user}@{host}:{port}/{db_name}"

    return uri


class Config:
    # Базовая конфигурация
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'сложный-ключ-для-разработки'

    # Настройки базы данных PostgreSQL
    SQLALCHEMY_DATABASE_URI = get_database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Пути для логов
    LOG_DIR = os.environ.get('LOG_DIR') or 'logs'
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'

    # Ключ Fernet для шифрования SSH-ключей серверов
    CREDENTIALS_KEY = os.environ.get('CREDENTIALS_KEY') or ''

    # Настройки SSH
    SSH_CONNECTION_TIMEOUT = int(os.environ.get('SSH_CONNECTION_TIMEOUT') or 10)  # в секундах
    SSH_STRICT_HOST_KEY_CHECKING = os.environ.get('SSH_STRICT_HOST_KEY_CHECKING', 'no')
    SSH_KNOWN_HOSTS_FILE = os.environ.get('SSH_KNOWN_HOSTS_FILE') or '/dev/null'

    # Фиксированный таймаут на start/stop (без переопределения в запросе)
    REMOTE_COMMAND_TIMEOUT = int(os.environ.get('REMOTE_COMMAND_TIMEOUT') or 300)  # в секундах

    # Проверка доступности серверов
    HEALTH_CHECK_TIMEOUT = int(os.environ.get('HEALTH_CHECK_TIMEOUT') or 15)  # в секундах
    HEALTH_POLLING_INTERVAL = int(os.environ.get('HEALTH_POLLING_INTERVAL') or 60)  # в секундах
    HEALTH_PROBE_COMMAND = os.environ.get('HEALTH_PROBE_COMMAND') or 'docker ps -q | wc -l'

    # Сверка таблицы дедлайнов с запущенными приложениями
    DEADLINE_RECONCILE_INTERVAL = int(os.environ.get('DEADLINE_RECONCILE_INTERVAL') or 300)  # в секундах

    # Команды docker-compose
    COMPOSE_UP_COMMAND = os.environ.get('COMPOSE_UP_COMMAND') or 'docker-compose up -d'
    COMPOSE_DOWN_COMMAND = os.environ.get('COMPOSE_DOWN_COMMAND') or 'docker-compose down'

    # Автоостановка
    DEFAULT_AUTO_STOP_MINUTES = int(os.environ.get('DEFAULT_AUTO_STOP_MINUTES') or 60)

    # Сколько символов вывода удаленной команды сохранять в ошибках и аудите
    OUTPUT_TRUNCATE_CHARS = int(os.environ.get('OUTPUT_TRUNCATE_CHARS') or 2000)

    # Webhook для уведомлений о переходах состояний (пусто - отключено)
    TRANSITION_WEBHOOK_URL = os.environ.get('TRANSITION_WEBHOOK_URL') or ''
    TRANSITION_WEBHOOK_TIMEOUT = int(os.environ.get('TRANSITION_WEBHOOK_TIMEOUT', '10'))  # секунды

    # Фоновые потоки
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'
    MONITORING_ENABLED = os.environ.get('MONITORING_ENABLED', 'true').lower() == 'true'

    @staticmethod
    def init_app(app):
        # Создание директории для логов, если её нет
        if not os.path.exists(app.config['LOG_DIR']):
            os.makedirs(app.config['LOG_DIR'])


class SchedulerDefaults:
    """
    Константы для планировщика дедлайнов и фоновых потоков.
    """
    # Таймаут на остановку потоков (секунды)
    SHUTDOWN_TIMEOUT = int(os.environ.get('SCHEDULER_SHUTDOWN_TIMEOUT', '30'))

    # Максимальное время сна потока планировщика без событий (секунды)
    MAX_IDLE_WAIT = int(os.environ.get('SCHEDULER_MAX_IDLE_WAIT', '60'))

    # Число параллельных автоостановок
    AUTO_STOP_WORKERS = int(os.environ.get('SCHEDULER_AUTO_STOP_WORKERS', '8'))


class DevelopmentConfig(Config):
    DEBUG = True
    # Используем настройки из базового класса


class ProductionConfig(Config):
    DEBUG = False

    # Более строгие настройки безопасности
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.environ.get('TEST_DATABASE_URL') or 'sqlite://'
    LOG_DIR = os.environ.get('TEST_LOG_DIR') or os.path.join('/tmp', 'stackpilot-test-logs')
    # Фоновые потоки в тестах запускаются явно
    SCHEDULER_ENABLED = False
    MONITORING_ENABLED = False
    TRANSITION_WEBHOOK_URL = ''
    CREDENTIALS_KEY = 'MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA='


# Конфигурация по умолчанию
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
