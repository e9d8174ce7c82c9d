#!/usr/bin/env python
# main.py
import os
import argparse

EPILOG = """
Планировщик автоостановки и мониторинг серверов работают потоками внутри этого
процесса, поэтому запускайте ровно один экземпляр на базу данных: второй процесс
сработал бы на те же дедлайны повторно. По этой же причине отключен reloader Flask.

Переменные окружения:
  FLASK_CONFIG              конфигурация по умолчанию для --config
  DATABASE_URL              строка подключения к БД
  CREDENTIALS_KEY           ключ Fernet для SSH-ключей (python init-db.py --generate-key)
  REMOTE_COMMAND_TIMEOUT    таймаут удаленной команды, секунды
  HEALTH_POLLING_INTERVAL   интервал проверки серверов, секунды
"""


def parse_args():
    """Парсинг аргументов командной строки"""
    parser = argparse.ArgumentParser(
        description='StackPilot: запуск и автоостановка docker-compose приложений на серверах по SSH',
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--config', type=str, default=os.environ.get('FLASK_CONFIG', 'production'),
                        help='Конфигурация приложения (development, production); по умолчанию FLASK_CONFIG')
    parser.add_argument('--host', type=str, default='0.0.0.0',
                        help='Хост для запуска API')
    parser.add_argument('--port', type=int, default=5000,
                        help='Порт для запуска API')
    parser.add_argument('--debug', action='store_true',
                        help='Запуск в режиме отладки')
    parser.add_argument('--no-monitoring', action='store_true',
                        help='Не запускать периодическую проверку серверов и сверку дедлайнов')
    return parser.parse_args()


def main():
    args = parse_args()

    os.environ['FLASK_CONFIG'] = args.config
    if args.no_monitoring:
        os.environ['MONITORING_ENABLED'] = 'false'

    # Конфигурация читает окружение при импорте
    from stackpilot import create_app

    app = create_app(args.config)

    app.run(
        host=args.host,
        port=args.port,
        debug=args.debug,
        use_reloader=False
    )


if __name__ == '__main__':
    main()
