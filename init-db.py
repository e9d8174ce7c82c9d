#!/usr/bin/env python
# init-db.py
"""
Скрипт для инициализации базы данных PostgreSQL для StackPilot.
Создает базу данных (по флагу) и необходимые таблицы.
"""
import os
import sys
import argparse
import logging
from pathlib import Path
import psycopg2
from psycopg2 import sql
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

# Добавляем директорию проекта в путь поиска модулей
sys.path.append(str(Path(__file__).parent))

# Настраиваем логирование
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def parse_args():
    """Парсинг аргументов командной строки"""
    parser = argparse.ArgumentParser(description='Инициализация базы данных StackPilot')
    parser.add_argument('--config', type=str, default='production',
                        help='Конфигурация приложения (development, production)')
    parser.add_argument('--host', type=str, default=os.environ.get('POSTGRES_HOST', 'localhost'),
                        help='Хост PostgreSQL')
    parser.add_argument('--port', type=int, default=int(os.environ.get('POSTGRES_PORT', 5432)),
                        help='Порт PostgreSQL')
    parser.add_argument('--user', type=str, default=os.environ.get('POSTGRES_USER', 'stackpilot'),
                        help='Имя пользователя PostgreSQL')
    parser.add_argument('--password', type=str, default=os.environ.get('POSTGRES_PASSWORD'),
                        help='Пароль пользователя PostgreSQL')
    parser.add_argument('--dbname', type=str, default=os.environ.get('POSTGRES_DB', 'stackpilot'),
                        help='Имя базы данных')
    parser.add_argument('--create-db', action='store_true',
                        help='Создать базу данных, если она не существует')
    parser.add_argument('--drop', action='store_true',
                        help='Удалить существующие таблицы перед созданием')
    parser.add_argument('--generate-key', action='store_true',
                        help='Сгенерировать CREDENTIALS_KEY и выйти')
    return parser.parse_args()


def create_database(args):
    """Создание базы данных PostgreSQL, если она не существует"""
    try:
        # Подключаемся к серверу PostgreSQL
        conn = psycopg2.connect(
            host=args.host,
            port=args.port,
            user=args.user,
            password=args.password,
            dbname='postgres'
        )
        conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
        cursor = conn.cursor()

        # Проверяем существование базы данных
        cursor.execute("SELECT 1 FROM pg_catalog.pg_database WHERE datname = %s", (args.dbname,))
        exists = cursor.fetchone()

        if not exists:
            logger.info(f"Создание базы данных '{args.dbname}'...")
            cursor.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(args.dbname)))
            logger.info(f"База данных '{args.dbname}' успешно создана")
        else:
            logger.info(f"База данных '{args.dbname}' уже существует")

        cursor.close()
        conn.close()
        return True
    except psycopg2.Error as e:
        logger.error(f"Ошибка при создании базы данных: {str(e)}")
        return False


def init_db(app, drop=False):
    """Инициализация таблиц"""
    from stackpilot import db

    with app.app_context():
        if drop:
            logger.info("Удаление существующих таблиц...")
            db.drop_all()

        logger.info("Создание таблиц...")
        db.create_all()

        logger.info("База данных успешно инициализирована")


def main():
    args = parse_args()

    if args.generate_key:
        from stackpilot.services.credential_store import CredentialStore
        print(CredentialStore.generate_key())
        return

    logger.info(f"Инициализация базы данных с конфигурацией '{args.config}'")

    # Создаем базу данных, если указан флаг --create-db
    if args.create_db:
        if not create_database(args):
            logger.error("Невозможно продолжить инициализацию из-за ошибки создания базы данных")
            sys.exit(1)

    # Создаем строку подключения и устанавливаем её в переменную окружения
    if args.password:
        os.environ['DATABASE_URL'] = f"postgresql://{args.user}:{args.password}@{args.host}:{args.port}/{args.dbname}"
    else:
        os.environ['DATABASE_URL'] = f"postgresql://{args.user}@{args.host}:{args.port}/{args.dbname}"

    # Фоновые потоки при инициализации не нужны
    os.environ['FLASK_CONFIG'] = args.config
    os.environ['SCHEDULER_ENABLED'] = 'false'
    os.environ['MONITORING_ENABLED'] = 'false'

    # Импортируем create_app только после настройки переменных окружения
    from stackpilot import create_app

    try:
        app = create_app(args.config)
        init_db(app, drop=args.drop)
        logger.info("Инициализация базы данных успешно завершена!")
    except Exception as e:
        logger.exception(f"Ошибка при инициализации базы данных: {str(e)}")
        sys.exit(1)


if __name__ == '__main__':
    main()
