# stackpilot/services/credential_store.py
"""
Хранилище SSH-ключей серверов.

Ключи шифруются Fernet и хранятся в Server.ssh_key_encrypted.
Расшифрованный ключ нужен только RemoteExecutor на время вызова;
он никогда не логируется и не возвращается через API.
"""
import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """Ключ шифрования не настроен или токен поврежден."""
    pass


class CredentialStore:

    def __init__(self, key: str):
        if not key:
            raise CredentialError("CREDENTIALS_KEY не задан: хранение SSH-ключей невозможно")
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise CredentialError(f"Некорректный CREDENTIALS_KEY: {e}")

    @classmethod
    def from_config(cls, config) -> 'CredentialStore':
        """Создает экземпляр из конфигурации приложения (dict-like app.config)"""
        return cls(config.get('CREDENTIALS_KEY', ''))

    def seal(self, private_key: str) -> str:
        """Шифрует приватный ключ, возвращает непрозрачный токен для хранения"""
        if not private_key or not private_key.strip():
            raise CredentialError("Пустой приватный ключ")
        return self._fernet.encrypt(private_key.encode('utf-8')).decode('ascii')

    def open(self, token: str) -> str:
        """Расшифровывает токен обратно в приватный ключ"""
        try:
            return self._fernet.decrypt(token.encode('ascii')).decode('utf-8')
        except (InvalidToken, AttributeError, UnicodeError):
            # Сам токен не логируем
            logger.error("Не удалось расшифровать SSH-ключ сервера")
            raise CredentialError("Не удалось расшифровать SSH-ключ сервера")

    @staticmethod
    def generate_key() -> str:
        """Генерирует новый ключ для CREDENTIALS_KEY"""
        return Fernet.generate_key().decode('ascii')
