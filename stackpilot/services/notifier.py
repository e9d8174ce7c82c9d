# stackpilot/services/notifier.py
"""
Уведомления о переходах состояний через webhook.

Переходы складываются в очередь и отправляются фоновым потоком,
поэтому медленный или недоступный получатель не задерживает операции.
Ошибки отправки только логируются.
"""
import asyncio
import logging
import queue
import threading
from typing import Optional

import aiohttp

from stackpilot.config import SchedulerDefaults
from stackpilot.utils.datetime_utils import utcnow, format_datetime_utc

logger = logging.getLogger(__name__)


class TransitionNotifier:

    def __init__(self, url: Optional[str] = None, timeout: int = 10):
        self.url = url
        self.timeout = timeout
        self.queue = queue.Queue()
        self.stop_event = threading.Event()
        self.thread = None
        self.loop = None

    @classmethod
    def from_config(cls, config) -> 'TransitionNotifier':
        return cls(
            url=config.get('TRANSITION_WEBHOOK_URL') or None,
            timeout=config.get('TRANSITION_WEBHOOK_TIMEOUT', 10)
        )

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    @staticmethod
    def build_payload(app_id: int, app_name: str, from_state: str, to_state: str,
                      actor: str, detail: Optional[str] = None) -> dict:
        return {
            'event': 'app_transition',
            'app_id': app_id,
            'app_name': app_name,
            'from': from_state,
            'to': to_state,
            'actor': actor,
            'detail': detail,
            'timestamp': format_datetime_utc(utcnow())
        }

    def notify(self, app_id: int, app_name: str, from_state: str, to_state: str,
               actor: str, detail: Optional[str] = None):
        """Ставит уведомление в очередь (без блокировки вызывающего)"""
        if not self.enabled:
            return
        self.queue.put(self.build_payload(app_id, app_name, from_state, to_state, actor, detail))

    def start(self):
        """Запуск потока отправки"""
        if not self.enabled:
            logger.info("Webhook уведомлений не настроен, отправка отключена")
            return
        if self.thread and self.thread.is_alive():
            logger.warning("Поток уведомлений уже запущен")
            return

        self.stop_event.clear()
        self.thread = threading.Thread(target=self._run, name='transition-notifier', daemon=True)
        self.thread.start()
        logger.info(f"Поток уведомлений запущен ({self.url})")

    def stop(self):
        if not self.thread or not self.thread.is_alive():
            return
        self.stop_event.set()
        self.thread.join(timeout=SchedulerDefaults.SHUTDOWN_TIMEOUT)
        logger.info("Поток уведомлений остановлен")

    def _run(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        try:
            while not self.stop_event.is_set():
                try:
                    payload = self.queue.get(timeout=1)
                except queue.Empty:
                    continue
                try:
                    self.loop.run_until_complete(self.send(payload))
                finally:
                    self.queue.task_done()
        finally:
            self.loop.close()

    async def send(self, payload: dict) -> bool:
        """Отправляет одно уведомление. Возвращает True при ответе 2xx."""
        try:
            async with aiohttp.ClientSession() as session:
                timeout = aiohttp.ClientTimeout(total=self.timeout)
                async with session.post(self.url, json=payload, timeout=timeout) as response:
                    if 200 <= response.status < 300:
                        return True
                    logger.warning(
                        f"Webhook ответил {response.status} на уведомление о приложении {payload.get('app_id')}"
                    )
                    return False
        except aiohttp.ClientError as e:
            logger.error(f"Ошибка отправки webhook: {str(e)}")
        except asyncio.TimeoutError:
            logger.error("Таймаут отправки webhook")
        return False
