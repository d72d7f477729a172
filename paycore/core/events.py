"""Публикация доменных событий через Redis pub/sub."""
import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

from paycore.config import settings

logger = logging.getLogger(__name__)

ORDER_PAID = "order.paid"
PAYMENT_FAILED = "payment.failed"
PAYMENT_REFUNDED = "payment.refunded"
HOLD_RELEASED = "payment_hold.released"


class EventService:
    """
    Fire-and-forget эмиттер событий для уведомлений и доставки.

    emit никогда не бросает исключений: платёж к этому моменту уже закоммичен,
    ошибка публикации только логируется.
    """

    def __init__(self, redis_url: str | None = None, channel_prefix: str | None = None):
        self._redis: Optional[redis.Redis] = None
        self._redis_url = redis_url or settings.redis_url
        self._channel_prefix = channel_prefix or settings.event_channel_prefix

    async def connect(self):
        """Подключение к Redis."""
        if not self._redis:
            try:
                self._redis = await redis.from_url(
                    self._redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                # Проверяем подключение
                await self._redis.ping()
            except Exception as e:
                logger.warning(f"⚠️ Redis недоступен, события не будут публиковаться: {e}")
                self._redis = None

    async def disconnect(self):
        """Отключение от Redis."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    def channel(self, event_name: str) -> str:
        return f"{self._channel_prefix}:{event_name}"

    async def emit(self, event_name: str, payload: dict[str, Any]) -> bool:
        """Опубликовать событие. Возвращает True, если событие отправлено."""
        if not self._redis:
            await self.connect()

        if not self._redis:
            logger.error(f"❌ Событие {event_name} не опубликовано: нет подключения к Redis")
            return False

        try:
            message = json.dumps({"event": event_name, "payload": payload}, default=str)
            await self._redis.publish(self.channel(event_name), message)
            logger.info(f"Событие {event_name} опубликовано")
            return True
        except Exception as e:
            logger.error(f"❌ Не удалось опубликовать событие {event_name}: {e}", exc_info=True)
            return False


# Глобальный экземпляр
event_service = EventService()
