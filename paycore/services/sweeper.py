"""Фоновые задачи: истечение незавершённых платежей и выплата удержаний."""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.config import Settings, settings as default_settings
from paycore.core.clock import utcnow
from paycore.core.events import EventService
from paycore.models.payment import Payment, PaymentStatus
from paycore.providers import ProviderRegistry
from paycore.services.hold_service import HoldService
from paycore.services.payment_service import EXPIRED_REASON, PaymentService

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    processed: int = 0
    failed: int = 0


class PaymentSweeper:
    """
    Периодические проходы по платежам и удержаниям.

    Каждая запись обрабатывается в своей сессии и транзакции: ошибка по одной
    записи логируется и не мешает остальным. Гонки с webhook безопасны, потому
    что переходы перепроверяют статус под блокировкой строки.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        providers: ProviderRegistry | None = None,
        events: EventService | None = None,
        config: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.config = config or default_settings
        self.providers = providers
        self.events = events

    def _service(self, db: AsyncSession) -> PaymentService:
        return PaymentService(db, providers=self.providers, events=self.events, config=self.config)

    async def _stale_payment_ids(self, cutoff: datetime) -> list[uuid.UUID]:
        async with self.session_factory() as db:
            stmt = select(Payment.id).where(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at < cutoff,
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def expire_pending_payments(self, now: datetime | None = None) -> SweepResult:
        """Перевести в failed платежи, висящие в pending дольше payment_timeout_minutes."""
        now = now or utcnow()
        timeout = self.config.payment_timeout_minutes
        cutoff = now - timedelta(minutes=timeout)

        payment_ids = await self._stale_payment_ids(cutoff)
        if not payment_ids:
            return SweepResult()

        logger.info(f"Найдено {len(payment_ids)} просроченных платежей (старше {timeout} мин)")
        result = SweepResult()
        for payment_id in payment_ids:
            try:
                async with self.session_factory() as db:
                    transition = await self._service(db).apply_failure(
                        payment_id,
                        EXPIRED_REASON,
                        action="expired",
                        extra={"timeout_minutes": timeout},
                    )
                if transition.applied:
                    result.processed += 1
            except Exception as e:
                logger.error(f"❌ Не удалось завершить просроченный платёж {payment_id}: {e}", exc_info=True)
                result.failed += 1

        logger.info(f"✅ Просрочено платежей: {result.processed}, ошибок: {result.failed}")
        return result

    async def release_due_holds(self, now: datetime | None = None) -> SweepResult:
        """Выплатить удержания, у которых наступил release_at."""
        now = now or utcnow()

        async with self.session_factory() as db:
            hold_ids = await HoldService(db).list_due_ids(now)
        if not hold_ids:
            return SweepResult()

        logger.info(f"Найдено {len(hold_ids)} удержаний к выплате")
        result = SweepResult()
        for hold_id in hold_ids:
            try:
                async with self.session_factory() as db:
                    _, applied = await self._service(db).release_hold(hold_id, now=now)
                if applied:
                    result.processed += 1
            except Exception as e:
                logger.error(f"❌ Не удалось выплатить удержание {hold_id}: {e}", exc_info=True)
                result.failed += 1

        logger.info(f"✅ Выплачено удержаний: {result.processed}, ошибок: {result.failed}")
        return result
