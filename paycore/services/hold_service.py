"""Escrow: удержание средств продавца."""
import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.config import settings
from paycore.core.clock import utcnow
from paycore.core.exceptions import HoldNotFound
from paycore.models.order import Order
from paycore.models.payment import Payment, PaymentHold, PaymentHoldStatus

logger = logging.getLogger(__name__)


class HoldService:
    """
    Сервис удержаний.

    Удержание создаётся только из PaymentService.apply_success внутри его
    транзакции. release_at задаётся один раз при создании и больше не меняется.
    Перевод денег продавцу здесь не выполняется, сервис ведёт только учёт.
    """

    def __init__(self, db: AsyncSession, hold_days: int | None = None):
        self.db = db
        self.hold_days = settings.payment_hold_days if hold_days is None else hold_days

    async def create_hold(self, payment: Payment, order: Order, now: datetime | None = None) -> PaymentHold:
        """Создать удержание: сумма заказа минус комиссия, выплата через hold_days."""
        now = now or utcnow()
        hold = PaymentHold(
            payment_id=payment.id,
            order_id=order.id,
            seller_id=order.seller_id,
            amount=order.total_amount - (order.commission_amount or 0),
            status=PaymentHoldStatus.HELD.value,
            release_at=now + timedelta(days=self.hold_days),
            created_at=now,
        )
        self.db.add(hold)
        await self.db.flush()
        logger.info(f"Удержание {hold.id} создано для продавца {order.seller_id}: {hold.amount}, до {hold.release_at}")
        return hold

    async def _lock(self, hold_id: uuid.UUID) -> PaymentHold | None:
        stmt = (
            select(PaymentHold)
            .where(PaymentHold.id == hold_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def release(self, hold_id: uuid.UUID, now: datetime | None = None) -> tuple[PaymentHold, bool]:
        """
        Выплатить удержание продавцу.

        Returns:
            (hold, applied) - applied=False, если удержание уже не в статусе held.
        """
        try:
            hold = await self._lock(hold_id)
            if not hold:
                raise HoldNotFound()

            if hold.status != PaymentHoldStatus.HELD:
                logger.info(f"ℹ️ Удержание {hold.id} уже в статусе {hold.status}, выплата пропущена")
                await self.db.commit()
                return hold, False

            hold.status = PaymentHoldStatus.RELEASED.value
            hold.released_at = now or utcnow()
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"✅ Удержание {hold.id} выплачено продавцу {hold.seller_id}: {hold.amount}")
        return hold, True

    async def release_for_order(self, order_id: uuid.UUID) -> tuple[PaymentHold, bool]:
        """Выплатить удержание по заказу (например, после подтверждения получения)."""
        stmt = select(PaymentHold.id).where(
            PaymentHold.order_id == order_id,
            PaymentHold.status == PaymentHoldStatus.HELD.value,
        )
        result = await self.db.execute(stmt)
        hold_id = result.scalars().first()
        if not hold_id:
            raise HoldNotFound("Ожидающее выплаты удержание не найдено")
        return await self.release(hold_id)

    async def cancel_for_payment(self, payment_id: uuid.UUID) -> PaymentHold | None:
        """Отменить удержание при возврате. Вызывается внутри транзакции возврата."""
        stmt = (
            select(PaymentHold)
            .where(PaymentHold.payment_id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        hold = result.scalar_one_or_none()

        if not hold:
            logger.warning(f"⚠️ Удержание для платежа {payment_id} не найдено")
            return None

        if hold.status != PaymentHoldStatus.HELD:
            logger.warning(f"⚠️ Удержание {hold.id} в статусе {hold.status}, отмена невозможна")
            return hold

        hold.status = PaymentHoldStatus.CANCELLED.value
        logger.info(f"Удержание {hold.id} отменено")
        return hold

    async def list_held_for_seller(self, seller_id: uuid.UUID) -> list[PaymentHold]:
        """Удержания продавца, ожидающие выплаты."""
        stmt = (
            select(PaymentHold)
            .where(
                PaymentHold.seller_id == seller_id,
                PaymentHold.status == PaymentHoldStatus.HELD.value,
            )
            .order_by(PaymentHold.release_at)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_for_seller(self, seller_id: uuid.UUID) -> list[PaymentHold]:
        """Все удержания продавца, новые первыми."""
        stmt = (
            select(PaymentHold)
            .where(PaymentHold.seller_id == seller_id)
            .order_by(PaymentHold.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_due_ids(self, now: datetime | None = None) -> list[uuid.UUID]:
        """ID удержаний, срок которых истёк."""
        stmt = select(PaymentHold.id).where(
            PaymentHold.status == PaymentHoldStatus.HELD.value,
            PaymentHold.release_at <= (now or utcnow()),
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
