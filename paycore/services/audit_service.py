"""Журнал аудита платежей."""
import json
import logging
import uuid
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.core.clock import utcnow
from paycore.models.payment import Payment, PaymentAuditLog

logger = logging.getLogger(__name__)


def _jsonable(data: dict[str, Any] | None) -> dict[str, Any]:
    """Decimal, UUID и datetime приводим к строкам для JSON-колонок."""
    if not data:
        return {}
    return json.loads(json.dumps(data, default=str))


class AuditService:
    """
    Аудит переходов платежа.

    Основной источник - таблица payment_audit_logs с ключом (payment_id, sequence),
    запись идёт в той же транзакции, что и переход, но внутри SAVEPOINT: ошибка
    записи аудита логируется и не откатывает сам платёж. Копия записи добавляется
    в payment.payment_metadata["audit_history"] для отладки.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _next_sequence(self, payment_id: uuid.UUID) -> int:
        stmt = select(func.max(PaymentAuditLog.sequence)).where(PaymentAuditLog.payment_id == payment_id)
        result = await self.db.execute(stmt)
        return (result.scalar_one_or_none() or 0) + 1

    async def record(
        self,
        payment: Payment,
        action: str,
        old_status: str | None = None,
        new_status: str | None = None,
        actor_id: uuid.UUID | None = None,
        extra: dict[str, Any] | None = None,
        trail: bool = True,
    ) -> PaymentAuditLog | None:
        """
        Записать действие над платежом. Вызывается внутри транзакции перехода.

        trail=False: только строка в payment_audit_logs, metadata платежа не трогаем.
        """
        action = f"payment.{action}"
        extra = _jsonable(extra)
        old_status = str(getattr(old_status, "value", old_status)) if old_status else None
        new_status = str(getattr(new_status, "value", new_status)) if new_status else None

        # Ошибки самого перехода не должны маскироваться под ошибку аудита
        await self.db.flush()

        entry = None
        try:
            async with self.db.begin_nested():
                entry = PaymentAuditLog(
                    payment_id=payment.id,
                    sequence=await self._next_sequence(payment.id),
                    action=action,
                    actor_id=actor_id,
                    old_status=old_status,
                    new_status=new_status,
                    extra=extra or None,
                )
                self.db.add(entry)
        except SQLAlchemyError as e:
            logger.error(f"❌ Не удалось записать аудит {action} для платежа {payment.id}: {e}", exc_info=True)
            entry = None

        if not trail:
            return entry

        metadata = dict(payment.payment_metadata or {})
        history = list(metadata.get("audit_history") or [])
        history.append({
            "action": action,
            "timestamp": utcnow().isoformat(),
            "actor_id": str(actor_id) if actor_id else None,
            "old_status": old_status,
            "new_status": new_status,
            **extra,
        })
        metadata["audit_history"] = history
        payment.payment_metadata = metadata

        return entry

    async def list_for_payment(self, payment_id: uuid.UUID) -> list[PaymentAuditLog]:
        stmt = (
            select(PaymentAuditLog)
            .where(PaymentAuditLog.payment_id == payment_id)
            .order_by(PaymentAuditLog.sequence)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
