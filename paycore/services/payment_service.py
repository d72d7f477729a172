"""Сервис платежей: жизненный цикл оплаты заказа."""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from paycore.config import Settings, settings as default_settings
from paycore.core.clock import utcnow
from paycore.core.events import (
    HOLD_RELEASED,
    ORDER_PAID,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
    EventService,
    event_service,
)
from paycore.core.exceptions import (
    AlreadyRefunded,
    ConcurrencyConflict,
    IntegrityFailure,
    InvalidRefundAmount,
    InvalidTransition,
    NotOrderOwner,
    OrderNotAwaitingPayment,
    OrderNotFound,
    PaymentError,
    PaymentNotFound,
    ProviderRejected,
    ProviderTransientError,
    ProviderUnavailable,
)
from paycore.models.order import Order, OrderStatus
from paycore.models.payment import (
    Payment,
    PaymentAuditLog,
    PaymentHold,
    PaymentProviderName,
    PaymentStatus,
)
from paycore.models.product import Product, ProductStatus
from paycore.providers import BuyerContext, PaymentProvider, ProviderRegistry, RefundOutcome
from paycore.services.audit_service import AuditService
from paycore.services.hold_service import HoldService
from paycore.services.signature import IntegrityVerifier

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled by user"
EXPIRED_REASON = "timed out"

AMOUNT_QUANT = Decimal("0.01")


@dataclass
class TransitionResult:
    """Итог попытки перехода: applied=False - платёж уже был в конечном статусе."""

    payment: Payment
    applied: bool
    hold: PaymentHold | None = None


@dataclass
class CheckoutSession:
    payment: Payment
    payment_url: str | None
    payment_html: str | None
    expires_in: int
    reused: bool = False


@dataclass
class RefundSummary:
    payment: Payment
    refund_amount: Decimal
    provider_refund_id: str | None
    full_refund: bool


def _order_relations():
    return (
        selectinload(Order.buyer),
        selectinload(Order.seller),
        selectinload(Order.product),
    )


class PaymentService:
    """
    Машина состояний платежа.

    Переходы: pending -> completed, pending -> failed, completed -> refunded.
    Каждый переход блокирует строку платежа и перечитывает её внутри транзакции,
    поэтому повторная доставка webhook или гонка со sweeper'ом превращается в
    no-op. Запросы к провайдерам выполняются вне транзакций БД, события
    публикуются только после commit.
    """

    def __init__(
        self,
        db: AsyncSession,
        providers: ProviderRegistry | None = None,
        events: EventService | None = None,
        verifier: IntegrityVerifier | None = None,
        config: Settings | None = None,
    ):
        self.db = db
        self.config = config or default_settings
        self.providers = providers or ProviderRegistry.from_settings(self.config)
        self.events = events or event_service
        self.verifier = verifier or IntegrityVerifier.from_settings(self.config)
        self.audit = AuditService(db)
        self.holds = HoldService(db, hold_days=self.config.payment_hold_days)

    # ---------------------------------------------------------------- загрузка

    async def _get_payment(self, payment_id: uuid.UUID) -> Payment | None:
        result = await self.db.execute(select(Payment).where(Payment.id == payment_id))
        return result.scalar_one_or_none()

    async def _lock_payment(self, payment_id: uuid.UUID) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_order(self, order_id: uuid.UUID) -> Order | None:
        stmt = select(Order).where(Order.id == order_id).options(*_order_relations())
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_order(self, order_id: uuid.UUID) -> Order | None:
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .options(*_order_relations())
            .with_for_update(of=Order)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_pending(self, order_id: uuid.UUID) -> Payment | None:
        stmt = (
            select(Payment)
            .where(
                Payment.order_id == order_id,
                Payment.status == PaymentStatus.PENDING.value,
            )
            .order_by(Payment.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def _find_by_provider_ref(
        self,
        provider: PaymentProviderName,
        token: str | None = None,
        conversation_id: str | None = None,
    ) -> Payment | None:
        conditions = []
        if token:
            conditions.append(Payment.provider_token == token)
        if conversation_id:
            conditions.append(Payment.provider_conversation_id == conversation_id)
        if not conditions:
            return None

        stmt = (
            select(Payment)
            .where(Payment.provider == provider.value, or_(*conditions))
            .order_by(Payment.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    def _ensure_participant(order: Order, user_id: uuid.UUID):
        if user_id not in (order.buyer_id, order.seller_id):
            raise NotOrderOwner()

    async def _set_order_status(self, order: Order, status: OrderStatus):
        """Смена статуса заказа с проверкой version (оптимистическая блокировка)."""
        stmt = (
            update(Order)
            .where(Order.id == order.id, Order.version == order.version)
            .values(status=status.value, version=order.version + 1, updated_at=utcnow())
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            logger.warning(f"⚠️ Заказ {order.id} изменён параллельно (version={order.version})")
            raise ConcurrencyConflict()

    # ------------------------------------------------------------- переходы

    async def apply_success(
        self,
        payment_id: uuid.UUID,
        provider_transaction_id: str | None,
        extra: dict[str, Any] | None = None,
        actor_id: uuid.UUID | None = None,
    ) -> TransitionResult:
        """
        pending -> completed.

        В одной транзакции: платёж завершён, заказ оплачен, товар продан,
        создано удержание для продавца, записан аудит. После commit публикуется
        order.paid. Повторный вызов для того же платежа ничего не меняет.
        """
        try:
            payment = await self._lock_payment(payment_id)
            if not payment:
                raise PaymentNotFound()

            if payment.status != PaymentStatus.PENDING:
                if payment.status == PaymentStatus.COMPLETED:
                    logger.info(f"ℹ️ Платёж {payment.id} уже завершён, повторное подтверждение пропущено")
                else:
                    logger.warning(
                        f"⚠️ Подтверждение оплаты для платежа {payment.id} в статусе {payment.status} "
                        f"проигнорировано, требуется ручная сверка (transaction={provider_transaction_id})"
                    )
                await self.db.commit()
                return TransitionResult(payment=payment, applied=False)

            order = await self._lock_order(payment.order_id)
            if not order:
                raise OrderNotFound()
            if order.status != OrderStatus.PENDING_PAYMENT:
                logger.warning(f"⚠️ Заказ {order.id} в статусе {order.status}, но оплата подтверждена провайдером")

            now = utcnow()
            old_status = payment.status
            payment.status = PaymentStatus.COMPLETED.value
            payment.provider_transaction_id = provider_transaction_id or payment.provider_transaction_id
            payment.paid_at = now
            if extra:
                metadata = dict(payment.payment_metadata or {})
                metadata.update(extra)
                payment.payment_metadata = metadata

            await self._set_order_status(order, OrderStatus.PAID)
            await self.db.execute(
                update(Product)
                .where(Product.id == order.product_id)
                .values(status=ProductStatus.SOLD.value, updated_at=now)
            )

            hold = await self.holds.create_hold(payment, order, now=now)

            await self.audit.record(
                payment,
                "completed",
                old_status,
                PaymentStatus.COMPLETED,
                actor_id=actor_id,
                extra={
                    "transaction_id": provider_transaction_id,
                    "hold_id": hold.id,
                    "hold_amount": hold.amount,
                },
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"✅ Платёж {payment.id} завершён, заказ {order.order_number} оплачен")

        try:
            await self.events.emit(ORDER_PAID, self._order_paid_payload(payment, order))
        except Exception as e:
            logger.error(f"❌ Не удалось опубликовать {ORDER_PAID} для заказа {order.id}: {e}", exc_info=True)

        return TransitionResult(payment=payment, applied=True, hold=hold)

    async def apply_failure(
        self,
        payment_id: uuid.UUID,
        reason: str,
        action: str = "failed",
        actor_id: uuid.UUID | None = None,
        extra: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """pending -> failed. Заказ остаётся в pending_payment и доступен для повторной оплаты."""
        try:
            payment = await self._lock_payment(payment_id)
            if not payment:
                raise PaymentNotFound()

            if payment.status != PaymentStatus.PENDING:
                logger.info(f"ℹ️ Платёж {payment.id} уже в статусе {payment.status}, переход в failed пропущен")
                await self.db.commit()
                return TransitionResult(payment=payment, applied=False)

            old_status = payment.status
            payment.status = PaymentStatus.FAILED.value
            payment.failure_reason = reason
            await self.audit.record(
                payment,
                action,
                old_status,
                PaymentStatus.FAILED,
                actor_id=actor_id,
                extra={"reason": reason, **(extra or {})},
            )
            order = await self._get_order(payment.order_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Платёж {payment.id} -> failed ({action}): {reason}")

        try:
            await self.events.emit(PAYMENT_FAILED, self._payment_failed_payload(payment, order))
        except Exception as e:
            logger.error(f"❌ Не удалось опубликовать {PAYMENT_FAILED} для платежа {payment.id}: {e}", exc_info=True)

        return TransitionResult(payment=payment, applied=True)

    async def refund(
        self,
        order_id: uuid.UUID,
        amount: Decimal | None = None,
        actor_id: uuid.UUID | None = None,
        is_admin: bool = False,
    ) -> RefundSummary:
        """
        completed -> refunded.

        Сначала возврат у провайдера (вне транзакции), затем в одной транзакции:
        платёж refunded, удержание cancelled, при полном возврате заказ cancelled.
        Частичный возврат статус заказа не меняет. Возврат оформляет продавец
        заказа или администратор.
        """
        order = await self._get_order(order_id)
        if not order:
            raise OrderNotFound()
        if actor_id is not None and not is_admin and order.seller_id != actor_id:
            raise NotOrderOwner("Возврат может оформить только продавец заказа")

        stmt = (
            select(Payment)
            .where(
                Payment.order_id == order_id,
                Payment.status.in_([PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value]),
            )
            .order_by(Payment.created_at.desc())
        )
        result = await self.db.execute(stmt)
        payment = result.scalars().first()

        if not payment:
            raise PaymentNotFound("Завершённый платёж по заказу не найден")
        if payment.status == PaymentStatus.REFUNDED:
            raise AlreadyRefunded()

        try:
            refund_amount = payment.amount if amount is None else Decimal(str(amount)).quantize(AMOUNT_QUANT)
        except InvalidOperation:
            raise InvalidRefundAmount()
        if refund_amount <= 0 or refund_amount > payment.amount:
            raise InvalidRefundAmount(f"Сумма возврата должна быть больше 0 и не больше {payment.amount}")

        adapter = self.providers.get(payment.provider)
        reference = adapter.transaction_reference(payment)
        if not reference:
            logger.error(f"❌ У платежа {payment.id} нет идентификатора транзакции провайдера")
            raise ProviderRejected("Идентификатор транзакции провайдера не найден")

        provider_result = await adapter.refund(reference, refund_amount, currency=payment.currency)
        if provider_result.outcome == RefundOutcome.ALREADY_REFUNDED:
            logger.error(f"❌ Провайдер сообщил, что платёж {payment.id} уже возвращён: {provider_result.error_message}")
            raise AlreadyRefunded()
        if provider_result.outcome != RefundOutcome.SUCCESS:
            logger.error(f"❌ Возврат по платежу {payment.id} отклонён: {provider_result.error_message}")
            raise ProviderRejected(provider_result.error_message or "Возврат отклонён провайдером")

        full_refund = refund_amount >= payment.amount
        try:
            payment = await self._lock_payment(payment.id)
            if payment.status != PaymentStatus.COMPLETED:
                # Параллельный возврат успел раньше
                logger.error(
                    f"❌ Платёж {payment.id} в статусе {payment.status} после возврата у провайдера, "
                    f"требуется ручная сверка"
                )
                raise AlreadyRefunded()

            now = utcnow()
            old_status = payment.status
            payment.status = PaymentStatus.REFUNDED.value
            metadata = dict(payment.payment_metadata or {})
            metadata.update({
                "refund_amount": str(refund_amount),
                "refunded_at": now.isoformat(),
                "provider_refund_id": provider_result.provider_refund_id,
                "partial_refund": not full_refund,
            })
            payment.payment_metadata = metadata

            await self.holds.cancel_for_payment(payment.id)

            order = await self._lock_order(payment.order_id)
            if not order:
                raise OrderNotFound()
            if full_refund:
                await self._set_order_status(order, OrderStatus.CANCELLED)

            await self.audit.record(
                payment,
                "refunded",
                old_status,
                PaymentStatus.REFUNDED,
                actor_id=actor_id,
                extra={
                    "refund_amount": refund_amount,
                    "provider_refund_id": provider_result.provider_refund_id,
                    "full_refund": full_refund,
                },
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"✅ Возврат {refund_amount} по платежу {payment.id} выполнен (полный: {full_refund})")

        try:
            await self.events.emit(
                PAYMENT_REFUNDED,
                {
                    "payment_id": str(payment.id),
                    "order_id": str(order.id),
                    "order_number": order.order_number,
                    "buyer_id": str(order.buyer_id),
                    "seller_id": str(order.seller_id),
                    "buyer_email": order.buyer.email if order.buyer else None,
                    "refund_amount": str(refund_amount),
                    "full_refund": full_refund,
                },
            )
        except Exception as e:
            logger.error(f"❌ Не удалось опубликовать {PAYMENT_REFUNDED} для платежа {payment.id}: {e}", exc_info=True)

        return RefundSummary(
            payment=payment,
            refund_amount=refund_amount,
            provider_refund_id=provider_result.provider_refund_id,
            full_refund=full_refund,
        )

    # ---------------------------------------------------- сессии оплаты

    async def initiate(
        self,
        order_id: uuid.UUID,
        buyer_id: uuid.UUID,
        provider: str,
        client_ip: str = "127.0.0.1",
    ) -> CheckoutSession:
        """
        Начать оплату заказа.

        Если у заказа уже есть pending-платёж, возвращается его сессия: одновременно
        у заказа может быть только один незавершённый платёж.
        """
        try:
            provider_name = PaymentProviderName(provider)
        except ValueError:
            raise ProviderUnavailable(f"Неизвестный платёжный провайдер: {provider}")
        adapter = self.providers.get(provider_name)

        try:
            order = await self._lock_order(order_id)
            if not order:
                raise OrderNotFound()
            if order.buyer_id != buyer_id:
                raise NotOrderOwner("Вы не можете оплатить этот заказ")
            if order.status != OrderStatus.PENDING_PAYMENT:
                raise OrderNotAwaitingPayment()

            existing = await self._find_pending(order.id)
            if existing:
                await self.db.commit()
            else:
                adapter.ensure_configured()

                payment = Payment(
                    order_id=order.id,
                    amount=order.total_amount,
                    currency=order.currency,
                    provider=provider_name.value,
                    status=PaymentStatus.PENDING.value,
                    payment_metadata={},
                )
                self.db.add(payment)
                await self.db.flush()
                await self.audit.record(
                    payment,
                    "created",
                    None,
                    PaymentStatus.PENDING,
                    actor_id=buyer_id,
                    extra={"amount": payment.amount, "provider": provider_name.value},
                )
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if existing:
            metadata = existing.payment_metadata or {}
            logger.info(f"ℹ️ Для заказа {order.id} уже есть ожидающий платёж {existing.id}")
            if not (metadata.get("payment_url") or metadata.get("payment_html")):
                # Прошлая попытка создать сессию у провайдера не получила ответа
                return await self._open_session(existing, order, self.providers.get(existing.provider), client_ip)
            return CheckoutSession(
                payment=existing,
                payment_url=metadata.get("payment_url"),
                payment_html=metadata.get("payment_html"),
                expires_in=self.config.payment_expires_in_seconds,
                reused=True,
            )

        logger.info(f"Создан платёж {payment.id} ({provider_name.value}) для заказа {order.order_number}")
        return await self._open_session(payment, order, adapter, client_ip)

    async def _open_session(
        self,
        payment: Payment,
        order: Order,
        adapter: PaymentProvider,
        client_ip: str,
    ) -> CheckoutSession:
        """Создать сессию у провайдера для уже сохранённого pending-платежа."""
        try:
            session = await adapter.initialize(order, payment, BuyerContext(client_ip=client_ip))
        except ProviderTransientError:
            # Сессия у провайдера могла создаться: платёж остаётся pending до sweeper'а
            logger.error(f"❌ Провайдер {adapter.name} не ответил при создании сессии для платежа {payment.id}")
            raise
        except PaymentError as e:
            logger.error(f"❌ Провайдер {adapter.name} отклонил создание сессии для платежа {payment.id}: {e}")
            await self.apply_failure(payment.id, str(e), action="initialization_failed")
            raise

        try:
            payment = await self._lock_payment(payment.id)
            payment.provider_token = session.provider_token
            payment.provider_conversation_id = session.conversation_id
            metadata = dict(payment.payment_metadata or {})
            metadata.update({k: v for k, v in session.extra.items() if v is not None})
            metadata["payment_url"] = session.redirect_url
            metadata["payment_html"] = session.html
            payment.payment_metadata = metadata
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"✅ Сессия {adapter.name} создана для платежа {payment.id}")
        return CheckoutSession(
            payment=payment,
            payment_url=session.redirect_url,
            payment_html=session.html,
            expires_in=self.config.payment_expires_in_seconds,
        )

    async def retry(
        self,
        payment_id: uuid.UUID,
        requester_id: uuid.UUID,
        client_ip: str = "127.0.0.1",
    ) -> CheckoutSession:
        """Повторить неуспешный платёж: создаётся новая строка, старая не меняется."""
        original = await self._get_payment(payment_id)
        if not original:
            raise PaymentNotFound()
        order = await self._get_order(original.order_id)
        if not order:
            raise OrderNotFound()
        self._ensure_participant(order, requester_id)

        if original.status != PaymentStatus.FAILED:
            raise InvalidTransition("Повторить можно только неуспешный платёж")

        adapter = self.providers.get(original.provider)
        adapter.ensure_configured()

        try:
            order = await self._lock_order(order.id)
            if order.status != OrderStatus.PENDING_PAYMENT:
                raise OrderNotAwaitingPayment("Статус заказа не позволяет повторить оплату")
            if await self._find_pending(order.id):
                raise InvalidTransition("По заказу уже есть незавершённый платёж")

            now = utcnow()
            payment = Payment(
                order_id=order.id,
                amount=original.amount,
                currency=original.currency,
                provider=original.provider,
                status=PaymentStatus.PENDING.value,
                payment_metadata={
                    "retried_from": str(original.id),
                    "retried_at": now.isoformat(),
                },
            )
            self.db.add(payment)
            await self.db.flush()

            await self.audit.record(
                payment,
                "retried",
                None,
                PaymentStatus.PENDING,
                actor_id=requester_id,
                extra={"retried_from": original.id},
            )
            await self.audit.record(
                original,
                "retried",
                original.status,
                original.status,
                actor_id=requester_id,
                extra={"new_payment_id": payment.id},
                trail=False,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Платёж {original.id} повторён новым платежом {payment.id}")
        return await self._open_session(payment, order, adapter, client_ip)

    async def cancel(self, payment_id: uuid.UUID, requester_id: uuid.UUID) -> TransitionResult:
        """Отмена ожидающего платежа участником заказа."""
        payment = await self._get_payment(payment_id)
        if not payment:
            raise PaymentNotFound()
        order = await self._get_order(payment.order_id)
        if not order:
            raise OrderNotFound()
        self._ensure_participant(order, requester_id)

        if payment.status != PaymentStatus.PENDING:
            raise InvalidTransition("Отменить можно только ожидающий платёж")

        result = await self.apply_failure(payment.id, CANCELLED_REASON, action="cancelled", actor_id=requester_id)
        if not result.applied:
            raise InvalidTransition("Платёж уже обработан")
        return result

    # ------------------------------------------------------------- webhooks

    async def _verify_and_apply(self, payment: Payment) -> TransitionResult | None:
        """Запросить итог у провайдера и применить его. Таймаут оставляет платёж pending."""
        adapter = self.providers.get(payment.provider)
        reference = adapter.verification_reference(payment)
        if not reference:
            logger.warning(f"⚠️ У платежа {payment.id} нет ссылки для проверки у провайдера")
            return None

        result = await adapter.verify(reference)

        if result.is_success:
            if result.raw_amount is not None and result.raw_amount < payment.amount:
                logger.error(
                    f"❌ Сумма оплаты {result.raw_amount} меньше суммы платежа {payment.amount} "
                    f"(платёж {payment.id})"
                )
                raise IntegrityFailure("Сумма оплаты не совпадает с суммой платежа")
            extra = {k: v for k, v in result.extra.items() if v is not None}
            return await self.apply_success(payment.id, result.provider_transaction_id, extra=extra)

        return await self.apply_failure(payment.id, result.error_message or "Оплата отклонена провайдером")

    async def handle_iyzico_callback(
        self,
        raw_body: bytes,
        signature: str | None,
        fields: dict[str, Any],
    ) -> TransitionResult | None:
        """
        Callback iyzico checkout form.

        Тело callback содержит только token; итог оплаты всегда берётся из
        запроса retrieve к провайдеру. None - платёж не найден (ответ 200,
        чтобы провайдер не повторял доставку).
        """
        self.verifier.verify_iyzico(raw_body, signature)

        token = fields.get("token")
        if not token:
            logger.warning("⚠️ Callback iyzico без token")
            return None

        payment = await self._find_by_provider_ref(
            PaymentProviderName.IYZICO,
            token=token,
            conversation_id=fields.get("conversationId"),
        )
        if not payment:
            logger.warning(f"⚠️ Платёж для iyzico token={token} не найден")
            return None

        if payment.status != PaymentStatus.PENDING:
            logger.info(f"ℹ️ Повторный callback iyzico для платежа {payment.id} ({payment.status})")
            return TransitionResult(payment=payment, applied=False)

        return await self._verify_and_apply(payment)

    async def handle_paytr_callback(self, fields: dict[str, Any]) -> TransitionResult | None:
        """Callback PayTR: итог оплаты приходит в самом запросе, подлинность проверяется по hash."""
        merchant_oid = str(fields.get("merchant_oid") or "")
        status = str(fields.get("status") or "")
        total_amount = str(fields.get("total_amount") or "")

        self.verifier.verify_paytr(merchant_oid, status, total_amount, fields.get("hash"))

        payment = await self._find_by_provider_ref(PaymentProviderName.PAYTR, conversation_id=merchant_oid)
        if not payment:
            logger.warning(f"⚠️ Платёж для PayTR merchant_oid={merchant_oid} не найден")
            return None

        if status == "success":
            try:
                paid = (Decimal(total_amount) / 100).quantize(AMOUNT_QUANT)
            except InvalidOperation:
                raise IntegrityFailure("Некорректная сумма в callback")
            if paid < payment.amount:
                logger.error(f"❌ PayTR сумма {paid} меньше суммы платежа {payment.amount} (платёж {payment.id})")
                raise IntegrityFailure("Сумма оплаты не совпадает с суммой платежа")
            return await self.apply_success(
                payment.id,
                merchant_oid,
                extra={"total_amount": total_amount, "payment_type": fields.get("payment_type")},
            )

        reason = fields.get("failed_reason_msg") or "PayTR: оплата не прошла"
        return await self.apply_failure(
            payment.id,
            reason,
            extra={"failed_reason_code": fields.get("failed_reason_code")},
        )

    async def verify_payment(self, payment_id: uuid.UUID, requester_id: uuid.UUID) -> TransitionResult | None:
        """Опрос провайдера по запросу участника (после возврата с платёжной страницы)."""
        payment = await self._get_payment(payment_id)
        if not payment:
            raise PaymentNotFound()
        order = await self._get_order(payment.order_id)
        if not order:
            raise OrderNotFound()
        self._ensure_participant(order, requester_id)

        if payment.status != PaymentStatus.PENDING:
            return TransitionResult(payment=payment, applied=False)
        return await self._verify_and_apply(payment)

    # ---------------------------------------------------------------- чтение

    async def get_payment(self, payment_id: uuid.UUID, requester_id: uuid.UUID, is_admin: bool = False) -> Payment:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .options(selectinload(Payment.order).selectinload(Order.product))
        )
        result = await self.db.execute(stmt)
        payment = result.scalar_one_or_none()
        if not payment:
            raise PaymentNotFound()
        if not is_admin:
            self._ensure_participant(payment.order, requester_id)
        return payment

    async def get_audit_log(self, payment_id: uuid.UUID) -> list[PaymentAuditLog]:
        """Журнал переходов платежа по порядку sequence."""
        return await self.audit.list_for_payment(payment_id)

    async def get_status(self, payment_id: uuid.UUID, requester_id: uuid.UUID) -> Payment:
        return await self.get_payment(payment_id, requester_id)

    async def list_user_payments(
        self,
        user_id: uuid.UUID,
        status: str | None = None,
        provider: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Payment], int]:
        """Платежи пользователя как покупателя или продавца, новые первыми."""
        conditions = [or_(Order.buyer_id == user_id, Order.seller_id == user_id)]
        if status:
            conditions.append(Payment.status == status)
        if provider:
            conditions.append(Payment.provider == provider)
        if start_date:
            conditions.append(Payment.created_at >= start_date)
        if end_date:
            conditions.append(Payment.created_at <= end_date)

        count_stmt = (
            select(func.count(Payment.id))
            .select_from(Payment)
            .join(Order, Payment.order_id == Order.id)
            .where(*conditions)
        )
        total = (await self.db.execute(count_stmt)).scalar_one()

        stmt = (
            select(Payment)
            .join(Order, Payment.order_id == Order.id)
            .where(*conditions)
            .options(selectinload(Payment.order).selectinload(Order.product))
            .order_by(Payment.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    async def list_seller_holds(self, seller_id: uuid.UUID, held_only: bool = False) -> list[PaymentHold]:
        if held_only:
            return await self.holds.list_held_for_seller(seller_id)
        return await self.holds.list_for_seller(seller_id)

    # ------------------------------------------------------------- выплаты

    async def release_hold(self, hold_id: uuid.UUID, now: datetime | None = None) -> tuple[PaymentHold, bool]:
        """Выплатить удержание и опубликовать payment_hold.released."""
        hold, applied = await self.holds.release(hold_id, now=now)
        if applied:
            await self._emit_hold_released(hold)
        return hold, applied

    async def release_hold_for_order(self, order_id: uuid.UUID) -> tuple[PaymentHold, bool]:
        hold, applied = await self.holds.release_for_order(order_id)
        if applied:
            await self._emit_hold_released(hold)
        return hold, applied

    async def _emit_hold_released(self, hold: PaymentHold):
        try:
            await self.events.emit(
                HOLD_RELEASED,
                {
                    "hold_id": str(hold.id),
                    "payment_id": str(hold.payment_id),
                    "order_id": str(hold.order_id),
                    "seller_id": str(hold.seller_id),
                    "amount": str(hold.amount),
                    "released_at": hold.released_at.isoformat() if hold.released_at else None,
                },
            )
        except Exception as e:
            logger.error(f"❌ Не удалось опубликовать {HOLD_RELEASED} для удержания {hold.id}: {e}", exc_info=True)

    # ---------------------------------------------------------------- события

    @staticmethod
    def _order_paid_payload(payment: Payment, order: Order) -> dict[str, Any]:
        return {
            "order_id": str(order.id),
            "order_number": order.order_number,
            "payment_id": str(payment.id),
            "buyer_id": str(order.buyer_id),
            "seller_id": str(order.seller_id),
            "product_id": str(order.product_id),
            "product_title": order.product.title if order.product else None,
            "total_amount": str(order.total_amount),
            "commission_amount": str(order.commission_amount),
            "buyer_email": order.buyer.email if order.buyer else None,
            "buyer_name": order.buyer.display_name if order.buyer else None,
            "seller_email": order.seller.email if order.seller else None,
            "seller_name": order.seller.display_name if order.seller else None,
            "payment_method": payment.provider,
            "transaction_id": payment.provider_transaction_id,
            "shipping_address": order.shipping_address,
        }

    @staticmethod
    def _payment_failed_payload(payment: Payment, order: Order | None) -> dict[str, Any]:
        return {
            "payment_id": str(payment.id),
            "order_id": str(payment.order_id),
            "order_number": order.order_number if order else None,
            "buyer_id": str(order.buyer_id) if order else None,
            "buyer_email": order.buyer.email if order and order.buyer else None,
            "reason": payment.failure_reason,
        }
