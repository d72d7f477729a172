"""Модели платежа и escrow-удержания."""
import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import String, Text, Numeric, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paycore.core.clock import utcnow
from paycore.database import Base

if TYPE_CHECKING:
    from paycore.models.order import Order


class PaymentProviderName(str, enum.Enum):
    IYZICO = "iyzico"  # checkout form
    PAYTR = "paytr"  # iframe token


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentHoldStatus(str, enum.Enum):
    HELD = "held"
    RELEASED = "released"
    CANCELLED = "cancelled"


class Payment(Base):
    """
    Попытка оплаты заказа.

    У заказа может быть несколько платежей (повторные попытки), но одновременно
    не более одного в статусе pending. Строки никогда не удаляются.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="TRY")
    provider: Mapped[str] = mapped_column(String, nullable=False)  # iyzico / paytr
    status: Mapped[str] = mapped_column(String, nullable=False, default=PaymentStatus.PENDING.value, index=True)
    provider_token: Mapped[str | None] = mapped_column(String, nullable=True, index=True)  # Токен checkout form / iframe
    provider_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_conversation_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)  # metadata зарезервировано в Base
    created_at: Mapped[datetime] = mapped_column(default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    order: Mapped["Order"] = relationship("Order")


class PaymentHold(Base):
    """Удержание средств продавца (escrow), ровно одно на завершённый платёж."""

    __tablename__ = "payment_holds"
    __table_args__ = (UniqueConstraint("payment_id", name="uq_payment_holds_payment_id"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("payments.id"), nullable=False)
    order_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    seller_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=PaymentHoldStatus.HELD.value, index=True)
    release_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    released_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class PaymentAuditLog(Base):
    """Журнал переходов платежа. Только добавление записей."""

    __tablename__ = "payment_audit_logs"
    __table_args__ = (UniqueConstraint("payment_id", "sequence", name="uq_payment_audit_logs_payment_sequence"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("payments.id"), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)  # payment.created / payment.completed / ...
    actor_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    old_status: Mapped[str | None] = mapped_column(String, nullable=True)
    new_status: Mapped[str | None] = mapped_column(String, nullable=True)
    extra: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
