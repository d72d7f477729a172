"""Payments API."""
import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.core.dependencies import get_client_ip, get_current_admin, get_current_user
from paycore.core.exceptions import (
    ConcurrencyConflict,
    IntegrityFailure,
    PaymentError,
    ProviderError,
)
from paycore.database import get_db
from paycore.models.payment import (
    Payment,
    PaymentAuditLog,
    PaymentHold,
    PaymentProviderName,
    PaymentStatus,
)
from paycore.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter()


class InitiatePaymentRequest(BaseModel):
    """Запрос на начало оплаты заказа."""

    order_id: uuid.UUID
    provider: PaymentProviderName


class InitiatePaymentResponse(BaseModel):
    payment_id: uuid.UUID
    payment_url: str | None = None
    payment_html: str | None = None
    provider: str
    expires_in: int


class RefundRequest(BaseModel):
    """Запрос на возврат. Без refund_amount возвращается вся сумма."""

    order_id: uuid.UUID
    refund_amount: Decimal | None = None


class PaymentStatusResponse(BaseModel):
    id: uuid.UUID
    order_id: uuid.UUID
    status: str
    amount: float
    currency: str
    provider: str
    failure_reason: str | None = None
    paid_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


def get_payment_service(db: AsyncSession = Depends(get_db)) -> PaymentService:
    return PaymentService(db)


def _http_error(e: PaymentError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


def serialize_payment(payment: Payment) -> dict:
    """Платёж для ответа API. Служебные данные провайдера наружу не отдаём."""
    metadata = payment.payment_metadata or {}
    data = {
        "id": str(payment.id),
        "order_id": str(payment.order_id),
        "status": payment.status,
        "amount": float(payment.amount),
        "currency": payment.currency,
        "provider": payment.provider,
        "failure_reason": payment.failure_reason,
        "retried_from": metadata.get("retried_from"),
        "refund_amount": metadata.get("refund_amount"),
        "refunded_at": metadata.get("refunded_at"),
        "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
    }
    if "order" in payment.__dict__ and payment.order is not None:
        data["order"] = {
            "id": str(payment.order.id),
            "order_number": payment.order.order_number,
            "status": payment.order.status,
            "product_title": payment.order.product.title if payment.order.product else None,
        }
    return data


def serialize_audit_entry(entry: PaymentAuditLog) -> dict:
    return {
        "sequence": entry.sequence,
        "action": entry.action,
        "actor_id": str(entry.actor_id) if entry.actor_id else None,
        "old_status": entry.old_status,
        "new_status": entry.new_status,
        "extra": entry.extra,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def serialize_hold(hold: PaymentHold) -> dict:
    return {
        "id": str(hold.id),
        "payment_id": str(hold.payment_id),
        "order_id": str(hold.order_id),
        "amount": float(hold.amount),
        "status": hold.status,
        "release_at": hold.release_at.isoformat(),
        "released_at": hold.released_at.isoformat() if hold.released_at else None,
        "created_at": hold.created_at.isoformat() if hold.created_at else None,
    }


def _parse_callback_body(request: Request, raw_body: bytes) -> dict:
    """Тело callback: JSON или application/x-www-form-urlencoded."""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            data = json.loads(raw_body or b"{}")
        except ValueError:
            logger.warning("⚠️ Callback с некорректным JSON")
            return {}
        return data if isinstance(data, dict) else {}
    return dict(parse_qsl(raw_body.decode("utf-8", errors="replace"), keep_blank_values=True))


# ---------------------------------------------------------------- оплата


@router.post("/initiate", response_model=InitiatePaymentResponse)
async def initiate_payment(
    body: InitiatePaymentRequest,
    request: Request,
    user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """
    Начать оплату заказа через iyzico или PayTR.

    Возвращает URL (или HTML) платёжной страницы провайдера.
    """
    try:
        session = await service.initiate(
            order_id=body.order_id,
            buyer_id=user["sub"],
            provider=body.provider.value,
            client_ip=get_client_ip(request),
        )
    except PaymentError as e:
        raise _http_error(e)

    return InitiatePaymentResponse(
        payment_id=session.payment.id,
        payment_url=session.payment_url,
        payment_html=session.payment_html,
        provider=session.payment.provider,
        expires_in=session.expires_in,
    )


# ---------------------------------------------------------------- webhooks


@router.post("/callback/iyzico")
async def iyzico_callback(
    request: Request,
    service: PaymentService = Depends(get_payment_service),
):
    """
    Callback iyzico checkout form.

    Подпись проверяется по сырому телу запроса. Ответ не раскрывает
    внутренних деталей: 401 - подпись неверна, 503 - временная ошибка
    (провайдер повторит доставку), иначе 200.
    """
    raw_body = await request.body()
    signature = request.headers.get("X-Iyzico-Signature")
    fields = {**dict(request.query_params), **_parse_callback_body(request, raw_body)}
    logger.info(f"Callback iyzico получен, token={fields.get('token')}")

    try:
        result = await service.handle_iyzico_callback(raw_body, signature, fields)
    except IntegrityFailure:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    except (ProviderError, ConcurrencyConflict, SQLAlchemyError) as e:
        logger.error(f"❌ Callback iyzico не обработан, ждём повторной доставки: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Temporarily unavailable")
    except PaymentError as e:
        logger.warning(f"⚠️ Callback iyzico отклонён: {e}")
        return {"ok": True}

    if result and result.applied:
        logger.info(f"✅ Callback iyzico обработан: платёж {result.payment.id} -> {result.payment.status}")
    return {"ok": True}


@router.post("/callback/paytr", response_class=PlainTextResponse)
async def paytr_callback(
    request: Request,
    service: PaymentService = Depends(get_payment_service),
):
    """Callback PayTR. PayTR ждёт в ответе ровно "OK", иначе повторяет доставку."""
    raw_body = await request.body()
    fields = _parse_callback_body(request, raw_body)
    logger.info(f"Callback PayTR получен, merchant_oid={fields.get('merchant_oid')}, status={fields.get('status')}")

    try:
        result = await service.handle_paytr_callback(fields)
    except IntegrityFailure:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    except (ProviderError, ConcurrencyConflict, SQLAlchemyError) as e:
        logger.error(f"❌ Callback PayTR не обработан, ждём повторной доставки: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Temporarily unavailable")
    except PaymentError as e:
        logger.warning(f"⚠️ Callback PayTR отклонён: {e}")
        return "OK"

    if result and result.applied:
        logger.info(f"✅ Callback PayTR обработан: платёж {result.payment.id} -> {result.payment.status}")
    return "OK"


# ---------------------------------------------------------------- списки


@router.get("/")
async def list_payments(
    status_filter: PaymentStatus | None = Query(None, alias="status"),
    provider: PaymentProviderName | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Платежи текущего пользователя (как покупателя или продавца)."""
    payments, total = await service.list_user_payments(
        user_id=user["sub"],
        status=status_filter.value if status_filter else None,
        provider=provider.value if provider else None,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return {
        "payments": [serialize_payment(p) for p in payments],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }


@router.get("/holds/me")
async def my_holds(
    held_only: bool = False,
    user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Удержания продавца: сумма к выплате и дата выплаты."""
    holds = await service.list_seller_holds(user["sub"], held_only=held_only)
    return {
        "holds": [serialize_hold(h) for h in holds],
        "total_held": float(sum((h.amount for h in holds if h.status == "held"), Decimal("0"))),
    }


@router.post("/holds/{order_id}/release")
async def release_hold(
    order_id: uuid.UUID,
    admin: dict = Depends(get_current_admin),
    service: PaymentService = Depends(get_payment_service),
):
    """Досрочная выплата удержания по заказу (только администратор)."""
    try:
        hold, applied = await service.release_hold_for_order(order_id)
    except PaymentError as e:
        raise _http_error(e)

    logger.info(f"Администратор {admin['sub']} выплатил удержание {hold.id} по заказу {order_id}")
    return {"hold": serialize_hold(hold), "released": applied}


@router.post("/refund")
async def refund_payment(
    body: RefundRequest,
    user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Возврат оплаты: полный или частичный."""
    try:
        summary = await service.refund(
            order_id=body.order_id,
            amount=body.refund_amount,
            actor_id=user["sub"],
            is_admin=user.get("role") == "admin",
        )
    except PaymentError as e:
        raise _http_error(e)

    return {
        "payment_id": str(summary.payment.id),
        "status": summary.payment.status,
        "refund_amount": float(summary.refund_amount),
        "full_refund": summary.full_refund,
    }


# ---------------------------------------------------------------- платёж


@router.get("/{payment_id}/status", response_model=PaymentStatusResponse)
async def payment_status(
    payment_id: uuid.UUID,
    user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    try:
        payment = await service.get_status(payment_id, user["sub"])
    except PaymentError as e:
        raise _http_error(e)

    return PaymentStatusResponse(
        id=payment.id,
        order_id=payment.order_id,
        status=payment.status,
        amount=float(payment.amount),
        currency=payment.currency,
        provider=payment.provider,
        failure_reason=payment.failure_reason,
        paid_at=payment.paid_at,
        created_at=payment.created_at,
        updated_at=payment.updated_at,
    )


@router.get("/{payment_id}")
async def get_payment(
    payment_id: uuid.UUID,
    user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    is_admin = user.get("role") == "admin"
    try:
        payment = await service.get_payment(payment_id, user["sub"], is_admin=is_admin)
    except PaymentError as e:
        raise _http_error(e)

    data = serialize_payment(payment)
    if is_admin:
        # Администратору отдаём журнал переходов для разбора спорных платежей
        data["audit_log"] = [serialize_audit_entry(entry) for entry in await service.get_audit_log(payment.id)]
    return data


@router.post("/{payment_id}/verify")
async def verify_payment(
    payment_id: uuid.UUID,
    user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Запросить итог оплаты у провайдера (после возврата с платёжной страницы)."""
    try:
        result = await service.verify_payment(payment_id, user["sub"])
    except PaymentError as e:
        raise _http_error(e)

    if result is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Платёж ещё не передан провайдеру")
    return serialize_payment(result.payment)


@router.post("/{payment_id}/retry", response_model=InitiatePaymentResponse)
async def retry_payment(
    payment_id: uuid.UUID,
    request: Request,
    user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Повторить неуспешный платёж новой попыткой."""
    try:
        session = await service.retry(payment_id, user["sub"], client_ip=get_client_ip(request))
    except PaymentError as e:
        raise _http_error(e)

    return InitiatePaymentResponse(
        payment_id=session.payment.id,
        payment_url=session.payment_url,
        payment_html=session.payment_html,
        provider=session.payment.provider,
        expires_in=session.expires_in,
    )


@router.post("/{payment_id}/cancel")
async def cancel_payment(
    payment_id: uuid.UUID,
    user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    try:
        result = await service.cancel(payment_id, user["sub"])
    except PaymentError as e:
        raise _http_error(e)
    return serialize_payment(result.payment)
