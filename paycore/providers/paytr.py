"""PayTR: оплата через iframe token."""
import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import httpx

from paycore.core.exceptions import ProviderRejected, ProviderTransientError
from paycore.models.order import Order
from paycore.models.payment import Payment, PaymentProviderName
from paycore.providers.base import (
    DEFAULT_CITY,
    DEFAULT_PHONE,
    BuyerContext,
    CancelOutcome,
    CancelResult,
    InitializeResult,
    PaymentProvider,
    RefundOutcome,
    RefundResult,
    VerifyOutcome,
    VerifyResult,
    format_amount,
    split_name,
)

logger = logging.getLogger(__name__)

PAYTR_BASE_URL = "https://www.paytr.com"
GET_TOKEN_PATH = "/odeme/api/get-token"
STATUS_QUERY_PATH = "/odeme/durum-sorgu"
REFUND_PATH = "/odeme/iade"
IFRAME_URL = "https://www.paytr.com/odeme/guvenli/{token}"

ALREADY_REFUNDED_MARKERS = ("already refunded", "zaten iade", "iade edilmiş", "iade tutarı")


@dataclass
class PayTRCredentials:
    merchant_id: str
    merchant_key: str
    merchant_salt: str
    test_mode: bool = True
    base_url: str = PAYTR_BASE_URL
    frontend_url: str = "http://localhost:3000"

    @property
    def is_complete(self) -> bool:
        return bool(self.merchant_id and self.merchant_key and self.merchant_salt)


def paytr_hmac(merchant_key: str, message: str) -> str:
    """base64(HMAC-SHA256(merchant_key, message)) - формат всех токенов PayTR."""
    digest = hmac.new(merchant_key.encode(), message.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def to_kurus(amount: Decimal) -> int:
    """PayTR принимает сумму в копейках (куруш)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def merchant_oid_for(payment: Payment) -> str:
    """merchant_oid: только буквы и цифры, уникален для каждой попытки оплаты."""
    return payment.id.hex


class PayTRProvider(PaymentProvider):
    """Провайдер с iframe: итог приходит в callback, может быть запрошен через durum-sorgu."""

    name = PaymentProviderName.PAYTR.value

    def __init__(
        self,
        credentials: PayTRCredentials,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self.credentials = credentials

    @property
    def is_configured(self) -> bool:
        return self.credentials.is_complete

    def _url(self, path: str) -> str:
        return f"{self.credentials.base_url.rstrip('/')}{path}"

    def build_token_request(self, order: Order, payment: Payment, buyer: BuyerContext) -> dict:
        c = self.credentials
        shipping = order.shipping_address or {}
        first_name, last_name = split_name(order.buyer.display_name)

        merchant_oid = merchant_oid_for(payment)
        payment_amount = str(to_kurus(payment.amount))
        basket = [[order.product.title, format_amount(payment.amount), 1]]
        user_basket = base64.b64encode(json.dumps(basket, ensure_ascii=False).encode()).decode()
        no_installment = "1"
        max_installment = "0"
        currency = "TL"
        test_mode = "1" if c.test_mode else "0"

        hash_str = (
            f"{c.merchant_id}{buyer.client_ip}{merchant_oid}{order.buyer.email}"
            f"{payment_amount}{user_basket}{no_installment}{max_installment}{currency}{test_mode}"
        )

        return {
            "merchant_id": c.merchant_id,
            "user_ip": buyer.client_ip,
            "merchant_oid": merchant_oid,
            "email": order.buyer.email,
            "payment_amount": payment_amount,
            "paytr_token": paytr_hmac(c.merchant_key, hash_str + c.merchant_salt),
            "user_basket": user_basket,
            "debug_on": "1" if c.test_mode else "0",
            "no_installment": no_installment,
            "max_installment": max_installment,
            "user_name": f"{first_name} {last_name}".strip(),
            "user_address": shipping.get("address") or shipping.get("fullAddress") or "Türkiye",
            "user_phone": shipping.get("phone") or order.buyer.phone or DEFAULT_PHONE,
            "user_city": shipping.get("city") or DEFAULT_CITY,
            "merchant_ok_url": f"{c.frontend_url.rstrip('/')}/payment/success?paymentId={payment.id}",
            "merchant_fail_url": f"{c.frontend_url.rstrip('/')}/payment/fail?paymentId={payment.id}",
            "timeout_limit": "30",
            "currency": currency,
            "test_mode": test_mode,
            "lang": "tr",
        }

    async def initialize(self, order: Order, payment: Payment, buyer: BuyerContext) -> InitializeResult:
        self.ensure_configured()
        logger.info(f"Инициализация PayTR iframe для платежа {payment.id}, заказ {order.id}")

        request = self.build_token_request(order, payment, buyer)
        response = await self._post(self._url(GET_TOKEN_PATH), data=request)
        result = self._json(response)

        if result.get("status") != "success" or not result.get("token"):
            logger.warning(f"PayTR get-token отклонён: {result.get('reason')}")
            raise ProviderRejected(result.get("reason") or "PayTR: не удалось начать оплату")

        iframe_url = IFRAME_URL.format(token=result["token"])
        return InitializeResult(
            redirect_url=iframe_url,
            html=(
                f'<iframe src="{iframe_url}" frameborder="0" '
                f'style="width:100%;height:600px;border:none;"></iframe>'
            ),
            provider_token=result["token"],
            conversation_id=request["merchant_oid"],
        )

    async def verify(self, token: str) -> VerifyResult:
        """Запрос статуса по merchant_oid (durum-sorgu)."""
        self.ensure_configured()
        c = self.credentials
        logger.info(f"Запрос статуса PayTR, merchant_oid={token}")

        response = await self._post(
            self._url(STATUS_QUERY_PATH),
            data={
                "merchant_id": c.merchant_id,
                "merchant_oid": token,
                "paytr_token": paytr_hmac(c.merchant_key, f"{c.merchant_id}{token}{c.merchant_salt}"),
            },
        )
        result = self._json(response)

        if result.get("status") != "success":
            # Ошибка запроса или заказ ещё не найден: отказ в оплате PayTR сообщает только через callback
            logger.warning(f"⚠️ PayTR durum-sorgu без итога, merchant_oid={token}: {result.get('err_msg')}")
            raise ProviderTransientError("PayTR: итог оплаты временно недоступен")

        raw_amount = None
        if result.get("payment_amount") is not None:
            try:
                raw_amount = Decimal(str(result["payment_amount"]))
            except InvalidOperation:
                logger.warning(f"PayTR вернул некорректный payment_amount: {result.get('payment_amount')}")
        return VerifyResult(
            outcome=VerifyOutcome.SUCCESS,
            provider_transaction_id=token,
            raw_amount=raw_amount,
        )

    async def refund(self, transaction_ref: str, amount: Decimal, currency: str = "TRY") -> RefundResult:
        # iade возвращает в валюте исходного платежа, отдельного поля валюты нет
        self.ensure_configured()
        c = self.credentials
        return_amount = format_amount(amount)
        logger.info(f"Возврат PayTR: merchant_oid={transaction_ref}, amount={return_amount}")

        response = await self._post(
            self._url(REFUND_PATH),
            data={
                "merchant_id": c.merchant_id,
                "merchant_oid": transaction_ref,
                "return_amount": return_amount,
                "paytr_token": paytr_hmac(
                    c.merchant_key, f"{c.merchant_id}{transaction_ref}{return_amount}{c.merchant_salt}"
                ),
            },
        )
        result = self._json(response)

        if result.get("status") == "success":
            return RefundResult(
                outcome=RefundOutcome.SUCCESS,
                provider_refund_id=str(result.get("merchant_oid") or transaction_ref),
            )

        message = result.get("err_msg") or "PayTR: возврат не выполнен"
        if any(marker in message.lower() for marker in ALREADY_REFUNDED_MARKERS):
            return RefundResult(outcome=RefundOutcome.ALREADY_REFUNDED, error_message=message)
        return RefundResult(outcome=RefundOutcome.FAILURE, error_message=message)

    async def cancel(self, payment_ref: str) -> CancelResult:
        # У iframe API нет отмены: незавершённый токен просто истекает
        self.ensure_configured()
        return CancelResult(outcome=CancelOutcome.NOT_SUPPORTED)

    def transaction_reference(self, payment: Payment) -> str | None:
        return payment.provider_conversation_id or payment.provider_transaction_id

    def verification_reference(self, payment: Payment) -> str | None:
        return payment.provider_conversation_id
