"""iyzico: оплата через checkout form."""
import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import httpx

from paycore.core.exceptions import ProviderRejected, ProviderTransientError
from paycore.models.order import Order
from paycore.models.payment import Payment, PaymentProviderName
from paycore.providers.base import (
    BASKET_CATEGORY,
    DEFAULT_CITY,
    DEFAULT_COUNTRY,
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

CHECKOUT_INITIALIZE_PATH = "/payment/iyzipos/checkoutform/initialize/auth/ecom"
CHECKOUT_RETRIEVE_PATH = "/payment/iyzipos/checkoutform/auth/ecom/detail"
REFUND_PATH = "/payment/refund"
CANCEL_PATH = "/payment/cancel"

ENABLED_INSTALLMENTS = [1, 2, 3, 6, 9]
# Признаки ответа "платёж уже возвращён" в тексте ошибки iyzico
ALREADY_REFUNDED_MARKERS = ("already refunded", "zaten iade", "iade edilmiş")


@dataclass
class IyzicoCredentials:
    api_key: str
    secret_key: str
    base_url: str = "https://sandbox-api.iyzipay.com"
    callback_base_url: str = "http://localhost:3000"

    @property
    def is_complete(self) -> bool:
        return bool(self.api_key and self.secret_key)


class IyzicoProvider(PaymentProvider):
    """Провайдер с checkout form: итог оплаты подтверждается запросом retrieve."""

    name = PaymentProviderName.IYZICO.value

    def __init__(
        self,
        credentials: IyzicoCredentials,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self.credentials = credentials

    @property
    def is_configured(self) -> bool:
        return self.credentials.is_complete

    def _auth_headers(self, uri_path: str, body: str) -> dict[str, str]:
        """Заголовок авторизации IYZWSv2 (HMAC-SHA256 от randomKey + path + body)."""
        random_key = f"{int(time.time() * 1000)}{secrets.token_hex(4)}"
        signature = hmac.new(
            self.credentials.secret_key.encode(),
            f"{random_key}{uri_path}{body}".encode(),
            hashlib.sha256,
        ).hexdigest()
        auth_string = (
            f"apiKey:{self.credentials.api_key}"
            f"&randomKey:{random_key}"
            f"&signature:{signature}"
        )
        return {
            "Authorization": f"IYZWSv2 {base64.b64encode(auth_string.encode()).decode()}",
            "x-iyzi-rnd": random_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _call(self, uri_path: str, request: dict) -> dict:
        self.ensure_configured()
        body = json.dumps(request, ensure_ascii=False)
        response = await self._post(
            f"{self.credentials.base_url.rstrip('/')}{uri_path}",
            content=body.encode("utf-8"),
            headers=self._auth_headers(uri_path, body),
        )
        result = self._json(response)
        if result.get("status") == "failure":
            logger.warning(
                f"iyzico {uri_path}: errorCode={result.get('errorCode')} errorMessage={result.get('errorMessage')}"
            )
        return result

    def _address(self, order: Order, first_name: str, last_name: str) -> dict:
        shipping = order.shipping_address or {}
        address = {
            "contactName": shipping.get("fullName") or f"{first_name} {last_name}".strip(),
            "city": shipping.get("city") or DEFAULT_CITY,
            "country": DEFAULT_COUNTRY,
            "address": shipping.get("address") or "",
        }
        if shipping.get("zipCode"):
            address["zipCode"] = shipping["zipCode"]
        return address

    def build_checkout_request(self, order: Order, payment: Payment, buyer: BuyerContext) -> dict:
        first_name, last_name = split_name(order.buyer.display_name)
        address = self._address(order, first_name, last_name)
        price = format_amount(payment.amount)
        callback_url = (
            f"{self.credentials.callback_base_url.rstrip('/')}/payment/callback/iyzico?paymentId={payment.id}"
        )

        return {
            "locale": "tr",
            "conversationId": str(payment.id),
            "price": price,
            "paidPrice": price,
            "currency": payment.currency or "TRY",
            "basketId": str(order.id),
            "paymentGroup": "PRODUCT",
            "callbackUrl": callback_url,
            "enabledInstallments": ENABLED_INSTALLMENTS,
            "buyer": {
                "id": str(order.buyer_id),
                "name": first_name,
                "surname": last_name or first_name,
                "gsmNumber": order.buyer.phone or DEFAULT_PHONE,
                "email": order.buyer.email,
                "identityNumber": "11111111111",
                "registrationAddress": address["address"] or address["city"],
                "ip": buyer.client_ip,
                "city": address["city"],
                "country": DEFAULT_COUNTRY,
            },
            "shippingAddress": address,
            "billingAddress": address,
            "basketItems": [
                {
                    "id": str(order.product_id),
                    "name": order.product.title,
                    "category1": BASKET_CATEGORY,
                    "itemType": "PHYSICAL",
                    "price": price,
                }
            ],
        }

    async def initialize(self, order: Order, payment: Payment, buyer: BuyerContext) -> InitializeResult:
        self.ensure_configured()
        logger.info(f"Инициализация iyzico checkout form для платежа {payment.id}, заказ {order.id}")

        result = await self._call(CHECKOUT_INITIALIZE_PATH, self.build_checkout_request(order, payment, buyer))

        if result.get("status") != "success":
            raise ProviderRejected(result.get("errorMessage") or "iyzico: не удалось начать оплату")

        page_url = result.get("paymentPageUrl")
        content = result.get("checkoutFormContent")
        if not page_url and not content:
            raise ProviderRejected("iyzico: платёжная страница не создана")

        return InitializeResult(
            redirect_url=page_url or f"{self.credentials.callback_base_url.rstrip('/')}/payment/iyzico/{payment.id}",
            html=None if page_url else content,
            provider_token=result.get("token"),
            conversation_id=str(payment.id),
            extra={
                "token": result.get("token"),
                "token_expire_time": result.get("tokenExpireTime"),
            },
        )

    async def verify(self, token: str) -> VerifyResult:
        """
        Итог оплаты по token checkout form.

        FAILURE возвращается только когда запрос выполнен и iyzico сообщил решение
        по платежу. Ошибка самого запроса (status=failure: системная ошибка,
        авторизация, лимиты) означает, что итог неизвестен.
        """
        logger.info(f"Запрос итога iyzico checkout form, token={token}")
        result = await self._call(CHECKOUT_RETRIEVE_PATH, {"locale": "tr", "token": token})

        if result.get("status") != "success":
            logger.error(
                f"❌ iyzico не вернул итог оплаты: errorCode={result.get('errorCode')} "
                f"errorMessage={result.get('errorMessage')}"
            )
            raise ProviderTransientError("iyzico: итог оплаты временно недоступен")

        if result.get("paymentStatus") == "SUCCESS":
            if not result.get("paymentId"):
                logger.error(f"❌ iyzico вернул SUCCESS без paymentId, token={token}")
                raise ProviderTransientError("iyzico: неполный ответ о результате оплаты")

            items = result.get("itemTransactions") or []
            raw_amount = None
            if result.get("paidPrice") is not None:
                try:
                    raw_amount = Decimal(str(result["paidPrice"]))
                except InvalidOperation:
                    logger.warning(f"iyzico вернул некорректный paidPrice: {result.get('paidPrice')}")
            return VerifyResult(
                outcome=VerifyOutcome.SUCCESS,
                provider_transaction_id=str(result["paymentId"]),
                raw_amount=raw_amount,
                extra={
                    "payment_transaction_id": items[0].get("paymentTransactionId") if items else None,
                    "installment": result.get("installment"),
                    "fraud_status": result.get("fraudStatus"),
                },
            )

        if result.get("paymentStatus") != "FAILURE":
            # INIT_THREEDS, CALLBACK_THREEDS и т.п.: оплата ещё не завершена
            logger.warning(f"⚠️ iyzico: оплата в процессе (paymentStatus={result.get('paymentStatus')}), token={token}")
            raise ProviderTransientError("iyzico: оплата ещё не завершена")

        return VerifyResult(
            outcome=VerifyOutcome.FAILURE,
            error_message=result.get("errorMessage") or "iyzico: оплата не прошла",
        )

    async def refund(self, transaction_ref: str, amount: Decimal, currency: str = "TRY") -> RefundResult:
        logger.info(f"Возврат iyzico: paymentTransactionId={transaction_ref}, amount={amount} {currency}")
        result = await self._call(
            REFUND_PATH,
            {
                "locale": "tr",
                "conversationId": f"REFUND-{int(time.time() * 1000)}",
                "paymentTransactionId": transaction_ref,
                "price": format_amount(amount),
                "currency": currency or "TRY",
                "ip": "127.0.0.1",
            },
        )

        if result.get("status") == "success":
            return RefundResult(
                outcome=RefundOutcome.SUCCESS,
                provider_refund_id=str(result.get("paymentId") or transaction_ref),
            )

        message = result.get("errorMessage") or "iyzico: возврат не выполнен"
        if any(marker in message.lower() for marker in ALREADY_REFUNDED_MARKERS):
            return RefundResult(outcome=RefundOutcome.ALREADY_REFUNDED, error_message=message)
        return RefundResult(outcome=RefundOutcome.FAILURE, error_message=message)

    async def cancel(self, payment_ref: str) -> CancelResult:
        logger.info(f"Отмена iyzico платежа {payment_ref}")
        result = await self._call(
            CANCEL_PATH,
            {
                "locale": "tr",
                "conversationId": f"CANCEL-{int(time.time() * 1000)}",
                "paymentId": payment_ref,
                "ip": "127.0.0.1",
            },
        )
        if result.get("status") == "success":
            return CancelResult(outcome=CancelOutcome.SUCCESS)
        return CancelResult(
            outcome=CancelOutcome.FAILURE,
            error_message=result.get("errorMessage") or "iyzico: отмена не выполнена",
        )

    def transaction_reference(self, payment: Payment) -> str | None:
        metadata = payment.payment_metadata or {}
        return metadata.get("payment_transaction_id") or payment.provider_transaction_id

    def verification_reference(self, payment: Payment) -> str | None:
        return payment.provider_token
