"""Общий интерфейс платёжных провайдеров."""
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx

from paycore.core.exceptions import ProviderTransientError, ProviderUnavailable
from paycore.models.order import Order
from paycore.models.payment import Payment

logger = logging.getLogger(__name__)

DEFAULT_CITY = "İstanbul"
DEFAULT_COUNTRY = "Turkey"
DEFAULT_PHONE = "+905000000000"
DEFAULT_BUYER_NAME = "Müşteri"
BASKET_CATEGORY = "Koleksiyon"


class VerifyOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class RefundOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ALREADY_REFUNDED = "already_refunded"


class CancelOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    NOT_SUPPORTED = "not_supported"


@dataclass
class BuyerContext:
    """Данные запроса покупателя, которые нужны провайдеру."""

    client_ip: str = "127.0.0.1"


@dataclass
class InitializeResult:
    redirect_url: str
    provider_token: str | None = None
    conversation_id: str | None = None
    html: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class VerifyResult:
    outcome: VerifyOutcome
    provider_transaction_id: str | None = None
    raw_amount: Decimal | None = None
    error_message: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.outcome == VerifyOutcome.SUCCESS


@dataclass
class RefundResult:
    outcome: RefundOutcome
    provider_refund_id: str | None = None
    error_message: str | None = None


@dataclass
class CancelResult:
    outcome: CancelOutcome
    error_message: str | None = None


def split_name(display_name: str | None) -> tuple[str, str]:
    """Разбить отображаемое имя на имя и фамилию."""
    parts = (display_name or "").split()
    if not parts:
        return DEFAULT_BUYER_NAME, ""
    return parts[0], " ".join(parts[1:])


def format_amount(amount: Decimal) -> str:
    """Сумма строкой с двумя знаками после точки ("350.00")."""
    return f"{Decimal(amount):.2f}"


class PaymentProvider(ABC):
    """
    Адаптер внешнего платёжного провайдера.

    Каждый метод делает один сетевой вызов с явным таймаутом. Повторов здесь нет:
    решение о повторе принимает вызывающий код. Сетевые ошибки и таймауты
    превращаются в ProviderTransientError и никогда не считаются отказом в оплате.
    """

    name: str

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self._transport = transport

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        ...

    def ensure_configured(self):
        if not self.is_configured:
            logger.warning(f"⚠️ Провайдер {self.name} не настроен")
            raise ProviderUnavailable(f"Платёжный провайдер {self.name} не настроен")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        """POST к провайдеру; сетевые ошибки, 429 и 5xx считаются временными."""
        try:
            async with self._client() as client:
                response = await client.post(url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"❌ {self.name}: таймаут запроса {url}: {e}")
            raise ProviderTransientError(f"Таймаут запроса к {self.name}") from e
        except httpx.TransportError as e:
            logger.error(f"❌ {self.name}: сетевая ошибка {url}: {e}")
            raise ProviderTransientError(f"Сетевая ошибка при запросе к {self.name}") from e

        if response.status_code >= 500 or response.status_code == 429:
            logger.error(f"❌ {self.name}: HTTP {response.status_code} от {url}")
            raise ProviderTransientError(f"{self.name} вернул HTTP {response.status_code}")
        return response

    def _json(self, response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"❌ {self.name}: ответ не является JSON: {response.text[:200]}")
            raise ProviderTransientError(f"Некорректный ответ от {self.name}") from e
        if not isinstance(data, dict):
            raise ProviderTransientError(f"Некорректный ответ от {self.name}")
        return data

    @abstractmethod
    async def initialize(self, order: Order, payment: Payment, buyer: BuyerContext) -> InitializeResult:
        """Создать платёжную сессию и вернуть URL / HTML для покупателя."""

    @abstractmethod
    async def verify(self, token: str) -> VerifyResult:
        """
        Запросить у провайдера итог оплаты.

        FAILURE только при подтверждённом отказе. Неизвестный итог (ошибка запроса,
        оплата в процессе) -> ProviderTransientError, платёж остаётся pending.
        """

    @abstractmethod
    async def refund(self, transaction_ref: str, amount: Decimal, currency: str = "TRY") -> RefundResult:
        """Вернуть деньги (полностью или частично) в валюте платежа."""

    @abstractmethod
    async def cancel(self, payment_ref: str) -> CancelResult:
        """Отменить платёж у провайдера."""

    @abstractmethod
    def transaction_reference(self, payment: Payment) -> str | None:
        """Идентификатор, по которому провайдер принимает возврат."""

    @abstractmethod
    def verification_reference(self, payment: Payment) -> str | None:
        """Идентификатор, по которому провайдер отдаёт итог оплаты."""
