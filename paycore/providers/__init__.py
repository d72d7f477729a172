"""Платёжные провайдеры: iyzico (checkout form) и PayTR (iframe token)."""
from paycore.config import Settings, settings as default_settings
from paycore.core.exceptions import ProviderUnavailable
from paycore.models.payment import PaymentProviderName
from paycore.providers.base import (
    BuyerContext,
    CancelOutcome,
    CancelResult,
    InitializeResult,
    PaymentProvider,
    RefundOutcome,
    RefundResult,
    VerifyOutcome,
    VerifyResult,
)
from paycore.providers.iyzico import IyzicoCredentials, IyzicoProvider
from paycore.providers.paytr import PayTRCredentials, PayTRProvider


class ProviderRegistry:
    """Закрытый набор провайдеров, собранный из явной конфигурации."""

    def __init__(self, providers: dict[str, PaymentProvider]):
        self._providers = providers

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "ProviderRegistry":
        config = config or default_settings
        return cls({
            PaymentProviderName.IYZICO.value: IyzicoProvider(
                IyzicoCredentials(
                    api_key=config.iyzico_api_key,
                    secret_key=config.iyzico_secret_key,
                    base_url=config.iyzico_base_url,
                    callback_base_url=config.frontend_url,
                ),
                timeout=config.provider_timeout_seconds,
            ),
            PaymentProviderName.PAYTR.value: PayTRProvider(
                PayTRCredentials(
                    merchant_id=config.paytr_merchant_id,
                    merchant_key=config.paytr_merchant_key,
                    merchant_salt=config.paytr_merchant_salt,
                    test_mode=config.paytr_test_mode,
                    frontend_url=config.frontend_url,
                ),
                timeout=config.provider_timeout_seconds,
            ),
        })

    def get(self, name: str) -> PaymentProvider:
        provider = self._providers.get(str(getattr(name, "value", name)))
        if provider is None:
            raise ProviderUnavailable(f"Неизвестный платёжный провайдер: {name}")
        return provider


__all__ = [
    "BuyerContext",
    "CancelOutcome",
    "CancelResult",
    "InitializeResult",
    "IyzicoCredentials",
    "IyzicoProvider",
    "PayTRCredentials",
    "PayTRProvider",
    "PaymentProvider",
    "ProviderRegistry",
    "RefundOutcome",
    "RefundResult",
    "VerifyOutcome",
    "VerifyResult",
]
