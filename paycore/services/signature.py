"""Проверка подлинности webhook от платёжных провайдеров."""
import base64
import hashlib
import hmac
import logging

from paycore.config import Settings, settings as default_settings
from paycore.core.exceptions import IntegrityFailure
from paycore.providers.paytr import paytr_hmac

logger = logging.getLogger(__name__)


class HmacSignaturePolicy:
    """
    iyzico: base64(HMAC-SHA256(secret, raw_body)) из заголовка X-Iyzico-Signature.

    Без секрета проверка пропускается с предупреждением (локальная разработка),
    если только конфигурация не требует подписи - тогда запрос отклоняется.
    """

    def __init__(self, secret: str, required: bool = False):
        self.secret = secret
        self.required = required

    def expected(self, raw_body: bytes) -> str:
        digest = hmac.new(self.secret.encode(), raw_body, hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def verify(self, raw_body: bytes, signature: str | None) -> bool:
        """True - подпись проверена, False - проверка пропущена. Иначе IntegrityFailure."""
        if not self.secret:
            if self.required:
                logger.error("❌ Секрет подписи iyzico не настроен, а проверка подписи обязательна")
                raise IntegrityFailure()
            logger.warning("⚠️ IYZICO_SECRET_KEY не настроен - проверка подписи webhook пропущена")
            return False

        if not signature:
            logger.error("❌ Webhook iyzico без заголовка подписи")
            raise IntegrityFailure()

        if not hmac.compare_digest(signature.encode(), self.expected(raw_body).encode()):
            logger.error("❌ Неверная подпись webhook iyzico")
            raise IntegrityFailure()

        logger.info("✅ Подпись iyzico проверена")
        return True


class HashPolicy:
    """PayTR: hash = base64(HMAC-SHA256(merchant_key, merchant_oid + salt + status + total_amount))."""

    def __init__(self, merchant_key: str, merchant_salt: str):
        self.merchant_key = merchant_key
        self.merchant_salt = merchant_salt

    def expected(self, merchant_oid: str, status: str, total_amount: str) -> str:
        return paytr_hmac(self.merchant_key, f"{merchant_oid}{self.merchant_salt}{status}{total_amount}")

    def verify(self, merchant_oid: str, status: str, total_amount: str, received_hash: str | None) -> bool:
        if not (self.merchant_key and self.merchant_salt):
            logger.error("❌ PayTR не настроен, callback невозможно проверить")
            raise IntegrityFailure()

        if not received_hash:
            logger.error(f"❌ Callback PayTR без hash, merchant_oid={merchant_oid}")
            raise IntegrityFailure()

        expected = self.expected(merchant_oid, status, total_amount)
        if not hmac.compare_digest(received_hash.encode(), expected.encode()):
            logger.error(f"❌ Неверный hash callback PayTR, merchant_oid={merchant_oid}")
            raise IntegrityFailure()

        logger.info(f"✅ Hash PayTR проверен, merchant_oid={merchant_oid}")
        return True


class IntegrityVerifier:
    """Выбирает политику проверки по провайдеру."""

    def __init__(self, hmac_policy: HmacSignaturePolicy, hash_policy: HashPolicy):
        self.hmac_policy = hmac_policy
        self.hash_policy = hash_policy

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "IntegrityVerifier":
        config = config or default_settings
        return cls(
            HmacSignaturePolicy(config.iyzico_secret_key, required=config.webhook_signature_required),
            HashPolicy(config.paytr_merchant_key, config.paytr_merchant_salt),
        )

    def verify_iyzico(self, raw_body: bytes, signature: str | None) -> bool:
        return self.hmac_policy.verify(raw_body, signature)

    def verify_paytr(self, merchant_oid: str, status: str, total_amount: str, received_hash: str | None) -> bool:
        return self.hash_policy.verify(merchant_oid, status, total_amount, received_hash)
