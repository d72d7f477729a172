"""Исключения платёжного модуля.

Сервисы бросают наследников PaymentError, роутеры переводят их в HTTPException
по полю status_code. Текст исключения показывается пользователю, поэтому в него
никогда не попадают сырые ответы провайдеров.
"""


class PaymentError(Exception):
    """Базовая ошибка платёжного модуля."""

    status_code = 400
    default_message = "Ошибка обработки платежа"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)


# Ошибки валидации

class OrderNotFound(PaymentError):
    status_code = 404
    default_message = "Заказ не найден"


class PaymentNotFound(PaymentError):
    status_code = 404
    default_message = "Платёж не найден"


class HoldNotFound(PaymentError):
    status_code = 404
    default_message = "Удержание средств не найдено"


class NotOrderOwner(PaymentError):
    status_code = 403
    default_message = "Нет доступа к этому заказу"


class OrderNotAwaitingPayment(PaymentError):
    default_message = "Заказ не ожидает оплаты"


class InvalidTransition(PaymentError):
    status_code = 409
    default_message = "Недопустимый переход статуса платежа"


class InvalidRefundAmount(PaymentError):
    default_message = "Некорректная сумма возврата"


class AlreadyRefunded(PaymentError):
    status_code = 409
    default_message = "Платёж уже возвращён"


# Подпись webhook

class IntegrityFailure(PaymentError):
    status_code = 401
    default_message = "Invalid signature"


# Ошибки провайдеров

class ProviderError(PaymentError):
    status_code = 502
    default_message = "Ошибка платёжного провайдера"


class ProviderUnavailable(ProviderError):
    status_code = 503
    default_message = "Платёжный провайдер не настроен"


class ProviderRejected(ProviderError):
    """Провайдер явно отклонил операцию (бизнес-ошибка)."""

    status_code = 400
    default_message = "Платёжный провайдер отклонил операцию"


class ProviderTransientError(ProviderError):
    """Сетевая ошибка или таймаут: результат неизвестен, можно повторить."""

    status_code = 503
    default_message = "Платёжный провайдер временно недоступен"


# Конфликты при записи

class ConcurrencyConflict(PaymentError):
    status_code = 409
    default_message = "Заказ был изменён параллельно, повторите запрос"
