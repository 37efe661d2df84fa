"""
Ошибки — таксономия сбоев синхронизации и валидации.

AuthExpired / Forbidden / RetryableTransient обрабатываются TelemetryEngine,
остальное пробрасывается вызывающему.
"""

import httpx


class QuotaWakerError(Exception):
    """Базовая ошибка приложения."""


class AuthExpiredError(QuotaWakerError):
    """Refresh токена отклонён — credential нужно удалить."""

    def __init__(self, message: str, email: str | None = None) -> None:
        super().__init__(message)
        self.email = email


class NotAuthorizedError(QuotaWakerError):
    """Нет ни одного авторизованного аккаунта."""


class ForbiddenError(QuotaWakerError):
    """Доступ к источнику запрещён (403)."""


class RetryableTransientError(QuotaWakerError):
    """Сеть, таймаут или 5xx — можно повторить позже."""


class QuotaApiError(QuotaWakerError):
    """Неожиданный ответ API, повторять бессмысленно."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ScheduleValidationError(ValueError):
    """Некорректная конфигурация расписания. Не сохраняется."""


class SyncError(QuotaWakerError):
    """Ошибка синхронизации с указанием источника, который её породил."""

    def __init__(self, source: str, cause: Exception) -> None:
        super().__init__(f"[{source}] {cause}")
        self.source = source
        self.cause = cause


_RETRYABLE_STATUSES = frozenset({408, 429})


def raise_for_status(response: httpx.Response, label: str) -> None:
    """Классифицирует HTTP-статус в исключение таксономии."""
    status = response.status_code
    if 200 <= status < 300:
        return

    try:
        text = response.text[:200]
    except httpx.ResponseNotRead:
        text = ""
    if status == 401:
        raise AuthExpiredError(f"{label}: HTTP 401 {text}")
    if status == 403:
        raise ForbiddenError(f"{label}: HTTP 403 {text}")
    if status in _RETRYABLE_STATUSES or status >= 500:
        raise RetryableTransientError(f"{label}: HTTP {status} {text}")
    raise QuotaApiError(f"{label}: HTTP {status} {text}", status_code=status)


def classify_transport_error(exc: httpx.HTTPError, label: str) -> QuotaWakerError:
    """Таймауты и сетевые ошибки httpx → RetryableTransient."""
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return RetryableTransientError(f"{label}: {type(exc).__name__}: {exc}")
    return QuotaApiError(f"{label}: {exc}")
