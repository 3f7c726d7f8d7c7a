"""
Ошибки приложения

Ошибки клиента БД классифицируются один раз - в момент, когда получен ответ
PostgREST или ошибка транспорта. Дальше по коду передается уже готовый
DatabaseError с полем kind, без повторного разбора текста сообщения.
"""
from enum import Enum
from typing import Optional, Dict, List, Any

from pydantic import BaseModel


class ErrorKind(str, Enum):
    """Категории ошибок клиента БД"""
    NETWORK = "network"
    AUTH = "auth"
    PERMISSION = "permission"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


# Коды PostgreSQL / PostgREST
_PERMISSION_CODES = {"42501"}
_AUTH_CODES = {"PGRST301", "PGRST302"}
_NETWORK_CODES = {"network_error", "connection_failure", "timeout"}


def classify_error(
    status: Optional[int],
    code: Optional[str],
    message: Optional[str]
) -> ErrorKind:
    """
    Определение категории ошибки по HTTP статусу, коду и сообщению

    Args:
        status: HTTP статус ответа (None для ошибок транспорта)
        code: Код ошибки PostgreSQL/PostgREST
        message: Текст ошибки

    Returns:
        Категория ошибки
    """
    code = code or ""
    text = (message or "").lower()

    if code in _NETWORK_CODES or "fetch" in text or "network" in text:
        return ErrorKind.NETWORK

    if status == 401 or code in _AUTH_CODES or code.startswith("auth") or "jwt" in text:
        return ErrorKind.AUTH

    if status == 403 or code in _PERMISSION_CODES or "permission" in text:
        return ErrorKind.PERMISSION

    # Класс 22 - ошибки данных, класс 23 - нарушения ограничений
    if status in (400, 404, 406, 409, 422) or code[:2] in ("22", "23"):
        return ErrorKind.VALIDATION

    return ErrorKind.UNKNOWN


class DatabaseError(BaseModel):
    """
    Ошибка запроса к БД (формат PostgrestError + категория)
    """
    message: str
    code: str = ""
    details: str = ""
    hint: str = ""
    status: Optional[int] = None
    kind: ErrorKind = ErrorKind.UNKNOWN

    @classmethod
    def from_response(cls, status: int, payload: Any) -> "DatabaseError":
        """
        Создание ошибки из ответа PostgREST

        Args:
            status: HTTP статус
            payload: Тело ответа (dict с полями code/message/details/hint или текст)
        """
        if isinstance(payload, dict):
            message = str(payload.get("message") or f"HTTP {status}")
            code = str(payload.get("code") or status)
            details = str(payload.get("details") or "")
            hint = str(payload.get("hint") or "")
        else:
            message = str(payload) if payload else f"HTTP {status}"
            code = str(status)
            details = ""
            hint = ""

        return cls(
            message=message,
            code=code,
            details=details,
            hint=hint,
            status=status,
            kind=classify_error(status, code, message)
        )

    @classmethod
    def network(cls, message: str, code: str = "network_error") -> "DatabaseError":
        """Ошибка транспорта (нет ответа от сервера)"""
        return cls(
            message=f"{code}: {message}",
            code=code,
            kind=ErrorKind.NETWORK
        )

    @classmethod
    def not_initialized(cls) -> "DatabaseError":
        return cls(message="Клиент не инициализирован")


_HUMAN_READABLE_MESSAGES = {
    ErrorKind.NETWORK: "Проблемы с сетью. Проверьте подключение к интернету.",
    ErrorKind.AUTH: "Ошибка авторизации. Проверьте настройки API ключа.",
    ErrorKind.PERMISSION: "Недостаточно прав доступа. Проверьте настройки RLS.",
}


def get_human_readable_error(error: Optional[DatabaseError]) -> str:
    """
    Сообщение об ошибке для отображения пользователю
    """
    if error is None:
        return "Неизвестная ошибка"

    if error.kind in _HUMAN_READABLE_MESSAGES:
        return _HUMAN_READABLE_MESSAGES[error.kind]

    return error.message or "Неизвестная ошибка"


class TemplateError(Exception):
    """Базовая ошибка работы с шаблонами команд"""
    status_code = 500
    title = "Template Error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class TemplateNotFoundError(TemplateError):
    """Шаблон не найден"""
    status_code = 404
    title = "Template Not Found"


class TemplateConflictError(TemplateError):
    """Шаблон с таким template_id и версией уже существует"""
    status_code = 409
    title = "Conflict"


class TemplateValidationError(TemplateError):
    """Ошибка валидации шаблона"""
    status_code = 400
    title = "Validation Error"

    def __init__(self, detail: str, validation_errors: Optional[Dict[str, List[str]]] = None):
        super().__init__(detail)
        self.validation_errors = validation_errors or {}


class TradingApiError(Exception):
    """Ошибка обращения к API торговой сети"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
