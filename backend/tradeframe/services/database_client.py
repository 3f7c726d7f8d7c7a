"""
Клиент хостируемой БД (PostgREST / Supabase) с retry логикой и обработкой ошибок

Все публичные методы возвращают QueryResult(data, error) - ожидаемые ошибки
(сеть, права доступа, валидация) не выбрасываются, а попадают в error.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx
from pydantic import ValidationError

from tradeframe.errors import DatabaseError, ErrorKind
from tradeframe.logger import logger
from tradeframe.schemas import (
    BatchOperation,
    ConnectionTestResult,
    DatabaseConnectionSettings,
    OrderBy,
    QueryResult,
    RetryOptions,
)
from tradeframe.storage import StorageBackend
from tradeframe.utils.json_utils import parse_stored_json


RetryOptionsLike = Optional[Union[RetryOptions, Dict[str, Any]]]


class RealtimeTransport:
    """
    Транспорт подписок на изменения таблиц (realtime)

    Переподключение при обрыве - ответственность транспорта.
    """

    def subscribe(
        self,
        channel: str,
        params: Dict[str, Any],
        callback: Callable[[Dict[str, Any]], None]
    ) -> Any:
        raise NotImplementedError


class EnhancedDatabaseClient:
    """
    Клиент PostgREST с повторами запросов при временных сбоях

    Повторяются только ошибки 5xx, 429, 408 и ошибки, в тексте которых есть
    connection_failure / timeout / network_error / rate_limit_exceeded.
    """

    RETRYABLE_MESSAGES = (
        "connection_failure",
        "timeout",
        "network_error",
        "rate_limit_exceeded",
    )

    def __init__(
        self,
        storage: StorageBackend,
        settings_key: str = "externalDatabase",
        default_retry_options: Optional[RetryOptions] = None,
        timeout: float = 30.0,
        realtime: Optional[RealtimeTransport] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        use_service_role: bool = False,
        application_name: str = "tradeframe-builder"
    ):
        """
        Args:
            storage: Хранилище, из которого читаются настройки подключения
            settings_key: Ключ настроек подключения в хранилище
            default_retry_options: Параметры повторов, если в настройках не заданы свои
            timeout: Таймаут HTTP запроса в секундах
            realtime: Транспорт подписок на изменения (необязательно)
            transport: HTTP транспорт httpx (для тестов)
            sleep: Функция ожидания между попытками (по умолчанию asyncio.sleep)
            use_service_role: Использовать serviceRoleKey вместо apiKey
            application_name: Значение заголовка x-application-name
        """
        self._storage = storage
        self.settings_key = settings_key
        self.default_retry_options = default_retry_options or RetryOptions()
        self.retry_options = self.default_retry_options
        self.timeout = timeout
        self._realtime = realtime
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self.use_service_role = use_service_role
        self.application_name = application_name

        self.config: Optional[DatabaseConnectionSettings] = None
        self._client: Optional[httpx.AsyncClient] = None
        # Клиенты, замененные при повторной инициализации; закрываются в close()
        self._retired_clients: List[httpx.AsyncClient] = []

    # ------------------------------------------------------------------
    # Инициализация
    # ------------------------------------------------------------------

    def initialize(self) -> bool:
        """
        Инициализация клиента с настройками из хранилища

        Returns:
            True если настройки найдены и корректны, иначе False
        """
        raw = self._storage.load(self.settings_key)
        if not raw:
            logger.info("Настройки подключения к БД не найдены", extra={"key": self.settings_key})
            return False

        # В хранилище может лежать JSON-строка, как в localStorage
        settings = parse_stored_json(raw)
        if settings is None:
            logger.error("Настройки подключения к БД повреждены", extra={"key": self.settings_key})
            return False

        try:
            config = DatabaseConnectionSettings.model_validate(settings)
        except ValidationError as e:
            logger.error(f"Ошибка инициализации клиента БД: {e}", extra={"key": self.settings_key})
            return False

        if self._client is not None and config == self.config:
            return True

        if self._client is not None:
            self._retired_clients.append(self._client)

        self.config = config
        self.retry_options = RetryOptions(
            max_retries=config.max_retries if config.max_retries is not None else self.default_retry_options.max_retries,
            delay=config.retry_delay / 1000 if config.retry_delay is not None else self.default_retry_options.delay,
            backoff=self.default_retry_options.backoff
        )

        key = config.service_role_key if self.use_service_role and config.service_role_key else config.api_key
        self._client = httpx.AsyncClient(
            base_url=f"{config.url}/rest/v1",
            headers={
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
                "x-application-name": self.application_name,
            },
            timeout=self.timeout,
            transport=self._transport
        )

        logger.info("Клиент БД инициализирован", extra={
            "url": config.url,
            "max_retries": self.retry_options.max_retries,
            "retry_delay": self.retry_options.delay
        })
        return True

    def is_initialized(self) -> bool:
        return self._client is not None

    def get_client(self) -> Optional[httpx.AsyncClient]:
        """Текущий HTTP клиент (для прямого использования)"""
        return self._client

    async def close(self) -> None:
        """Закрытие HTTP соединений"""
        for client in self._retired_clients:
            await client.aclose()
        self._retired_clients = []
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self.config = None

    async def test_connection(self) -> ConnectionTestResult:
        """
        Проверка подключения минимальным запросом (без повторов)
        """
        if not self.is_initialized():
            return ConnectionTestResult(success=False, error="Клиент не инициализирован")

        result = await self._request("GET", "users", params={"select": "id", "limit": "1"})
        if result.error:
            return ConnectionTestResult(success=False, error=result.error.message)
        return ConnectionTestResult(success=True)

    # ------------------------------------------------------------------
    # Повторы
    # ------------------------------------------------------------------

    def _resolve_retry_options(self, options: RetryOptionsLike) -> RetryOptions:
        if options is None:
            return self.retry_options
        if isinstance(options, RetryOptions):
            return options
        return self.retry_options.model_copy(update=options)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[QueryResult]],
        options: RetryOptionsLike = None
    ) -> QueryResult:
        """
        Выполнение операции с повторами

        Делает до max_retries + 1 попыток. Неповторяемая ошибка возвращается
        сразу после первой попытки.

        Args:
            operation: Асинхронная функция без аргументов, возвращающая QueryResult
            options: Параметры повторов (полностью или частично)

        Returns:
            Результат первой успешной попытки либо последняя ошибка
        """
        retry_options = self._resolve_retry_options(options)
        last_error: Optional[DatabaseError] = None

        for attempt in range(retry_options.max_retries + 1):
            try:
                result = await operation()

                if result.error is None:
                    if attempt > 0:
                        logger.info(f"Запрос успешен после {attempt} повторов", extra={"attempt": attempt})
                    return result

                last_error = result.error

                if not self.should_retry(result.error, attempt, retry_options.max_retries):
                    break

                delay = retry_options.delay * (2 ** attempt) if retry_options.backoff else retry_options.delay

                logger.warning(
                    f"Попытка {attempt + 1} неуспешна, повтор через {delay}с: {result.error.message}",
                    extra={
                        "attempt": attempt + 1,
                        "delay": delay,
                        "error_code": result.error.code,
                        "error_kind": result.error.kind.value
                    }
                )
                await self._sleep(delay)

            except Exception as e:
                logger.error(f"Неожиданная ошибка на попытке {attempt + 1}: {e}", exc_info=True)
                if attempt == retry_options.max_retries:
                    return QueryResult(error=last_error)

        return QueryResult(error=last_error)

    def should_retry(self, error: DatabaseError, attempt: int, max_retries: int) -> bool:
        """
        Определяет, стоит ли повторять запрос при данной ошибке
        """
        if attempt >= max_retries:
            return False

        status = error.status
        if status is None and error.code and error.code.isdigit():
            status = int(error.code)

        if status is not None:
            if 500 <= status < 600:
                return True
            if status in (429, 408):
                return True

        message = error.message.lower()
        return any(retryable in message for retryable in self.RETRYABLE_MESSAGES)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    @staticmethod
    def _format_value(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def _filter_params(self, filters: Optional[Dict[str, Any]], skip_none: bool) -> Dict[str, str]:
        """
        Фильтры равенства в формате PostgREST: column=eq.value
        """
        params: Dict[str, str] = {}
        for column, value in (filters or {}).items():
            if value is None:
                if skip_none:
                    continue
                params[column] = "is.null"
            else:
                params[column] = f"eq.{self._format_value(value)}"
        return params

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        prefer: Optional[str] = None
    ) -> QueryResult:
        """
        Один HTTP запрос к PostgREST; ошибки транспорта и HTTP превращаются в DatabaseError
        """
        headers = {"Prefer": prefer} if prefer else None

        try:
            response = await self._client.request(
                method,
                f"/{table}",
                params=params,
                json=json_body,
                headers=headers
            )
        except httpx.TimeoutException as e:
            return QueryResult(error=DatabaseError.network(str(e) or "request timed out", code="timeout"))
        except httpx.RequestError as e:
            return QueryResult(error=DatabaseError.network(str(e) or type(e).__name__))

        if response.is_error:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text
            error = DatabaseError.from_response(response.status_code, payload)
            logger.debug(f"PostgREST вернул ошибку {response.status_code}: {error.message}", extra={
                "table": table,
                "method": method,
                "status": response.status_code,
                "error_kind": error.kind.value
            })
            return QueryResult(error=error)

        if not response.content:
            return QueryResult(data=[])
        return QueryResult(data=response.json())

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[Union[OrderBy, Dict[str, Any]]] = None,
        limit: Optional[int] = None,
        retry_options: RetryOptionsLike = None
    ) -> QueryResult:
        """
        SELECT с повторами

        Фильтры со значением None пропускаются.
        """
        if not self.is_initialized():
            return QueryResult(error=DatabaseError.not_initialized())

        params = {"select": columns}
        params.update(self._filter_params(filters, skip_none=True))

        if order_by is not None:
            if isinstance(order_by, dict):
                order_by = OrderBy(**order_by)
            params["order"] = f"{order_by.column}.{'asc' if order_by.ascending else 'desc'}"

        if limit:
            params["limit"] = str(limit)

        return await self.execute_with_retry(
            lambda: self._request("GET", table, params=params),
            retry_options
        )

    async def insert(
        self,
        table: str,
        data: Union[Dict[str, Any], List[Dict[str, Any]]],
        retry_options: RetryOptionsLike = None
    ) -> QueryResult:
        """INSERT с повторами, возвращает вставленные строки"""
        if not self.is_initialized():
            return QueryResult(error=DatabaseError.not_initialized())

        return await self.execute_with_retry(
            lambda: self._request("POST", table, params={"select": "*"}, json_body=data, prefer="return=representation"),
            retry_options
        )

    async def update(
        self,
        table: str,
        data: Dict[str, Any],
        filters: Dict[str, Any],
        retry_options: RetryOptionsLike = None
    ) -> QueryResult:
        """UPDATE с повторами, возвращает измененные строки"""
        if not self.is_initialized():
            return QueryResult(error=DatabaseError.not_initialized())

        params = {"select": "*"}
        params.update(self._filter_params(filters, skip_none=False))

        return await self.execute_with_retry(
            lambda: self._request("PATCH", table, params=params, json_body=data, prefer="return=representation"),
            retry_options
        )

    async def delete(
        self,
        table: str,
        filters: Dict[str, Any],
        retry_options: RetryOptionsLike = None
    ) -> QueryResult:
        """DELETE с повторами, возвращает удаленные строки"""
        if not self.is_initialized():
            return QueryResult(error=DatabaseError.not_initialized())

        params = {"select": "*"}
        params.update(self._filter_params(filters, skip_none=False))

        return await self.execute_with_retry(
            lambda: self._request("DELETE", table, params=params, prefer="return=representation"),
            retry_options
        )

    async def batch(
        self,
        operations: List[Union[BatchOperation, Dict[str, Any]]],
        retry_options: RetryOptionsLike = None
    ) -> QueryResult:
        """
        Последовательное выполнение операций

        Это НЕ транзакция: операции, выполненные до первой ошибки, остаются
        примененными. При первой ошибке пакет прерывается и возвращается ошибка.

        Повторы действуют на пакет целиком: отдельные операции выполняются
        без собственных повторов, а повтор пакета заново выполняет всю
        последовательность, включая уже примененные операции. Поэтому
        операции пакета должны быть идемпотентными.

        Returns:
            QueryResult с data = список результатов операций по порядку
        """
        if not self.is_initialized():
            return QueryResult(error=DatabaseError.not_initialized())

        try:
            parsed = [op if isinstance(op, BatchOperation) else BatchOperation(**op) for op in operations]
        except (ValidationError, TypeError) as e:
            return QueryResult(error=DatabaseError(
                message=f"Неверная операция пакета: {e}",
                kind=ErrorKind.VALIDATION
            ))

        single_attempt = RetryOptions(max_retries=0)

        async def run_batch() -> QueryResult:
            results = []
            for operation in parsed:
                if operation.type == "select":
                    result = await self.select(
                        operation.table, operation.columns,
                        filters=operation.filters, retry_options=single_attempt
                    )
                elif operation.type == "insert":
                    result = await self.insert(operation.table, operation.data, retry_options=single_attempt)
                elif operation.type == "update":
                    result = await self.update(
                        operation.table, operation.data, operation.filters or {}, retry_options=single_attempt
                    )
                else:
                    result = await self.delete(operation.table, operation.filters or {}, retry_options=single_attempt)

                if result.error:
                    logger.warning(f"Пакет прерван на операции {operation.type} {operation.table}", extra={
                        "completed": len(results),
                        "total": len(parsed)
                    })
                    return QueryResult(error=result.error)

                results.append(result.data)

            return QueryResult(data=results)

        return await self.execute_with_retry(run_batch, retry_options)

    # ------------------------------------------------------------------
    # Подписки
    # ------------------------------------------------------------------

    def subscribe(
        self,
        table: str,
        callback: Callable[[Dict[str, Any]], None],
        event: str = "*",
        filter: Optional[str] = None
    ) -> Any:
        """
        Подписка на изменения таблицы через realtime транспорт

        Args:
            table: Таблица
            callback: Обработчик события изменения
            event: INSERT, UPDATE, DELETE или *
            filter: Фильтр в формате PostgREST (например, "network_id=eq.1")

        Returns:
            Канал подписки или None
        """
        if not self.is_initialized():
            logger.error("Клиент не инициализирован для подписки", extra={"table": table})
            return None

        if self._realtime is None:
            logger.error("Realtime транспорт не настроен", extra={"table": table})
            return None

        params = {
            "event": event,
            "schema": "public",
            "table": table,
            "filter": filter,
        }
        channel = self._realtime.subscribe(f"{table}-changes", params, callback)
        logger.info(f"Подписка на {table} оформлена", extra={"table": table, "event": event})
        return channel
