"""
Клиент API торговой сети (POS / TMS)

Авторизация по логину и паролю, токен действует ограниченное время и
сохраняется в хранилище вместе с конфигурацией API. На ответ 401 клиент
один раз принудительно обновляет токен и повторяет запрос.
"""
import time
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from tradeframe.errors import TradingApiError
from tradeframe.logger import logger
from tradeframe.schemas import TradingApiSettings
from tradeframe.storage import StorageBackend


DEFAULT_TRADING_API_URL = "https://pos.autooplata.ru/tms"


class TradingNetworkClient:
    """
    Адаптер для работы с API торговой сети
    """

    def __init__(
        self,
        storage: StorageBackend,
        settings_key: str = "sts-api-config",
        default_url: str = DEFAULT_TRADING_API_URL,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 30.0,
        token_ttl_minutes: int = 20,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        time_func: Optional[Callable[[], float]] = None
    ):
        """
        Инициализация клиента

        Args:
            storage: Хранилище конфигурации API (url, username, password, token, tokenExpiry)
            settings_key: Ключ конфигурации в хранилище
            default_url: URL API, если в конфигурации не задан свой
            username: Логин по умолчанию
            password: Пароль по умолчанию
            timeout: Таймаут запроса в секундах
            token_ttl_minutes: Время жизни токена
            transport: HTTP транспорт httpx (для тестов)
            time_func: Текущее время в секундах (для тестов)
        """
        self._storage = storage
        self.settings_key = settings_key
        self.default_url = default_url.rstrip("/")
        self.username = username
        self.password = password
        self.token_ttl_minutes = token_ttl_minutes
        self._time = time_func or time.time
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Конфигурация и токен
    # ------------------------------------------------------------------

    def get_settings(self) -> TradingApiSettings:
        """Конфигурация API из хранилища (пустая, если не сохранена или повреждена)"""
        raw = self._storage.load(self.settings_key)
        if not isinstance(raw, dict):
            return TradingApiSettings()
        try:
            return TradingApiSettings.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Поврежденная конфигурация API торговой сети: {e}", extra={"key": self.settings_key})
            return TradingApiSettings()

    def _save_settings(self, settings: TradingApiSettings) -> None:
        self._storage.save(self.settings_key, settings.model_dump(by_alias=True, exclude_none=True))

    @property
    def base_url(self) -> str:
        settings = self.get_settings()
        return (settings.url or self.default_url).rstrip("/")

    def _now_ms(self) -> float:
        return self._time() * 1000

    def is_token_valid(self, settings: Optional[TradingApiSettings] = None) -> bool:
        settings = settings or self.get_settings()
        return bool(settings.token) and settings.token_expiry is not None and self._now_ms() < settings.token_expiry

    async def login(self) -> str:
        """
        Авторизация: POST /v1/login

        Returns:
            Токен доступа (без кавычек)

        Raises:
            TradingApiError: неверные учетные данные или сбой сети
        """
        settings = self.get_settings()
        username = settings.username or self.username
        password = settings.password or self.password
        if not username or not password:
            raise TradingApiError("Не заданы учетные данные API торговой сети")

        url = f"{(settings.url or self.default_url).rstrip('/')}/v1/login"

        try:
            response = await self.client.post(url, json={"username": username, "password": password})
        except httpx.RequestError as e:
            logger.error(f"Ошибка запроса авторизации к API торговой сети: {str(e)}", extra={"url": url})
            raise TradingApiError(f"Ошибка подключения к API торговой сети: {e}") from e

        if response.is_error:
            logger.error(f"Ошибка авторизации в API торговой сети: {response.status_code}", extra={
                "url": url,
                "status_code": response.status_code,
                "response_text": response.text[:500]
            })
            raise TradingApiError(f"Ошибка авторизации: HTTP {response.status_code}", response.status_code)

        # Токен приходит строкой JSON в кавычках
        token = response.text.strip().replace('"', "")
        if not token:
            raise TradingApiError("Не получен токен доступа при авторизации")

        settings.token = token
        settings.token_expiry = self._now_ms() + self.token_ttl_minutes * 60 * 1000
        self._save_settings(settings)

        logger.info("Токен API торговой сети обновлен", extra={"ttl_minutes": self.token_ttl_minutes})
        return token

    async def ensure_token(self, force_refresh: bool = False) -> str:
        """
        Действующий токен; при отсутствии, истечении или force_refresh выполняется вход
        """
        settings = self.get_settings()
        if not force_refresh and self.is_token_valid(settings):
            return settings.token
        return await self.login()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET запрос с bearer токеном

        Args:
            path: Путь API endpoint
            params: Параметры запроса (None значения пропускаются)

        Returns:
            Ответ API (JSON)

        Raises:
            TradingApiError: при ошибке HTTP или сети
        """
        url = f"{self.base_url}{path}"
        query = {k: v for k, v in (params or {}).items() if v is not None}

        token = await self.ensure_token()
        response = await self._send(url, query, token)

        if response.status_code == 401:
            logger.info("Получен 401 от API торговой сети, обновляем токен и повторяем запрос", extra={"url": url})
            token = await self.ensure_token(force_refresh=True)
            response = await self._send(url, query, token)

        if response.is_error:
            logger.error(f"Ошибка HTTP при запросе к API торговой сети: {response.status_code}", extra={
                "url": url,
                "status_code": response.status_code,
                "response_text": response.text[:500]
            })
            raise TradingApiError(
                f"HTTP {response.status_code}: {response.reason_phrase}. {response.text[:500]}".strip(),
                response.status_code
            )

        try:
            return response.json()
        except ValueError as e:
            raise TradingApiError(f"Неверный формат ответа API торговой сети: {e}", response.status_code) from e

    async def _send(self, url: str, params: Dict[str, Any], token: str) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        try:
            return await self.client.get(url, params=params, headers=headers)
        except httpx.RequestError as e:
            logger.error(f"Ошибка запроса к API торговой сети: {str(e)}", extra={"url": url})
            raise TradingApiError(f"Ошибка подключения к API торговой сети: {e}") from e

    # ------------------------------------------------------------------
    # Методы API
    # ------------------------------------------------------------------

    async def get_coupons(
        self,
        system: int,
        station: Optional[int] = None,
        dt_beg: Optional[str] = None,
        dt_end: Optional[str] = None
    ) -> Any:
        """GET /v1/coupons"""
        return await self._get_json("/v1/coupons", {
            "system": system,
            "station": station,
            "dt_beg": dt_beg,
            "dt_end": dt_end,
        })

    async def get_services(self, system: int) -> Any:
        """GET /v1/services - справочник услуг (видов топлива)"""
        return await self._get_json("/v1/services", {"system": system})

    async def get_prices(self, station: int, system: int, date: Optional[str] = None) -> Any:
        """
        GET /v1/pos/prices/{station}

        Args:
            station: Номер станции
            system: Идентификатор системы (сети)
            date: Дата цен в ISO 8601 (по умолчанию текущий момент UTC)
        """
        if date is None:
            date = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self._time()))
        return await self._get_json(f"/v1/pos/prices/{station}", {"system": system, "date": date})

    async def get_info(self, system: int, station: Optional[int] = None) -> Any:
        """GET /v1/info"""
        return await self._get_json("/v1/info", {"system": system, "station": station})
