"""
Конфигурация приложения с использованием pydantic-settings
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
from typing import List, Optional
from functools import lru_cache


class Settings(BaseSettings):
    """
    Настройки приложения
    Все значения могут быть переопределены через переменные окружения
    """
    # Настройки приложения
    debug: bool = False
    environment: str = "development"
    log_level: str = "INFO"
    api_version: str = "1.0.0"

    # CORS настройки (строка с разделителем запятая)
    allowed_origins: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"

    # Хранилище настроек (аналог localStorage браузера)
    # JSON-файл с парами ключ -> значение
    storage_path: str = "data/storage.json"
    database_settings_key: str = "externalDatabase"
    trading_api_settings_key: str = "sts-api-config"
    templates_storage_key: str = "new_templates_v1"

    # Параметры повторов по умолчанию для клиента БД
    default_max_retries: int = 3
    default_retry_delay: float = 1.0  # секунды

    # API торговой сети (POS)
    trading_api_url: str = "https://pos.autooplata.ru/tms"
    trading_api_username: Optional[str] = None
    trading_api_password: Optional[str] = None
    trading_api_timeout: float = 30.0
    trading_token_ttl_minutes: int = 20
    trading_default_system: int = 15

    # Мониторинг купонов
    coupons_old_threshold_days: int = 7
    coupons_critical_threshold_days: int = 30
    coupons_large_amount_threshold: float = 1000
    coupons_enable_notifications: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",
        # Приоритет переменных окружения над .env файлом
        env_ignore_empty=True
    )

    @model_validator(mode='after')
    def validate_production_settings(self) -> 'Settings':
        """
        Валидация критических настроек для production
        Блокирует запуск без учетных данных API торговой сети
        """
        if self.environment.lower() == "production":
            errors = []

            if not self.trading_api_username or not self.trading_api_password:
                errors.append(
                    "TRADING_API_USERNAME / TRADING_API_PASSWORD: не заданы учетные данные API торговой сети"
                )

            if self.coupons_critical_threshold_days < self.coupons_old_threshold_days:
                errors.append(
                    "COUPONS_CRITICAL_THRESHOLD_DAYS должен быть не меньше COUPONS_OLD_THRESHOLD_DAYS"
                )

            if errors:
                error_msg = "\n\nКРИТИЧЕСКИЕ ОШИБКИ КОНФИГУРАЦИИ (production):\n\n" + \
                           "\n\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors)) + "\n"
                raise ValueError(error_msg)

        return self

    def get_allowed_origins_list(self) -> List[str]:
        """
        Получение списка разрешенных источников из строки
        """
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """
    Получение настроек приложения (singleton через lru_cache)
    """
    return Settings()
