"""
Главный модуль FastAPI приложения
"""
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tradeframe.config import Settings, get_settings
from tradeframe.errors import TemplateError, TemplateValidationError, TradingApiError
from tradeframe.logger import logger
from tradeframe.middleware import LoggingMiddleware
from tradeframe.routers import coupons, health, permissions, templates, trading_network
from tradeframe.schemas import CouponsMonitoringSettings, RetryOptions
from tradeframe.services.command_templates import CommandTemplateRepository
from tradeframe.services.coupons_business_service import CouponsBusinessService
from tradeframe.services.coupons_service import CouponsApiService
from tradeframe.services.database_client import EnhancedDatabaseClient
from tradeframe.services.trading_network_client import TradingNetworkClient
from tradeframe.storage import JsonFileStorage, StorageBackend

settings = get_settings()


def build_services(app_settings: Settings, storage: Optional[StorageBackend] = None) -> Dict[str, Any]:
    """
    Создание сервисов приложения

    Args:
        app_settings: Настройки приложения
        storage: Хранилище настроек (по умолчанию JSON-файл storage_path)

    Returns:
        Словарь сервисов для app.state
    """
    storage = storage or JsonFileStorage(app_settings.storage_path)

    database_client = EnhancedDatabaseClient(
        storage,
        settings_key=app_settings.database_settings_key,
        default_retry_options=RetryOptions(
            max_retries=app_settings.default_max_retries,
            delay=app_settings.default_retry_delay
        )
    )

    trading_client = TradingNetworkClient(
        storage,
        settings_key=app_settings.trading_api_settings_key,
        default_url=app_settings.trading_api_url,
        username=app_settings.trading_api_username,
        password=app_settings.trading_api_password,
        timeout=app_settings.trading_api_timeout,
        token_ttl_minutes=app_settings.trading_token_ttl_minutes
    )

    business_service = CouponsBusinessService(CouponsMonitoringSettings(
        old_coupon_threshold_days=app_settings.coupons_old_threshold_days,
        critical_coupon_threshold_days=app_settings.coupons_critical_threshold_days,
        large_amount_threshold=app_settings.coupons_large_amount_threshold,
        enable_notifications=app_settings.coupons_enable_notifications
    ))

    return {
        "storage": storage,
        "database_client": database_client,
        "trading_client": trading_client,
        "coupons_business_service": business_service,
        "coupons_service": CouponsApiService(trading_client, business_service),
        "template_repository": CommandTemplateRepository(storage, storage_key=app_settings.templates_storage_key),
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Управление жизненным циклом приложения (startup и shutdown)
    """
    logger.info("Запуск приложения: создание сервисов", extra={
        "event_type": "system",
        "event_category": "startup",
        "environment": settings.environment
    })

    services = build_services(settings)
    for name, service in services.items():
        setattr(app.state, name, service)

    if services["database_client"].initialize():
        logger.info("Подключение к внешней БД настроено")
    else:
        logger.warning("Подключение к внешней БД не настроено, функции БД недоступны")

    yield

    await services["database_client"].close()
    await services["trading_client"].close()
    logger.info("Приложение остановлено", extra={
        "event_type": "system",
        "event_category": "shutdown"
    })


app = FastAPI(
    title="Tradeframe API",
    description="""
## API администрирования сети АЗС

### Основные возможности

* **Купоны** - Сдача топливом: поиск, статистика, алерты, экспорт в CSV
* **Шаблоны команд** - Системные и пользовательские шаблоны команд API торговой сети
* **Разрешения** - Проверка прав пользователей и областей действия ролей
* **Торговая сеть** - Справочник услуг, цены и информация о станциях

### Мониторинг
* `/health/live` - Liveness probe
* `/health/ready` - Readiness probe
* `/docs` - Swagger UI (эта страница)
    """,
    version=settings.api_version,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Coupons", "description": "Купоны (сдача топливом). Поиск, статистика, алерты, экспорт."},
        {"name": "Templates", "description": "Шаблоны команд. Версии, клонирование, тестирование."},
        {"name": "Permissions", "description": "Проверка разрешений и областей действия ролей."},
        {"name": "Trading Network", "description": "API торговой сети: услуги, цены, информация."},
        {"name": "Health", "description": "Мониторинг состояния. Health checks для Kubernetes/Docker."},
    ],
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Обработчик ошибок валидации Pydantic для детального логирования
    """
    error_details = [
        {"loc": error["loc"], "msg": error["msg"], "type": error["type"]}
        for error in exc.errors()
    ]

    logger.error("Ошибка валидации запроса", extra={
        "path": request.url.path,
        "method": request.method,
        "errors": error_details
    })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": error_details}
    )


@app.exception_handler(TemplateError)
async def template_exception_handler(request: Request, exc: TemplateError):
    """
    Ошибки шаблонов команд в формате problem details
    """
    content = {
        "title": exc.title,
        "status": exc.status_code,
        "detail": exc.detail
    }
    if isinstance(exc, TemplateValidationError) and exc.validation_errors:
        content["validation_errors"] = exc.validation_errors

    logger.warning(f"Ошибка шаблона команды: {exc.detail}", extra={
        "path": request.url.path,
        "status_code": exc.status_code
    })

    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(TradingApiError)
async def trading_api_exception_handler(request: Request, exc: TradingApiError):
    """
    Ошибки API торговой сети отдаются клиенту как 502 Bad Gateway
    """
    logger.error(f"Ошибка API торговой сети: {exc.message}", extra={
        "path": request.url.path,
        "upstream_status": exc.status_code
    })

    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": exc.message, "upstream_status": exc.status_code}
    )


# Добавляем middleware для логирования запросов
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Подключаем роутеры
app.include_router(health.router)
app.include_router(coupons.router)
app.include_router(templates.router)
app.include_router(permissions.router)
app.include_router(trading_network.router)


@app.get("/")
async def root():
    """
    Корневой endpoint
    """
    return {"message": "Tradeframe API", "version": settings.api_version}
