"""
Pydantic схемы для валидации данных API и доменных объектов
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any

from tradeframe.errors import DatabaseError


# ---------------------------------------------------------------------------
# Разрешения и пользователи
# ---------------------------------------------------------------------------

class PermissionAction(str, Enum):
    """Действия над ресурсом"""
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    MANAGE = "manage"
    VIEW_MENU = "view_menu"


class ConditionOperator(str, Enum):
    """Операторы условий доступа"""
    EQ = "="
    NE = "!="
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"


class RoleScope(str, Enum):
    """Область действия роли"""
    GLOBAL = "global"
    NETWORK = "network"
    TRADING_POINT = "trading_point"
    ASSIGNED = "assigned"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BLOCKED = "blocked"


# Специальное значение раздела/ресурса "все"
PERMISSION_WILDCARD = "*"


class PermissionCondition(BaseModel):
    """
    Условие доступа: значение поля контекста (путь через точку) сравнивается с value
    """
    field: str = Field(..., description="Поле контекста, например network.id")
    operator: str = Field(..., description="Оператор: =, !=, in, not_in, contains, starts_with")
    value: Any = Field(None, description="Значение условия")


class Permission(BaseModel):
    """
    Гранулярное разрешение на ресурс раздела
    """
    section: str = Field(..., description="Раздел системы (networks, operations, ...)")
    resource: str = Field(..., description="Ресурс (trading_points, transactions, ...)")
    actions: List[str] = Field(default_factory=list, description="Разрешенные действия")
    conditions: Optional[List[PermissionCondition]] = Field(None, description="Дополнительные условия доступа")


class UserRole(BaseModel):
    """
    Роль, назначенная пользователю
    """
    role_id: str
    role_code: str
    role_name: str = ""
    scope: str = RoleScope.GLOBAL.value
    scope_value: Optional[str] = None
    permissions: List[Permission] = Field(default_factory=list)
    assigned_at: Optional[datetime] = None
    assigned_by: Optional[str] = None
    expires_at: Optional[datetime] = None


class User(BaseModel):
    """
    Пользователь с ролями и прямыми разрешениями
    """
    id: str
    tenant_id: Optional[str] = None
    email: str = ""
    name: str = ""
    phone: Optional[str] = None
    status: str = UserStatus.ACTIVE.value
    roles: List[UserRole] = Field(default_factory=list)
    direct_permissions: Optional[List[Permission]] = None


class PermissionRequest(BaseModel):
    """Запрос на проверку одного разрешения"""
    section: str
    resource: str
    action: str
    context: Optional[Dict[str, Any]] = None


class PermissionCheckRequest(BaseModel):
    """
    Проверка разрешений пользователя

    mode: single - первое разрешение из списка, any - хотя бы одно, all - все
    """
    user: Optional[User] = None
    permissions: List[PermissionRequest] = Field(..., min_length=1)
    mode: str = Field("single", pattern="^(single|any|all)$")


class PermissionCheckResponse(BaseModel):
    allowed: bool


class ScopeCheckRequest(BaseModel):
    role: UserRole
    requested_scope: str
    requested_value: Optional[str] = None


class PermissionValidationResponse(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Купоны (сдача топливом)
# ---------------------------------------------------------------------------

COUPON_STATE_ACTIVE = "Активен"
COUPON_STATE_REDEEMED = "Погашен"


class CouponPriority(str, Enum):
    NORMAL = "normal"
    ATTENTION = "attention"
    CRITICAL = "critical"


class AgeFilter(str, Enum):
    ALL = "all"
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    OLD = "old"


class AlertType(str, Enum):
    OLD = "old"
    CRITICAL = "critical"
    LARGE_AMOUNT = "large_amount"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


class Coupon(BaseModel):
    """
    Купон, выданный клиенту (API /v1/coupons)
    """
    number: str = Field(..., description="Номер купона")
    dt_beg: str = Field(..., description="Дата/время выдачи (ISO 8601)")
    pos: int = Field(..., description="Номер POS терминала")
    shift: int = Field(..., description="Номер смены")
    opernum: int = Field(..., description="Номер операции выдачи")
    summ_total: float = Field(..., description="Первоначальная сумма купона")
    summ_used: float = Field(0, description="Использованная сумма")
    dt_end: Optional[str] = Field(None, description="Дата полного погашения")
    state: str = Field(..., description="Статус: Активен / Погашен")
    rest: float = Field(..., description="Остаток к использованию")

    # Поля топливных купонов (необязательные)
    fuel_type: Optional[str] = None
    fuel_price: Optional[float] = None
    fuel_amount: Optional[float] = None
    fuel_used: Optional[float] = None
    fuel_rest: Optional[float] = None
    can_change_fuel: Optional[bool] = None
    is_unused: Optional[bool] = None
    expires_at: Optional[str] = None


class CouponWithAge(Coupon):
    """
    Купон с расчетными полями возраста и приоритета
    """
    model_config = ConfigDict(populate_by_name=True)

    age_in_days: int = Field(..., alias="ageInDays")
    age_in_hours: int = Field(..., alias="ageInHours")
    is_old: bool = Field(..., alias="isOld")
    is_critical: bool = Field(..., alias="isCritical")
    priority: CouponPriority


class CouponSystemResponse(BaseModel):
    """Элемент ответа API купонов: система/станция и ее купоны"""
    system: int
    number: int
    coupons: List[Coupon] = Field(default_factory=list)


class CouponsStationGroup(BaseModel):
    """
    Купоны станции с агрегированной статистикой
    """
    model_config = ConfigDict(populate_by_name=True)

    system_id: int = Field(..., alias="systemId")
    station_id: int = Field(..., alias="stationId")
    station_name: Optional[str] = Field(None, alias="stationName")
    total_debt: float = Field(0, alias="totalDebt")
    active_coupons_count: int = Field(0, alias="activeCouponsCount")
    total_coupons_count: int = Field(0, alias="totalCouponsCount")
    old_coupons_count: int = Field(0, alias="oldCouponsCount")
    critical_coupons_count: int = Field(0, alias="criticalCouponsCount")
    coupons: List[CouponWithAge] = Field(default_factory=list)


class CouponsStats(BaseModel):
    """Общая статистика по купонам"""
    model_config = ConfigDict(populate_by_name=True)

    total_coupons: int = Field(0, alias="totalCoupons")
    active_coupons: int = Field(0, alias="activeCoupons")
    redeemed_coupons: int = Field(0, alias="redeemedCoupons")
    total_debt: float = Field(0, alias="totalDebt")
    total_amount: float = Field(0, alias="totalAmount")
    used_amount: float = Field(0, alias="usedAmount")
    average_rest: float = Field(0, alias="averageRest")
    old_coupons_count: int = Field(0, alias="oldCouponsCount")
    critical_coupons_count: int = Field(0, alias="criticalCouponsCount")


class CouponsFilter(BaseModel):
    """
    Фильтры поиска купонов
    """
    model_config = ConfigDict(populate_by_name=True)

    system: Optional[int] = None
    station: Optional[int] = None
    state: Optional[str] = None
    date_from: Optional[str] = Field(None, alias="dateFrom")
    date_to: Optional[str] = Field(None, alias="dateTo")
    search: Optional[str] = None
    min_amount: Optional[float] = Field(None, alias="minAmount")
    max_amount: Optional[float] = Field(None, alias="maxAmount")
    age_filter: Optional[AgeFilter] = Field(None, alias="ageFilter")


class CouponsAlert(BaseModel):
    """Алерт о проблемных купонах"""
    model_config = ConfigDict(populate_by_name=True)

    type: AlertType
    severity: AlertSeverity
    title: str
    description: str
    count: int
    total_amount: float = Field(..., alias="totalAmount")
    coupons: List[CouponWithAge] = Field(default_factory=list)


class CouponsSearchResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    groups: List[CouponsStationGroup]
    stats: CouponsStats
    total_found: int = Field(..., alias="totalFound")
    applied_filters: CouponsFilter = Field(..., alias="appliedFilters")


class CouponsMonitoringSettings(BaseModel):
    """
    Пороги мониторинга купонов
    """
    model_config = ConfigDict(populate_by_name=True)

    old_coupon_threshold_days: int = Field(7, ge=0, alias="oldCouponThresholdDays")
    critical_coupon_threshold_days: int = Field(30, ge=0, alias="criticalCouponThresholdDays")
    large_amount_threshold: float = Field(1000, ge=0, alias="largeAmountThreshold")
    enable_notifications: bool = Field(True, alias="enableNotifications")

    @model_validator(mode="after")
    def validate_thresholds(self):
        if self.critical_coupon_threshold_days < self.old_coupon_threshold_days:
            raise ValueError(
                "criticalCouponThresholdDays не может быть меньше oldCouponThresholdDays"
            )
        return self


class CouponsMonitoringSettingsUpdate(BaseModel):
    """Частичное обновление порогов мониторинга"""
    model_config = ConfigDict(populate_by_name=True)

    old_coupon_threshold_days: Optional[int] = Field(None, ge=0, alias="oldCouponThresholdDays")
    critical_coupon_threshold_days: Optional[int] = Field(None, ge=0, alias="criticalCouponThresholdDays")
    large_amount_threshold: Optional[float] = Field(None, ge=0, alias="largeAmountThreshold")
    enable_notifications: Optional[bool] = Field(None, alias="enableNotifications")


class ApiTestResult(BaseModel):
    """Результат проверки подключения к API"""
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Клиент БД
# ---------------------------------------------------------------------------

class RetryOptions(BaseModel):
    """
    Параметры повторов запроса
    """
    max_retries: int = Field(3, ge=0)
    delay: float = Field(1.0, ge=0, description="Базовая задержка в секундах")
    backoff: bool = True


class QueryResult(BaseModel):
    """
    Результат запроса: data или error, исключения не выбрасываются
    """
    data: Any = None
    error: Optional[DatabaseError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BatchOperation(BaseModel):
    """Операция пакетного выполнения"""
    type: str = Field(..., pattern="^(select|insert|update|delete)$")
    table: str
    data: Any = None
    filters: Optional[Dict[str, Any]] = None
    columns: str = "*"


class OrderBy(BaseModel):
    column: str
    ascending: bool = True


class DatabaseConnectionSettings(BaseModel):
    """
    Настройки подключения к БД, сохраненные в хранилище (ключ externalDatabase)
    """
    model_config = ConfigDict(populate_by_name=True)

    url: str
    api_key: str = Field(..., alias="apiKey")
    service_role_key: Optional[str] = Field(None, alias="serviceRoleKey")
    max_retries: Optional[int] = Field(None, ge=0, alias="maxRetries")
    retry_delay: Optional[int] = Field(None, ge=0, alias="retryDelay", description="Задержка в миллисекундах")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL должен начинаться с http:// или https://")
        return v

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Не указан API ключ")
        return v.strip()


class ConnectionTestResult(BaseModel):
    success: bool
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# API торговой сети
# ---------------------------------------------------------------------------

class TradingApiSettings(BaseModel):
    """
    Конфигурация API торговой сети (ключ sts-api-config)
    """
    model_config = ConfigDict(populate_by_name=True)

    url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    token_expiry: Optional[float] = Field(None, alias="tokenExpiry", description="Unix время в миллисекундах")


# ---------------------------------------------------------------------------
# Шаблоны команд
# ---------------------------------------------------------------------------

class TemplateStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    DEPRECATED = "deprecated"


class TemplateScope(str, Enum):
    NETWORK = "network"
    TRADING_POINT = "trading_point"
    EQUIPMENT = "equipment"
    COMPONENT = "component"


class TemplateMode(str, Enum):
    PULL = "pull"
    PUSH = "push"


class CommandTemplate(BaseModel):
    """
    Шаблон команды (системный или пользовательский)
    """
    id: str
    template_id: str = Field(..., description="Идентификатор шаблона, общий для всех версий")
    name: str
    description: str = ""
    version: str
    scope: TemplateScope = TemplateScope.NETWORK
    mode: TemplateMode = TemplateMode.PULL
    provider_ref: Optional[str] = None
    method: Optional[str] = Field(None, description="HTTP метод команды")
    endpoint: Optional[str] = Field(None, description="Путь endpoint во внешнем API")
    timeout_ms: Optional[int] = None
    documentation_url: Optional[str] = None
    status: TemplateStatus = TemplateStatus.DRAFT
    is_system: bool = False
    schemas: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    version_notes: Optional[str] = None


class CommandTemplateCreate(BaseModel):
    """Новый шаблон всегда создается черновиком"""
    template_id: str = Field(..., min_length=1, max_length=200)
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    version: str
    scope: TemplateScope = TemplateScope.NETWORK
    mode: TemplateMode = TemplateMode.PULL
    provider_ref: Optional[str] = None
    method: Optional[str] = None
    endpoint: Optional[str] = None
    timeout_ms: Optional[int] = Field(None, gt=0)
    documentation_url: Optional[str] = None
    schemas: Dict[str, Any] = Field(default_factory=dict)
    version_notes: Optional[str] = None


class CommandTemplateUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    scope: Optional[TemplateScope] = None
    mode: Optional[TemplateMode] = None
    provider_ref: Optional[str] = None
    method: Optional[str] = None
    endpoint: Optional[str] = None
    timeout_ms: Optional[int] = Field(None, gt=0)
    documentation_url: Optional[str] = None
    status: Optional[TemplateStatus] = None
    schemas: Optional[Dict[str, Any]] = None
    version_notes: Optional[str] = None


class CommandTemplateClone(BaseModel):
    new_template_id: str = Field(..., min_length=1, max_length=200)
    new_version: str
    version_notes: Optional[str] = None


class CommandTemplateListResponse(BaseModel):
    data: List[CommandTemplate]
    total: int
    page: int
    limit: int
    total_pages: int


class TemplateTestExecution(BaseModel):
    request: Dict[str, Any]
    response: Dict[str, Any]
    execution_time_ms: int


class TemplateTestResult(BaseModel):
    success: bool
    validation_errors: Optional[Dict[str, List[str]]] = None
    test_execution: Optional[TemplateTestExecution] = None
    tested_at: datetime
